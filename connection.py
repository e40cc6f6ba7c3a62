import logging

import pyodbc

logger = logging.getLogger("Connection")


def build_connection_string(config, database=None):
    parts = [
        f"DRIVER={config.get('driver', '{ODBC Driver 17 for SQL Server}')};",
        f"SERVER={config['server']};",
        f"DATABASE={database or config.get('database', 'master')};",
    ]
    if config.get('username'):
        parts.append(f"UID={config['username']};")
        parts.append(f"PWD={config.get('password', '')};")
    else:
        parts.append("Trusted_Connection=yes;")
    parts.append(f"Encrypt={config.get('encrypt', 'yes')};")
    parts.append(f"TrustServerCertificate={config.get('trust_server_certificate', 'yes')};")
    return "".join(parts)


def open_connection(config):
    logger.info(f"Connecting to SQL Server {config['server']}...")
    conn = pyodbc.connect(
        build_connection_string(config),
        timeout=config.get('login_timeout', 10),
        readonly=True,
    )
    logger.debug("Connected")
    return conn
