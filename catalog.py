import logging
from dataclasses import dataclass

from errors import InvalidIdentifier
from queries import (
    GET_CURRENT_DATABASE, GET_USER_DATABASES, GET_TEXT_COLUMNS,
    TEXT_COLUMNS_TABLE_FILTER
)

# Base types that hold character data and compare with LIKE without conversion
TEXT_TYPES = frozenset(['char', 'nchar', 'varchar', 'nvarchar', 'text', 'ntext'])

# sysname is nvarchar(128)
MAX_IDENTIFIER_LENGTH = 128

logger = logging.getLogger("Catalog")


@dataclass(frozen=True)
class CatalogEntry:
    database: str
    schema: str
    table: str
    column: str
    type_name: str


def check_identifier(name):
    if not isinstance(name, str) or not name:
        raise InvalidIdentifier(name, "empty name")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifier(name, f"longer than {MAX_IDENTIFIER_LENGTH} characters")
    if "\x00" in name:
        raise InvalidIdentifier(name, "contains a NUL character")
    return name


def quote_identifier(name):
    """Bracket-quote a SQL Server identifier, doubling any closing bracket."""
    check_identifier(name)
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value):
    """Render a catalog name as an N'...' literal for result labels."""
    check_identifier(value)
    return "N'" + value.replace("'", "''") + "'"


def is_text_type(type_name):
    return (type_name or "").lower() in TEXT_TYPES


class Catalog:
    """Reads database metadata through an open cursor. Nothing is cached."""

    def __init__(self, cursor):
        self.cursor = cursor

    def current_database(self):
        self.cursor.execute(GET_CURRENT_DATABASE)
        row = self.cursor.fetchone()
        return row.database_name

    def user_databases(self):
        self.cursor.execute(GET_USER_DATABASES)
        names = [row.database_name for row in self.cursor.fetchall()]
        logger.debug(f"Found {len(names)} accessible user databases")
        return names

    def text_columns(self, database, schema=None, table=None):
        params = []
        table_filter = ""
        if table is not None:
            table_filter = TEXT_COLUMNS_TABLE_FILTER
            params = [check_identifier(schema), check_identifier(table)]

        query = GET_TEXT_COLUMNS.format(
            database=quote_identifier(database), table_filter=table_filter
        )
        if params:
            self.cursor.execute(query, params)
        else:
            self.cursor.execute(query)

        entries = []
        for row in self.cursor.fetchall():
            if not is_text_type(row.type_name):
                logger.debug(f"Skipping {row.schema_name}.{row.table_name}.{row.column_name} ({row.type_name})")
                continue
            entries.append(CatalogEntry(
                database=database,
                schema=row.schema_name,
                table=row.table_name,
                column=row.column_name,
                type_name=row.type_name.lower(),
            ))
        logger.debug(f"{database}: {len(entries)} text columns")
        return entries
