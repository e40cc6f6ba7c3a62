import argparse
import logging
import os
import sys

import yaml
from prometheus_client import REGISTRY, write_to_textfile

from errors import EmptyScope, SearchError
from searcher import OBJECT_KINDS, Scope, TextSearcher

# Configure Logging
# Results go to stdout, so log records go to stderr
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("Main")


def load_config(config_path="config.yaml"):
    if not os.path.exists(config_path):
        logger.error(f"Config file {config_path} not found!")
        sys.exit(1)
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        logger.error(f"Config file {config_path} must hold a mapping of settings")
        sys.exit(1)
    if not config.get('server'):
        logger.error(f"Config file {config_path} has no 'server' entry")
        sys.exit(1)
    return config


def build_parser():
    parser = argparse.ArgumentParser(
        prog="mssql-text-search",
        description="Find text, objects and module source in SQL Server databases.",
    )
    parser.add_argument("--config", default="config.yaml", help="YAML config file (default: config.yaml)")
    commands = parser.add_subparsers(dest="command", required=True)

    search = commands.add_parser("search", help="Search text columns for a substring")
    search.add_argument("pattern")
    search.add_argument("--database", help="Database to search (default: the connection's database)")
    search.add_argument("--schema", default="dbo", help="Schema of --table (default: dbo)")
    search.add_argument("--table", help="Search only this table")
    search.add_argument("--all-databases", action="store_true", help="Search every user database")

    objects = commands.add_parser("find-objects", help="Find objects by name fragment")
    objects.add_argument("fragment")
    objects.add_argument("--kind", choices=sorted(OBJECT_KINDS), default="any")
    objects.add_argument("--database")
    objects.add_argument("--all-databases", action="store_true")

    definitions = commands.add_parser("search-definitions", help="Search procedure, function, view and trigger source")
    definitions.add_argument("pattern")
    definitions.add_argument("--database")
    definitions.add_argument("--all-databases", action="store_true")
    return parser


def scope_from_args(args):
    if args.all_databases:
        if args.database or getattr(args, "table", None):
            raise ValueError("--all-databases cannot be combined with --database or --table")
        return Scope.for_server()
    if getattr(args, "table", None):
        return Scope.for_table(args.schema, args.table, database=args.database)
    return Scope.for_database(args.database)


def format_line(*fields):
    return "\t".join(
        "" if value is None else str(value).replace("\t", "\\t").replace("\r", "\\r").replace("\n", "\\n")
        for value in fields
    )


def run(args, searcher, out=None):
    out = out or sys.stdout
    scope = scope_from_args(args)

    if args.command == "search":
        for row in searcher.iter_search(scope, args.pattern):
            print(format_line(row.database, row.schema, row.table, row.column, row.value), file=out)
    elif args.command == "find-objects":
        for match in searcher.find_objects(args.fragment, scope=scope, kind=args.kind):
            print(format_line(match.database, match.schema, match.name, match.type_desc, match.modified), file=out)
    elif args.command == "search-definitions":
        for match in searcher.search_definitions(args.pattern, scope=scope):
            print(format_line(match.database, match.schema, match.name, match.type_desc), file=out)


def main(argv=None, connect=None):
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    logging.getLogger().setLevel(str(config.get('log_level', 'INFO')).upper())

    if connect is None:
        from connection import open_connection

        def connect():
            return open_connection(config)

    searcher = TextSearcher(connect, max_rows_per_column=config.get('max_rows_per_column'))

    exit_code = 0
    try:
        run(args, searcher)
    except EmptyScope as e:
        logger.error(str(e))
        exit_code = 2
    except (SearchError, ValueError) as e:
        logger.error(str(e))
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 130
    finally:
        metrics_path = config.get('metrics_textfile')
        if metrics_path:
            write_to_textfile(metrics_path, REGISTRY)
            logger.debug(f"Metrics written to {metrics_path}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
