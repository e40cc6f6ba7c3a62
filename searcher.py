import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from prometheus_client import Counter, Gauge, Histogram

from catalog import Catalog, CatalogEntry, check_identifier, quote_identifier, quote_literal
from errors import EmptyScope, ExecutionFailed, SearchError
from queries import (
    SEARCH_PREAMBLE, SEARCH_SUBQUERY, UNION_ALL, FIND_OBJECTS, SEARCH_MODULE_DEFINITIONS,
    MAX_PATTERN_LENGTH
)

# Metrics Definitions
SEARCH_REQUESTS = Counter('sqlsearch_requests', 'Search and lookup calls', ['operation'])
SEARCH_FAILURES = Counter('sqlsearch_failures', 'Calls that ended in an error', ['operation', 'error'])
SEARCH_ROWS = Counter('sqlsearch_rows', 'Rows returned to the caller', ['operation'])
SEARCH_SUBQUERIES = Gauge('sqlsearch_statement_subqueries', 'Sub-queries in the last generated statement', ['database'])
SEARCH_DURATION = Histogram('sqlsearch_duration_seconds', 'Call duration', ['operation'])

LIKE_ESCAPE = "\\"

TABLE = 'table'
DATABASE = 'database'
SERVER = 'server'

# sys.objects type codes per lookup kind; 'any' applies no type filter
OBJECT_KINDS = {
    'table': ('U',),
    'view': ('V',),
    'function': ('FN', 'IF', 'TF', 'FS', 'FT'),
    'procedure': ('P', 'PC'),
    'any': (),
}


@dataclass(frozen=True)
class Scope:
    """Where to search: one table, one database or every user database.

    A database of None means whatever database the connection is using.
    """
    kind: str
    database: Optional[str] = None
    schema: Optional[str] = None
    table: Optional[str] = None

    @classmethod
    def for_table(cls, schema, table, database=None):
        check_identifier(schema)
        check_identifier(table)
        if database is not None:
            check_identifier(database)
        return cls(TABLE, database=database, schema=schema, table=table)

    @classmethod
    def for_database(cls, database=None):
        if database is not None:
            check_identifier(database)
        return cls(DATABASE, database=database)

    @classmethod
    def for_server(cls):
        return cls(SERVER)

    @property
    def container(self):
        if self.kind == TABLE:
            return f"{self.schema}.{self.table}"
        return None

    def __str__(self):
        where = self.database or "current database"
        if self.kind == TABLE:
            return f"table {self.container} in {where}"
        if self.kind == DATABASE:
            return f"database {where}"
        return "all user databases"


@dataclass(frozen=True)
class SearchStatement:
    database: str
    sql: str
    params: Tuple[str, ...]
    entries: Tuple[CatalogEntry, ...]


@dataclass(frozen=True)
class ResultRow:
    database: str
    schema: str
    table: str
    column: str
    value: str

    @property
    def container(self):
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True)
class ObjectMatch:
    database: str
    schema: str
    name: str
    type_code: str
    type_desc: str
    created: Optional[datetime] = None
    modified: Optional[datetime] = None


@dataclass(frozen=True)
class DefinitionMatch:
    database: str
    schema: str
    name: str
    type_desc: str
    definition: str


def check_pattern(pattern):
    if not isinstance(pattern, str) or not pattern:
        raise ValueError("Search pattern must be a non-empty string")
    return pattern


def escape_like(text):
    """Turn text into a LIKE pattern matching it as a literal substring.

    Used with ESCAPE '\\'. The backslash goes first so the escapes added for
    %, _ and [ are not escaped again.
    """
    for char in (LIKE_ESCAPE, '%', '_', '['):
        text = text.replace(char, LIKE_ESCAPE + char)
    return f"%{text}%"


def build_search_statement(entries, pattern, max_rows_per_column=None):
    """UNION ALL one sub-query per column of a single database.

    The escaped pattern is bound once into @pattern, so params always has a
    single item whatever the number of columns.
    """
    entries = tuple(entries)
    if not entries:
        raise ValueError("Cannot build a search statement without columns")
    database = entries[0].database
    if any(entry.database != database for entry in entries):
        raise ValueError("All columns of a search statement must belong to one database")

    top = f"TOP ({int(max_rows_per_column)}) " if max_rows_per_column else ""
    subqueries = []
    for entry in entries:
        subqueries.append(SEARCH_SUBQUERY.format(
            top=top,
            database_label=quote_literal(entry.database),
            schema_label=quote_literal(entry.schema),
            table_label=quote_literal(entry.table),
            column_label=quote_literal(entry.column),
            database=quote_identifier(entry.database),
            schema=quote_identifier(entry.schema),
            table=quote_identifier(entry.table),
            column=quote_identifier(entry.column),
        ))

    like_pattern = escape_like(check_pattern(pattern))
    if len(like_pattern) > MAX_PATTERN_LENGTH:
        raise ValueError(f"Search pattern is too long once escaped (over {MAX_PATTERN_LENGTH} characters)")
    return SearchStatement(
        database=database,
        sql=SEARCH_PREAMBLE + UNION_ALL.join(subqueries),
        params=(like_pattern,),
        entries=entries,
    )


class TextSearcher:
    """Finds text in SQL Server tables, object names and module definitions.

    ``connect`` is a zero-argument callable returning a DB-API connection;
    each call opens one connection and closes it before returning.
    """

    def __init__(self, connect, max_rows_per_column=None):
        self.connect = connect
        self.max_rows_per_column = max_rows_per_column
        self.logger = logging.getLogger("TextSearcher")

    @contextmanager
    def _session(self):
        try:
            conn = self.connect()
        except Exception as e:
            self.logger.error(f"Failed to connect to SQL Server: {e}")
            raise ExecutionFailed(f"connection failed: {e}") from e

        cursor = None
        try:
            cursor = conn.cursor()
            yield cursor
        finally:
            if cursor is not None:
                cursor.close()
            conn.close()

    @contextmanager
    def _engine_errors(self, database=None, container=None):
        try:
            yield
        except SearchError:
            raise
        except Exception as e:
            self.logger.error(f"Query failed in {database or 'current database'}: {e}")
            raise ExecutionFailed(str(e), database=database, container=container) from e

    def _databases(self, catalog, scope):
        with self._engine_errors(scope.database):
            if scope.kind == SERVER:
                return catalog.user_databases()
            return [scope.database or catalog.current_database()]

    def plan(self, catalog, scope, pattern):
        """Read the catalog for every database in scope and build the statements.

        Databases without text columns are skipped; EmptyScope is raised when
        none are left.
        """
        check_pattern(pattern)
        statements = []
        for database in self._databases(catalog, scope):
            with self._engine_errors(database, scope.container):
                entries = catalog.text_columns(database, scope.schema, scope.table)
            if not entries:
                self.logger.debug(f"No text columns in {database}, skipping")
                continue
            statements.append(build_search_statement(entries, pattern, self.max_rows_per_column))

        if not statements:
            self.logger.warning(f"Nothing to search in {scope}")
            raise EmptyScope(scope)
        return statements

    def iter_search(self, scope, pattern):
        """Yield ResultRows as each database's statement returns them.

        Closing the generator early stops before the next database and
        releases the connection.
        """
        check_pattern(pattern)
        SEARCH_REQUESTS.labels(operation='search').inc()
        started = time.time()
        count = 0
        try:
            with self._session() as cursor:
                statements = self.plan(Catalog(cursor), scope, pattern)
                columns = sum(len(statement.entries) for statement in statements)
                self.logger.info(f"Searching {columns} text columns in {len(statements)} database(s) of {scope}")

                for statement in statements:
                    SEARCH_SUBQUERIES.labels(database=statement.database).set(len(statement.entries))
                    self.logger.debug(f"Executing {len(statement.entries)} sub-queries in {statement.database}")
                    with self._engine_errors(statement.database, scope.container):
                        cursor.execute(statement.sql, list(statement.params))
                        for row in cursor:
                            count += 1
                            yield ResultRow(
                                database=row.database_name,
                                schema=row.schema_name,
                                table=row.table_name,
                                column=row.column_name,
                                value=row.matched_value,
                            )
        except SearchError as e:
            SEARCH_FAILURES.labels(operation='search', error=type(e).__name__).inc()
            raise
        finally:
            SEARCH_ROWS.labels(operation='search').inc(count)
            SEARCH_DURATION.labels(operation='search').observe(time.time() - started)

    def search(self, scope, pattern):
        return list(self.iter_search(scope, pattern))

    def find_objects(self, fragment, scope=None, kind='any'):
        """Objects whose name contains fragment, optionally of one kind."""
        check_pattern(fragment)
        if kind not in OBJECT_KINDS:
            raise ValueError(f"Unknown object kind {kind!r}, expected one of {', '.join(OBJECT_KINDS)}")
        codes = OBJECT_KINDS[kind]
        type_filter = ""
        if codes:
            type_filter = "AND o.type IN (" + ", ".join("?" for _ in codes) + ")"
        params = [escape_like(fragment), *codes]

        def to_match(database, row):
            return ObjectMatch(
                database=database,
                schema=row.schema_name,
                name=row.object_name,
                type_code=row.type_code,
                type_desc=row.type_desc,
                created=row.create_date,
                modified=row.modify_date,
            )

        return self._run_per_database(
            'find_objects', scope, FIND_OBJECTS.replace("{type_filter}", type_filter), params, to_match
        )

    def search_definitions(self, pattern, scope=None):
        """Procedures, functions, views and triggers whose source contains pattern."""
        check_pattern(pattern)

        def to_match(database, row):
            return DefinitionMatch(
                database=database,
                schema=row.schema_name,
                name=row.object_name,
                type_desc=row.type_desc,
                definition=row.definition,
            )

        return self._run_per_database(
            'search_definitions', scope, SEARCH_MODULE_DEFINITIONS, [escape_like(pattern)], to_match
        )

    def _run_per_database(self, operation, scope, template, params, to_match):
        scope = scope or Scope.for_database()
        if scope.kind == TABLE:
            raise ValueError(f"{operation} works on a database or the whole server, not a table")

        SEARCH_REQUESTS.labels(operation=operation).inc()
        started = time.time()
        matches = []
        try:
            with self._session() as cursor:
                for database in self._databases(Catalog(cursor), scope):
                    query = template.format(database=quote_identifier(database))
                    with self._engine_errors(database):
                        cursor.execute(query, params)
                        matches.extend(to_match(database, row) for row in cursor.fetchall())
        except SearchError as e:
            SEARCH_FAILURES.labels(operation=operation, error=type(e).__name__).inc()
            raise
        finally:
            SEARCH_ROWS.labels(operation=operation).inc(len(matches))
            SEARCH_DURATION.labels(operation=operation).observe(time.time() - started)

        self.logger.info(f"{operation}: {len(matches)} match(es) in {scope}")
        return matches
