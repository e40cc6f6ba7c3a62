"""Shared pytest fixtures: an in-memory stand-in for a SQL Server connection."""

import re
from datetime import datetime
from types import SimpleNamespace

import pytest

from queries import SEARCH_PREAMBLE, UNION_ALL
from searcher import TextSearcher


class FakeDatabaseError(Exception):
    """Raised by the fake engine where pyodbc would raise ProgrammingError."""


IDENT = r"\[(?P<{}>(?:[^\]]|\]\])+)\]"

SUBQUERY_RE = re.compile(
    r"^SELECT (?:TOP \((?P<top>\d+)\) )?.*? COLLATE DATABASE_DEFAULT AS matched_value FROM "
    + IDENT.format("database") + r"\." + IDENT.format("schema") + r"\." + IDENT.format("table")
    + r" WHERE " + IDENT.format("column") + r" LIKE @pattern ESCAPE '\\'$",
    re.DOTALL,
)
LABEL_RE = re.compile(r"N'((?:[^']|'')*)' AS (\w+)")
CATALOG_DB_RE = re.compile(r"FROM \[((?:[^\]]|\]\])+)\]\.sys\.(?:columns|objects|sql_modules)")


def unquote(name):
    return name.replace("]]", "]")


def like_to_regex(pattern, escape="\\"):
    """LIKE semantics with a case-insensitive collation, as SQL Server defaults to."""
    parts = []
    chars = iter(pattern)
    for char in chars:
        if char == escape:
            parts.append(re.escape(next(chars)))
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        elif char == "[":
            raise AssertionError(f"Unescaped [ in LIKE pattern {pattern!r}")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


class FakeCursor:
    def __init__(self, engine):
        self.engine = engine
        self.closed = False
        self._rows = []

    def execute(self, sql, params=None):
        self._rows = list(self.engine.run(sql, list(params or [])))
        return self

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def __iter__(self):
        while self._rows:
            yield self._rows.pop(0)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, engine):
        self.engine = engine
        self.closed = False
        self.cursors = []

    def cursor(self):
        cursor = FakeCursor(self.engine)
        self.cursors.append(cursor)
        return cursor

    def close(self):
        self.closed = True


class FakeEngine:
    """Serves catalog queries from dicts and evaluates generated search statements.

    Any statement naming a database in ``denied`` fails; search statements
    against a database in ``failing_search`` fail after the catalog was read.
    """

    def __init__(self, current="Sales"):
        self.current = current
        self.tables = {}
        self.objects = {}
        self.denied = set()
        self.failing_search = set()
        self.executed = []
        self.connections = []

    def add_database(self, database):
        self.tables.setdefault(database, {})
        self.objects.setdefault(database, [])

    def add_table(self, database, schema, table, columns, rows=()):
        self.add_database(database)
        self.tables[database][(schema, table)] = {
            "columns": dict(columns),
            "rows": [dict(row) for row in rows],
        }

    def drop_column(self, database, schema, table, column):
        del self.tables[database][(schema, table)]["columns"][column]
        for row in self.tables[database][(schema, table)]["rows"]:
            row.pop(column, None)

    def add_object(self, database, schema, name, type_code, type_desc, definition=None):
        self.add_database(database)
        self.objects[database].append({
            "schema": schema,
            "name": name,
            "type": type_code,
            "type_desc": type_desc,
            "definition": definition,
        })

    def connect(self):
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    @property
    def search_statements(self):
        return [(sql, params) for sql, params in self.executed if "matched_value" in sql]

    def run(self, sql, params):
        self.executed.append((sql, params))
        for name in self.denied:
            if f"[{name}]" in sql:
                raise FakeDatabaseError(f'The server principal is not able to access the database "{name}"')

        if "DB_NAME()" in sql:
            return [SimpleNamespace(database_name=self.current)]
        if "FROM sys.databases" in sql:
            return [SimpleNamespace(database_name=name) for name in sorted(self.tables)]
        if "matched_value" in sql:
            return self._search(sql, params)

        database = unquote(CATALOG_DB_RE.search(sql).group(1))
        if "sys.columns" in sql:
            return self._columns(database, params)
        if "sys.sql_modules" in sql:
            return self._definitions(database, params)
        if "sys.objects" in sql:
            return self._objects(database, params)
        raise FakeDatabaseError(f"Unexpected statement: {sql}")

    def _columns(self, database, params):
        rows = []
        for (schema, table), definition in sorted(self.tables.get(database, {}).items()):
            if params and (schema, table) != (params[0], params[1]):
                continue
            for column, type_name in definition["columns"].items():
                rows.append(SimpleNamespace(
                    schema_name=schema, table_name=table, column_name=column, type_name=type_name
                ))
        return rows

    def _search(self, sql, params):
        assert sql.startswith(SEARCH_PREAMBLE)
        assert len(params) == 1
        regex = like_to_regex(params[0])
        rows = []
        for subquery in sql[len(SEARCH_PREAMBLE):].split(UNION_ALL):
            match = SUBQUERY_RE.match(subquery)
            assert match, subquery
            database = unquote(match.group("database"))
            if database in self.failing_search:
                raise FakeDatabaseError(f"Search statement failed in {database}")

            labels = {alias: value.replace("''", "'") for value, alias in LABEL_RE.findall(subquery)}
            table = self.tables[database][(unquote(match.group("schema")), unquote(match.group("table")))]
            column = unquote(match.group("column"))
            hits = [
                row[column] for row in table["rows"]
                if row.get(column) is not None and regex.fullmatch(str(row[column]))
            ]
            if match.group("top"):
                hits = hits[:int(match.group("top"))]
            for value in hits:
                rows.append(SimpleNamespace(matched_value=str(value), **labels))
        return rows

    def _objects(self, database, params):
        regex = like_to_regex(params[0])
        codes = params[1:]
        return [
            SimpleNamespace(
                schema_name=obj["schema"],
                object_name=obj["name"],
                type_code=obj["type"],
                type_desc=obj["type_desc"],
                create_date=datetime(2024, 1, 1),
                modify_date=datetime(2024, 6, 1),
            )
            for obj in self.objects.get(database, [])
            if regex.fullmatch(obj["name"]) and (not codes or obj["type"] in codes)
        ]

    def _definitions(self, database, params):
        regex = like_to_regex(params[0])
        return [
            SimpleNamespace(
                schema_name=obj["schema"],
                object_name=obj["name"],
                type_desc=obj["type_desc"],
                definition=obj["definition"],
            )
            for obj in self.objects.get(database, [])
            if obj["definition"] is not None and regex.fullmatch(obj["definition"])
        ]


@pytest.fixture
def engine():
    """Sales (two tables), Inventory (one table) and Archive (no text columns)."""
    engine = FakeEngine(current="Sales")
    engine.add_table("Sales", "dbo", "Customers", [
        ("CustomerId", "int"),
        ("Name", "nvarchar"),
        ("Email", "varchar"),
        ("Notes", "NTEXT"),
        ("Balance", "decimal"),
    ], rows=[
        {"CustomerId": 1, "Name": "Ada Lovelace", "Email": "ada@example.com", "Notes": "50% discount", "Balance": 10},
        {"CustomerId": 2, "Name": "Grace Hopper", "Email": "grace@example.com", "Notes": None, "Balance": 50},
    ])
    engine.add_table("Sales", "dbo", "Orders", [
        ("OrderId", "int"),
        ("Status", "char"),
        ("Comment", "varchar"),
    ], rows=[
        {"OrderId": 10, "Status": "OPEN", "Comment": "call Ada"},
        {"OrderId": 11, "Status": "SHIP", "Comment": "it's fragile"},
    ])
    engine.add_table("Inventory", "dbo", "Items", [
        ("ItemId", "int"),
        ("Sku", "varchar"),
        ("Description", "nvarchar"),
    ], rows=[
        {"ItemId": 1, "Sku": "A-1", "Description": "Widget"},
    ])
    engine.add_table("Archive", "dbo", "Totals", [
        ("Id", "int"),
        ("Amount", "decimal"),
    ], rows=[
        {"Id": 1, "Amount": 100},
    ])

    engine.add_object("Sales", "dbo", "Customers", "U", "USER_TABLE")
    engine.add_object("Sales", "dbo", "Orders", "U", "USER_TABLE")
    engine.add_object("Sales", "dbo", "vw_Customers", "V", "VIEW",
                      definition="CREATE VIEW dbo.vw_Customers AS SELECT Name, Email FROM dbo.Customers")
    engine.add_object("Sales", "dbo", "usp_GetCustomer", "P", "SQL_STORED_PROCEDURE",
                      definition="CREATE PROCEDURE dbo.usp_GetCustomer @id int AS SELECT * FROM dbo.Customers WHERE CustomerId = @id")
    engine.add_object("Sales", "dbo", "fnCustomerCount", "FN", "SQL_SCALAR_FUNCTION",
                      definition="CREATE FUNCTION dbo.fnCustomerCount() RETURNS int AS BEGIN RETURN (SELECT COUNT(*) FROM dbo.Customers) END")
    engine.add_object("Inventory", "dbo", "usp_Restock", "P", "SQL_STORED_PROCEDURE",
                      definition="CREATE PROCEDURE dbo.usp_Restock AS UPDATE dbo.Items SET Sku = Sku")
    return engine


@pytest.fixture
def searcher(engine):
    return TextSearcher(engine.connect)
