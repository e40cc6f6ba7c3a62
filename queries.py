# queries.py
#
# Catalog queries. Anything in {braces} is a bracket-quoted database name
# filled in by catalog.quote_identifier; every value is a ? parameter.

# Database the connection is currently using
GET_CURRENT_DATABASE = """
SELECT DB_NAME() AS database_name;
"""

# User databases (skips master, tempdb, model, msdb) that are online and
# that the current login can actually open
GET_USER_DATABASES = """
SELECT name AS database_name
FROM sys.databases
WHERE database_id > 4
AND state_desc = 'ONLINE'
AND HAS_DBACCESS(name) = 1
ORDER BY name;
"""

# Columns of user tables with a character type.
# TYPE_NAME(system_type_id) resolves alias types (sysname etc.) to their base type.
GET_TEXT_COLUMNS = """
SELECT
    s.name AS schema_name,
    t.name AS table_name,
    c.name AS column_name,
    TYPE_NAME(c.system_type_id) AS type_name
FROM {database}.sys.columns AS c
JOIN {database}.sys.tables AS t ON c.object_id = t.object_id
JOIN {database}.sys.schemas AS s ON t.schema_id = s.schema_id
WHERE t.is_ms_shipped = 0
AND TYPE_NAME(c.system_type_id) IN ('char', 'nchar', 'varchar', 'nvarchar', 'text', 'ntext')
{table_filter}
ORDER BY s.name, t.name, c.column_id;
"""

TEXT_COLUMNS_TABLE_FILTER = "AND s.name = ? AND t.name = ?"

# Objects (tables, views, functions, procedures, ...) by name fragment
FIND_OBJECTS = """
SELECT
    s.name AS schema_name,
    o.name AS object_name,
    RTRIM(o.type) AS type_code,
    o.type_desc,
    o.create_date,
    o.modify_date
FROM {database}.sys.objects AS o
JOIN {database}.sys.schemas AS s ON o.schema_id = s.schema_id
WHERE o.is_ms_shipped = 0
AND o.name LIKE ? ESCAPE '\\'
{type_filter}
ORDER BY s.name, o.name;
"""

# Procedures, functions, views and triggers whose source contains the pattern
SEARCH_MODULE_DEFINITIONS = """
SELECT
    s.name AS schema_name,
    o.name AS object_name,
    o.type_desc,
    m.definition
FROM {database}.sys.sql_modules AS m
JOIN {database}.sys.objects AS o ON m.object_id = o.object_id
JOIN {database}.sys.schemas AS s ON o.schema_id = s.schema_id
WHERE m.definition LIKE ? ESCAPE '\\'
ORDER BY s.name, o.name;
"""

# Binds the escaped pattern once per statement; SQL Server caps a request
# at 2100 parameters, so the sub-queries reference @pattern instead of ?
SEARCH_PREAMBLE = (
    "SET NOCOUNT ON;\n"
    "DECLARE @pattern NVARCHAR(4000) = ?;\n"
)

MAX_PATTERN_LENGTH = 4000

# One leg of the generated text search, joined with UNION ALL.
# matched_value takes the database collation so columns with different
# collations can share one UNION ALL; the WHERE keeps the column's own.
SEARCH_SUBQUERY = (
    "SELECT {top}{database_label} AS database_name, {schema_label} AS schema_name, "
    "{table_label} AS table_name, {column_label} AS column_name, "
    "CAST({column} AS NVARCHAR(MAX)) COLLATE DATABASE_DEFAULT AS matched_value "
    "FROM {database}.{schema}.{table} "
    "WHERE {column} LIKE @pattern ESCAPE '\\'"
)

UNION_ALL = "\nUNION ALL\n"
