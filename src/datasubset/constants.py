DEFAULT_SCHEMA = "public"
"""Schema assumed for table configurations that do not name one."""

SQLITE_SCHEMA = "main"
"""The single schema name SQLite exposes for the primary database."""

ROW_KEY_SEPARATOR = "^"
"""Separator between the table name and key values in a row identity key."""

NULL_KEY_TOKEN = "NULL"
"""Token used for NULL values inside a row identity key."""

DEFAULT_POSTGRESQL_PORT = 5432
"""Default port number for PostgreSQL connections."""

DEFAULT_MYSQL_PORT = 3306
"""Default port number for MySQL connections."""

EXPORT_FORMAT_VERSION = "1"
"""Version written into the header of binary exports."""

MAX_SIMILAR_SUGGESTIONS = 3
"""Maximum number of similar suggestions to show in error messages."""

MAX_SUMMARY_ITEMS = 5
"""Maximum number of tables listed per category in graph summaries."""

SYSTEM_SCHEMAS = ("pg_catalog", "information_schema", "pg_toast")
"""PostgreSQL schemas never considered during table discovery."""

ROW_FETCH_SIZE = 2000
"""Rows transferred per round trip by PostgreSQL server-side cursors."""

ROW_CURSOR_PREFIX = "datasubset_rows_"
"""Name prefix of the server-side cursors that stream exported rows."""
