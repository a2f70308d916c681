"""
Unit tests for SQL dialects.
"""

from datetime import datetime, timezone, timedelta

import pytest

from tasker.storage.dialect import PostgreSQLDialect, SQLiteDialect, get_dialect
from tasker.storage.schema import TABLE_NAMES, schema_statements
from tasker.utils.errors import ConfigurationError


class TestDialectSelection:
    """Test get_dialect."""

    def test_known_drivers(self):
        assert isinstance(get_dialect("sqlite"), SQLiteDialect)
        assert isinstance(get_dialect("postgresql"), PostgreSQLDialect)
        assert isinstance(get_dialect("Postgres"), PostgreSQLDialect)

    def test_unknown_driver(self):
        with pytest.raises(ConfigurationError, match="mysql"):
            get_dialect("mysql")


class TestSQLiteDialect:
    """Test the SQLite dialect."""

    def test_bind_leaves_question_marks(self):
        dialect = SQLiteDialect()
        sql = "SELECT * FROM t WHERE a = ? AND b = ?"
        assert dialect.bind(sql) == sql

    def test_tables_are_not_qualified(self):
        assert SQLiteDialect("ignored").table("task_runs") == "task_runs"

    def test_insert_ignore(self):
        sql = SQLiteDialect().insert_ignore("stages", ("stage_name", "created_at"), ("stage_name",))
        assert sql == (
            "INSERT INTO stages (stage_name, created_at) VALUES (?, ?) "
            "ON CONFLICT (stage_name) DO NOTHING"
        )

    def test_upsert_updates_non_key_columns(self):
        sql = SQLiteDialect().upsert("t", ("a", "b", "c"), ("a",))
        assert sql.endswith("ON CONFLICT (a) DO UPDATE SET b = excluded.b, c = excluded.c")

    def test_timestamp_encoding(self):
        dialect = SQLiteDialect()
        aware = datetime(2026, 3, 1, 12, 0, 0, 250000, tzinfo=timezone(timedelta(hours=2)))

        encoded = dialect.encode_timestamp(aware)

        assert encoded == "2026-03-01T10:00:00.250000+00:00"
        assert dialect.decode_timestamp(encoded) == aware

    def test_naive_values_are_utc(self):
        dialect = SQLiteDialect()
        decoded = dialect.decode_timestamp("2026-03-01 10:00:00")
        assert decoded == datetime(2026, 3, 1, 10, tzinfo=timezone.utc)
        assert dialect.encode_timestamp(None) is None

    def test_latest_start_times_query(self):
        sql = SQLiteDialect().latest_start_times_sql(3)
        assert "MAX(timestamp)" in sql
        assert "IN (?, ?, ?)" in sql


class TestPostgreSQLDialect:
    """Test the PostgreSQL dialect."""

    def test_bind_numbers_placeholders(self):
        dialect = PostgreSQLDialect()
        assert dialect.bind("UPDATE t SET a = ? WHERE b = ? AND c = ?") == (
            "UPDATE t SET a = $1 WHERE b = $2 AND c = $3"
        )

    def test_schema_qualified_tables(self):
        assert PostgreSQLDialect("pipeline").table("task_runs") == "pipeline.task_runs"
        assert PostgreSQLDialect().table("task_runs") == "task_runs"

    def test_builders_use_numbered_placeholders(self):
        sql = PostgreSQLDialect().insert_ignore("t", ("a", "b"), ("a",))
        assert "VALUES ($1, $2)" in sql
        # Already numbered, binding must not change it
        assert PostgreSQLDialect().bind(sql) == sql

    def test_latest_start_times_query(self):
        sql = PostgreSQLDialect().latest_start_times_sql(2)
        assert "DISTINCT ON (run_id)" in sql
        assert "IN ($1, $2)" in sql

    def test_literals(self):
        dialect = PostgreSQLDialect()
        assert dialect.now() == "NOW()"
        assert dialect.boolean(True) == "TRUE"


class TestSchema:
    """Test schema generation through dialects."""

    @pytest.mark.parametrize("dialect", [SQLiteDialect(), PostgreSQLDialect("pipeline")])
    def test_every_table_created(self, dialect):
        ddl = "\n".join(schema_statements(dialect))
        for name in TABLE_NAMES:
            assert dialect.table(name) in ddl
        assert "{" not in ddl

    def test_postgres_types(self):
        ddl = "\n".join(schema_statements(PostgreSQLDialect()))
        assert "TIMESTAMPTZ" in ddl
        assert "BIGSERIAL PRIMARY KEY" in ddl
