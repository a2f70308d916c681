"""
SQL dialects for the supported database backends.

A dialect is selected once from the configured driver and handed to every
component that builds SQL, so backend differences live here only.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from ..utils.errors import ConfigurationError


class Dialect(ABC):
    """Backend-specific SQL fragments and value conversions."""

    name: str = ""

    # Column types used by the schema builder
    types: Dict[str, str] = {}

    def __init__(self, schema_name: Optional[str] = None):
        self.schema_name = schema_name

    @abstractmethod
    def placeholder(self, n: int) -> str:
        """Bind marker for the n-th (1-based) parameter."""

    @abstractmethod
    def now(self) -> str:
        """Server-side current timestamp expression."""

    @abstractmethod
    def boolean(self, value: bool) -> str:
        """Boolean literal."""

    @abstractmethod
    def encode_timestamp(self, value: Optional[datetime]) -> Any:
        """Convert a datetime into the driver's bind value."""

    @abstractmethod
    def decode_timestamp(self, value: Any) -> Optional[datetime]:
        """Convert a stored timestamp into an aware UTC datetime."""

    @abstractmethod
    def latest_start_times_sql(self, count: int) -> str:
        """Query returning (run_id, process_start_time) of the newest sample per run."""

    def table(self, name: str) -> str:
        """Qualified table name."""
        if self.schema_name:
            return f"{self.schema_name}.{name}"
        return name

    def bind(self, sql: str) -> str:
        """Rewrite ``?`` markers into this dialect's numbered placeholders."""
        parts = sql.split("?")
        if len(parts) == 1:
            return sql
        out = [parts[0]]
        for i, part in enumerate(parts[1:], start=1):
            out.append(self.placeholder(i))
            out.append(part)
        return "".join(out)

    def placeholders(self, count: int, start: int = 1) -> str:
        """Comma separated placeholders for ``count`` parameters."""
        return ", ".join(self.placeholder(i) for i in range(start, start + count))

    def insert_ignore(
        self,
        table: str,
        columns: Sequence[str],
        conflict: Sequence[str],
    ) -> str:
        """INSERT that leaves an existing row with the same key untouched."""
        return (
            f"INSERT INTO {self.table(table)} ({', '.join(columns)}) "
            f"VALUES ({self.placeholders(len(columns))}) "
            f"ON CONFLICT ({', '.join(conflict)}) DO NOTHING"
        )

    def upsert(
        self,
        table: str,
        columns: Sequence[str],
        conflict: Sequence[str],
        update_columns: Optional[Sequence[str]] = None,
    ) -> str:
        """INSERT that overwrites ``update_columns`` of an existing row."""
        if update_columns is None:
            update_columns = [c for c in columns if c not in conflict]
        assignments = ", ".join(f"{c} = excluded.{c}" for c in update_columns)
        return (
            f"INSERT INTO {self.table(table)} ({', '.join(columns)}) "
            f"VALUES ({self.placeholders(len(columns))}) "
            f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {assignments}"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(schema_name={self.schema_name!r})"


class SQLiteDialect(Dialect):
    """SQLite: ``?`` placeholders, ISO-8601 text timestamps, 0/1 booleans."""

    name = "sqlite"
    types = {
        "serial": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "text": "TEXT",
        "integer": "INTEGER",
        "bigint": "INTEGER",
        "real": "REAL",
        "boolean": "INTEGER",
        "timestamp": "TEXT",
    }

    def __init__(self, schema_name: Optional[str] = None):
        # SQLite has no schemas
        super().__init__(None)

    def placeholder(self, n: int) -> str:
        return "?"

    def now(self) -> str:
        return "(strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))"

    def boolean(self, value: bool) -> str:
        return "1" if value else "0"

    def encode_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    def decode_timestamp(self, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            parsed = datetime.fromisoformat(str(value).replace(" ", "T"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def latest_start_times_sql(self, count: int) -> str:
        pm = self.table("process_metrics")
        return (
            f"SELECT pm.run_id, pm.process_start_time FROM {pm} pm "
            f"INNER JOIN (SELECT run_id, MAX(timestamp) AS max_ts FROM {pm} "
            f"WHERE run_id IN ({self.placeholders(count)}) GROUP BY run_id) latest "
            f"ON pm.run_id = latest.run_id AND pm.timestamp = latest.max_ts"
        )


class PostgreSQLDialect(Dialect):
    """PostgreSQL: ``$n`` placeholders, TIMESTAMPTZ, native booleans."""

    name = "postgresql"
    types = {
        "serial": "BIGSERIAL PRIMARY KEY",
        "text": "TEXT",
        "integer": "INTEGER",
        "bigint": "BIGINT",
        "real": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMPTZ",
    }

    def placeholder(self, n: int) -> str:
        return f"${n}"

    def now(self) -> str:
        return "NOW()"

    def boolean(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def encode_timestamp(self, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def decode_timestamp(self, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        if not isinstance(value, datetime):
            value = datetime.fromisoformat(str(value))
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def latest_start_times_sql(self, count: int) -> str:
        return (
            f"SELECT DISTINCT ON (run_id) run_id, process_start_time "
            f"FROM {self.table('process_metrics')} "
            f"WHERE run_id IN ({self.placeholders(count)}) "
            f"ORDER BY run_id, timestamp DESC"
        )


_DIALECTS = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
}


def get_dialect(driver: str, schema_name: Optional[str] = None) -> Dialect:
    """Select the dialect for a configured driver name."""
    try:
        dialect_cls = _DIALECTS[driver.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported database driver: {driver!r} (expected sqlite or postgresql)"
        ) from None
    return dialect_cls(schema_name)


__all__ = [
    'Dialect',
    'SQLiteDialect',
    'PostgreSQLDialect',
    'get_dialect',
]
