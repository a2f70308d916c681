"""
Async database wrappers for tasker.

Both backends expose the same small surface (execute, fetchone, fetchall,
transaction) and write SQL with ``?`` markers that the dialect rewrites.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite
import asyncpg

from ..utils.config import DatabaseConfig
from ..utils.errors import DatabaseConnectionError, DatabaseError, DatabaseIntegrityError
from ..utils.logging import get_logger
from .dialect import Dialect, PostgreSQLDialect, SQLiteDialect

logger = get_logger(__name__)

Row = Dict[str, Any]


class Transaction:
    """Statements issued inside ``Database.transaction()``."""

    def __init__(self, db: "Database"):
        self._db = db
        self.dialect = db.dialect

    async def execute(self, sql: str, parameters: Sequence[Any] = ()) -> int:
        return await self._db._execute(self.dialect.bind(sql), tuple(parameters))

    async def fetchone(self, sql: str, parameters: Sequence[Any] = ()) -> Optional[Row]:
        rows = await self._db._fetchall(self.dialect.bind(sql), tuple(parameters))
        return rows[0] if rows else None

    async def fetchall(self, sql: str, parameters: Sequence[Any] = ()) -> List[Row]:
        return await self._db._fetchall(self.dialect.bind(sql), tuple(parameters))


class Database(ABC):
    """Async database wrapper with a single serialized connection."""

    def __init__(self, dialect: Dialect):
        self.dialect = dialect
        self._lock = asyncio.Lock()

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether a connection is open."""

    @abstractmethod
    async def connect(self) -> None:
        """Open database connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""

    @abstractmethod
    async def _execute(self, sql: str, parameters: tuple) -> int:
        """Run a statement and return the affected row count."""

    @abstractmethod
    async def _fetchall(self, sql: str, parameters: tuple) -> List[Row]:
        """Run a query and return rows as dicts."""

    @abstractmethod
    async def _begin(self) -> None: ...

    @abstractmethod
    async def _commit(self) -> None: ...

    @abstractmethod
    async def _rollback(self) -> None: ...

    async def _ensure_connected(self) -> None:
        if not self.is_connected:
            await self.connect()

    async def execute(self, sql: str, parameters: Sequence[Any] = ()) -> int:
        """
        Execute SQL statement.

        Args:
            sql: SQL statement with ``?`` markers
            parameters: Query parameters

        Returns:
            Number of affected rows
        """
        async with self._lock:
            await self._ensure_connected()
            return await self._execute(self.dialect.bind(sql), tuple(parameters))

    async def fetchone(self, sql: str, parameters: Sequence[Any] = ()) -> Optional[Row]:
        """Execute query and fetch the first row, or None."""
        rows = await self.fetchall(sql, parameters)
        return rows[0] if rows else None

    async def fetchall(self, sql: str, parameters: Sequence[Any] = ()) -> List[Row]:
        """Execute query and fetch all rows."""
        async with self._lock:
            await self._ensure_connected()
            return await self._fetchall(self.dialect.bind(sql), tuple(parameters))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Run statements atomically.

        Commits when the block exits normally and rolls back on any
        exception, which is re-raised.
        """
        async with self._lock:
            await self._ensure_connected()
            await self._begin()
            try:
                yield Transaction(self)
            except BaseException:
                await self._rollback()
                raise
            else:
                await self._commit()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SQLiteDatabase(Database):
    """aiosqlite backed database."""

    def __init__(self, db_path: Path | str, timeout: float = 30.0):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        super().__init__(SQLiteDialect())
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        if self._connection is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=self.timeout,
                isolation_level=None  # Autocommit; transactions are explicit
            )
        except (aiosqlite.Error, OSError) as e:
            raise DatabaseConnectionError(
                f"Failed to open SQLite database {self.db_path}: {e}", cause=e
            ) from e
        # WAL lets the reporter write while task scripts read
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        logger.debug("sqlite_connected", path=str(self.db_path))

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _execute(self, sql: str, parameters: tuple) -> int:
        try:
            cursor = await self._connection.execute(sql, parameters)
        except aiosqlite.IntegrityError as e:
            raise DatabaseIntegrityError(f"SQLite constraint violated: {e}", cause=e) from e
        except aiosqlite.Error as e:
            raise DatabaseError(f"SQLite statement failed: {e}", cause=e) from e
        rowcount = cursor.rowcount
        await cursor.close()
        return max(rowcount, 0)

    async def _fetchall(self, sql: str, parameters: tuple) -> List[Row]:
        try:
            cursor = await self._connection.execute(sql, parameters)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise DatabaseError(f"SQLite query failed: {e}", cause=e) from e
        columns = [col[0] for col in cursor.description or ()]
        await cursor.close()
        return [dict(zip(columns, row)) for row in rows]

    async def _begin(self) -> None:
        await self._connection.execute("BEGIN IMMEDIATE")

    async def _commit(self) -> None:
        await self._connection.execute("COMMIT")

    async def _rollback(self) -> None:
        await self._connection.execute("ROLLBACK")


class PostgresDatabase(Database):
    """asyncpg backed database."""

    def __init__(self, config: DatabaseConfig):
        super().__init__(PostgreSQLDialect(config.schema_name))
        self.config = config
        self._connection: Optional[asyncpg.Connection] = None
        self._transaction = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    async def connect(self) -> None:
        if self.is_connected:
            return
        try:
            self._connection = await asyncpg.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.dbname,
                timeout=self.config.timeout,
            )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise DatabaseConnectionError(
                f"Failed to connect to PostgreSQL at {self.config.host}:{self.config.port}: {e}",
                cause=e
            ) from e
        logger.debug("postgres_connected", host=self.config.host, dbname=self.config.dbname)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def _execute(self, sql: str, parameters: tuple) -> int:
        try:
            status = await self._connection.execute(sql, *parameters)
        except asyncpg.IntegrityConstraintViolationError as e:
            raise DatabaseIntegrityError(f"PostgreSQL constraint violated: {e}", cause=e) from e
        except asyncpg.PostgresError as e:
            raise DatabaseError(f"PostgreSQL statement failed: {e}", cause=e) from e
        # Status strings look like "UPDATE 3" or "INSERT 0 1"
        last = status.rsplit(" ", 1)[-1]
        return int(last) if last.isdigit() else 0

    async def _fetchall(self, sql: str, parameters: tuple) -> List[Row]:
        try:
            records = await self._connection.fetch(sql, *parameters)
        except asyncpg.PostgresError as e:
            raise DatabaseError(f"PostgreSQL query failed: {e}", cause=e) from e
        return [dict(record) for record in records]

    async def _begin(self) -> None:
        self._transaction = self._connection.transaction()
        await self._transaction.start()

    async def _commit(self) -> None:
        await self._transaction.commit()
        self._transaction = None

    async def _rollback(self) -> None:
        await self._transaction.rollback()
        self._transaction = None


def create_database(config: DatabaseConfig) -> Database:
    """Build the database wrapper for the configured driver."""
    if config.driver == "postgresql":
        return PostgresDatabase(config)
    return SQLiteDatabase(config.path, timeout=config.timeout)


__all__ = [
    'Database',
    'SQLiteDatabase',
    'PostgresDatabase',
    'Transaction',
    'Row',
    'create_database',
]
