"""
Storage components for tasker.

This package provides:
- SQLite and PostgreSQL database backends
- SQL dialect differences between them
- The registry schema
"""

from .database import Database, SQLiteDatabase, PostgresDatabase, Transaction, create_database
from .dialect import Dialect, SQLiteDialect, PostgreSQLDialect, get_dialect
from .schema import TABLE_NAMES, create_schema

__all__ = [
    # Database
    'Database',
    'SQLiteDatabase',
    'PostgresDatabase',
    'Transaction',
    'create_database',

    # Dialect
    'Dialect',
    'SQLiteDialect',
    'PostgreSQLDialect',
    'get_dialect',

    # Schema
    'TABLE_NAMES',
    'create_schema',
]
