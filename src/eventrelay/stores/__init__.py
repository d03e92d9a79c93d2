"""
Transactional stores backing the relay repositories.

Backends:
    - InMemoryDatabase: process-local tables for tests and development
    - SQLiteDatabase: aiosqlite, one connection per database object
    - PostgreSQLDatabase: SQLAlchemy async engine (asyncpg)

``eventrelay.stores.factory`` opens a database from a URL together with
the matching repositories.
"""

from eventrelay.stores.in_memory import InMemoryDatabase, InMemoryTransaction
from eventrelay.stores.interface import TransactionManager
from eventrelay.stores.postgresql import PostgreSQLDatabase
from eventrelay.stores.schema import get_schema, get_schema_statements
from eventrelay.stores.sqlite import SQLiteDatabase

__all__ = [
    "TransactionManager",
    "InMemoryDatabase",
    "InMemoryTransaction",
    "SQLiteDatabase",
    "PostgreSQLDatabase",
    "get_schema",
    "get_schema_statements",
]
