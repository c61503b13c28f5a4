"""Relational persistence adapters (PostgreSQL via asyncpg, SQLite via aiosqlite)."""

from .database import create_schema, get_engine, get_session_factory
from .ledger_store import SqlLedgerStore, SqlLedgerTransaction

__all__ = [
    "SqlLedgerStore",
    "SqlLedgerTransaction",
    "create_schema",
    "get_engine",
    "get_session_factory",
]
