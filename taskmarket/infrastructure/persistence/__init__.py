"""Persistence adapters implementing ILedgerStore."""

from .memory import InMemoryLedgerStore
from .postgres import SqlLedgerStore

__all__ = ["InMemoryLedgerStore", "SqlLedgerStore"]
