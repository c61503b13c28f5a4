"""In-memory persistence adapters."""

from .ledger_store import InMemoryLedgerStore, InMemoryLedgerTransaction

__all__ = ["InMemoryLedgerStore", "InMemoryLedgerTransaction"]
