"""Port Interfaces

Abstract interfaces for external collaborators (Port pattern in Hexagonal Architecture).
Infrastructure layer implements these interfaces.
"""

from .ledger_store import ILedgerStore, ILedgerTransaction
from .notifier import ARBITERS_TOPIC, INotifier, MarketEventType
from .payment_gateway import CaptureConfirmation, CaptureSession, IPaymentGateway

__all__ = [
    "ILedgerStore",
    "ILedgerTransaction",
    "INotifier",
    "MarketEventType",
    "ARBITERS_TOPIC",
    "IPaymentGateway",
    "CaptureSession",
    "CaptureConfirmation",
]
