"""
Task Market - Task lifecycle and transaction engine

Architecture:
┌─────────────────────────────────────────────────────────┐
│  Facade                                                  │
│  - Marketplace: typed results with stable error codes    │
└─────────────────────────────────────────────────────────┘
                        │ calls
                        ▼
┌─────────────────────────────────────────────────────────┐
│  Services                                                │
│  - AssignmentService: work item state machine            │
│  - BidLedger: bids and exclusive acceptance              │
│  - EscrowService: capture, release, refund               │
│  - DisputeService: disputes and arbiter resolution       │
└─────────────────────────────────────────────────────────┘
                        │ uses
                        ▼
┌─────────────────────────────────────────────────────────┐
│  Ports                                                   │
│  - ILedgerStore: transactional persistence               │
│  - IPaymentGateway: escrow provider                      │
│  - INotifier: fire-and-forget event delivery             │
└─────────────────────────────────────────────────────────┘

Note: Search, messaging, reviews and authentication are NOT part of the
engine. Callers pass an already-verified Actor into every operation.
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .core.entities import Actor, ActorRole
from .core.exceptions import (
    ConflictError,
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from .services import Marketplace, OperationResult

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    "get_settings",
    # Identity
    "Actor",
    "ActorRole",
    # Facade
    "Marketplace",
    "OperationResult",
    # Errors
    "MarketplaceError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "GatewayError",
]
