"""Business Logic Layer

Service classes orchestrate the task lifecycle using domain entities and ports.
"""

from .assignment_service import AssignmentService
from .bid_ledger import AcceptedBid, BidLedger
from .dispute_service import DisputeService
from .escrow_service import EscrowService
from .events import EventPublisher
from .marketplace import ErrorInfo, Marketplace, OperationResult

__all__ = [
    "AssignmentService",
    "BidLedger",
    "AcceptedBid",
    "DisputeService",
    "EscrowService",
    "EventPublisher",
    "Marketplace",
    "OperationResult",
    "ErrorInfo",
]
