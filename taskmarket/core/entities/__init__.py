"""Domain Entities

Pure business objects without framework dependencies.
These represent the core business concepts of the task market.
"""

from .actor import Actor, ActorRole
from .bid import BID_TRANSITIONS, Bid, BidStatus
from .dispute import (
    ACTIVE_DISPUTE_STATUSES,
    Dispute,
    DisputeFollowUp,
    DisputeOutcome,
    DisputeStatus,
    Evidence,
)
from .payment import (
    DISPUTABLE_PAYMENT_STATUSES,
    PAYMENT_RANK,
    Payment,
    PaymentStatus,
    SettlementAction,
)
from .work_item import (
    TRANSITIONS,
    EdgeRole,
    Transition,
    WorkItem,
    WorkItemOperation,
    WorkItemStatus,
)

__all__ = [
    "Actor",
    "ActorRole",
    "Bid",
    "BidStatus",
    "BID_TRANSITIONS",
    "Dispute",
    "DisputeFollowUp",
    "DisputeOutcome",
    "DisputeStatus",
    "Evidence",
    "ACTIVE_DISPUTE_STATUSES",
    "Payment",
    "PaymentStatus",
    "PAYMENT_RANK",
    "DISPUTABLE_PAYMENT_STATUSES",
    "SettlementAction",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemOperation",
    "EdgeRole",
    "Transition",
    "TRANSITIONS",
]
