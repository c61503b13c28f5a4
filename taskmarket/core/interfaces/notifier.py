"""Notifier Interface

Outbound fire-and-forget events published after a transaction commits.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

# Topic that reaches every arbiter
ARBITERS_TOPIC = "arbiters"


class MarketEventType(str, Enum):
    """Events published to interested actors"""

    BID_PLACED = "bid.placed"
    BID_WITHDRAWN = "bid.withdrawn"
    BID_ACCEPTED = "bid.accepted"
    BID_REJECTED = "bid.rejected"

    WORK_STARTED = "work.started"
    WORK_SUBMITTED = "work.submitted"
    REVISION_REQUESTED = "work.revision_requested"
    WORK_APPROVED = "work.approved"
    WORK_ITEM_CANCELLED = "work.cancelled"

    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_RELEASED = "payment.released"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_COMPLETED = "payment.completed"
    SETTLEMENT_FAILED = "payment.settlement_failed"

    DISPUTE_OPENED = "dispute.opened"
    DISPUTE_FOLLOWUP = "dispute.followup"
    DISPUTE_UNDER_REVIEW = "dispute.under_review"
    DISPUTE_RESOLVED = "dispute.resolved"


class INotifier(ABC):
    """
    Abstract interface for outbound notifications

    ``topic`` is a recipient actor id or ``ARBITERS_TOPIC``.
    """

    @abstractmethod
    async def publish(
        self,
        topic: str,
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        pass
