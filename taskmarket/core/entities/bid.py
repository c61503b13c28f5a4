"""Bid Domain Entity

A doer's offer to complete a work item for a proposed amount.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from ..exceptions import InvalidStateError, ValidationError


class BidStatus(str, Enum):
    """Bid status"""

    PENDING = "pending"  # Waiting for the poster's decision
    ACCEPTED = "accepted"  # Won the work item
    REJECTED = "rejected"  # A sibling bid was accepted, or the work item closed
    WITHDRAWN = "withdrawn"  # Pulled back by the bidder


# PENDING is the only non-terminal bid status
BID_TRANSITIONS: dict[BidStatus, frozenset[BidStatus]] = {
    BidStatus.PENDING: frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN}),
    BidStatus.ACCEPTED: frozenset(),
    BidStatus.REJECTED: frozenset(),
    BidStatus.WITHDRAWN: frozenset(),
}


@dataclass
class Bid:
    """Bid Domain Entity"""

    bid_id: str
    work_item_id: str
    doer_id: str
    amount: Decimal
    message: str = ""
    status: BidStatus = BidStatus.PENDING

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    version: int = 0

    def __post_init__(self):
        if not self.bid_id:
            raise ValidationError("bid_id cannot be empty")
        if not self.work_item_id:
            raise ValidationError("work_item_id cannot be empty")
        if not self.doer_id:
            raise ValidationError("doer_id cannot be empty")
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))

    @staticmethod
    def new_id() -> str:
        return f"bid-{uuid4().hex[:16]}"

    def _move(self, target: BidStatus, now: datetime) -> None:
        if target not in BID_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Cannot move bid from {self.status.value} to {target.value}",
                {"bid_id": self.bid_id, "status": self.status.value},
            )
        self.status = target
        self.updated_at = now

    def accept(self, now: datetime) -> None:
        self._move(BidStatus.ACCEPTED, now)

    def reject(self, now: datetime) -> None:
        self._move(BidStatus.REJECTED, now)

    def withdraw(self, now: datetime) -> None:
        self._move(BidStatus.WITHDRAWN, now)

    def is_pending(self) -> bool:
        return self.status == BidStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "bid_id": self.bid_id,
            "work_item_id": self.work_item_id,
            "doer_id": self.doer_id,
            "amount": str(self.amount),
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bid":
        data = data.copy()
        if isinstance(data.get("status"), str):
            data["status"] = BidStatus(data["status"])
        for field_name in ("created_at", "updated_at"):
            if data.get(field_name) and isinstance(data[field_name], str):
                data[field_name] = datetime.fromisoformat(data[field_name])
        return cls(**data)
