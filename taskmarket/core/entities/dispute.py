"""Dispute Domain Entity

Nested workflow opened by a party on an active work item.
Follow-ups are append-only and ordered by sequence number.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from ..exceptions import InvalidStateError, ValidationError


class DisputeStatus(str, Enum):
    """Dispute status"""

    OPEN = "open"  # Raised, awaiting an arbiter
    UNDER_REVIEW = "under_review"  # Arbiter is reviewing
    RESOLVED_RELEASE = "resolved_release"  # Decided in the doer's favour
    RESOLVED_REFUND = "resolved_refund"  # Decided in the poster's favour
    CLOSED = "closed"  # Finished; no more follow-ups


class DisputeOutcome(str, Enum):
    """Arbiter decision: binary, no split settlements"""

    RELEASE = "release"
    REFUND = "refund"


DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset(
        {
            DisputeStatus.UNDER_REVIEW,
            DisputeStatus.RESOLVED_RELEASE,
            DisputeStatus.RESOLVED_REFUND,
        }
    ),
    DisputeStatus.UNDER_REVIEW: frozenset(
        {DisputeStatus.RESOLVED_RELEASE, DisputeStatus.RESOLVED_REFUND}
    ),
    DisputeStatus.RESOLVED_RELEASE: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.RESOLVED_REFUND: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.CLOSED: frozenset(),
}

# Disputes in these statuses block poster short-circuits on the work item
ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


@dataclass(frozen=True)
class Evidence:
    """Reference to an already-uploaded file"""

    url: str
    name: str
    type: str = "file"

    def to_dict(self) -> dict:
        return {"url": self.url, "name": self.name, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "Evidence":
        return cls(url=data["url"], name=data.get("name", ""), type=data.get("type") or "file")


@dataclass
class DisputeFollowUp:
    """A message appended to a dispute by a party or an arbiter"""

    followup_id: str
    dispute_id: str
    sender_id: str
    message: str
    sequence: int
    evidence: list[Evidence] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def new_id() -> str:
        return f"fu-{uuid4().hex[:16]}"

    def to_dict(self) -> dict:
        return {
            "followup_id": self.followup_id,
            "dispute_id": self.dispute_id,
            "sender_id": self.sender_id,
            "message": self.message,
            "sequence": self.sequence,
            "evidence": [e.to_dict() for e in self.evidence],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Dispute:
    """
    Dispute Domain Entity

    At most one non-CLOSED dispute exists per work item. Resolution moves
    through the matching RESOLVED_* status to CLOSED; ``outcome`` keeps the
    RESOLVED_* status reached.
    """

    dispute_id: str
    work_item_id: str
    payment_id: str
    initiator_id: str
    reason: str
    evidence: list[Evidence] = field(default_factory=list)

    status: DisputeStatus = DisputeStatus.OPEN
    outcome: DisputeStatus | None = None

    reviewer_id: str | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None

    followups: list[DisputeFollowUp] = field(default_factory=list)

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    review_started_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    version: int = 0

    def __post_init__(self):
        if not self.dispute_id:
            raise ValidationError("dispute_id cannot be empty")
        if not self.reason or not self.reason.strip():
            raise ValidationError("A dispute needs a reason")

    @staticmethod
    def new_id() -> str:
        return f"dsp-{uuid4().hex[:16]}"

    def _move(self, target: DisputeStatus, now: datetime) -> None:
        if target not in DISPUTE_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Cannot move dispute from {self.status.value} to {target.value}",
                {"dispute_id": self.dispute_id, "status": self.status.value},
            )
        self.status = target
        self.updated_at = now

    def begin_review(self, reviewer_id: str, now: datetime) -> None:
        self._move(DisputeStatus.UNDER_REVIEW, now)
        self.reviewer_id = reviewer_id
        self.review_started_at = now

    def resolve(
        self,
        outcome: DisputeOutcome,
        arbiter_id: str,
        note: str | None,
        now: datetime,
    ) -> None:
        """Move to the RESOLVED_* status matching the outcome"""
        target = (
            DisputeStatus.RESOLVED_RELEASE
            if outcome == DisputeOutcome.RELEASE
            else DisputeStatus.RESOLVED_REFUND
        )
        self._move(target, now)
        self.outcome = target
        self.resolved_by = arbiter_id
        self.resolution_note = note
        self.resolved_at = now

    def close(self, now: datetime) -> None:
        self._move(DisputeStatus.CLOSED, now)
        self.closed_at = now

    def append_followup(
        self,
        sender_id: str,
        message: str,
        evidence: list[Evidence],
        now: datetime,
    ) -> DisputeFollowUp:
        """Append a follow-up; sequence numbers are dense and 1-based"""
        if self.status == DisputeStatus.CLOSED:
            raise InvalidStateError("Cannot add follow-ups to a closed dispute")
        if not message or not message.strip():
            raise ValidationError("Follow-up message cannot be empty")

        followup = DisputeFollowUp(
            followup_id=DisputeFollowUp.new_id(),
            dispute_id=self.dispute_id,
            sender_id=sender_id,
            message=message,
            sequence=len(self.followups) + 1,
            evidence=list(evidence),
            created_at=now,
        )
        self.followups.append(followup)
        self.updated_at = now
        return followup

    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def is_closed(self) -> bool:
        return self.status == DisputeStatus.CLOSED

    def to_dict(self) -> dict:
        return {
            "dispute_id": self.dispute_id,
            "work_item_id": self.work_item_id,
            "payment_id": self.payment_id,
            "initiator_id": self.initiator_id,
            "reason": self.reason,
            "evidence": [e.to_dict() for e in self.evidence],
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "reviewer_id": self.reviewer_id,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "followups": [f.to_dict() for f in self.followups],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "review_started_at": (
                self.review_started_at.isoformat() if self.review_started_at else None
            ),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "version": self.version,
        }
