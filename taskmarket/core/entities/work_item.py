"""WorkItem Domain Entity

Pure business logic for a posted work item and its lifecycle.

The transition table below is the single authority on which lifecycle
edges exist, where they start, where they end, and who may take them.
Every mutation goes through it.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from ..exceptions import ForbiddenError, InvalidStateError, ValidationError
from .actor import Actor, ActorRole


class WorkItemStatus(str, Enum):
    """Work item lifecycle status"""

    OPEN = "open"  # Accepting bids
    ASSIGNED = "assigned"  # Bid accepted, doer bound
    IN_PROGRESS = "in_progress"  # Doer is working on it
    UNDER_REVIEW = "under_review"  # Work submitted, awaiting poster review
    COMPLETED = "completed"  # Approved, escrow released
    CANCELLED = "cancelled"  # Cancelled by poster or refunded by dispute
    DISPUTED = "disputed"  # Frozen by an active dispute


TERMINAL_STATUSES = frozenset({WorkItemStatus.COMPLETED, WorkItemStatus.CANCELLED})

# Statuses in which a doer is bound to the work item
BOUND_STATUSES = frozenset(
    {
        WorkItemStatus.ASSIGNED,
        WorkItemStatus.IN_PROGRESS,
        WorkItemStatus.UNDER_REVIEW,
        WorkItemStatus.COMPLETED,
        WorkItemStatus.DISPUTED,
    }
)


class WorkItemOperation(str, Enum):
    """Operations that move a work item along a lifecycle edge"""

    ACCEPT_BID = "accept_bid"
    START_WORK = "start_work"
    SUBMIT_WORK = "submit_work"
    REQUEST_REVISION = "request_revision"
    APPROVE_AND_RELEASE = "approve_and_release"
    CANCEL = "cancel"
    OPEN_DISPUTE = "open_dispute"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"


class EdgeRole(str, Enum):
    """Who may take a lifecycle edge"""

    POSTER = "poster"  # The owning poster only
    DOER = "doer"  # The assigned doer only
    EITHER = "either"  # Owning poster or assigned doer
    ARBITER = "arbiter"  # Any arbiter


@dataclass(frozen=True)
class Transition:
    """A legal lifecycle edge"""

    operation: WorkItemOperation
    sources: frozenset[WorkItemStatus]
    target: WorkItemStatus
    role: EdgeRole


def _edge(
    operation: WorkItemOperation,
    sources: set[WorkItemStatus],
    target: WorkItemStatus,
    role: EdgeRole,
) -> tuple[WorkItemOperation, Transition]:
    return operation, Transition(operation, frozenset(sources), target, role)


TRANSITIONS: dict[WorkItemOperation, Transition] = dict(
    [
        _edge(
            WorkItemOperation.ACCEPT_BID,
            {WorkItemStatus.OPEN},
            WorkItemStatus.ASSIGNED,
            EdgeRole.POSTER,
        ),
        _edge(
            WorkItemOperation.START_WORK,
            {WorkItemStatus.ASSIGNED},
            WorkItemStatus.IN_PROGRESS,
            EdgeRole.DOER,
        ),
        _edge(
            WorkItemOperation.SUBMIT_WORK,
            {WorkItemStatus.IN_PROGRESS},
            WorkItemStatus.UNDER_REVIEW,
            EdgeRole.DOER,
        ),
        _edge(
            WorkItemOperation.REQUEST_REVISION,
            {WorkItemStatus.UNDER_REVIEW},
            WorkItemStatus.IN_PROGRESS,
            EdgeRole.POSTER,
        ),
        _edge(
            WorkItemOperation.APPROVE_AND_RELEASE,
            {WorkItemStatus.UNDER_REVIEW},
            WorkItemStatus.COMPLETED,
            EdgeRole.POSTER,
        ),
        _edge(
            WorkItemOperation.CANCEL,
            {WorkItemStatus.OPEN, WorkItemStatus.ASSIGNED},
            WorkItemStatus.CANCELLED,
            EdgeRole.POSTER,
        ),
        # COMPLETED only within the grace period and while the payment is still
        # PENDING or PAID. approve_and_release and resolve_release both release
        # the payment, so open_dispute currently rejects every COMPLETED item.
        _edge(
            WorkItemOperation.OPEN_DISPUTE,
            {WorkItemStatus.IN_PROGRESS, WorkItemStatus.UNDER_REVIEW, WorkItemStatus.COMPLETED},
            WorkItemStatus.DISPUTED,
            EdgeRole.EITHER,
        ),
        _edge(
            WorkItemOperation.RESOLVE_RELEASE,
            {WorkItemStatus.DISPUTED},
            WorkItemStatus.COMPLETED,
            EdgeRole.ARBITER,
        ),
        _edge(
            WorkItemOperation.RESOLVE_REFUND,
            {WorkItemStatus.DISPUTED},
            WorkItemStatus.CANCELLED,
            EdgeRole.ARBITER,
        ),
    ]
)

# Poster operations that an active dispute blocks
DISPUTE_BLOCKED_OPERATIONS = frozenset(
    {WorkItemOperation.APPROVE_AND_RELEASE, WorkItemOperation.CANCEL}
)


@dataclass
class WorkItem:
    """
    WorkItem Domain Entity

    A task published by a poster. Owned by the assignment state machine:
    callers check with ``ensure_transition`` and then call the mutator.
    """

    work_item_id: str
    poster_id: str
    title: str
    description: str
    budget: Decimal
    deadline: datetime

    category: str = "general"
    priority: str = "normal"

    # Status
    status: WorkItemStatus = WorkItemStatus.OPEN
    status_before_dispute: WorkItemStatus | None = None

    # Assignment
    doer_id: str | None = None
    accepted_bid_id: str | None = None

    # Timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    # Optimistic concurrency counter, bumped by the ledger store on every write
    version: int = 0

    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """Validate invariants"""
        if not self.work_item_id:
            raise ValidationError("work_item_id cannot be empty")
        if not self.poster_id:
            raise ValidationError("poster_id cannot be empty")
        if not self.title:
            raise ValidationError("title cannot be empty")
        if not isinstance(self.budget, Decimal):
            self.budget = Decimal(str(self.budget))
        self.check_invariants()

    @staticmethod
    def new_id() -> str:
        return f"wi-{uuid4().hex[:16]}"

    def check_invariants(self) -> None:
        """A doer is bound exactly in the bound statuses (CANCELLED may keep one)"""
        if self.status in BOUND_STATUSES and not self.doer_id:
            raise InvalidStateError(
                f"Work item {self.work_item_id} in {self.status.value} has no doer"
            )
        if self.status == WorkItemStatus.OPEN and self.doer_id:
            raise InvalidStateError(f"Open work item {self.work_item_id} cannot have a doer")

    # ========== Transition Guard ==========

    def ensure_transition(
        self,
        operation: WorkItemOperation,
        actor: Actor,
        *,
        dispute_active: bool = False,
    ) -> Transition:
        """
        Check that ``actor`` may take ``operation`` from the current status.

        Check order: role claim, relationship to an already-bound party,
        active-dispute block, source status, then the doer relationship
        once the state guarantees a doer is bound.

        Raises:
            ForbiddenError: Role or relationship mismatch, or blocked by dispute
            InvalidStateError: Current status is not a source of the edge
        """
        rule = TRANSITIONS[operation]
        self._check_role(rule, actor)

        if dispute_active and operation in DISPUTE_BLOCKED_OPERATIONS:
            raise ForbiddenError(
                f"Cannot {operation.value} while a dispute is open on this work item",
                {"work_item_id": self.work_item_id},
            )

        if self.status not in rule.sources:
            raise InvalidStateError(
                f"Cannot {operation.value} a work item in status {self.status.value}",
                {"work_item_id": self.work_item_id, "status": self.status.value},
            )

        if rule.role == EdgeRole.DOER and self.doer_id != actor.actor_id:
            raise ForbiddenError("Only the assigned doer can do this")

        return rule

    def _check_role(self, rule: Transition, actor: Actor) -> None:
        if rule.role == EdgeRole.ARBITER:
            if actor.role != ActorRole.ARBITER:
                raise ForbiddenError("Only an arbiter can do this")
            return

        if rule.role == EdgeRole.POSTER:
            if actor.role != ActorRole.POSTER or actor.actor_id != self.poster_id:
                raise ForbiddenError("Only the poster of this work item can do this")
            return

        if rule.role == EdgeRole.DOER:
            if actor.role != ActorRole.DOER:
                raise ForbiddenError("Only the assigned doer can do this")
            if self.doer_id is not None and actor.actor_id != self.doer_id:
                raise ForbiddenError("Only the assigned doer can do this")
            return

        if not self.is_party(actor):
            raise ForbiddenError("Only the poster or the assigned doer can do this")

    def is_party(self, actor: Actor) -> bool:
        """Check if actor is the poster or the assigned doer (by role claim)"""
        if actor.role == ActorRole.POSTER:
            return actor.actor_id == self.poster_id
        if actor.role == ActorRole.DOER:
            return self.doer_id is not None and actor.actor_id == self.doer_id
        return False

    # ========== Status Transitions ==========

    def _move(self, operation: WorkItemOperation, now: datetime) -> None:
        rule = TRANSITIONS[operation]
        if self.status not in rule.sources:
            raise InvalidStateError(
                f"Cannot {operation.value} a work item in status {self.status.value}"
            )
        self.status = rule.target
        self.updated_at = now

    def assign(self, doer_id: str, bid_id: str, now: datetime) -> None:
        """OPEN → ASSIGNED, binding the winning bidder"""
        self._move(WorkItemOperation.ACCEPT_BID, now)
        self.doer_id = doer_id
        self.accepted_bid_id = bid_id
        self.assigned_at = now
        self.check_invariants()

    def start(self, now: datetime) -> None:
        self._move(WorkItemOperation.START_WORK, now)
        self.started_at = now

    def submit(self, now: datetime) -> None:
        self._move(WorkItemOperation.SUBMIT_WORK, now)
        self.submitted_at = now

    def request_revision(self, now: datetime) -> None:
        self._move(WorkItemOperation.REQUEST_REVISION, now)
        self.submitted_at = None

    def complete(self, now: datetime) -> None:
        self._move(WorkItemOperation.APPROVE_AND_RELEASE, now)
        self.completed_at = now

    def cancel(self, now: datetime) -> None:
        self._move(WorkItemOperation.CANCEL, now)
        self.cancelled_at = now

    def mark_disputed(self, now: datetime) -> None:
        """Freeze the work item under a dispute, remembering where it was"""
        previous = self.status
        self._move(WorkItemOperation.OPEN_DISPUTE, now)
        self.status_before_dispute = previous

    def resolve_dispute(self, release: bool, now: datetime) -> None:
        """DISPUTED → COMPLETED (release) or CANCELLED (refund)"""
        if release:
            self._move(WorkItemOperation.RESOLVE_RELEASE, now)
            self.completed_at = self.completed_at or now
        else:
            self._move(WorkItemOperation.RESOLVE_REFUND, now)
            self.cancelled_at = now

    # ========== Queries ==========

    def is_open(self) -> bool:
        return self.status == WorkItemStatus.OPEN

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_within_grace(self, grace: timedelta, now: datetime) -> bool:
        """Check if a completed work item is still within its dispute grace period"""
        if self.status != WorkItemStatus.COMPLETED or self.completed_at is None:
            return False
        return now - self.completed_at <= grace

    # ========== Serialization ==========

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return {
            "work_item_id": self.work_item_id,
            "poster_id": self.poster_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "budget": str(self.budget),
            "deadline": self.deadline.isoformat(),
            "status": self.status.value,
            "status_before_dispute": (
                self.status_before_dispute.value if self.status_before_dispute else None
            ),
            "doer_id": self.doer_id,
            "accepted_bid_id": self.accepted_bid_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "version": self.version,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItem":
        """Create WorkItem from dictionary"""
        data = data.copy()

        if isinstance(data.get("status"), str):
            data["status"] = WorkItemStatus(data["status"])
        if isinstance(data.get("status_before_dispute"), str):
            data["status_before_dispute"] = WorkItemStatus(data["status_before_dispute"])
        if data.get("budget") is not None:
            data["budget"] = Decimal(str(data["budget"]))

        datetime_fields = [
            "deadline",
            "created_at",
            "updated_at",
            "assigned_at",
            "started_at",
            "submitted_at",
            "completed_at",
            "cancelled_at",
        ]
        for field_name in datetime_fields:
            if data.get(field_name) and isinstance(data[field_name], str):
                data[field_name] = datetime.fromisoformat(data[field_name])

        return cls(**data)
