"""Payment Domain Entity

Escrow-style payment tied to one work item.

Status never regresses: every legal move goes up the rank order
PENDING < PAID < DISPUTED < RELEASED < COMPLETED, or into one of the
terminal REFUNDED / FAILED states.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from ..exceptions import InvalidStateError, ValidationError


class PaymentStatus(str, Enum):
    """Payment status"""

    PENDING = "pending"  # Created at bid acceptance, awaiting gateway capture
    PAID = "paid"  # Captured and held in escrow
    COMPLETED = "completed"  # Gateway confirmed payout of a released payment
    RELEASED = "released"  # Escrow released to the payee
    DISPUTED = "disputed"  # Frozen by an open dispute
    REFUNDED = "refunded"  # Escrow returned to the payer
    FAILED = "failed"  # Capture failed, or voided before capture


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.DISPUTED}
    ),
    PaymentStatus.PAID: frozenset(
        {PaymentStatus.RELEASED, PaymentStatus.DISPUTED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.DISPUTED: frozenset(
        {PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.FAILED}
    ),
    PaymentStatus.RELEASED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

PAYMENT_RANK: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PAID: 1,
    PaymentStatus.DISPUTED: 2,
    PaymentStatus.RELEASED: 3,
    PaymentStatus.REFUNDED: 3,
    PaymentStatus.FAILED: 3,
    PaymentStatus.COMPLETED: 4,
}

TERMINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.RELEASED,
        PaymentStatus.COMPLETED,
        PaymentStatus.REFUNDED,
        PaymentStatus.FAILED,
    }
)

# Statuses from which a dispute may be opened
DISPUTABLE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PAID})


class SettlementAction(str, Enum):
    """Gateway side effect owed for a committed money move"""

    RELEASE = "release"
    REFUND = "refund"


@dataclass
class Payment:
    """
    Payment Domain Entity

    payer = poster, payee = doer. Created PENDING when a bid is accepted.
    """

    payment_id: str
    work_item_id: str
    bid_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str = "NPR"

    status: PaymentStatus = PaymentStatus.PENDING

    # Gateway correlation
    gateway_reference: str | None = None  # Transaction uuid sent to the gateway
    capture_token: str | None = None
    gateway_ref_id: str | None = None  # Gateway's own reference from the callback

    captured_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    settled_at: datetime | None = None
    failure_reason: str | None = None

    # Committed release/refund whose gateway call has not succeeded yet
    settlement_pending: bool = False

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    version: int = 0

    def __post_init__(self):
        if not self.payment_id:
            raise ValidationError("payment_id cannot be empty")
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise ValidationError("Payment amount must be positive")

    @staticmethod
    def new_id() -> str:
        return f"pay-{uuid4().hex[:16]}"

    # ========== Status Transitions ==========

    def _move(self, target: PaymentStatus, now: datetime) -> None:
        if target not in PAYMENT_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Cannot move payment from {self.status.value} to {target.value}",
                {"payment_id": self.payment_id, "status": self.status.value},
            )
        if PAYMENT_RANK[target] < PAYMENT_RANK[self.status]:
            raise InvalidStateError("Payment status cannot regress")
        self.status = target
        self.updated_at = now

    def capture(self, now: datetime, gateway_ref_id: str | None = None) -> None:
        """PENDING → PAID"""
        self._move(PaymentStatus.PAID, now)
        self.captured_at = now
        self.gateway_ref_id = gateway_ref_id or self.gateway_ref_id

    def record_capture_while_disputed(
        self, now: datetime, gateway_ref_id: str | None = None
    ) -> None:
        """Note a capture that landed after the payment was frozen (status unchanged)"""
        if self.status != PaymentStatus.DISPUTED or self.captured_at is not None:
            raise InvalidStateError("Only an uncaptured disputed payment can record a capture")
        self.captured_at = now
        self.gateway_ref_id = gateway_ref_id or self.gateway_ref_id
        self.updated_at = now

    def fail(self, reason: str, now: datetime) -> None:
        """PENDING → FAILED (gateway reported failure)"""
        if self.status != PaymentStatus.PENDING:
            raise InvalidStateError(f"Cannot fail payment in status {self.status.value}")
        self._move(PaymentStatus.FAILED, now)
        self.failure_reason = reason

    def void(self, reason: str, now: datetime) -> None:
        """Void an uncaptured payment (PENDING or DISPUTED) → FAILED"""
        if self.is_captured:
            raise InvalidStateError("Cannot void a captured payment; refund it instead")
        self._move(PaymentStatus.FAILED, now)
        self.failure_reason = reason

    def freeze(self, now: datetime) -> None:
        """PENDING/PAID → DISPUTED"""
        self._move(PaymentStatus.DISPUTED, now)

    def release(self, now: datetime) -> None:
        """PAID/DISPUTED → RELEASED; requires captured funds"""
        if not self.is_captured:
            raise InvalidStateError("Cannot release a payment that was never captured")
        self._move(PaymentStatus.RELEASED, now)
        self.released_at = now
        self.settlement_pending = True

    def refund(self, now: datetime) -> None:
        """PAID/DISPUTED → REFUNDED; requires captured funds"""
        if not self.is_captured:
            raise InvalidStateError("Cannot refund a payment that was never captured")
        self._move(PaymentStatus.REFUNDED, now)
        self.refunded_at = now
        self.settlement_pending = True

    def confirm_payout(self, now: datetime) -> None:
        """RELEASED → COMPLETED"""
        self._move(PaymentStatus.COMPLETED, now)
        self.settled_at = now

    def mark_settled(self, now: datetime) -> None:
        """The owed gateway side effect has been applied"""
        self.settlement_pending = False
        self.updated_at = now

    # ========== Queries ==========

    @property
    def is_captured(self) -> bool:
        return self.captured_at is not None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def owed_settlement(self) -> SettlementAction | None:
        """Which gateway side effect is still owed, if any"""
        if not self.settlement_pending:
            return None
        if self.status in (PaymentStatus.RELEASED, PaymentStatus.COMPLETED):
            return SettlementAction.RELEASE
        if self.status == PaymentStatus.REFUNDED:
            return SettlementAction.REFUND
        return None

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "work_item_id": self.work_item_id,
            "bid_id": self.bid_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "gateway_reference": self.gateway_reference,
            "capture_token": self.capture_token,
            "gateway_ref_id": self.gateway_ref_id,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "failure_reason": self.failure_reason,
            "settlement_pending": self.settlement_pending,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Payment":
        data = data.copy()
        if isinstance(data.get("status"), str):
            data["status"] = PaymentStatus(data["status"])
        datetime_fields = [
            "captured_at",
            "released_at",
            "refunded_at",
            "settled_at",
            "created_at",
            "updated_at",
        ]
        for field_name in datetime_fields:
            if data.get(field_name) and isinstance(data[field_name], str):
                data[field_name] = datetime.fromisoformat(data[field_name])
        return cls(**data)
