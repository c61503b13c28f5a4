"""Marketplace Facade

Single entry point over the engine services. Every operation returns an
``OperationResult`` instead of raising, so callers branch on error codes.
"""

from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

import structlog

from ..core.entities import Actor, DisputeOutcome, Evidence
from ..core.exceptions import MarketplaceError
from ..core.interfaces import CaptureConfirmation
from .assignment_service import AssignmentService
from .bid_ledger import AcceptedBid, BidLedger
from .dispute_service import DisputeService
from .escrow_service import EscrowService

logger = structlog.get_logger()

T = TypeVar("T")

INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    status_code: int = 500
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a marketplace operation"""

    ok: bool
    value: T | None = None
    error: ErrorInfo | None = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorInfo) -> "OperationResult[T]":
        return cls(ok=False, error=error)


class Marketplace:
    """
    Marketplace Facade

    Typed business errors become ``ErrorInfo`` with their stable code.
    Anything else is logged with its traceback and reported as
    ``INTERNAL_ERROR`` without storage details.
    """

    def __init__(
        self,
        assignments: AssignmentService,
        bids: BidLedger,
        escrow: EscrowService,
        disputes: DisputeService,
    ):
        self.assignments = assignments
        self.bids = bids
        self.escrow = escrow
        self.disputes = disputes

    async def _run(self, operation: str, call: Awaitable[T]) -> OperationResult[T]:
        try:
            return OperationResult.success(await call)
        except MarketplaceError as e:
            logger.info("operation_rejected", operation=operation, code=e.code, error=e.message)
            return OperationResult.failure(
                ErrorInfo(
                    code=e.code, message=e.message, status_code=e.status_code, details=e.details
                )
            )
        except Exception:
            logger.exception("operation_failed", operation=operation)
            return OperationResult.failure(
                ErrorInfo(code=INTERNAL_ERROR, message="An unexpected error occurred")
            )

    # ========== Work Items ==========

    async def create_work_item(
        self,
        poster: Actor,
        title: str,
        description: str,
        budget: Decimal | str | float,
        deadline: datetime | None,
        category: str = "general",
        priority: str = "normal",
        metadata: dict | None = None,
    ):
        return await self._run(
            "create_work_item",
            self.assignments.create_work_item(
                poster, title, description, budget, deadline, category, priority, metadata
            ),
        )

    async def get_work_item(self, work_item_id: str):
        return await self._run("get_work_item", self.assignments.get_work_item(work_item_id))

    async def list_work_items(self, **filters):
        return await self._run("list_work_items", self.assignments.list_work_items(**filters))

    async def start_work(self, doer: Actor, work_item_id: str):
        return await self._run("start_work", self.assignments.start_work(doer, work_item_id))

    async def submit_work(self, doer: Actor, work_item_id: str):
        return await self._run("submit_work", self.assignments.submit_work(doer, work_item_id))

    async def request_revision(self, poster: Actor, work_item_id: str):
        return await self._run(
            "request_revision", self.assignments.request_revision(poster, work_item_id)
        )

    async def approve_and_release(self, poster: Actor, work_item_id: str):
        return await self._run(
            "approve_and_release", self.assignments.approve_and_release(poster, work_item_id)
        )

    async def cancel(self, poster: Actor, work_item_id: str):
        return await self._run("cancel", self.assignments.cancel(poster, work_item_id))

    # ========== Bids ==========

    async def place_bid(
        self, doer: Actor, work_item_id: str, amount: Decimal | str | float, message: str = ""
    ):
        return await self._run(
            "place_bid", self.bids.place_bid(doer, work_item_id, amount, message)
        )

    async def withdraw_bid(self, doer: Actor, bid_id: str):
        return await self._run("withdraw_bid", self.bids.withdraw_bid(doer, bid_id))

    async def accept_bid(self, poster: Actor, bid_id: str) -> OperationResult[AcceptedBid]:
        return await self._run("accept_bid", self.bids.accept_bid(poster, bid_id))

    async def list_bids(self, actor: Actor, work_item_id: str):
        return await self._run("list_bids", self.bids.list_bids(actor, work_item_id))

    # ========== Payments ==========

    async def initiate_capture(self, poster: Actor, work_item_id: str):
        return await self._run(
            "initiate_capture", self.escrow.initiate_capture(poster, work_item_id)
        )

    async def handle_capture_callback(self, confirmation: CaptureConfirmation):
        return await self._run(
            "handle_capture_callback", self.escrow.handle_capture_callback(confirmation)
        )

    async def confirm_payout(self, payment_id: str):
        return await self._run("confirm_payout", self.escrow.confirm_payout(payment_id))

    async def retry_settlement(self, arbiter: Actor, payment_id: str):
        return await self._run(
            "retry_settlement", self.escrow.retry_settlement(arbiter, payment_id)
        )

    async def list_pending_settlements(self, arbiter: Actor, limit: int = 50):
        return await self._run(
            "list_pending_settlements", self.escrow.list_pending_settlements(arbiter, limit)
        )

    async def get_payment(self, actor: Actor, work_item_id: str):
        return await self._run(
            "get_payment", self.escrow.get_payment_for_work_item(actor, work_item_id)
        )

    # ========== Disputes ==========

    async def open_dispute(
        self,
        initiator: Actor,
        work_item_id: str,
        reason: str,
        evidence: list[Evidence | dict[str, Any]] | None = None,
    ):
        return await self._run(
            "open_dispute",
            self.disputes.open_dispute(initiator, work_item_id, reason, evidence),
        )

    async def add_followup(
        self,
        sender: Actor,
        dispute_id: str,
        message: str,
        evidence: list[Evidence | dict[str, Any]] | None = None,
    ):
        return await self._run(
            "add_followup", self.disputes.add_followup(sender, dispute_id, message, evidence)
        )

    async def begin_review(self, arbiter: Actor, dispute_id: str):
        return await self._run("begin_review", self.disputes.begin_review(arbiter, dispute_id))

    async def resolve_dispute(
        self,
        arbiter: Actor,
        dispute_id: str,
        outcome: DisputeOutcome | str,
        note: str | None = None,
    ):
        return await self._run(
            "resolve_dispute",
            self.disputes.resolve_dispute(arbiter, dispute_id, outcome, note),
        )

    async def get_dispute(self, actor: Actor, dispute_id: str):
        return await self._run("get_dispute", self.disputes.get_dispute(actor, dispute_id))

    async def list_disputes(self, actor: Actor, work_item_id: str | None = None):
        return await self._run(
            "list_disputes", self.disputes.list_disputes(actor, work_item_id=work_item_id)
        )
