"""Assignment State Machine

Business logic for the work item lifecycle: creation, execution,
review, approval and cancellation.
"""

from datetime import UTC, datetime
from decimal import Decimal

import structlog

from ..core.entities import (
    Actor,
    ActorRole,
    BidStatus,
    Payment,
    PaymentStatus,
    WorkItem,
    WorkItemOperation,
    WorkItemStatus,
)
from ..core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from ..core.interfaces import ILedgerStore, ILedgerTransaction, MarketEventType
from .base import Clock, parse_amount, require, utc_now
from .escrow_service import EscrowService
from .events import EventPublisher

logger = structlog.get_logger()


class AssignmentService:
    """
    Assignment Service

    Every operation re-reads the work item inside a transaction, checks the
    edge with ``WorkItem.ensure_transition`` and persists with a version
    check. Notifications go out after commit.
    """

    def __init__(
        self,
        store: ILedgerStore,
        escrow: EscrowService,
        events: EventPublisher | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.escrow = escrow
        self.events = events or EventPublisher()
        self.clock = clock or utc_now

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
    ) -> WorkItem:
        """
        Publish a new work item in OPEN status

        Raises:
            ForbiddenError: Caller is not a poster
            ValidationError: Missing title/description, non-positive budget,
                missing or past deadline
        """
        if poster.role != ActorRole.POSTER:
            raise ForbiddenError("Only posters can create work items")
        if not title or not title.strip():
            raise ValidationError("Title is required")
        if not description or not description.strip():
            raise ValidationError("Description is required")
        amount = parse_amount(budget, "budget")
        if deadline is None:
            raise ValidationError("Deadline is required")
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=UTC)

        now = self.clock()
        if deadline <= now:
            raise ValidationError("Deadline must be in the future", {"deadline": deadline.isoformat()})

        work_item = WorkItem(
            work_item_id=WorkItem.new_id(),
            poster_id=poster.actor_id,
            title=title.strip(),
            description=description.strip(),
            budget=amount,
            deadline=deadline,
            category=category or "general",
            priority=priority or "normal",
            created_at=now,
            updated_at=now,
            metadata=metadata or {},
        )
        async with self.store.transaction() as tx:
            await tx.add_work_item(work_item)

        logger.info(
            "work_item_created",
            work_item_id=work_item.work_item_id,
            poster_id=poster.actor_id,
            budget=str(amount),
        )
        return work_item

    # ========== Execution ==========

    async def start_work(self, doer: Actor, work_item_id: str) -> WorkItem:
        """ASSIGNED → IN_PROGRESS"""
        async with self.store.transaction() as tx:
            work_item = await self._load(tx, work_item_id)
            work_item.ensure_transition(WorkItemOperation.START_WORK, doer)
            work_item.start(self.clock())
            await tx.update_work_item(work_item)

        logger.info("work_started", work_item_id=work_item_id, doer_id=doer.actor_id)
        await self.events.publish(
            work_item.poster_id, MarketEventType.WORK_STARTED, {"work_item_id": work_item_id}
        )
        return work_item

    async def submit_work(self, doer: Actor, work_item_id: str) -> WorkItem:
        """
        IN_PROGRESS → UNDER_REVIEW

        Raises:
            ForbiddenError: Caller is not the assigned doer
            InvalidStateError: Work item is not IN_PROGRESS
        """
        async with self.store.transaction() as tx:
            work_item = await self._load(tx, work_item_id)
            work_item.ensure_transition(WorkItemOperation.SUBMIT_WORK, doer)
            work_item.submit(self.clock())
            await tx.update_work_item(work_item)

        logger.info("work_submitted", work_item_id=work_item_id, doer_id=doer.actor_id)
        await self.events.publish(
            work_item.poster_id, MarketEventType.WORK_SUBMITTED, {"work_item_id": work_item_id}
        )
        return work_item

    async def request_revision(self, poster: Actor, work_item_id: str) -> WorkItem:
        """UNDER_REVIEW → IN_PROGRESS"""
        async with self.store.transaction() as tx:
            work_item = await self._load(tx, work_item_id)
            work_item.ensure_transition(WorkItemOperation.REQUEST_REVISION, poster)
            work_item.request_revision(self.clock())
            await tx.update_work_item(work_item)

        logger.info("revision_requested", work_item_id=work_item_id)
        await self.events.publish(
            work_item.doer_id,
            MarketEventType.REVISION_REQUESTED,
            {"work_item_id": work_item_id},
        )
        return work_item

    # ========== Closing ==========

    async def approve_and_release(
        self, poster: Actor, work_item_id: str
    ) -> tuple[WorkItem, Payment]:
        """
        UNDER_REVIEW → COMPLETED, releasing the escrowed payment

        The work item and payment commit together; the gateway release runs
        after commit.

        Raises:
            ForbiddenError: Not the poster, or a dispute is active
            InvalidStateError: Work item not UNDER_REVIEW, or payment not PAID
            NotFoundError: Work item or payment does not exist
        """
        now = self.clock()
        async with self.store.transaction() as tx:
            work_item = await self._load(tx, work_item_id)
            dispute = await tx.get_open_dispute(work_item_id)
            work_item.ensure_transition(
                WorkItemOperation.APPROVE_AND_RELEASE,
                poster,
                dispute_active=dispute is not None,
            )

            payment = await tx.get_payment_for_work_item(work_item_id, for_update=True)
            if payment is None:
                raise NotFoundError(
                    "No payment exists for this work item", {"work_item_id": work_item_id}
                )
            if payment.status != PaymentStatus.PAID:
                raise InvalidStateError(
                    f"Payment must be paid before release (currently {payment.status.value})",
                    {"payment_id": payment.payment_id, "status": payment.status.value},
                )

            work_item.complete(now)
            self.escrow.release_in(payment, now)
            await tx.update_work_item(work_item)
            await tx.update_payment(payment)

        logger.info(
            "work_approved",
            work_item_id=work_item_id,
            payment_id=payment.payment_id,
            amount=str(payment.amount),
        )
        await self.events.publish(
            work_item.doer_id, MarketEventType.WORK_APPROVED, {"work_item_id": work_item_id}
        )
        payment = await self.escrow.apply_settlement(payment)
        return work_item, payment

    async def cancel(self, poster: Actor, work_item_id: str) -> WorkItem:
        """
        Cancel an OPEN or ASSIGNED work item

        Pending bids are rejected; an uncaptured payment is voided.

        Raises:
            ForbiddenError: Not the poster, or a dispute is active
            InvalidStateError: Work item is past ASSIGNED, or its payment was captured
        """
        now = self.clock()
        rejected_doers: list[str] = []

        async with self.store.transaction() as tx:
            work_item = await self._load(tx, work_item_id)
            dispute = await tx.get_open_dispute(work_item_id)
            work_item.ensure_transition(
                WorkItemOperation.CANCEL, poster, dispute_active=dispute is not None
            )

            if work_item.status == WorkItemStatus.ASSIGNED:
                payment = await tx.get_payment_for_work_item(work_item_id, for_update=True)
                if payment is not None:
                    self.escrow.void_in(payment, "cancelled_before_capture", now)
                    await tx.update_payment(payment)

            for bid in await tx.list_bids(work_item_id, BidStatus.PENDING):
                bid.reject(now)
                await tx.update_bid(bid)
                rejected_doers.append(bid.doer_id)

            work_item.cancel(now)
            await tx.update_work_item(work_item)

        logger.info(
            "work_item_cancelled",
            work_item_id=work_item_id,
            doer_id=work_item.doer_id,
            rejected_bids=len(rejected_doers),
        )
        await self.events.publish_many(
            [work_item.doer_id, *rejected_doers],
            MarketEventType.WORK_ITEM_CANCELLED,
            {"work_item_id": work_item_id},
        )
        return work_item

    # ========== Queries ==========

    async def get_work_item(self, work_item_id: str) -> WorkItem:
        async with self.store.transaction() as tx:
            return await self._load(tx, work_item_id, for_update=False)

    async def list_work_items(
        self,
        status: WorkItemStatus | None = None,
        poster_id: str | None = None,
        doer_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkItem]:
        async with self.store.transaction() as tx:
            return await tx.list_work_items(
                status=status, poster_id=poster_id, doer_id=doer_id, limit=limit, offset=offset
            )

    @staticmethod
    async def _load(
        tx: ILedgerTransaction, work_item_id: str, for_update: bool = True
    ) -> WorkItem:
        return require(
            await tx.get_work_item(work_item_id, for_update=for_update), "WorkItem", work_item_id
        )
