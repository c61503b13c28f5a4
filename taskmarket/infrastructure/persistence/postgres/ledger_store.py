"""SQLAlchemy Implementation of ILedgerStore

One ledger transaction is one database transaction. Rows read with
``for_update`` are locked (``SELECT ... FOR UPDATE`` on PostgreSQL) and
every UPDATE carries a version predicate, so a stale write affects no
rows and raises ConflictError. Unique-index violations, deadlocks and
serialization failures are reported as ConflictError as well.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import Select, case, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ....core.entities import (
    Bid,
    BidStatus,
    Dispute,
    DisputeFollowUp,
    DisputeStatus,
    Evidence,
    Payment,
    PaymentStatus,
    WorkItem,
    WorkItemStatus,
)
from ....core.exceptions import ConflictError
from ....core.interfaces import ILedgerStore, ILedgerTransaction
from .models import BidModel, DisputeFollowUpModel, DisputeModel, PaymentModel, WorkItemModel

logger = structlog.get_logger()

# serialization_failure, deadlock_detected
LOST_RACE_SQLSTATES = frozenset({"40001", "40P01"})


def _is_lost_race(error: DBAPIError) -> bool:
    """Whether the database aborted the transaction because of a concurrent one"""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in LOST_RACE_SQLSTATES


def _tz(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware (UTC). SQLite returns naive values."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


# =============================================================================
# Row <-> entity mapping
# =============================================================================


def _work_item_from_row(row: WorkItemModel) -> WorkItem:
    return WorkItem(
        work_item_id=row.work_item_id,
        poster_id=row.poster_id,
        title=row.title,
        description=row.description,
        budget=Decimal(row.budget),
        deadline=_tz(row.deadline),
        category=row.category,
        priority=row.priority,
        status=WorkItemStatus(row.status),
        status_before_dispute=(
            WorkItemStatus(row.status_before_dispute) if row.status_before_dispute else None
        ),
        doer_id=row.doer_id,
        accepted_bid_id=row.accepted_bid_id,
        created_at=_tz(row.created_at),
        updated_at=_tz(row.updated_at),
        assigned_at=_tz(row.assigned_at),
        started_at=_tz(row.started_at),
        submitted_at=_tz(row.submitted_at),
        completed_at=_tz(row.completed_at),
        cancelled_at=_tz(row.cancelled_at),
        version=row.version,
        metadata=row.item_metadata or {},
    )


def _work_item_values(item: WorkItem) -> dict[str, Any]:
    return {
        "poster_id": item.poster_id,
        "doer_id": item.doer_id,
        "status": item.status.value,
        "status_before_dispute": (
            item.status_before_dispute.value if item.status_before_dispute else None
        ),
        "title": item.title,
        "description": item.description,
        "category": item.category,
        "priority": item.priority,
        "budget": str(item.budget),
        "deadline": _tz(item.deadline),
        "accepted_bid_id": item.accepted_bid_id,
        "created_at": _tz(item.created_at),
        "updated_at": _tz(item.updated_at),
        "assigned_at": _tz(item.assigned_at),
        "started_at": _tz(item.started_at),
        "submitted_at": _tz(item.submitted_at),
        "completed_at": _tz(item.completed_at),
        "cancelled_at": _tz(item.cancelled_at),
        "item_metadata": item.metadata or None,
    }


def _bid_from_row(row: BidModel) -> Bid:
    return Bid(
        bid_id=row.bid_id,
        work_item_id=row.work_item_id,
        doer_id=row.doer_id,
        amount=Decimal(row.amount),
        message=row.message,
        status=BidStatus(row.status),
        created_at=_tz(row.created_at),
        updated_at=_tz(row.updated_at),
        version=row.version,
    )


def _bid_values(bid: Bid) -> dict[str, Any]:
    return {
        "work_item_id": bid.work_item_id,
        "doer_id": bid.doer_id,
        "amount": str(bid.amount),
        "message": bid.message,
        "status": bid.status.value,
        "created_at": _tz(bid.created_at),
        "updated_at": _tz(bid.updated_at),
    }


def _payment_from_row(row: PaymentModel) -> Payment:
    return Payment(
        payment_id=row.payment_id,
        work_item_id=row.work_item_id,
        bid_id=row.bid_id,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        status=PaymentStatus(row.status),
        gateway_reference=row.gateway_reference,
        capture_token=row.capture_token,
        gateway_ref_id=row.gateway_ref_id,
        captured_at=_tz(row.captured_at),
        released_at=_tz(row.released_at),
        refunded_at=_tz(row.refunded_at),
        settled_at=_tz(row.settled_at),
        failure_reason=row.failure_reason,
        settlement_pending=row.settlement_pending,
        created_at=_tz(row.created_at),
        updated_at=_tz(row.updated_at),
        version=row.version,
    )


def _payment_values(payment: Payment) -> dict[str, Any]:
    return {
        "work_item_id": payment.work_item_id,
        "bid_id": payment.bid_id,
        "payer_id": payment.payer_id,
        "payee_id": payment.payee_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status.value,
        "gateway_reference": payment.gateway_reference,
        "capture_token": payment.capture_token,
        "gateway_ref_id": payment.gateway_ref_id,
        "captured_at": _tz(payment.captured_at),
        "released_at": _tz(payment.released_at),
        "refunded_at": _tz(payment.refunded_at),
        "settled_at": _tz(payment.settled_at),
        "failure_reason": payment.failure_reason,
        "settlement_pending": payment.settlement_pending,
        "created_at": _tz(payment.created_at),
        "updated_at": _tz(payment.updated_at),
    }


def _followup_from_row(row: DisputeFollowUpModel) -> DisputeFollowUp:
    return DisputeFollowUp(
        followup_id=row.followup_id,
        dispute_id=row.dispute_id,
        sender_id=row.sender_id,
        message=row.message,
        sequence=row.sequence,
        evidence=[Evidence.from_dict(e) for e in row.evidence or []],
        created_at=_tz(row.created_at),
    )


def _dispute_from_row(row: DisputeModel, followups: list[DisputeFollowUp]) -> Dispute:
    return Dispute(
        dispute_id=row.dispute_id,
        work_item_id=row.work_item_id,
        payment_id=row.payment_id,
        initiator_id=row.initiator_id,
        reason=row.reason,
        evidence=[Evidence.from_dict(e) for e in row.evidence or []],
        status=DisputeStatus(row.status),
        outcome=DisputeStatus(row.outcome) if row.outcome else None,
        reviewer_id=row.reviewer_id,
        resolved_by=row.resolved_by,
        resolution_note=row.resolution_note,
        followups=followups,
        created_at=_tz(row.created_at),
        updated_at=_tz(row.updated_at),
        review_started_at=_tz(row.review_started_at),
        resolved_at=_tz(row.resolved_at),
        closed_at=_tz(row.closed_at),
        version=row.version,
    )


def _dispute_values(dispute: Dispute) -> dict[str, Any]:
    return {
        "work_item_id": dispute.work_item_id,
        "payment_id": dispute.payment_id,
        "initiator_id": dispute.initiator_id,
        "reason": dispute.reason,
        "evidence": [e.to_dict() for e in dispute.evidence],
        "status": dispute.status.value,
        "outcome": dispute.outcome.value if dispute.outcome else None,
        "reviewer_id": dispute.reviewer_id,
        "resolved_by": dispute.resolved_by,
        "resolution_note": dispute.resolution_note,
        "created_at": _tz(dispute.created_at),
        "updated_at": _tz(dispute.updated_at),
        "review_started_at": _tz(dispute.review_started_at),
        "resolved_at": _tz(dispute.resolved_at),
        "closed_at": _tz(dispute.closed_at),
    }


# =============================================================================
# Store
# =============================================================================


class SqlLedgerStore(ILedgerStore):
    """SQLAlchemy-backed ledger store (PostgreSQL in production, SQLite in tests)"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ILedgerTransaction]:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield SqlLedgerTransaction(session)
            except IntegrityError as e:
                logger.info("ledger_integrity_conflict", error=str(e.orig))
                raise ConflictError("The write conflicts with an existing record") from e
            except DBAPIError as e:
                if not _is_lost_race(e):
                    raise
                logger.info("ledger_concurrency_abort", error=str(e.orig))
                raise ConflictError("The transaction lost a race with a concurrent one") from e

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


class SqlLedgerTransaction(ILedgerTransaction):
    """Unit of work bound to one ``AsyncSession`` transaction"""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _lock(stmt: Select, for_update: bool) -> Select:
        return stmt.with_for_update() if for_update else stmt

    async def _one(self, stmt: Select) -> Any:
        return (await self._session.execute(stmt)).scalars().first()

    async def _all(self, stmt: Select) -> list[Any]:
        return list((await self._session.execute(stmt)).scalars().all())

    async def _versioned_update(
        self, model: Any, key_column: Any, key: str, entity: Any, values: dict[str, Any]
    ) -> None:
        expected = entity.version
        result = await self._session.execute(
            update(model)
            .where(key_column == key, model.version == expected)
            .values(**values, version=expected + 1)
        )
        if result.rowcount != 1:
            logger.info(
                "ledger_version_conflict", table=model.__tablename__, key=key, expected=expected
            )
            raise ConflictError(
                "The record was modified concurrently",
                {"table": model.__tablename__, "id": key},
            )
        entity.version = expected + 1

    async def _insert(self, row: Any) -> None:
        self._session.add(row)
        await self._session.flush()

    # ========== Work Items ==========

    async def get_work_item(self, work_item_id: str, for_update: bool = False) -> WorkItem | None:
        stmt = select(WorkItemModel).where(WorkItemModel.work_item_id == work_item_id)
        row = await self._one(self._lock(stmt, for_update))
        return _work_item_from_row(row) if row else None

    async def list_work_items(
        self,
        status: WorkItemStatus | None = None,
        poster_id: str | None = None,
        doer_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkItem]:
        stmt = select(WorkItemModel)
        if status is not None:
            stmt = stmt.where(WorkItemModel.status == status.value)
        if poster_id is not None:
            stmt = stmt.where(WorkItemModel.poster_id == poster_id)
        if doer_id is not None:
            stmt = stmt.where(WorkItemModel.doer_id == doer_id)
        stmt = stmt.order_by(WorkItemModel.created_at.desc()).limit(limit).offset(offset)
        return [_work_item_from_row(r) for r in await self._all(stmt)]

    async def add_work_item(self, work_item: WorkItem) -> None:
        await self._insert(
            WorkItemModel(
                work_item_id=work_item.work_item_id,
                version=work_item.version,
                **_work_item_values(work_item),
            )
        )

    async def update_work_item(self, work_item: WorkItem) -> None:
        await self._versioned_update(
            WorkItemModel,
            WorkItemModel.work_item_id,
            work_item.work_item_id,
            work_item,
            _work_item_values(work_item),
        )

    # ========== Bids ==========

    async def get_bid(self, bid_id: str, for_update: bool = False) -> Bid | None:
        stmt = select(BidModel).where(BidModel.bid_id == bid_id)
        row = await self._one(self._lock(stmt, for_update))
        return _bid_from_row(row) if row else None

    async def find_bid(self, work_item_id: str, doer_id: str) -> Bid | None:
        row = await self._one(
            select(BidModel).where(
                BidModel.work_item_id == work_item_id, BidModel.doer_id == doer_id
            )
        )
        return _bid_from_row(row) if row else None

    async def list_bids(self, work_item_id: str, status: BidStatus | None = None) -> list[Bid]:
        stmt = select(BidModel).where(BidModel.work_item_id == work_item_id)
        if status is not None:
            stmt = stmt.where(BidModel.status == status.value)
        stmt = stmt.order_by(BidModel.created_at)
        return [_bid_from_row(r) for r in await self._all(stmt)]

    async def add_bid(self, bid: Bid) -> None:
        await self._insert(BidModel(bid_id=bid.bid_id, version=bid.version, **_bid_values(bid)))

    async def update_bid(self, bid: Bid) -> None:
        await self._versioned_update(BidModel, BidModel.bid_id, bid.bid_id, bid, _bid_values(bid))

    # ========== Payments ==========

    async def get_payment(self, payment_id: str, for_update: bool = False) -> Payment | None:
        stmt = select(PaymentModel).where(PaymentModel.payment_id == payment_id)
        row = await self._one(self._lock(stmt, for_update))
        return _payment_from_row(row) if row else None

    async def get_payment_for_work_item(
        self, work_item_id: str, for_update: bool = False
    ) -> Payment | None:
        failed_last = case((PaymentModel.status == PaymentStatus.FAILED.value, 1), else_=0)
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.work_item_id == work_item_id)
            .order_by(failed_last, PaymentModel.created_at.desc())
            .limit(1)
        )
        row = await self._one(self._lock(stmt, for_update))
        return _payment_from_row(row) if row else None

    async def get_payment_by_reference(
        self, gateway_reference: str, for_update: bool = False
    ) -> Payment | None:
        stmt = select(PaymentModel).where(PaymentModel.gateway_reference == gateway_reference)
        row = await self._one(self._lock(stmt, for_update))
        return _payment_from_row(row) if row else None

    async def list_pending_settlements(self, limit: int = 50) -> list[Payment]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.settlement_pending.is_(True))
            .order_by(PaymentModel.updated_at)
            .limit(limit)
        )
        return [_payment_from_row(r) for r in await self._all(stmt)]

    async def add_payment(self, payment: Payment) -> None:
        await self._insert(
            PaymentModel(
                payment_id=payment.payment_id,
                version=payment.version,
                **_payment_values(payment),
            )
        )

    async def update_payment(self, payment: Payment) -> None:
        await self._versioned_update(
            PaymentModel,
            PaymentModel.payment_id,
            payment.payment_id,
            payment,
            _payment_values(payment),
        )

    # ========== Disputes ==========

    async def _load_followups(self, dispute_id: str) -> list[DisputeFollowUp]:
        stmt = (
            select(DisputeFollowUpModel)
            .where(DisputeFollowUpModel.dispute_id == dispute_id)
            .order_by(DisputeFollowUpModel.sequence)
        )
        return [_followup_from_row(r) for r in await self._all(stmt)]

    async def _hydrate(self, row: DisputeModel | None) -> Dispute | None:
        if row is None:
            return None
        return _dispute_from_row(row, await self._load_followups(row.dispute_id))

    async def get_dispute(self, dispute_id: str, for_update: bool = False) -> Dispute | None:
        stmt = select(DisputeModel).where(DisputeModel.dispute_id == dispute_id)
        return await self._hydrate(await self._one(self._lock(stmt, for_update)))

    async def get_open_dispute(self, work_item_id: str) -> Dispute | None:
        stmt = select(DisputeModel).where(
            DisputeModel.work_item_id == work_item_id,
            DisputeModel.status != DisputeStatus.CLOSED.value,
        )
        return await self._hydrate(await self._one(stmt))

    async def list_disputes(
        self,
        work_item_id: str | None = None,
        party_id: str | None = None,
        limit: int = 50,
    ) -> list[Dispute]:
        stmt = select(DisputeModel)
        if work_item_id is not None:
            stmt = stmt.where(DisputeModel.work_item_id == work_item_id)
        if party_id is not None:
            stmt = stmt.join(
                WorkItemModel, WorkItemModel.work_item_id == DisputeModel.work_item_id
            ).where(
                or_(
                    DisputeModel.initiator_id == party_id,
                    WorkItemModel.poster_id == party_id,
                    WorkItemModel.doer_id == party_id,
                )
            )
        stmt = stmt.order_by(DisputeModel.created_at.desc()).limit(limit)
        return [await self._hydrate(r) for r in await self._all(stmt)]

    async def add_dispute(self, dispute: Dispute) -> None:
        await self._insert(
            DisputeModel(
                dispute_id=dispute.dispute_id,
                version=dispute.version,
                **_dispute_values(dispute),
            )
        )

    async def update_dispute(self, dispute: Dispute) -> None:
        await self._versioned_update(
            DisputeModel,
            DisputeModel.dispute_id,
            dispute.dispute_id,
            dispute,
            _dispute_values(dispute),
        )

    async def add_followup(self, followup: DisputeFollowUp) -> None:
        await self._insert(
            DisputeFollowUpModel(
                followup_id=followup.followup_id,
                dispute_id=followup.dispute_id,
                sender_id=followup.sender_id,
                message=followup.message,
                sequence=followup.sequence,
                evidence=[e.to_dict() for e in followup.evidence],
                created_at=_tz(followup.created_at),
            )
        )
