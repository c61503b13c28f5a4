"""In-Memory Implementation of ILedgerStore

Optimistic store for development and tests. Transactions buffer their
writes and validate every expected version at commit; the commit itself
runs without yielding to the event loop, so it is atomic.

Reads return copies of committed state and yield to the event loop first,
so concurrent transactions interleave the way they would against a real
database.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from copy import deepcopy
from dataclasses import replace
from typing import Any

import structlog

from ....core.entities import (
    Bid,
    BidStatus,
    Dispute,
    DisputeFollowUp,
    Payment,
    PaymentStatus,
    WorkItem,
    WorkItemStatus,
)
from ....core.exceptions import ConflictError
from ....core.interfaces import ILedgerStore, ILedgerTransaction

logger = structlog.get_logger()


class InMemoryLedgerStore(ILedgerStore):
    """Dict-backed ledger store"""

    def __init__(self) -> None:
        self.work_items: dict[str, WorkItem] = {}
        self.bids: dict[str, Bid] = {}
        self.payments: dict[str, Payment] = {}
        self.disputes: dict[str, Dispute] = {}
        self.followups: dict[str, list[DisputeFollowUp]] = {}

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ILedgerTransaction]:
        tx = InMemoryLedgerTransaction(self)
        yield tx
        tx.commit()


class InMemoryLedgerTransaction(ILedgerTransaction):
    """Unit of work against an ``InMemoryLedgerStore``"""

    def __init__(self, store: InMemoryLedgerStore) -> None:
        self._store = store
        # (table, entity, expected version); expected None means insert
        self._writes: list[tuple[str, Any, int | None]] = []
        self._followups: list[DisputeFollowUp] = []

    # ========== Reads ==========

    async def _read(self, entity: Any) -> Any:
        await asyncio.sleep(0)
        return deepcopy(entity) if entity is not None else None

    async def get_work_item(self, work_item_id: str, for_update: bool = False) -> WorkItem | None:
        return await self._read(self._store.work_items.get(work_item_id))

    async def list_work_items(
        self,
        status: WorkItemStatus | None = None,
        poster_id: str | None = None,
        doer_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkItem]:
        await asyncio.sleep(0)
        items = [
            w
            for w in self._store.work_items.values()
            if (status is None or w.status == status)
            and (poster_id is None or w.poster_id == poster_id)
            and (doer_id is None or w.doer_id == doer_id)
        ]
        items.sort(key=lambda w: w.created_at, reverse=True)
        return deepcopy(items[offset : offset + limit])

    async def get_bid(self, bid_id: str, for_update: bool = False) -> Bid | None:
        return await self._read(self._store.bids.get(bid_id))

    async def find_bid(self, work_item_id: str, doer_id: str) -> Bid | None:
        for bid in self._store.bids.values():
            if bid.work_item_id == work_item_id and bid.doer_id == doer_id:
                return await self._read(bid)
        await asyncio.sleep(0)
        return None

    async def list_bids(self, work_item_id: str, status: BidStatus | None = None) -> list[Bid]:
        await asyncio.sleep(0)
        bids = [
            b
            for b in self._store.bids.values()
            if b.work_item_id == work_item_id and (status is None or b.status == status)
        ]
        bids.sort(key=lambda b: b.created_at)
        return deepcopy(bids)

    async def get_payment(self, payment_id: str, for_update: bool = False) -> Payment | None:
        return await self._read(self._store.payments.get(payment_id))

    async def get_payment_for_work_item(
        self, work_item_id: str, for_update: bool = False
    ) -> Payment | None:
        candidates = [p for p in self._store.payments.values() if p.work_item_id == work_item_id]
        active = [p for p in candidates if p.status != PaymentStatus.FAILED]
        chosen = active or sorted(candidates, key=lambda p: p.created_at, reverse=True)
        return await self._read(chosen[0] if chosen else None)

    async def get_payment_by_reference(
        self, gateway_reference: str, for_update: bool = False
    ) -> Payment | None:
        found = next(
            (
                p
                for p in self._store.payments.values()
                if p.gateway_reference == gateway_reference
            ),
            None,
        )
        return await self._read(found)

    async def list_pending_settlements(self, limit: int = 50) -> list[Payment]:
        await asyncio.sleep(0)
        pending = [p for p in self._store.payments.values() if p.settlement_pending]
        pending.sort(key=lambda p: p.updated_at)
        return deepcopy(pending[:limit])

    def _with_followups(self, dispute: Dispute) -> Dispute:
        return replace(dispute, followups=list(self._store.followups.get(dispute.dispute_id, [])))

    async def get_dispute(self, dispute_id: str, for_update: bool = False) -> Dispute | None:
        dispute = self._store.disputes.get(dispute_id)
        return await self._read(self._with_followups(dispute) if dispute else None)

    async def get_open_dispute(self, work_item_id: str) -> Dispute | None:
        found = next(
            (
                d
                for d in self._store.disputes.values()
                if d.work_item_id == work_item_id and not d.is_closed()
            ),
            None,
        )
        return await self._read(self._with_followups(found) if found else None)

    async def list_disputes(
        self,
        work_item_id: str | None = None,
        party_id: str | None = None,
        limit: int = 50,
    ) -> list[Dispute]:
        await asyncio.sleep(0)
        result = []
        for dispute in self._store.disputes.values():
            if work_item_id is not None and dispute.work_item_id != work_item_id:
                continue
            if party_id is not None and not self._involves(dispute, party_id):
                continue
            result.append(self._with_followups(dispute))
        result.sort(key=lambda d: d.created_at, reverse=True)
        return deepcopy(result[:limit])

    def _involves(self, dispute: Dispute, party_id: str) -> bool:
        work_item = self._store.work_items.get(dispute.work_item_id)
        parties = {dispute.initiator_id}
        if work_item is not None:
            parties.update({work_item.poster_id, work_item.doer_id})
        return party_id in parties

    # ========== Writes ==========

    def _insert(self, table: str, entity: Any) -> None:
        self._writes.append((table, deepcopy(entity), None))

    def _update(self, table: str, entity: Any) -> None:
        expected = entity.version
        entity.version += 1
        self._writes.append((table, deepcopy(entity), expected))

    async def add_work_item(self, work_item: WorkItem) -> None:
        self._insert("work_items", work_item)

    async def update_work_item(self, work_item: WorkItem) -> None:
        self._update("work_items", work_item)

    async def add_bid(self, bid: Bid) -> None:
        self._insert("bids", bid)

    async def update_bid(self, bid: Bid) -> None:
        self._update("bids", bid)

    async def add_payment(self, payment: Payment) -> None:
        self._insert("payments", payment)

    async def update_payment(self, payment: Payment) -> None:
        self._update("payments", payment)

    async def add_dispute(self, dispute: Dispute) -> None:
        self._insert("disputes", replace(dispute, followups=[]))

    async def update_dispute(self, dispute: Dispute) -> None:
        expected = dispute.version
        dispute.version += 1
        self._writes.append(("disputes", replace(deepcopy(dispute), followups=[]), expected))

    async def add_followup(self, followup: DisputeFollowUp) -> None:
        self._followups.append(deepcopy(followup))

    # ========== Commit ==========

    @staticmethod
    def _key(table: str, entity: Any) -> str:
        return {
            "work_items": lambda e: e.work_item_id,
            "bids": lambda e: e.bid_id,
            "payments": lambda e: e.payment_id,
            "disputes": lambda e: e.dispute_id,
        }[table](entity)

    def commit(self) -> None:
        """Validate every buffered write, then apply them all (no awaits)"""
        store = self._store
        tables: dict[str, dict[str, Any]] = {
            "work_items": store.work_items,
            "bids": store.bids,
            "payments": store.payments,
            "disputes": store.disputes,
        }

        staged: dict[str, dict[str, Any]] = {name: dict(rows) for name, rows in tables.items()}
        for table, entity, expected in self._writes:
            key = self._key(table, entity)
            current = staged[table].get(key)
            if expected is None:
                if current is not None:
                    raise ConflictError(f"Duplicate {table} row {key}")
            elif current is None or current.version != expected:
                logger.info("ledger_version_conflict", table=table, key=key, expected=expected)
                raise ConflictError(
                    "The record was modified concurrently",
                    {"table": table, "id": key},
                )
            staged[table][key] = entity

        self._check_unique_bids(staged["bids"])
        self._check_single_active_payment(staged["payments"])
        staged_followups = self._stage_followups()

        for name, rows in tables.items():
            rows.clear()
            rows.update(staged[name])
        store.followups = staged_followups

    @staticmethod
    def _check_unique_bids(bids: dict[str, Bid]) -> None:
        seen: set[tuple[str, str]] = set()
        for bid in bids.values():
            pair = (bid.work_item_id, bid.doer_id)
            if pair in seen:
                raise ConflictError("A bid from this doer already exists", {"work_item_id": pair[0]})
            seen.add(pair)

    @staticmethod
    def _check_single_active_payment(payments: dict[str, Payment]) -> None:
        seen: set[str] = set()
        for payment in payments.values():
            if payment.status == PaymentStatus.FAILED:
                continue
            if payment.work_item_id in seen:
                raise ConflictError(
                    "An active payment already exists for this work item",
                    {"work_item_id": payment.work_item_id},
                )
            seen.add(payment.work_item_id)

    def _stage_followups(self) -> dict[str, list[DisputeFollowUp]]:
        staged = {k: list(v) for k, v in self._store.followups.items()}
        for followup in self._followups:
            thread = staged.setdefault(followup.dispute_id, [])
            if any(f.sequence == followup.sequence for f in thread):
                raise ConflictError(
                    "Follow-up sequence already taken",
                    {"dispute_id": followup.dispute_id, "sequence": followup.sequence},
                )
            thread.append(followup)
            thread.sort(key=lambda f: f.sequence)
        return staged
