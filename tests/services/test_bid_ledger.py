"""Unit Tests for BidLedger

Covers bid placement rules and the exclusivity protocol of accept_bid,
including concurrent acceptance against the in-memory ledger.
"""

import asyncio
from decimal import Decimal

import pytest

from taskmarket.core.entities import Actor, BidStatus, PaymentStatus, WorkItemStatus
from taskmarket.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from taskmarket.core.interfaces import MarketEventType
from taskmarket.infrastructure.persistence.memory.ledger_store import InMemoryLedgerTransaction
from taskmarket.services.bid_ledger import ALREADY_ASSIGNED

# ============================================================================
# place_bid
# ============================================================================


class TestPlaceBid:
    async def test_place_bid(self, market, bid_ledger, poster, doer_a, mock_notifier):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80", "Two days")

        assert bid.status == BidStatus.PENDING
        assert bid.amount == Decimal("80")
        mock_notifier.publish.assert_awaited_with(
            "poster-1",
            MarketEventType.BID_PLACED,
            {"work_item_id": item.work_item_id, "bid_id": bid.bid_id, "amount": "80"},
        )

    async def test_poster_role_cannot_bid(self, market, bid_ledger, poster):
        item = await market.create(poster)
        with pytest.raises(ForbiddenError):
            await bid_ledger.place_bid(Actor.poster("poster-2"), item.work_item_id, "50")

    async def test_cannot_bid_on_own_item(self, market, bid_ledger, poster):
        item = await market.create(poster)
        with pytest.raises(ForbiddenError):
            await bid_ledger.place_bid(Actor.doer("poster-1"), item.work_item_id, "50")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN"])
    async def test_invalid_amount(self, market, bid_ledger, poster, doer_a, amount):
        item = await market.create(poster)
        with pytest.raises(ValidationError):
            await bid_ledger.place_bid(doer_a, item.work_item_id, amount)

    async def test_unknown_work_item(self, bid_ledger, doer_a):
        with pytest.raises(NotFoundError):
            await bid_ledger.place_bid(doer_a, "wi-missing", "50")

    async def test_duplicate_bid_conflicts(self, market, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        with pytest.raises(ConflictError):
            await bid_ledger.place_bid(doer_a, item.work_item_id, "70")

    async def test_bid_on_assigned_item(self, market, bid_ledger, poster, doer_a, doer_b):
        accepted = await market.assign(poster, doer_a)
        with pytest.raises(InvalidStateError):
            await bid_ledger.place_bid(doer_b, accepted.work_item.work_item_id, "60")


class TestWithdrawBid:
    async def test_withdraw(self, market, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        withdrawn = await bid_ledger.withdraw_bid(doer_a, bid.bid_id)
        assert withdrawn.status == BidStatus.WITHDRAWN

    async def test_only_bidder_can_withdraw(self, market, bid_ledger, poster, doer_a, doer_b):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        with pytest.raises(ForbiddenError):
            await bid_ledger.withdraw_bid(doer_b, bid.bid_id)

    async def test_withdrawn_bid_cannot_be_accepted(self, market, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        await bid_ledger.withdraw_bid(doer_a, bid.bid_id)
        with pytest.raises(InvalidStateError):
            await bid_ledger.accept_bid(poster, bid.bid_id)


# ============================================================================
# accept_bid
# ============================================================================


class TestAcceptBid:
    async def test_accept_assigns_and_creates_pending_payment(
        self, market, bid_ledger, store, poster, doer_a, doer_b
    ):
        item = await market.create(poster, budget="100")
        bid_a = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        bid_b = await bid_ledger.place_bid(doer_b, item.work_item_id, "90")

        accepted = await bid_ledger.accept_bid(poster, bid_a.bid_id)

        assert accepted.work_item.status == WorkItemStatus.ASSIGNED
        assert accepted.work_item.doer_id == "doer-a"
        assert accepted.work_item.accepted_bid_id == bid_a.bid_id
        assert [b.bid_id for b in accepted.rejected_bids] == [bid_b.bid_id]

        assert store.bids[bid_a.bid_id].status == BidStatus.ACCEPTED
        assert store.bids[bid_b.bid_id].status == BidStatus.REJECTED
        assert store.work_items[item.work_item_id].status == WorkItemStatus.ASSIGNED

        payments = list(store.payments.values())
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.PENDING
        assert payments[0].amount == Decimal("80")
        assert payments[0].payer_id == "poster-1"
        assert payments[0].payee_id == "doer-a"

    async def test_foreign_poster_forbidden(self, market, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        with pytest.raises(ForbiddenError):
            await bid_ledger.accept_bid(Actor.poster("poster-2"), bid.bid_id)

    async def test_doer_cannot_accept(self, market, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        with pytest.raises(ForbiddenError):
            await bid_ledger.accept_bid(doer_a, bid.bid_id)

    async def test_second_accept_conflicts(self, market, bid_ledger, poster, doer_a, doer_b):
        item = await market.create(poster)
        bid_a = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        bid_b = await bid_ledger.place_bid(doer_b, item.work_item_id, "90")
        await bid_ledger.accept_bid(poster, bid_a.bid_id)

        with pytest.raises(ConflictError) as exc_info:
            await bid_ledger.accept_bid(poster, bid_b.bid_id)
        assert exc_info.value.message == ALREADY_ASSIGNED

    async def test_accept_on_cancelled_item(self, market, assignments, bid_ledger, poster, doer_a):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        await assignments.cancel(poster, item.work_item_id)
        with pytest.raises(InvalidStateError):
            await bid_ledger.accept_bid(poster, bid.bid_id)

    async def test_unknown_bid(self, bid_ledger, poster):
        with pytest.raises(NotFoundError):
            await bid_ledger.accept_bid(poster, "bid-missing")

    async def test_locks_work_item_before_bid(self, market, bid_ledger, poster, doer_a, monkeypatch):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        locks = []
        get_work_item = InMemoryLedgerTransaction.get_work_item
        get_bid = InMemoryLedgerTransaction.get_bid

        async def locking_get_work_item(tx, work_item_id, for_update=False):
            if for_update:
                locks.append("work_item")
            return await get_work_item(tx, work_item_id, for_update)

        async def locking_get_bid(tx, bid_id, for_update=False):
            if for_update:
                locks.append("bid")
            return await get_bid(tx, bid_id, for_update)

        monkeypatch.setattr(InMemoryLedgerTransaction, "get_work_item", locking_get_work_item)
        monkeypatch.setattr(InMemoryLedgerTransaction, "get_bid", locking_get_bid)

        await bid_ledger.accept_bid(poster, bid.bid_id)

        assert locks == ["work_item", "bid"]


class TestConcurrentAccept:
    async def test_exactly_one_winner(self, market, bid_ledger, store, poster, doer_a, doer_b):
        item = await market.create(poster)
        bid_a = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        bid_b = await bid_ledger.place_bid(doer_b, item.work_item_id, "90")

        results = await asyncio.gather(
            bid_ledger.accept_bid(poster, bid_a.bid_id),
            bid_ledger.accept_bid(poster, bid_b.bid_id),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConflictError)

        accepted = [b for b in store.bids.values() if b.status == BidStatus.ACCEPTED]
        assert len(accepted) == 1
        assert store.work_items[item.work_item_id].doer_id == accepted[0].doer_id
        assert len(store.payments) == 1

    async def test_many_concurrent_accepts(self, market, bid_ledger, store, poster):
        item = await market.create(poster)
        bids = [
            await bid_ledger.place_bid(Actor.doer(f"doer-{i}"), item.work_item_id, str(50 + i))
            for i in range(6)
        ]

        results = await asyncio.gather(
            *(bid_ledger.accept_bid(poster, b.bid_id) for b in bids),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
        assert sum(1 for b in store.bids.values() if b.status == BidStatus.ACCEPTED) == 1
        assert len(store.payments) == 1

    async def test_same_bid_accepted_twice_concurrently(
        self, market, bid_ledger, store, poster, doer_a
    ):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")

        results = await asyncio.gather(
            bid_ledger.accept_bid(poster, bid.bid_id),
            bid_ledger.accept_bid(poster, bid.bid_id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert len(store.payments) == 1


class TestBidDuringAccept:
    @staticmethod
    async def _late_bid(bid_ledger, work_item_id: str, yields: int):
        for _ in range(yields):
            await asyncio.sleep(0)
        return await bid_ledger.place_bid(Actor.doer("doer-late"), work_item_id, "70")

    @pytest.mark.parametrize("yields", range(8))
    async def test_no_pending_bid_on_assigned_item(
        self, market, bid_ledger, store, poster, doer_a, yields
    ):
        item = await market.create(poster)
        bid_a = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")

        accepted, late = await asyncio.gather(
            bid_ledger.accept_bid(poster, bid_a.bid_id),
            self._late_bid(bid_ledger, item.work_item_id, yields),
            return_exceptions=True,
        )

        assert not (isinstance(accepted, Exception) and isinstance(late, Exception))
        for result in (accepted, late):
            if isinstance(result, Exception):
                assert isinstance(result, (ConflictError, InvalidStateError))

        bids = [b for b in store.bids.values() if b.work_item_id == item.work_item_id]
        if store.work_items[item.work_item_id].status == WorkItemStatus.ASSIGNED:
            assert all(b.status != BidStatus.PENDING for b in bids)
            assert len(store.payments) == 1
        else:
            assert isinstance(accepted, ConflictError)
            assert len(store.payments) == 0

    async def test_bid_after_cancel_rejected(self, market, assignments, bid_ledger, poster):
        item = await market.create(poster)

        cancelled, late = await asyncio.gather(
            assignments.cancel(poster, item.work_item_id),
            self._late_bid(bid_ledger, item.work_item_id, 1),
            return_exceptions=True,
        )

        if not isinstance(late, Exception):
            assert isinstance(cancelled, ConflictError)
        else:
            assert isinstance(late, (ConflictError, InvalidStateError))
            assert cancelled.status == WorkItemStatus.CANCELLED


class TestListBids:
    async def test_visibility(self, market, bid_ledger, poster, doer_a, doer_b, arbiter):
        item = await market.create(poster)
        await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        await bid_ledger.place_bid(doer_b, item.work_item_id, "90")

        assert len(await bid_ledger.list_bids(poster, item.work_item_id)) == 2
        assert len(await bid_ledger.list_bids(arbiter, item.work_item_id)) == 2
        own = await bid_ledger.list_bids(doer_a, item.work_item_id)
        assert [b.doer_id for b in own] == ["doer-a"]
