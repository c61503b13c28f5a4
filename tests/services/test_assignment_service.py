"""Unit Tests for AssignmentService

Work item creation, the execution edges and the closing operations
(approve_and_release, cancel) against the in-memory ledger.
"""

from datetime import timedelta

import pytest

from taskmarket.core.entities import Actor, BidStatus, PaymentStatus, WorkItemStatus
from taskmarket.core.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from taskmarket.core.interfaces import CaptureConfirmation, MarketEventType

# ============================================================================
# create_work_item
# ============================================================================


class TestCreateWorkItem:
    async def test_create(self, assignments, store, poster, clock):
        item = await assignments.create_work_item(
            poster,
            title="  Logo design ",
            description="Design a logo",
            budget="100",
            deadline=clock() + timedelta(days=3),
            category="design",
        )
        assert item.status == WorkItemStatus.OPEN
        assert item.title == "Logo design"
        assert item.category == "design"
        assert item.work_item_id in store.work_items

    async def test_naive_deadline_treated_as_utc(self, assignments, poster, clock):
        naive = (clock() + timedelta(days=1)).replace(tzinfo=None)
        item = await assignments.create_work_item(poster, "Title", "Desc", "10", naive)
        assert item.deadline.tzinfo is not None

    async def test_doer_cannot_create(self, assignments, doer_a, clock):
        with pytest.raises(ForbiddenError):
            await assignments.create_work_item(
                doer_a, "Title", "Desc", "10", clock() + timedelta(days=1)
            )

    @pytest.mark.parametrize(
        "title,description,budget",
        [("", "Desc", "10"), ("Title", "  ", "10"), ("Title", "Desc", "0")],
    )
    async def test_invalid_fields(self, assignments, poster, clock, title, description, budget):
        with pytest.raises(ValidationError):
            await assignments.create_work_item(
                poster, title, description, budget, clock() + timedelta(days=1)
            )

    async def test_deadline_required_and_future(self, assignments, poster, clock):
        with pytest.raises(ValidationError):
            await assignments.create_work_item(poster, "Title", "Desc", "10", None)
        with pytest.raises(ValidationError):
            await assignments.create_work_item(
                poster, "Title", "Desc", "10", clock() - timedelta(minutes=1)
            )


# ============================================================================
# Execution
# ============================================================================


class TestExecution:
    async def test_start_and_submit(self, market, assignments, poster, doer_a, mock_notifier):
        accepted = await market.assign(poster, doer_a)
        work_item_id = accepted.work_item.work_item_id

        item = await assignments.start_work(doer_a, work_item_id)
        assert item.status == WorkItemStatus.IN_PROGRESS

        item = await assignments.submit_work(doer_a, work_item_id)
        assert item.status == WorkItemStatus.UNDER_REVIEW
        mock_notifier.publish.assert_awaited_with(
            "poster-1", MarketEventType.WORK_SUBMITTED, {"work_item_id": work_item_id}
        )

    async def test_submit_by_other_doer_forbidden(
        self, market, assignments, poster, doer_a, doer_b
    ):
        item, _ = await market.in_progress(poster, doer_a)
        with pytest.raises(ForbiddenError):
            await assignments.submit_work(doer_b, item.work_item_id)

    async def test_submit_while_open_invalid_state(self, market, assignments, poster, doer_a):
        item = await market.create(poster)
        with pytest.raises(InvalidStateError):
            await assignments.submit_work(doer_a, item.work_item_id)

    async def test_start_by_other_doer_forbidden(self, market, assignments, poster, doer_a, doer_b):
        accepted = await market.assign(poster, doer_a)
        with pytest.raises(ForbiddenError):
            await assignments.start_work(doer_b, accepted.work_item.work_item_id)

    async def test_request_revision(self, market, assignments, poster, doer_a):
        item, _ = await market.under_review(poster, doer_a)
        item = await assignments.request_revision(poster, item.work_item_id)
        assert item.status == WorkItemStatus.IN_PROGRESS
        item = await assignments.submit_work(doer_a, item.work_item_id)
        assert item.status == WorkItemStatus.UNDER_REVIEW

    async def test_unknown_work_item(self, assignments, doer_a):
        with pytest.raises(NotFoundError):
            await assignments.start_work(doer_a, "wi-missing")


# ============================================================================
# approve_and_release
# ============================================================================


class TestApproveAndRelease:
    async def test_approve_releases_payment(
        self, market, assignments, store, mock_gateway, poster, doer_a
    ):
        item, payment = await market.under_review(poster, doer_a)

        item, payment = await assignments.approve_and_release(poster, item.work_item_id)

        assert item.status == WorkItemStatus.COMPLETED
        assert payment.status == PaymentStatus.RELEASED
        assert not payment.settlement_pending
        mock_gateway.release.assert_awaited_once()
        stored = store.payments[payment.payment_id]
        assert stored.status == PaymentStatus.RELEASED
        assert stored.released_at is not None

    async def test_approve_requires_captured_payment(self, market, assignments, poster, doer_a):
        item, _ = await market.under_review(poster, doer_a, paid=False)
        with pytest.raises(InvalidStateError):
            await assignments.approve_and_release(poster, item.work_item_id)

    async def test_doer_cannot_approve(self, market, assignments, poster, doer_a):
        item, _ = await market.under_review(poster, doer_a)
        with pytest.raises(ForbiddenError):
            await assignments.approve_and_release(doer_a, item.work_item_id)

    async def test_approve_from_in_progress_invalid(self, market, assignments, poster, doer_a):
        item, _ = await market.in_progress(poster, doer_a)
        with pytest.raises(InvalidStateError):
            await assignments.approve_and_release(poster, item.work_item_id)

    async def test_gateway_failure_keeps_release_committed(
        self, market, assignments, store, mock_gateway, poster, doer_a
    ):
        item, _ = await market.under_review(poster, doer_a)
        mock_gateway.release.side_effect = GatewayError("Gateway release failed: timeout")

        item, payment = await assignments.approve_and_release(poster, item.work_item_id)

        assert item.status == WorkItemStatus.COMPLETED
        stored = store.payments[payment.payment_id]
        assert stored.status == PaymentStatus.RELEASED
        assert stored.settlement_pending

    async def test_notifier_errors_do_not_undo_transitions(
        self, market, assignments, bid_ledger, store, mock_notifier, poster, doer_a, doer_b
    ):
        mock_notifier.publish.side_effect = RuntimeError("broker unavailable")
        item = await market.create(poster)
        bid_a = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")
        await bid_ledger.place_bid(doer_b, item.work_item_id, "90")

        accepted = await bid_ledger.accept_bid(poster, bid_a.bid_id)

        assert accepted.work_item.status == WorkItemStatus.ASSIGNED
        assert store.work_items[item.work_item_id].status == WorkItemStatus.ASSIGNED

        await market.capture(poster, item.work_item_id)
        await assignments.start_work(doer_a, item.work_item_id)
        await assignments.submit_work(doer_a, item.work_item_id)
        completed, payment = await assignments.approve_and_release(poster, item.work_item_id)

        assert completed.status == WorkItemStatus.COMPLETED
        assert store.work_items[item.work_item_id].status == WorkItemStatus.COMPLETED
        assert store.payments[payment.payment_id].status == PaymentStatus.RELEASED
        assert not store.payments[payment.payment_id].settlement_pending
        assert mock_notifier.publish.await_count > 0


# ============================================================================
# cancel
# ============================================================================


class TestCancel:
    async def test_cancel_open_item(
        self, market, assignments, bid_ledger, store, poster, doer_a
    ):
        item = await market.create(poster)
        bid = await bid_ledger.place_bid(doer_a, item.work_item_id, "80")

        cancelled = await assignments.cancel(poster, item.work_item_id)

        assert cancelled.status == WorkItemStatus.CANCELLED
        assert store.bids[bid.bid_id].status == BidStatus.REJECTED
        assert store.payments == {}

    async def test_cancel_then_approve_invalid_state(self, market, assignments, poster):
        item = await market.create(poster)
        await assignments.cancel(poster, item.work_item_id)
        with pytest.raises(InvalidStateError):
            await assignments.approve_and_release(poster, item.work_item_id)

    async def test_cancel_assigned_voids_payment(self, market, assignments, store, poster, doer_a):
        accepted = await market.assign(poster, doer_a)

        cancelled = await assignments.cancel(poster, accepted.work_item.work_item_id)

        assert cancelled.status == WorkItemStatus.CANCELLED
        assert cancelled.doer_id == "doer-a"
        payment = store.payments[accepted.payment.payment_id]
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "cancelled_before_capture"

    async def test_cancel_after_capture_rejected(self, market, assignments, store, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        work_item_id = accepted.work_item.work_item_id
        await market.capture(poster, work_item_id)

        with pytest.raises(InvalidStateError):
            await assignments.cancel(poster, work_item_id)
        assert store.work_items[work_item_id].status == WorkItemStatus.ASSIGNED
        assert store.payments[accepted.payment.payment_id].status == PaymentStatus.PAID

    async def test_cancel_after_gateway_failure(
        self, market, assignments, escrow, store, poster, doer_a
    ):
        accepted = await market.assign(poster, doer_a)
        work_item_id = accepted.work_item.work_item_id
        session = await escrow.initiate_capture(poster, work_item_id)
        await escrow.handle_capture_callback(
            CaptureConfirmation(
                gateway_reference=session.gateway_reference,
                success=False,
                failure_reason="canceled",
            )
        )

        cancelled = await assignments.cancel(poster, work_item_id)

        assert cancelled.status == WorkItemStatus.CANCELLED
        payment = store.payments[accepted.payment.payment_id]
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "canceled"

    async def test_cancel_in_progress_invalid(self, market, assignments, poster, doer_a):
        item, _ = await market.in_progress(poster, doer_a)
        with pytest.raises(InvalidStateError):
            await assignments.cancel(poster, item.work_item_id)

    async def test_foreign_poster_cannot_cancel(self, market, assignments, poster):
        item = await market.create(poster)
        with pytest.raises(ForbiddenError):
            await assignments.cancel(Actor.poster("poster-2"), item.work_item_id)


class TestQueries:
    async def test_list_by_status(self, market, assignments, poster, doer_a):
        open_item = await market.create(poster)
        await market.assign(poster, doer_a)

        listed = await assignments.list_work_items(status=WorkItemStatus.OPEN)
        assert [i.work_item_id for i in listed] == [open_item.work_item_id]

        mine = await assignments.list_work_items(doer_id="doer-a")
        assert len(mine) == 1
