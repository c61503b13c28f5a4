"""Unit Tests for EscrowService

Capture initiation, at-least-once capture callbacks, settlement after
commit and payout confirmation.
"""

import asyncio
from decimal import Decimal

import pytest

from taskmarket.core.entities import PAYMENT_RANK, Actor, PaymentStatus
from taskmarket.core.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from taskmarket.core.interfaces import ARBITERS_TOPIC, CaptureConfirmation, MarketEventType


def _confirmation(
    reference: str, amount: str = "80", success: bool = True, failure_reason: str | None = None
):
    return CaptureConfirmation(
        gateway_reference=reference,
        success=success,
        amount=Decimal(amount),
        gateway_ref_id="gw-0001",
        failure_reason=failure_reason,
    )


# ============================================================================
# initiate_capture
# ============================================================================


class TestInitiateCapture:
    async def test_records_gateway_reference(self, market, escrow, store, poster, doer_a):
        accepted = await market.assign(poster, doer_a)

        session = await escrow.initiate_capture(poster, accepted.work_item.work_item_id)

        payment = store.payments[accepted.payment.payment_id]
        assert session.gateway_reference == f"ref-{payment.payment_id}"
        assert payment.gateway_reference == session.gateway_reference
        assert payment.capture_token == session.capture_token
        assert payment.status == PaymentStatus.PENDING

    async def test_only_poster(self, market, escrow, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        with pytest.raises(ForbiddenError):
            await escrow.initiate_capture(doer_a, accepted.work_item.work_item_id)

    async def test_already_paid(self, market, escrow, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        await market.capture(poster, accepted.work_item.work_item_id)
        with pytest.raises(InvalidStateError):
            await escrow.initiate_capture(poster, accepted.work_item.work_item_id)

    async def test_open_item_has_no_payment(self, market, escrow, poster):
        item = await market.create(poster)
        with pytest.raises(NotFoundError):
            await escrow.initiate_capture(poster, item.work_item_id)

    async def test_gateway_error_leaves_payment_untouched(
        self, market, escrow, store, mock_gateway, poster, doer_a
    ):
        accepted = await market.assign(poster, doer_a)
        mock_gateway.initiate_capture.side_effect = GatewayError("Gateway capture failed")

        with pytest.raises(GatewayError):
            await escrow.initiate_capture(poster, accepted.work_item.work_item_id)
        assert store.payments[accepted.payment.payment_id].gateway_reference is None

    async def test_new_payment_after_gateway_failure(self, market, escrow, store, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        work_item_id = accepted.work_item.work_item_id
        first = await escrow.initiate_capture(poster, work_item_id)
        await escrow.handle_capture_callback(
            _confirmation(first.gateway_reference, success=False, failure_reason="canceled")
        )

        second = await escrow.initiate_capture(poster, work_item_id)

        renewed = await escrow.get_payment_for_work_item(poster, work_item_id)
        assert renewed.payment_id != accepted.payment.payment_id
        assert renewed.status == PaymentStatus.PENDING
        assert renewed.bid_id == accepted.bid.bid_id
        assert renewed.amount == Decimal("80")
        assert second.gateway_reference == f"ref-{renewed.payment_id}"
        assert store.payments[accepted.payment.payment_id].status == PaymentStatus.FAILED

        paid = await escrow.handle_capture_callback(_confirmation(second.gateway_reference))
        assert paid.payment_id == renewed.payment_id
        assert paid.status == PaymentStatus.PAID

    async def test_no_new_payment_after_cancel(self, market, escrow, assignments, store, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        await assignments.cancel(poster, accepted.work_item.work_item_id)

        with pytest.raises(InvalidStateError):
            await escrow.initiate_capture(poster, accepted.work_item.work_item_id)
        assert len(store.payments) == 1


# ============================================================================
# handle_capture_callback
# ============================================================================


class TestCaptureCallback:
    async def _initiated(self, market, escrow, poster, doer):
        accepted = await market.assign(poster, doer)
        session = await escrow.initiate_capture(poster, accepted.work_item.work_item_id)
        return accepted, session.gateway_reference

    async def test_capture(self, market, escrow, store, poster, doer_a, mock_notifier):
        accepted, reference = await self._initiated(market, escrow, poster, doer_a)

        payment = await escrow.handle_capture_callback(_confirmation(reference))

        assert payment.status == PaymentStatus.PAID
        assert payment.gateway_ref_id == "gw-0001"
        assert store.payments[payment.payment_id].captured_at is not None
        mock_notifier.publish.assert_any_await(
            "poster-1",
            MarketEventType.PAYMENT_CAPTURED,
            {"payment_id": payment.payment_id, "work_item_id": accepted.work_item.work_item_id},
        )

    async def test_replay_is_idempotent(self, market, escrow, store, poster, doer_a):
        _, reference = await self._initiated(market, escrow, poster, doer_a)

        first = await escrow.handle_capture_callback(_confirmation(reference))
        version_after_first = store.payments[first.payment_id].version
        second = await escrow.handle_capture_callback(_confirmation(reference))

        assert second.status == PaymentStatus.PAID
        assert second.captured_at == first.captured_at
        assert store.payments[first.payment_id].version == version_after_first

    async def test_amount_mismatch_rejected(self, market, escrow, store, poster, doer_a):
        accepted, reference = await self._initiated(market, escrow, poster, doer_a)
        with pytest.raises(ValidationError):
            await escrow.handle_capture_callback(_confirmation(reference, amount="79.99"))
        assert store.payments[accepted.payment.payment_id].status == PaymentStatus.PENDING

    async def test_unknown_reference(self, escrow):
        with pytest.raises(NotFoundError):
            await escrow.handle_capture_callback(_confirmation("ref-unknown"))

    async def test_failure_callback(self, market, escrow, poster, doer_a):
        _, reference = await self._initiated(market, escrow, poster, doer_a)
        payment = await escrow.handle_capture_callback(
            _confirmation(reference, success=False, failure_reason="canceled")
        )
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "canceled"

    async def test_failure_after_capture_ignored(self, market, escrow, poster, doer_a):
        _, reference = await self._initiated(market, escrow, poster, doer_a)
        await escrow.handle_capture_callback(_confirmation(reference))
        payment = await escrow.handle_capture_callback(_confirmation(reference, success=False))
        assert payment.status == PaymentStatus.PAID

    async def test_capture_after_void(self, market, escrow, assignments, poster, doer_a):
        accepted, reference = await self._initiated(market, escrow, poster, doer_a)
        await assignments.cancel(poster, accepted.work_item.work_item_id)
        with pytest.raises(InvalidStateError):
            await escrow.handle_capture_callback(_confirmation(reference))

    async def test_status_never_regresses(self, market, escrow, store, poster, doer_a):
        _, reference = await self._initiated(market, escrow, poster, doer_a)
        callbacks = [
            _confirmation(reference),
            _confirmation(reference, success=False),
            _confirmation(reference),
        ]
        ranks = []
        for confirmation in callbacks:
            payment = await escrow.handle_capture_callback(confirmation)
            ranks.append(PAYMENT_RANK[payment.status])
        assert ranks == sorted(ranks)

    async def test_concurrent_duplicate_callbacks(self, market, escrow, store, poster, doer_a):
        accepted, reference = await self._initiated(market, escrow, poster, doer_a)

        results = await asyncio.gather(
            escrow.handle_capture_callback(_confirmation(reference)),
            escrow.handle_capture_callback(_confirmation(reference)),
        )

        assert [p.status for p in results] == [PaymentStatus.PAID, PaymentStatus.PAID]
        assert store.payments[accepted.payment.payment_id].status == PaymentStatus.PAID


# ============================================================================
# Settlement
# ============================================================================


class TestSettlement:
    async def _released_with_failed_gateway(self, market, assignments, mock_gateway, poster, doer):
        item, _ = await market.under_review(poster, doer)
        mock_gateway.release.side_effect = GatewayError("Gateway release failed: timeout")
        _, payment = await assignments.approve_and_release(poster, item.work_item_id)
        return payment

    async def test_failure_notifies_arbiters(
        self, market, assignments, mock_gateway, mock_notifier, poster, doer_a
    ):
        payment = await self._released_with_failed_gateway(
            market, assignments, mock_gateway, poster, doer_a
        )
        mock_notifier.publish.assert_any_await(
            ARBITERS_TOPIC,
            MarketEventType.SETTLEMENT_FAILED,
            {"payment_id": payment.payment_id, "error": "Gateway release failed: timeout"},
        )

    async def test_pending_settlements_listed_for_arbiters(
        self, market, assignments, escrow, mock_gateway, poster, doer_a, arbiter
    ):
        payment = await self._released_with_failed_gateway(
            market, assignments, mock_gateway, poster, doer_a
        )
        pending = await escrow.list_pending_settlements(arbiter)
        assert [p.payment_id for p in pending] == [payment.payment_id]

        with pytest.raises(ForbiddenError):
            await escrow.list_pending_settlements(poster)

    async def test_retry_settlement(
        self, market, assignments, escrow, store, mock_gateway, poster, doer_a, arbiter
    ):
        payment = await self._released_with_failed_gateway(
            market, assignments, mock_gateway, poster, doer_a
        )
        mock_gateway.release.side_effect = None

        settled = await escrow.retry_settlement(arbiter, payment.payment_id)

        assert not settled.settlement_pending
        assert settled.status == PaymentStatus.RELEASED
        assert not store.payments[payment.payment_id].settlement_pending
        assert mock_gateway.release.await_count == 2

    async def test_retry_still_failing_raises(
        self, market, assignments, escrow, mock_gateway, poster, doer_a, arbiter
    ):
        payment = await self._released_with_failed_gateway(
            market, assignments, mock_gateway, poster, doer_a
        )
        with pytest.raises(GatewayError):
            await escrow.retry_settlement(arbiter, payment.payment_id)

    async def test_retry_requires_arbiter(
        self, market, assignments, escrow, mock_gateway, poster, doer_a
    ):
        payment = await self._released_with_failed_gateway(
            market, assignments, mock_gateway, poster, doer_a
        )
        with pytest.raises(ForbiddenError):
            await escrow.retry_settlement(poster, payment.payment_id)

    async def test_retry_without_pending_is_noop(
        self, market, assignments, escrow, mock_gateway, poster, doer_a, arbiter
    ):
        item, _ = await market.under_review(poster, doer_a)
        _, payment = await assignments.approve_and_release(poster, item.work_item_id)

        result = await escrow.retry_settlement(arbiter, payment.payment_id)

        assert not result.settlement_pending
        mock_gateway.release.assert_awaited_once()


# ============================================================================
# Payout confirmation and queries
# ============================================================================


class TestConfirmPayout:
    async def test_confirm_payout_is_idempotent(self, market, assignments, escrow, poster, doer_a):
        item, _ = await market.under_review(poster, doer_a)
        _, payment = await assignments.approve_and_release(poster, item.work_item_id)

        first = await escrow.confirm_payout(payment.payment_id)
        second = await escrow.confirm_payout(payment.payment_id)

        assert first.status == PaymentStatus.COMPLETED
        assert second.status == PaymentStatus.COMPLETED
        assert second.settled_at == first.settled_at

    async def test_confirm_unreleased(self, market, escrow, poster, doer_a):
        accepted = await market.assign(poster, doer_a)
        with pytest.raises(InvalidStateError):
            await escrow.confirm_payout(accepted.payment.payment_id)


class TestGetPayment:
    async def test_visibility(self, market, escrow, poster, doer_a, doer_b, arbiter):
        accepted = await market.assign(poster, doer_a)
        work_item_id = accepted.work_item.work_item_id

        for actor in (poster, doer_a, arbiter):
            payment = await escrow.get_payment_for_work_item(actor, work_item_id)
            assert payment.payment_id == accepted.payment.payment_id

        with pytest.raises(ForbiddenError):
            await escrow.get_payment_for_work_item(doer_b, work_item_id)
        with pytest.raises(ForbiddenError):
            await escrow.get_payment_for_work_item(Actor.poster("poster-2"), work_item_id)
