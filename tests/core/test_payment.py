"""Unit Tests for the Payment Entity

Status must only move forward through the rank order, and money can
only leave escrow after it was captured.
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from taskmarket.core.entities import PAYMENT_RANK, Payment, PaymentStatus, SettlementAction
from taskmarket.core.entities.payment import PAYMENT_TRANSITIONS
from taskmarket.core.exceptions import InvalidStateError, ValidationError

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _make_payment(**overrides) -> Payment:
    defaults = dict(
        payment_id="pay-001",
        work_item_id="wi-001",
        bid_id="bid-001",
        payer_id="poster-1",
        payee_id="doer-a",
        amount=Decimal("80"),
    )
    defaults.update(overrides)
    return Payment(**defaults)


class TestPaymentCreation:
    def test_defaults(self):
        payment = _make_payment()
        assert payment.status == PaymentStatus.PENDING
        assert not payment.is_captured
        assert payment.currency == "NPR"

    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            _make_payment(amount=Decimal("0"))


class TestMonotonicStatus:
    def test_no_transition_lowers_rank(self):
        for source, targets in PAYMENT_TRANSITIONS.items():
            for target in targets:
                assert PAYMENT_RANK[target] >= PAYMENT_RANK[source], (source, target)

    def test_terminal_statuses(self):
        for status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, PaymentStatus.FAILED):
            assert PAYMENT_TRANSITIONS[status] == frozenset()

    def test_paid_cannot_return_to_pending_or_fail(self):
        payment = _make_payment()
        payment.capture(NOW, "gw-1")
        with pytest.raises(InvalidStateError):
            payment.fail("late failure", NOW)
        assert payment.status == PaymentStatus.PAID

    def test_released_cannot_be_refunded(self):
        payment = _make_payment()
        payment.capture(NOW)
        payment.release(NOW)
        with pytest.raises(InvalidStateError):
            payment.refund(NOW)
        assert payment.status == PaymentStatus.RELEASED


class TestCaptureAndSettlement:
    def test_capture_records_gateway_reference(self):
        payment = _make_payment()
        payment.capture(NOW, "gw-1")
        assert payment.status == PaymentStatus.PAID
        assert payment.captured_at == NOW
        assert payment.gateway_ref_id == "gw-1"

    def test_release_requires_capture(self):
        payment = _make_payment()
        payment.freeze(NOW)
        with pytest.raises(InvalidStateError):
            payment.release(NOW)

    def test_release_flags_pending_settlement(self):
        payment = _make_payment()
        payment.capture(NOW)
        payment.release(NOW)
        assert payment.settlement_pending
        assert payment.owed_settlement() == SettlementAction.RELEASE

        payment.mark_settled(NOW)
        assert payment.owed_settlement() is None

    def test_refund_from_dispute(self):
        payment = _make_payment()
        payment.capture(NOW)
        payment.freeze(NOW)
        payment.refund(NOW)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.owed_settlement() == SettlementAction.REFUND

    def test_void_uncaptured(self):
        payment = _make_payment()
        payment.void("cancelled_before_capture", NOW)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "cancelled_before_capture"

    def test_void_captured_is_rejected(self):
        payment = _make_payment()
        payment.capture(NOW)
        with pytest.raises(InvalidStateError):
            payment.void("too late", NOW)

    def test_capture_while_disputed_keeps_status(self):
        payment = _make_payment()
        payment.freeze(NOW)
        payment.record_capture_while_disputed(NOW, "gw-2")
        assert payment.status == PaymentStatus.DISPUTED
        assert payment.is_captured

    def test_confirm_payout(self):
        payment = _make_payment()
        payment.capture(NOW)
        payment.release(NOW)
        payment.confirm_payout(NOW)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.settled_at == NOW
