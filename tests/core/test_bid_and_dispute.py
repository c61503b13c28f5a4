"""Unit Tests for the Bid and Dispute Entities"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from taskmarket.core.entities import (
    Bid,
    BidStatus,
    Dispute,
    DisputeOutcome,
    DisputeStatus,
    Evidence,
)
from taskmarket.core.exceptions import InvalidStateError, ValidationError

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _make_bid(**overrides) -> Bid:
    defaults = dict(bid_id="bid-001", work_item_id="wi-001", doer_id="doer-a", amount="80")
    defaults.update(overrides)
    return Bid(**defaults)


def _make_dispute(**overrides) -> Dispute:
    defaults = dict(
        dispute_id="dsp-001",
        work_item_id="wi-001",
        payment_id="pay-001",
        initiator_id="doer-a",
        reason="Poster is unresponsive",
    )
    defaults.update(overrides)
    return Dispute(**defaults)


# ============================================================================
# Bid
# ============================================================================


class TestBid:
    def test_amount_coerced(self):
        assert _make_bid().amount == Decimal("80")

    def test_accept(self):
        bid = _make_bid()
        bid.accept(NOW)
        assert bid.status == BidStatus.ACCEPTED
        assert not bid.is_pending()

    @pytest.mark.parametrize("terminal", [BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.WITHDRAWN])
    def test_terminal_bids_never_move(self, terminal):
        bid = _make_bid(status=terminal)
        with pytest.raises(InvalidStateError):
            bid.accept(NOW)
        with pytest.raises(InvalidStateError):
            bid.withdraw(NOW)

    def test_round_trip(self):
        bid = _make_bid(message="I can do it in two days")
        assert Bid.from_dict(bid.to_dict()) == bid


# ============================================================================
# Dispute
# ============================================================================


class TestDispute:
    def test_reason_required(self):
        with pytest.raises(ValidationError):
            _make_dispute(reason="   ")

    def test_resolution_path(self):
        dispute = _make_dispute()
        dispute.begin_review("arbiter-1", NOW)
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.is_active()

        dispute.resolve(DisputeOutcome.REFUND, "arbiter-1", "Work was not delivered", NOW)
        assert dispute.status == DisputeStatus.RESOLVED_REFUND
        assert not dispute.is_active()

        dispute.close(NOW)
        assert dispute.is_closed()
        assert dispute.outcome == DisputeStatus.RESOLVED_REFUND
        assert dispute.resolved_by == "arbiter-1"

    def test_cannot_resolve_twice(self):
        dispute = _make_dispute()
        dispute.resolve(DisputeOutcome.RELEASE, "arbiter-1", None, NOW)
        with pytest.raises(InvalidStateError):
            dispute.resolve(DisputeOutcome.REFUND, "arbiter-1", None, NOW)

    def test_followup_sequence_is_dense(self):
        dispute = _make_dispute()
        first = dispute.append_followup("doer-a", "Here is my draft", [], NOW)
        second = dispute.append_followup(
            "poster-1", "It is incomplete", [Evidence(url="https://files/1.png", name="1.png")], NOW
        )
        assert [first.sequence, second.sequence] == [1, 2]
        assert second.evidence[0].url == "https://files/1.png"

    def test_followup_on_closed_dispute_rejected(self):
        dispute = _make_dispute()
        dispute.resolve(DisputeOutcome.RELEASE, "arbiter-1", None, NOW)
        dispute.close(NOW)
        with pytest.raises(InvalidStateError):
            dispute.append_followup("doer-a", "One more thing", [], NOW)

    def test_empty_followup_rejected(self):
        with pytest.raises(ValidationError):
            _make_dispute().append_followup("doer-a", "", [], NOW)

    def test_to_dict(self):
        dispute = _make_dispute(evidence=[Evidence(url="https://files/a.pdf", name="a.pdf")])
        data = dispute.to_dict()
        assert data["status"] == "open"
        assert data["evidence"] == [{"url": "https://files/a.pdf", "name": "a.pdf", "type": "file"}]
        assert data["followups"] == []
