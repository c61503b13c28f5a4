"""Pytest Configuration and Fixtures

Shared fixtures for all tests: an in-memory ledger, a mocked gateway and
notifier, a controllable clock and a driver that walks work items through
the lifecycle.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from taskmarket.core.entities import Actor, Payment, WorkItem
from taskmarket.core.interfaces import (
    CaptureConfirmation,
    CaptureSession,
    INotifier,
    IPaymentGateway,
)
from taskmarket.infrastructure.persistence import InMemoryLedgerStore
from taskmarket.services import (
    AcceptedBid,
    AssignmentService,
    BidLedger,
    DisputeService,
    EscrowService,
    EventPublisher,
    Marketplace,
)

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock that only moves when told to"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def mock_gateway() -> IPaymentGateway:
    """Mock IPaymentGateway; captures get reference ``ref-<payment_id>``"""
    gateway = AsyncMock(spec=IPaymentGateway)
    gateway.initiate_capture.side_effect = lambda payment: CaptureSession(
        gateway_reference=f"ref-{payment.payment_id}",
        capture_token=f"tok-{payment.payment_id}",
        redirect_url="https://gateway.example.com/form",
        form_fields={"total_amount": str(payment.amount)},
    )
    return gateway


@pytest.fixture
def mock_notifier() -> INotifier:
    return AsyncMock(spec=INotifier)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def events(mock_notifier) -> EventPublisher:
    return EventPublisher(mock_notifier)


@pytest.fixture
def escrow(store, mock_gateway, events, clock) -> EscrowService:
    return EscrowService(store, mock_gateway, events, clock=clock)


@pytest.fixture
def assignments(store, escrow, events, clock) -> AssignmentService:
    return AssignmentService(store, escrow, events, clock=clock)


@pytest.fixture
def bid_ledger(store, escrow, events, clock) -> BidLedger:
    return BidLedger(store, escrow, events, clock=clock)


@pytest.fixture
def disputes(store, escrow, events, clock) -> DisputeService:
    return DisputeService(store, escrow, events, grace_period=timedelta(hours=72), clock=clock)


@pytest.fixture
def marketplace(assignments, bid_ledger, escrow, disputes) -> Marketplace:
    return Marketplace(assignments=assignments, bids=bid_ledger, escrow=escrow, disputes=disputes)


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def poster() -> Actor:
    return Actor.poster("poster-1")


@pytest.fixture
def doer_a() -> Actor:
    return Actor.doer("doer-a")


@pytest.fixture
def doer_b() -> Actor:
    return Actor.doer("doer-b")


@pytest.fixture
def arbiter() -> Actor:
    return Actor.arbiter("arbiter-1")


# =============================================================================
# Lifecycle driver
# =============================================================================


class MarketDriver:
    """Walks work items through the lifecycle using the real services"""

    def __init__(self, assignments, bid_ledger, escrow, clock):
        self.assignments = assignments
        self.bids = bid_ledger
        self.escrow = escrow
        self.clock = clock

    async def create(self, poster: Actor, budget: str = "100") -> WorkItem:
        return await self.assignments.create_work_item(
            poster,
            title="Logo design",
            description="Design a logo for a bakery",
            budget=budget,
            deadline=self.clock() + timedelta(days=7),
        )

    async def assign(
        self, poster: Actor, doer: Actor, amount: str = "80"
    ) -> AcceptedBid:
        item = await self.create(poster)
        bid = await self.bids.place_bid(doer, item.work_item_id, amount)
        return await self.bids.accept_bid(poster, bid.bid_id)

    async def capture(self, poster: Actor, work_item_id: str) -> Payment:
        session = await self.escrow.initiate_capture(poster, work_item_id)
        payment = await self.escrow.get_payment_for_work_item(poster, work_item_id)
        return await self.escrow.handle_capture_callback(
            CaptureConfirmation(
                gateway_reference=session.gateway_reference,
                success=True,
                amount=Decimal(payment.amount),
                gateway_ref_id="gw-0001",
            )
        )

    async def in_progress(
        self, poster: Actor, doer: Actor, paid: bool = True
    ) -> tuple[WorkItem, Payment]:
        accepted = await self.assign(poster, doer)
        work_item_id = accepted.work_item.work_item_id
        payment = accepted.payment
        if paid:
            payment = await self.capture(poster, work_item_id)
        item = await self.assignments.start_work(doer, work_item_id)
        return item, payment

    async def under_review(
        self, poster: Actor, doer: Actor, paid: bool = True
    ) -> tuple[WorkItem, Payment]:
        item, payment = await self.in_progress(poster, doer, paid=paid)
        item = await self.assignments.submit_work(doer, item.work_item_id)
        return item, payment


@pytest.fixture
def market(assignments, bid_ledger, escrow, clock) -> MarketDriver:
    return MarketDriver(assignments, bid_ledger, escrow, clock)
