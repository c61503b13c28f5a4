"""Bid Ledger

Bids on open work items and the exclusivity protocol for accepting one.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from ..core.entities import (
    Actor,
    ActorRole,
    Bid,
    BidStatus,
    Payment,
    WorkItem,
    WorkItemOperation,
    WorkItemStatus,
)
from ..core.exceptions import ConflictError, ForbiddenError, InvalidStateError
from ..core.interfaces import ILedgerStore, MarketEventType
from .base import Clock, parse_amount, require, utc_now
from .escrow_service import EscrowService
from .events import EventPublisher

logger = structlog.get_logger()

ALREADY_ASSIGNED = "This task was already assigned"


@dataclass
class AcceptedBid:
    """Everything committed by one successful bid acceptance"""

    work_item: WorkItem
    bid: Bid
    payment: Payment
    rejected_bids: list[Bid] = field(default_factory=list)


class BidLedger:
    """
    Bid Ledger

    ``accept_bid`` commits the assignment, the winning bid, the rejection
    of every sibling bid and the PENDING payment as one unit. Losing a race
    against a concurrent acceptance raises ``ConflictError``.
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

    async def place_bid(
        self,
        doer: Actor,
        work_item_id: str,
        amount: Decimal | str | float,
        message: str = "",
    ) -> Bid:
        """
        Place a bid on an open work item

        Raises:
            ValidationError: Amount is not positive
            ForbiddenError: Caller is not a doer, or bids on their own work item
            NotFoundError: Work item does not exist
            InvalidStateError: Work item is not OPEN
            ConflictError: The doer already has a bid on this work item, or the
                work item changed concurrently
        """
        if doer.role != ActorRole.DOER:
            raise ForbiddenError("Only doers can place bids")
        bid_amount = parse_amount(amount)
        now = self.clock()

        async with self.store.transaction() as tx:
            work_item = require(
                await tx.get_work_item(work_item_id, for_update=True), "WorkItem", work_item_id
            )
            if work_item.poster_id == doer.actor_id:
                raise ForbiddenError("You cannot bid on your own work item")
            if not work_item.is_open():
                raise InvalidStateError(
                    "This task is no longer open for bidding",
                    {"work_item_id": work_item_id, "status": work_item.status.value},
                )
            if await tx.find_bid(work_item_id, doer.actor_id) is not None:
                raise ConflictError(
                    "You have already placed a bid on this task",
                    {"work_item_id": work_item_id},
                )

            bid = Bid(
                bid_id=Bid.new_id(),
                work_item_id=work_item_id,
                doer_id=doer.actor_id,
                amount=bid_amount,
                message=message or "",
                created_at=now,
                updated_at=now,
            )
            await tx.add_bid(bid)
            # Bump the version so a concurrent acceptance or cancellation conflicts
            work_item.updated_at = now
            await tx.update_work_item(work_item)

        logger.info(
            "bid_placed",
            bid_id=bid.bid_id,
            work_item_id=work_item_id,
            doer_id=doer.actor_id,
            amount=str(bid_amount),
        )
        await self.events.publish(
            work_item.poster_id,
            MarketEventType.BID_PLACED,
            {"work_item_id": work_item_id, "bid_id": bid.bid_id, "amount": str(bid_amount)},
        )
        return bid

    async def withdraw_bid(self, doer: Actor, bid_id: str) -> Bid:
        """Withdraw a pending bid while its work item is still open"""
        async with self.store.transaction() as tx:
            bid = require(await tx.get_bid(bid_id, for_update=True), "Bid", bid_id)
            if doer.role != ActorRole.DOER or bid.doer_id != doer.actor_id:
                raise ForbiddenError("You can only withdraw your own bids")
            work_item = require(
                await tx.get_work_item(bid.work_item_id), "WorkItem", bid.work_item_id
            )
            if not work_item.is_open():
                raise InvalidStateError(
                    "Bids can only be withdrawn while the task is open",
                    {"work_item_id": work_item.work_item_id, "status": work_item.status.value},
                )
            bid.withdraw(self.clock())
            await tx.update_bid(bid)

        logger.info("bid_withdrawn", bid_id=bid_id, work_item_id=bid.work_item_id)
        await self.events.publish(
            work_item.poster_id,
            MarketEventType.BID_WITHDRAWN,
            {"work_item_id": bid.work_item_id, "bid_id": bid_id},
        )
        return bid

    async def accept_bid(self, poster: Actor, bid_id: str) -> AcceptedBid:
        """
        Accept a bid: the exclusivity protocol

        Re-reads the work item and the bid, then in one transaction assigns
        the work item, accepts the bid, rejects the pending siblings and
        creates the PENDING payment.

        Raises:
            ForbiddenError: Caller is not the poster of the work item
            NotFoundError: Bid or work item does not exist
            InvalidStateError: Work item is CANCELLED or the bid was withdrawn
            ConflictError: Another acceptance won (work item already assigned,
                bid already decided, or a concurrent commit)
        """
        if poster.role != ActorRole.POSTER:
            raise ForbiddenError("Only the poster of this work item can accept bids")
        now = self.clock()

        try:
            async with self.store.transaction() as tx:
                # Lock order: work item, then bids
                work_item_id = require(await tx.get_bid(bid_id), "Bid", bid_id).work_item_id
                work_item = require(
                    await tx.get_work_item(work_item_id, for_update=True),
                    "WorkItem",
                    work_item_id,
                )
                bid = require(await tx.get_bid(bid_id, for_update=True), "Bid", bid_id)
                if poster.actor_id != work_item.poster_id:
                    raise ForbiddenError("Only the poster of this work item can accept bids")

                self._check_acceptable(work_item, bid)
                work_item.ensure_transition(WorkItemOperation.ACCEPT_BID, poster)

                if await tx.get_payment_for_work_item(work_item.work_item_id) is not None:
                    raise ConflictError(ALREADY_ASSIGNED, {"work_item_id": work_item.work_item_id})

                work_item.assign(bid.doer_id, bid.bid_id, now)
                bid.accept(now)

                rejected: list[Bid] = []
                for sibling in await tx.list_bids(work_item.work_item_id, BidStatus.PENDING):
                    if sibling.bid_id == bid.bid_id:
                        continue
                    sibling.reject(now)
                    rejected.append(sibling)

                payment = self.escrow.new_payment(work_item, bid, now)

                await tx.update_work_item(work_item)
                await tx.update_bid(bid)
                for sibling in rejected:
                    await tx.update_bid(sibling)
                await tx.add_payment(payment)
        except ConflictError as e:
            logger.info("bid_accept_conflict", bid_id=bid_id, error=e.message)
            raise ConflictError(ALREADY_ASSIGNED, {"bid_id": bid_id, **e.details}) from e

        logger.info(
            "bid_accepted",
            work_item_id=work_item.work_item_id,
            bid_id=bid_id,
            doer_id=bid.doer_id,
            rejected=len(rejected),
            payment_id=payment.payment_id,
        )

        payload: dict[str, Any] = {"work_item_id": work_item.work_item_id, "bid_id": bid_id}
        await self.events.publish(bid.doer_id, MarketEventType.BID_ACCEPTED, payload)
        for sibling in rejected:
            await self.events.publish(
                sibling.doer_id,
                MarketEventType.BID_REJECTED,
                {"work_item_id": work_item.work_item_id, "bid_id": sibling.bid_id},
            )
        return AcceptedBid(work_item=work_item, bid=bid, payment=payment, rejected_bids=rejected)

    @staticmethod
    def _check_acceptable(work_item: WorkItem, bid: Bid) -> None:
        if work_item.status == WorkItemStatus.CANCELLED:
            raise InvalidStateError(
                "This task was cancelled", {"work_item_id": work_item.work_item_id}
            )
        if not work_item.is_open():
            raise ConflictError(ALREADY_ASSIGNED, {"work_item_id": work_item.work_item_id})
        if bid.status == BidStatus.WITHDRAWN:
            raise InvalidStateError("This bid was withdrawn", {"bid_id": bid.bid_id})
        if bid.status != BidStatus.PENDING:
            raise ConflictError(ALREADY_ASSIGNED, {"bid_id": bid.bid_id})

    async def list_bids(
        self,
        actor: Actor,
        work_item_id: str,
        status: BidStatus | None = None,
    ) -> list[Bid]:
        """
        List bids on a work item

        The poster and arbiters see every bid; a doer sees only their own.
        """
        async with self.store.transaction() as tx:
            work_item = require(await tx.get_work_item(work_item_id), "WorkItem", work_item_id)
            bids = await tx.list_bids(work_item_id, status)

        if actor.is_arbiter or (
            actor.role == ActorRole.POSTER and actor.actor_id == work_item.poster_id
        ):
            return bids
        return [b for b in bids if b.doer_id == actor.actor_id]
