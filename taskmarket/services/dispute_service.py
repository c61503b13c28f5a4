"""Dispute Resolution Workflow

Opening, discussing, reviewing and resolving disputes on active work items.
"""

from datetime import timedelta
from typing import Any

import structlog

from ..core.entities import (
    DISPUTABLE_PAYMENT_STATUSES,
    Actor,
    Dispute,
    DisputeFollowUp,
    DisputeOutcome,
    Evidence,
    WorkItem,
    WorkItemOperation,
    WorkItemStatus,
)
from ..core.exceptions import ConflictError, ForbiddenError, InvalidStateError, ValidationError
from ..core.interfaces import ILedgerStore, MarketEventType
from .base import Clock, require, utc_now
from .escrow_service import EscrowService
from .events import EventPublisher

logger = structlog.get_logger()


def parse_evidence(evidence: list[Evidence | dict[str, Any]] | None) -> list[Evidence]:
    """Normalize evidence references; each needs a url"""
    items: list[Evidence] = []
    for entry in evidence or []:
        if isinstance(entry, Evidence):
            items.append(entry)
            continue
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ValidationError("Each evidence item needs a url", {"evidence": str(entry)})
        items.append(Evidence.from_dict(entry))
    return items


def parse_outcome(outcome: DisputeOutcome | str) -> DisputeOutcome:
    try:
        return DisputeOutcome(outcome)
    except ValueError as e:
        raise ValidationError(
            "Outcome must be 'release' or 'refund'", {"outcome": str(outcome)}
        ) from e


class DisputeService:
    """
    Dispute Service

    Opening a dispute freezes the work item and its payment in one
    transaction. Resolution forces the payment to RELEASED or REFUNDED and
    the work item to COMPLETED or CANCELLED together, then closes the
    dispute; the gateway side effect runs after commit.
    """

    def __init__(
        self,
        store: ILedgerStore,
        escrow: EscrowService,
        events: EventPublisher | None = None,
        grace_period: timedelta = timedelta(hours=72),
        clock: Clock | None = None,
    ):
        self.store = store
        self.escrow = escrow
        self.events = events or EventPublisher()
        self.grace_period = grace_period
        self.clock = clock or utc_now

    async def open_dispute(
        self,
        initiator: Actor,
        work_item_id: str,
        reason: str,
        evidence: list[Evidence | dict[str, Any]] | None = None,
    ) -> Dispute:
        """
        Open a dispute on an active work item

        Raises:
            ValidationError: Empty reason or malformed evidence
            ForbiddenError: Initiator is not the poster or the assigned doer
            NotFoundError: Work item or payment does not exist
            InvalidStateError: Work item or payment status does not allow a dispute
            ConflictError: A dispute is already open on the work item
        """
        if not reason or not reason.strip():
            raise ValidationError("Please provide a reason for the dispute")
        attachments = parse_evidence(evidence)
        now = self.clock()

        async with self.store.transaction() as tx:
            work_item = require(
                await tx.get_work_item(work_item_id, for_update=True), "WorkItem", work_item_id
            )
            if not work_item.is_party(initiator):
                raise ForbiddenError("Only the poster or the assigned doer can open a dispute")
            if await tx.get_open_dispute(work_item_id) is not None:
                raise ConflictError(
                    "A dispute is already open for this task", {"work_item_id": work_item_id}
                )
            work_item.ensure_transition(WorkItemOperation.OPEN_DISPUTE, initiator)
            if work_item.status == WorkItemStatus.COMPLETED and not work_item.is_within_grace(
                self.grace_period, now
            ):
                raise InvalidStateError(
                    "The dispute window for this task has closed",
                    {"work_item_id": work_item_id},
                )

            payment = require(
                await tx.get_payment_for_work_item(work_item_id, for_update=True),
                "Payment",
                work_item_id,
            )
            if payment.status not in DISPUTABLE_PAYMENT_STATUSES:
                raise InvalidStateError(
                    f"Cannot dispute a {payment.status.value} payment",
                    {"payment_id": payment.payment_id, "status": payment.status.value},
                )

            dispute = Dispute(
                dispute_id=Dispute.new_id(),
                work_item_id=work_item_id,
                payment_id=payment.payment_id,
                initiator_id=initiator.actor_id,
                reason=reason.strip(),
                evidence=attachments,
                created_at=now,
                updated_at=now,
            )
            work_item.mark_disputed(now)
            payment.freeze(now)

            await tx.add_dispute(dispute)
            await tx.update_work_item(work_item)
            await tx.update_payment(payment)

        logger.info(
            "dispute_opened",
            dispute_id=dispute.dispute_id,
            work_item_id=work_item_id,
            initiator_id=initiator.actor_id,
            previous_status=work_item.status_before_dispute.value,
        )
        await self.events.to_dispute_audience(
            work_item,
            dispute,
            MarketEventType.DISPUTE_OPENED,
            {"work_item_id": work_item_id, "dispute_id": dispute.dispute_id},
            exclude=initiator.actor_id,
        )
        return dispute

    async def add_followup(
        self,
        sender: Actor,
        dispute_id: str,
        message: str,
        evidence: list[Evidence | dict[str, Any]] | None = None,
    ) -> DisputeFollowUp:
        """Append a follow-up message from a party or an arbiter"""
        attachments = parse_evidence(evidence)

        async with self.store.transaction() as tx:
            dispute = require(await tx.get_dispute(dispute_id, for_update=True), "Dispute", dispute_id)
            work_item = require(
                await tx.get_work_item(dispute.work_item_id), "WorkItem", dispute.work_item_id
            )
            self._check_participant(sender, work_item)
            followup = dispute.append_followup(sender.actor_id, message, attachments, self.clock())
            await tx.update_dispute(dispute)
            await tx.add_followup(followup)

        logger.info(
            "dispute_followup_added",
            dispute_id=dispute_id,
            sender_id=sender.actor_id,
            sequence=followup.sequence,
        )
        await self.events.to_dispute_audience(
            work_item,
            dispute,
            MarketEventType.DISPUTE_FOLLOWUP,
            {"work_item_id": work_item.work_item_id, "sequence": followup.sequence},
            exclude=sender.actor_id,
        )
        return followup

    async def begin_review(self, arbiter: Actor, dispute_id: str) -> Dispute:
        """OPEN → UNDER_REVIEW"""
        if not arbiter.is_arbiter:
            raise ForbiddenError("Only an arbiter can review disputes")

        async with self.store.transaction() as tx:
            dispute = require(await tx.get_dispute(dispute_id, for_update=True), "Dispute", dispute_id)
            dispute.begin_review(arbiter.actor_id, self.clock())
            await tx.update_dispute(dispute)
            work_item = require(
                await tx.get_work_item(dispute.work_item_id), "WorkItem", dispute.work_item_id
            )

        logger.info("dispute_review_started", dispute_id=dispute_id, arbiter_id=arbiter.actor_id)
        await self.events.to_parties(
            work_item, MarketEventType.DISPUTE_UNDER_REVIEW, {"dispute_id": dispute_id}
        )
        return dispute

    async def resolve_dispute(
        self,
        arbiter: Actor,
        dispute_id: str,
        outcome: DisputeOutcome | str,
        note: str | None = None,
    ) -> Dispute:
        """
        Resolve a dispute with a binary outcome

        release: payment → RELEASED, work item → COMPLETED.
        refund: payment → REFUNDED (or voided if never captured),
        work item → CANCELLED.

        Raises:
            ValidationError: Unknown outcome
            ForbiddenError: Caller is not an arbiter
            NotFoundError: Dispute, work item or payment does not exist
            InvalidStateError: Dispute already resolved, or release of an
                uncaptured payment
        """
        decision = parse_outcome(outcome)
        if not arbiter.is_arbiter:
            raise ForbiddenError("Only an arbiter can resolve disputes")
        release = decision == DisputeOutcome.RELEASE
        operation = (
            WorkItemOperation.RESOLVE_RELEASE if release else WorkItemOperation.RESOLVE_REFUND
        )
        now = self.clock()

        async with self.store.transaction() as tx:
            dispute = require(await tx.get_dispute(dispute_id, for_update=True), "Dispute", dispute_id)
            if not dispute.is_active():
                raise InvalidStateError(
                    f"Dispute is already {dispute.status.value}", {"dispute_id": dispute_id}
                )
            work_item = require(
                await tx.get_work_item(dispute.work_item_id, for_update=True),
                "WorkItem",
                dispute.work_item_id,
            )
            work_item.ensure_transition(operation, arbiter)
            payment = require(
                await tx.get_payment(dispute.payment_id, for_update=True),
                "Payment",
                dispute.payment_id,
            )

            if release:
                self.escrow.release_in(payment, now)
            else:
                self.escrow.refund_in(payment, now)
            work_item.resolve_dispute(release, now)
            dispute.resolve(decision, arbiter.actor_id, note, now)
            dispute.close(now)

            await tx.update_payment(payment)
            await tx.update_work_item(work_item)
            await tx.update_dispute(dispute)

        logger.info(
            "dispute_resolved",
            dispute_id=dispute_id,
            outcome=decision.value,
            work_item_status=work_item.status.value,
            payment_status=payment.status.value,
        )
        await self.events.to_dispute_audience(
            work_item,
            dispute,
            MarketEventType.DISPUTE_RESOLVED,
            {"work_item_id": work_item.work_item_id, "outcome": decision.value},
        )
        await self.escrow.apply_settlement(payment)
        return dispute

    # ========== Queries ==========

    async def get_dispute(self, actor: Actor, dispute_id: str) -> Dispute:
        async with self.store.transaction() as tx:
            dispute = require(await tx.get_dispute(dispute_id), "Dispute", dispute_id)
            work_item = require(
                await tx.get_work_item(dispute.work_item_id), "WorkItem", dispute.work_item_id
            )
        self._check_participant(actor, work_item)
        return dispute

    async def list_disputes(
        self, actor: Actor, work_item_id: str | None = None, limit: int = 50
    ) -> list[Dispute]:
        """Arbiters see every dispute; parties see their own"""
        party_id = None if actor.is_arbiter else actor.actor_id
        async with self.store.transaction() as tx:
            return await tx.list_disputes(work_item_id=work_item_id, party_id=party_id, limit=limit)

    @staticmethod
    def _check_participant(actor: Actor, work_item: WorkItem) -> None:
        if not actor.is_arbiter and not work_item.is_party(actor):
            raise ForbiddenError("Only the parties or an arbiter can take part in this dispute")
