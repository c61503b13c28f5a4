"""Escrow Payment Orchestrator

Moves a work item's payment through capture, hold, release and refund.

Gateway calls never happen inside a ledger transaction: capture is
initiated before the transaction that records it, and release/refund are
applied after the transaction that commits them. A post-commit failure
leaves ``settlement_pending`` set until an arbiter retries it.
"""

from datetime import datetime
from decimal import Decimal

import structlog

from ..core.entities import (
    Actor,
    ActorRole,
    Bid,
    Payment,
    PaymentStatus,
    SettlementAction,
    WorkItem,
    WorkItemStatus,
)
from ..core.exceptions import ForbiddenError, GatewayError, InvalidStateError, ValidationError
from ..core.interfaces import (
    ARBITERS_TOPIC,
    CaptureConfirmation,
    CaptureSession,
    ILedgerStore,
    IPaymentGateway,
    MarketEventType,
)
from .base import Clock, require, retry_on_conflict, utc_now
from .events import EventPublisher

logger = structlog.get_logger()


class EscrowService:
    """
    Escrow Payment Orchestrator

    The ``*_in`` helpers mutate a payment inside a caller's transaction;
    the caller persists it together with the linked work item change.
    """

    def __init__(
        self,
        store: ILedgerStore,
        gateway: IPaymentGateway,
        events: EventPublisher | None = None,
        currency: str = "NPR",
        capture_callback_max_attempts: int = 3,
        clock: Clock | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.events = events or EventPublisher()
        self.currency = currency
        self.capture_callback_max_attempts = max(1, capture_callback_max_attempts)
        self.clock = clock or utc_now

    # ========== In-transaction helpers ==========

    def new_payment(self, work_item: WorkItem, bid: Bid, now: datetime) -> Payment:
        """Build the PENDING payment created by a bid acceptance"""
        return Payment(
            payment_id=Payment.new_id(),
            work_item_id=work_item.work_item_id,
            bid_id=bid.bid_id,
            payer_id=work_item.poster_id,
            payee_id=bid.doer_id,
            amount=bid.amount,
            currency=self.currency,
            created_at=now,
            updated_at=now,
        )

    def release_in(self, payment: Payment, now: datetime) -> None:
        if not payment.is_captured:
            raise InvalidStateError(
                "Cannot release a payment that has not been captured",
                {"payment_id": payment.payment_id, "status": payment.status.value},
            )
        payment.release(now)

    def refund_in(self, payment: Payment, now: datetime) -> None:
        """Refund captured funds, or void a payment that was never captured"""
        if payment.is_captured:
            payment.refund(now)
        else:
            payment.void("refunded_before_capture", now)

    def void_in(self, payment: Payment, reason: str, now: datetime) -> None:
        """Void an uncaptured payment; one the gateway already failed stays as it is"""
        if payment.status == PaymentStatus.FAILED:
            return
        if payment.is_captured:
            raise InvalidStateError(
                "Cannot cancel after the payment was captured; open a dispute instead",
                {"payment_id": payment.payment_id},
            )
        payment.void(reason, now)

    # ========== Capture ==========

    async def initiate_capture(self, poster: Actor, work_item_id: str) -> CaptureSession:
        """
        Start capturing the payer's funds for an assigned work item.

        Returns:
            Gateway session the payer completes out of band

        Raises:
            ForbiddenError: Caller is not the poster of the work item
            NotFoundError: Work item or payment does not exist
            InvalidStateError: Payment is no longer PENDING
            GatewayError: Gateway rejected or did not answer
        """
        async with self.store.transaction() as tx:
            work_item = require(
                await tx.get_work_item(work_item_id, for_update=True), "WorkItem", work_item_id
            )
            if poster.role != ActorRole.POSTER or poster.actor_id != work_item.poster_id:
                raise ForbiddenError("Only the poster of this work item can pay for it")
            payment = require(
                await tx.get_payment_for_work_item(work_item_id), "Payment", work_item_id
            )
            if self._can_retry_capture(work_item, payment):
                failed_id = payment.payment_id
                bid = require(await tx.get_bid(payment.bid_id), "Bid", payment.bid_id)
                payment = self.new_payment(work_item, bid, self.clock())
                await tx.add_payment(payment)
                logger.info(
                    "payment_renewed_after_failure",
                    work_item_id=work_item_id,
                    failed_payment_id=failed_id,
                    payment_id=payment.payment_id,
                )
            self._require_pending(payment)

        session = await self.gateway.initiate_capture(payment)

        async with self.store.transaction() as tx:
            current = require(
                await tx.get_payment(payment.payment_id, for_update=True),
                "Payment",
                payment.payment_id,
            )
            self._require_pending(current)
            current.gateway_reference = session.gateway_reference
            current.capture_token = session.capture_token
            current.updated_at = self.clock()
            await tx.update_payment(current)

        logger.info(
            "payment_capture_initiated",
            payment_id=payment.payment_id,
            work_item_id=work_item_id,
            gateway_reference=session.gateway_reference,
        )
        return session

    @staticmethod
    def _can_retry_capture(work_item: WorkItem, payment: Payment) -> bool:
        """A gateway-failed, never-captured payment on a live assignment gets a fresh one"""
        return (
            payment.status == PaymentStatus.FAILED
            and not payment.is_captured
            and work_item.doer_id is not None
            and not work_item.is_terminal()
            and work_item.status != WorkItemStatus.DISPUTED
        )

    @staticmethod
    def _require_pending(payment: Payment) -> None:
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                f"Payment is {payment.status.value}, capture is only possible while pending",
                {"payment_id": payment.payment_id, "status": payment.status.value},
            )

    async def handle_capture_callback(self, confirmation: CaptureConfirmation) -> Payment:
        """
        Apply a gateway capture confirmation (delivered at least once).

        Replays for an already-captured payment return it unchanged.
        Lost races against concurrent writers are retried.
        """
        return await retry_on_conflict(
            lambda: self._apply_capture(confirmation),
            self.capture_callback_max_attempts,
            "capture_callback_conflict_retry",
            gateway_reference=confirmation.gateway_reference,
        )

    async def _apply_capture(self, confirmation: CaptureConfirmation) -> Payment:
        now = self.clock()
        event: MarketEventType | None = None

        async with self.store.transaction() as tx:
            payment = require(
                await tx.get_payment_by_reference(confirmation.gateway_reference, for_update=True),
                "Payment",
                confirmation.gateway_reference,
            )

            if confirmation.success:
                self._check_amount(payment, confirmation.amount)
                if payment.status == PaymentStatus.PENDING:
                    payment.capture(now, confirmation.gateway_ref_id)
                    event = MarketEventType.PAYMENT_CAPTURED
                elif payment.status == PaymentStatus.DISPUTED and not payment.is_captured:
                    payment.record_capture_while_disputed(now, confirmation.gateway_ref_id)
                elif payment.status == PaymentStatus.FAILED:
                    logger.warning(
                        "capture_after_void",
                        payment_id=payment.payment_id,
                        gateway_reference=confirmation.gateway_reference,
                    )
                    raise InvalidStateError(
                        "Payment was voided before the capture arrived",
                        {"payment_id": payment.payment_id},
                    )
                else:
                    logger.info(
                        "capture_callback_replayed",
                        payment_id=payment.payment_id,
                        status=payment.status.value,
                    )
                    return payment
            else:
                if payment.status != PaymentStatus.PENDING:
                    logger.info(
                        "capture_failure_ignored",
                        payment_id=payment.payment_id,
                        status=payment.status.value,
                    )
                    return payment
                payment.fail(confirmation.failure_reason or "gateway_failure", now)
                event = MarketEventType.PAYMENT_FAILED

            await tx.update_payment(payment)

        logger.info(
            "capture_callback_applied",
            payment_id=payment.payment_id,
            success=confirmation.success,
            status=payment.status.value,
        )
        if event is not None:
            await self.events.publish_many(
                [payment.payer_id, payment.payee_id],
                event,
                {"payment_id": payment.payment_id, "work_item_id": payment.work_item_id},
            )
        return payment

    @staticmethod
    def _check_amount(payment: Payment, amount: Decimal | None) -> None:
        if amount is not None and Decimal(str(amount)) != payment.amount:
            raise ValidationError(
                "Captured amount does not match the payment amount",
                {"expected": str(payment.amount), "received": str(amount)},
            )

    # ========== Settlement ==========

    async def apply_settlement(self, payment: Payment) -> Payment:
        """
        Apply the gateway side effect of a committed release or refund.

        Called after the owning transaction commits. Gateway failures are
        logged and leave the payment flagged for a later retry.
        """
        try:
            return await self._settle(payment)
        except GatewayError as e:
            logger.error(
                "settlement_failed",
                payment_id=payment.payment_id,
                status=payment.status.value,
                error=e.message,
            )
            await self.events.publish(
                ARBITERS_TOPIC,
                MarketEventType.SETTLEMENT_FAILED,
                {"payment_id": payment.payment_id, "error": e.message},
            )
            return payment

    async def _settle(self, payment: Payment) -> Payment:
        action = payment.owed_settlement()
        if action is None:
            return payment

        if action == SettlementAction.RELEASE:
            await self.gateway.release(payment)
        else:
            await self.gateway.refund(payment)

        settled = await retry_on_conflict(
            lambda: self._mark_settled(payment.payment_id),
            self.capture_callback_max_attempts,
            "settlement_mark_conflict_retry",
            payment_id=payment.payment_id,
        )
        logger.info("settlement_applied", payment_id=payment.payment_id, action=action.value)
        event = (
            MarketEventType.PAYMENT_RELEASED
            if action == SettlementAction.RELEASE
            else MarketEventType.PAYMENT_REFUNDED
        )
        await self.events.publish_many(
            [payment.payer_id, payment.payee_id],
            event,
            {"payment_id": payment.payment_id, "amount": str(payment.amount)},
        )
        return settled

    async def _mark_settled(self, payment_id: str) -> Payment:
        async with self.store.transaction() as tx:
            payment = require(await tx.get_payment(payment_id, for_update=True), "Payment", payment_id)
            if payment.settlement_pending:
                payment.mark_settled(self.clock())
                await tx.update_payment(payment)
            return payment

    async def retry_settlement(self, arbiter: Actor, payment_id: str) -> Payment:
        """
        Re-apply a release/refund whose post-commit gateway call failed.

        No-op when nothing is pending.

        Raises:
            ForbiddenError: Caller is not an arbiter
            NotFoundError: Payment does not exist
            GatewayError: Gateway still fails
        """
        if not arbiter.is_arbiter:
            raise ForbiddenError("Only an arbiter can retry a settlement")

        async with self.store.transaction() as tx:
            payment = require(await tx.get_payment(payment_id), "Payment", payment_id)

        if not payment.settlement_pending:
            return payment

        logger.info("settlement_retry", payment_id=payment_id, arbiter_id=arbiter.actor_id)
        return await self._settle(payment)

    async def list_pending_settlements(self, arbiter: Actor, limit: int = 50) -> list[Payment]:
        if not arbiter.is_arbiter:
            raise ForbiddenError("Only an arbiter can list pending settlements")
        async with self.store.transaction() as tx:
            return await tx.list_pending_settlements(limit=limit)

    async def confirm_payout(self, payment_id: str) -> Payment:
        """Record the gateway's payout confirmation: RELEASED → COMPLETED (idempotent)"""
        async with self.store.transaction() as tx:
            payment = require(await tx.get_payment(payment_id, for_update=True), "Payment", payment_id)
            if payment.status == PaymentStatus.COMPLETED:
                return payment
            if payment.status != PaymentStatus.RELEASED:
                raise InvalidStateError(
                    f"Cannot confirm payout of a {payment.status.value} payment",
                    {"payment_id": payment_id},
                )
            payment.confirm_payout(self.clock())
            await tx.update_payment(payment)

        logger.info("payout_confirmed", payment_id=payment_id)
        await self.events.publish(
            payment.payee_id,
            MarketEventType.PAYMENT_COMPLETED,
            {"payment_id": payment_id, "amount": str(payment.amount)},
        )
        return payment

    # ========== Queries ==========

    async def get_payment_for_work_item(self, actor: Actor, work_item_id: str) -> Payment:
        async with self.store.transaction() as tx:
            work_item = require(await tx.get_work_item(work_item_id), "WorkItem", work_item_id)
            if not actor.is_arbiter and not work_item.is_party(actor):
                raise ForbiddenError("Only the parties or an arbiter can view this payment")
            return require(
                await tx.get_payment_for_work_item(work_item_id), "Payment", work_item_id
            )
