"""Escrow Payment API Routes"""

import structlog
from fastapi import APIRouter, HTTPException, Query

from ..core.entities import Payment
from ..core.exceptions import ValidationError
from ..core.interfaces import CaptureConfirmation
from ..infrastructure.payments import (
    CAPTURE_CALLBACK_SIGNED,
    COMPLETE_STATUS,
    PAYOUT_CALLBACK_SIGNED,
    PaymentGatewayClient,
)
from .dependencies import ActorDep, GatewayDep, MarketplaceDep, unwrap
from .schemas import (
    CallbackResponse,
    CaptureSessionResponse,
    PaymentResponse,
    SignedCallbackRequest,
)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])
logger = structlog.get_logger()


def payment_to_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse.model_validate(payment.to_dict())


def _decode(gateway: PaymentGatewayClient, data: str, required_signed: tuple[str, ...]) -> dict:
    try:
        return gateway.decode_callback(data, required_signed)
    except ValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


def _capture_confirmation(gateway: PaymentGatewayClient, data: str) -> CaptureConfirmation:
    payload = _decode(gateway, data, CAPTURE_CALLBACK_SIGNED)
    try:
        return gateway.parse_capture_confirmation(payload)
    except ValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


# ========== Capture ==========


@router.post("/work-items/{work_item_id}/capture", response_model=CaptureSessionResponse)
async def initiate_capture(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """
    Start escrow capture for an assigned work item

    Returns the signed form the payer submits to the gateway.
    """
    session = unwrap(await marketplace.initiate_capture(actor, work_item_id))
    return CaptureSessionResponse(
        gateway_reference=session.gateway_reference,
        capture_token=session.capture_token,
        redirect_url=session.redirect_url,
        form_fields=session.form_fields,
    )


@router.get("/work-items/{work_item_id}", response_model=PaymentResponse)
async def get_payment(work_item_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Get the escrow payment of a work item (parties and arbiters)"""
    return payment_to_response(unwrap(await marketplace.get_payment(actor, work_item_id)))


# ========== Gateway Callbacks ==========


@router.get("/callbacks/success", response_model=CallbackResponse)
async def capture_success_callback(
    gateway: GatewayDep,
    marketplace: MarketplaceDep,
    data: str = Query(..., description="Base64-encoded signed callback"),
):
    """Gateway success redirect; replays are acknowledged without changes"""
    confirmation = _capture_confirmation(gateway, data)
    payment = unwrap(await marketplace.handle_capture_callback(confirmation))
    return CallbackResponse(recorded=True, payment=payment_to_response(payment))


@router.get("/callbacks/failure", response_model=CallbackResponse)
async def capture_failure_callback(
    gateway: GatewayDep,
    marketplace: MarketplaceDep,
    data: str | None = Query(None, description="Base64-encoded signed callback"),
):
    """Gateway failure redirect; unsigned redirects carry nothing to record"""
    if not data:
        logger.info("capture_failure_redirect_without_data")
        return CallbackResponse(recorded=False)
    confirmation = _capture_confirmation(gateway, data)
    payment = unwrap(await marketplace.handle_capture_callback(confirmation))
    return CallbackResponse(recorded=True, payment=payment_to_response(payment))


@router.post("/callbacks/payout", response_model=CallbackResponse)
async def payout_callback(
    request: SignedCallbackRequest, gateway: GatewayDep, marketplace: MarketplaceDep
):
    """Gateway confirms a payout reached the payee"""
    payload = _decode(gateway, request.data, PAYOUT_CALLBACK_SIGNED)
    payment_id = payload.get("payment_id")
    if not payment_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "VALIDATION_ERROR", "message": "Missing payment_id", "details": {}},
        )
    if str(payload.get("status", "")).upper() != COMPLETE_STATUS:
        logger.warning("payout_not_complete", payment_id=payment_id, status=payload.get("status"))
        return CallbackResponse(recorded=False)
    payment = unwrap(await marketplace.confirm_payout(str(payment_id)))
    return CallbackResponse(recorded=True, payment=payment_to_response(payment))


# ========== Settlement ==========


@router.get("/pending-settlements", response_model=list[PaymentResponse])
async def list_pending_settlements(
    actor: ActorDep,
    marketplace: MarketplaceDep,
    limit: int = Query(50, ge=1, le=200),
):
    """Payments whose gateway payout or refund has not gone through (arbiters)"""
    payments = unwrap(await marketplace.list_pending_settlements(actor, limit))
    return [payment_to_response(p) for p in payments]


@router.post("/{payment_id}/retry-settlement", response_model=PaymentResponse)
async def retry_settlement(payment_id: str, actor: ActorDep, marketplace: MarketplaceDep):
    """Re-send a pending payout or refund to the gateway (arbiters)"""
    return payment_to_response(unwrap(await marketplace.retry_settlement(actor, payment_id)))
