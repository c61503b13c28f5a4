"""Payment gateway adapters."""

from .gateway_client import (
    CAPTURE_CALLBACK_SIGNED,
    CAPTURE_SIGNED_FIELDS,
    COMPLETE_STATUS,
    PAYOUT_CALLBACK_SIGNED,
    GatewayResult,
    PaymentGatewayClient,
)

__all__ = [
    "CAPTURE_CALLBACK_SIGNED",
    "CAPTURE_SIGNED_FIELDS",
    "COMPLETE_STATUS",
    "PAYOUT_CALLBACK_SIGNED",
    "GatewayResult",
    "PaymentGatewayClient",
]
