"""Payment Gateway Interface

Outbound capture, release and refund calls against the external payment
provider, plus the value objects exchanged with it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from ..entities import Payment


@dataclass(frozen=True)
class CaptureSession:
    """What the payer needs to complete a capture at the gateway"""

    gateway_reference: str  # Transaction uuid echoed back by the callback
    capture_token: str
    redirect_url: str
    form_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureConfirmation:
    """Verified inbound capture result (delivered at least once)"""

    gateway_reference: str
    success: bool
    amount: Decimal | None = None
    gateway_ref_id: str | None = None
    failure_reason: str | None = None


class IPaymentGateway(ABC):
    """
    Abstract interface for the payment gateway

    Implementations raise ``GatewayError`` on any failed or timed-out call.
    Release and refund must be idempotent per payment.
    """

    @abstractmethod
    async def initiate_capture(self, payment: Payment) -> CaptureSession:
        """Start capturing the payer's funds into escrow"""
        pass

    @abstractmethod
    async def release(self, payment: Payment) -> None:
        """Pay the held amount out to the payee"""
        pass

    @abstractmethod
    async def refund(self, payment: Payment) -> None:
        """Return the held amount to the payer"""
        pass
