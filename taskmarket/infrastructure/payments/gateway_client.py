"""
Payment Gateway Client

Calls the external payment provider for escrow capture, payout and refund,
and verifies the signed callbacks it sends back.

Signatures are HMAC-SHA256 over ``name=value`` pairs joined by commas, in
the order given by ``signed_field_names``, base64 encoded.
"""

import base64
import binascii
import hashlib
import hmac
import json
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel

from ...core.entities import Payment
from ...core.exceptions import GatewayError, ValidationError
from ...core.interfaces import CaptureConfirmation, CaptureSession, IPaymentGateway

logger = structlog.get_logger()

CAPTURE_SIGNED_FIELDS = ["total_amount", "transaction_uuid", "product_code"]
COMPLETE_STATUS = "COMPLETE"

# Fields a callback must cover with its signature before it is acted on
CAPTURE_CALLBACK_SIGNED = ("transaction_uuid", "status")
PAYOUT_CALLBACK_SIGNED = ("payment_id", "status")


class GatewayResult(BaseModel):
    """Gateway operation result"""

    success: bool
    reference: str | None = None
    status: str | None = None
    token: str | None = None
    redirect_url: str | None = None
    error: str | None = None


class PaymentGatewayClient(IPaymentGateway):
    """
    Client for the payment provider's escrow API

    Handles:
    - initiate_capture: Register a capture and build the signed payer form
    - release: Pay the held amount out to the payee
    - refund: Return the held amount to the payer
    - decode_callback: Verify and decode a signed callback
    """

    def __init__(
        self,
        base_url: str,
        merchant_code: str,
        secret_key: str,
        success_url: str,
        failure_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            base_url: Gateway API base URL
            merchant_code: Merchant/product code issued by the provider
            secret_key: Shared HMAC secret
            success_url: Where the provider sends the payer after a capture
            failure_url: Where the provider sends the payer after a failure
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.merchant_code = merchant_code
        self.secret_key = secret_key
        self.success_url = success_url
        self.failure_url = failure_url
        self.timeout = timeout
        self.transport = transport

    # ========== Signing ==========

    def sign(self, fields: dict[str, Any], signed_field_names: list[str]) -> str:
        """Create the base64 HMAC-SHA256 signature over the named fields"""
        message = ",".join(f"{name}={fields[name]}" for name in signed_field_names)
        digest = hmac.new(
            self.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    @staticmethod
    def signed_names(data: dict[str, Any]) -> list[str]:
        """Field names the callback claims to have signed"""
        names = data.get("signed_field_names") or ""
        return [n.strip() for n in str(names).split(",") if n.strip()]

    def verify_callback(self, data: dict[str, Any]) -> bool:
        """Check the signature of callback data against its signed_field_names"""
        field_names = self.signed_names(data)
        signature = data.get("signature")
        if not field_names or not signature:
            return False
        if any(name not in data for name in field_names):
            return False
        expected = self.sign(data, field_names)
        return hmac.compare_digest(expected, str(signature))

    def decode_callback(self, encoded: str, required_signed: Iterable[str] = ()) -> dict[str, Any]:
        """
        Decode a base64 JSON callback body and verify its signature

        Args:
            encoded: Base64 JSON body from the gateway
            required_signed: Fields that must be listed in signed_field_names

        Raises:
            ValidationError: Body cannot be decoded, the signature is invalid,
                or a required field is not signed
        """
        try:
            data = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Invalid callback data format") from e
        if not isinstance(data, dict):
            raise ValidationError("Invalid callback data format")
        if not self.verify_callback(data):
            logger.warning(
                "gateway_callback_signature_invalid",
                transaction_uuid=data.get("transaction_uuid"),
            )
            raise ValidationError("Invalid callback signature")

        signed = set(self.signed_names(data))
        missing = [name for name in required_signed if name not in signed]
        if missing:
            logger.warning(
                "gateway_callback_fields_unsigned",
                transaction_uuid=data.get("transaction_uuid"),
                missing=missing,
            )
            raise ValidationError("Callback does not sign required fields", {"missing": missing})
        return data

    @staticmethod
    def parse_capture_confirmation(data: dict[str, Any]) -> CaptureConfirmation:
        """Turn verified callback data into a CaptureConfirmation"""
        reference = data.get("transaction_uuid")
        if not reference:
            raise ValidationError("Callback is missing transaction_uuid")

        amount = None
        if data.get("total_amount") not in (None, ""):
            try:
                amount = Decimal(str(data["total_amount"]).replace(",", ""))
            except InvalidOperation as e:
                raise ValidationError("Callback total_amount is not a number") from e

        status = str(data.get("status", "")).upper()
        success = status == COMPLETE_STATUS
        if success and "total_amount" not in PaymentGatewayClient.signed_names(data):
            raise ValidationError("Callback does not sign total_amount", {"missing": ["total_amount"]})
        return CaptureConfirmation(
            gateway_reference=str(reference),
            success=success,
            amount=amount,
            gateway_ref_id=data.get("ref_id") or data.get("reference_id"),
            failure_reason=None if success else (status.lower() or "gateway_failure"),
        )

    # ========== HTTP ==========

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Merchant-Code": self.merchant_code,
            "Idempotency-Key": idempotency_key,
        }

    async def _post(self, path: str, body: dict[str, Any], idempotency_key: str) -> GatewayResult:
        signed = list(body.keys())
        payload = {**body, "signed_field_names": ",".join(signed)}
        payload["signature"] = self.sign(payload, signed)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, trust_env=False
            ) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    headers=self._headers(idempotency_key),
                    json=payload,
                )
        except httpx.TimeoutException:
            logger.error("gateway_timeout", path=path, idempotency_key=idempotency_key)
            return GatewayResult(success=False, error="Request timeout")
        except httpx.RequestError as e:
            logger.error("gateway_request_error", path=path, error=str(e))
            return GatewayResult(success=False, error=str(e))

        if response.is_success:
            data = response.json() if response.content else {}
            return GatewayResult(
                success=True,
                reference=data.get("reference"),
                status=data.get("status"),
                token=data.get("token"),
                redirect_url=data.get("redirect_url"),
            )

        error = self._extract_error(response)
        logger.warning(
            "gateway_call_failed",
            path=path,
            status_code=response.status_code,
            error=error,
        )
        return GatewayResult(success=False, error=error)

    @staticmethod
    def _extract_error(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or data.get("detail") or data)
        return str(data)

    @staticmethod
    def _raise_for(result: GatewayResult, action: str, payment: Payment) -> None:
        if not result.success:
            raise GatewayError(
                f"Gateway {action} failed: {result.error}",
                {"payment_id": payment.payment_id, "action": action},
            )

    # ========== IPaymentGateway ==========

    async def initiate_capture(self, payment: Payment) -> CaptureSession:
        reference = payment.gateway_reference or str(uuid4())
        amount = str(payment.amount)

        form = {
            "amount": amount,
            "tax_amount": "0",
            "total_amount": amount,
            "transaction_uuid": reference,
            "product_code": self.merchant_code,
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "success_url": self.success_url,
            "failure_url": self.failure_url,
            "signed_field_names": ",".join(CAPTURE_SIGNED_FIELDS),
        }
        form["signature"] = self.sign(form, CAPTURE_SIGNED_FIELDS)

        result = await self._post(
            "/captures",
            {
                "transaction_uuid": reference,
                "total_amount": amount,
                "currency": payment.currency,
                "product_code": self.merchant_code,
            },
            idempotency_key=f"{payment.payment_id}:capture:{reference}",
        )
        self._raise_for(result, "capture", payment)

        logger.info("gateway_capture_registered", payment_id=payment.payment_id, reference=reference)
        return CaptureSession(
            gateway_reference=reference,
            capture_token=result.token or reference,
            redirect_url=result.redirect_url or f"{self.base_url}/form",
            form_fields=form,
        )

    async def release(self, payment: Payment) -> None:
        result = await self._post(
            "/payouts",
            {
                "transaction_uuid": payment.gateway_reference or payment.payment_id,
                "payee_id": payment.payee_id,
                "total_amount": str(payment.amount),
                "currency": payment.currency,
            },
            idempotency_key=f"{payment.payment_id}:release",
        )
        self._raise_for(result, "release", payment)
        logger.info("gateway_release_sent", payment_id=payment.payment_id)

    async def refund(self, payment: Payment) -> None:
        result = await self._post(
            "/refunds",
            {
                "transaction_uuid": payment.gateway_reference or payment.payment_id,
                "payer_id": payment.payer_id,
                "total_amount": str(payment.amount),
                "currency": payment.currency,
            },
            idempotency_key=f"{payment.payment_id}:refund",
        )
        self._raise_for(result, "refund", payment)
        logger.info("gateway_refund_sent", payment_id=payment.payment_id)
