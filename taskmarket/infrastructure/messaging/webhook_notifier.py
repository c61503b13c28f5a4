"""
Webhook Notifier

Delivers market events to an external notification backend over HTTP.

Each delivery is one signed POST; retries belong to the
NotificationDispatcher in front of it. Delivery records are kept in Redis
when a client is configured.
"""

import hashlib
import hmac
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from ...core.exceptions import NotificationDeliveryError
from ...core.interfaces import INotifier, MarketEventType

logger = structlog.get_logger()

DELIVERY_TTL_SECONDS = 86400 * 7
HISTORY_LENGTH = 100


class WebhookPayload(BaseModel):
    """Webhook payload structure"""

    event: MarketEventType
    topic: str
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    data: dict[str, Any]


class WebhookDelivery(BaseModel):
    """Record of a webhook delivery attempt"""

    id: str
    payload: WebhookPayload
    url: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    delivered_at: str | None = None
    status: str = "pending"  # pending, delivered, failed
    response_code: int | None = None
    last_error: str | None = None


class WebhookConfig(BaseModel):
    """Webhook configuration"""

    url: str
    secret: str | None = None
    timeout: float = 10.0
    enabled: bool = True

    # Event filters (empty = all events)
    events: list[MarketEventType] = Field(default_factory=list)


class WebhookNotifier(INotifier):
    """
    Sends market events to a webhook endpoint.

    Features:
    - HMAC signature for security
    - Delivery history tracking in Redis (optional)
    """

    def __init__(
        self,
        config: WebhookConfig,
        redis: Redis | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.redis = redis
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport, trust_env=False
            )
        logger.info("webhook_notifier_started", url=self.config.url)

    async def stop(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("webhook_notifier_stopped")

    @staticmethod
    def _sign_payload(payload: str, secret: str) -> str:
        """Create HMAC-SHA256 signature for payload"""
        return hmac.new(
            secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def publish(
        self,
        topic: str,
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        """
        Deliver one event.

        Raises:
            NotificationDeliveryError: Endpoint unreachable or returned an error
        """
        if not self.config.enabled:
            return
        if self.config.events and event_type not in self.config.events:
            return

        if self._http_client is None:
            await self.start()

        body = WebhookPayload(event=event_type, topic=topic, data=payload)
        body_json = body.model_dump_json()
        delivery = WebhookDelivery(id=f"wh_{uuid4().hex}", payload=body, url=self.config.url)

        headers = {
            "Content-Type": "application/json",
            "X-Market-Webhook-ID": delivery.id,
            "X-Market-Event": event_type.value,
            "X-Market-Timestamp": body.timestamp,
        }
        if self.config.secret:
            signature = self._sign_payload(body_json, self.config.secret)
            headers["X-Market-Signature"] = f"sha256={signature}"

        try:
            response = await self._http_client.post(
                self.config.url, content=body_json, headers=headers
            )
            delivery.response_code = response.status_code
            if not response.is_success:
                delivery.last_error = f"HTTP {response.status_code}: {response.text[:200]}"
        except httpx.TimeoutException:
            delivery.last_error = "Request timeout"
        except httpx.RequestError as e:
            delivery.last_error = str(e)

        if delivery.last_error:
            delivery.status = "failed"
            await self._save_delivery(delivery)
            raise NotificationDeliveryError(delivery.last_error)

        delivery.status = "delivered"
        delivery.delivered_at = datetime.now(UTC).isoformat()
        await self._save_delivery(delivery)
        logger.debug("webhook_delivered", delivery_id=delivery.id, event_type=event_type.value)

    async def _save_delivery(self, delivery: WebhookDelivery) -> None:
        """Save delivery record to Redis"""
        if self.redis is None:
            return
        key = f"market:webhooks:deliveries:{delivery.id}"
        await self.redis.set(key, delivery.model_dump_json(), ex=DELIVERY_TTL_SECONDS)

        list_key = f"market:webhooks:history:{delivery.payload.topic}"
        await self.redis.lpush(list_key, delivery.id)
        await self.redis.ltrim(list_key, 0, HISTORY_LENGTH - 1)
        await self.redis.expire(list_key, DELIVERY_TTL_SECONDS)

    async def get_delivery_history(self, topic: str, limit: int = 50) -> list[WebhookDelivery]:
        """Get webhook delivery history for a topic"""
        if self.redis is None:
            return []
        delivery_ids = await self.redis.lrange(f"market:webhooks:history:{topic}", 0, limit - 1)

        deliveries = []
        for did in delivery_ids:
            if isinstance(did, bytes):
                did = did.decode()
            data = await self.redis.get(f"market:webhooks:deliveries:{did}")
            if data:
                deliveries.append(WebhookDelivery.model_validate_json(data))
        return deliveries


class LogNotifier(INotifier):
    """Writes events to the log (used when no webhook is configured)"""

    async def publish(
        self,
        topic: str,
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        logger.info("market_event", topic=topic, event_type=event_type.value, **payload)


def create_webhook_config_from_settings(settings) -> WebhookConfig | None:
    """Create WebhookConfig from Settings"""
    if not settings.webhook_url:
        return None

    return WebhookConfig(
        url=settings.webhook_url,
        secret=settings.webhook_secret,
        timeout=settings.webhook_timeout,
    )
