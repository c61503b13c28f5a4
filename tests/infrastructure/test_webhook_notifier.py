"""Unit Tests for WebhookNotifier and LogNotifier"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from taskmarket.config import Settings
from taskmarket.core.exceptions import NotificationDeliveryError
from taskmarket.core.interfaces import MarketEventType
from taskmarket.infrastructure.messaging import (
    LogNotifier,
    WebhookConfig,
    WebhookNotifier,
    create_webhook_config_from_settings,
)

WEBHOOK_URL = "https://hooks.example.com/market"


def _notifier(handler, redis=None, **config) -> WebhookNotifier:
    return WebhookNotifier(
        WebhookConfig(url=WEBHOOK_URL, **config),
        redis=redis,
        transport=httpx.MockTransport(handler),
    )


class TestWebhookNotifier:
    async def test_signed_delivery(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        notifier = _notifier(handler, secret="whsec")
        await notifier.publish("doer-a", MarketEventType.BID_ACCEPTED, {"bid_id": "bid-001"})
        await notifier.stop()

        request = requests[0]
        body = json.loads(request.content)
        assert body["event"] == "bid.accepted"
        assert body["topic"] == "doer-a"
        assert body["data"] == {"bid_id": "bid-001"}
        assert request.headers["X-Market-Event"] == "bid.accepted"

        expected = hmac.new(b"whsec", request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-Market-Signature"] == f"sha256={expected}"

    async def test_unsigned_without_secret(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        await _notifier(handler).publish("poster-1", MarketEventType.WORK_SUBMITTED, {})
        assert "X-Market-Signature" not in requests[0].headers

    async def test_event_filter_and_disabled(self):
        handler = AsyncMock()

        filtered = _notifier(handler, events=[MarketEventType.DISPUTE_OPENED])
        await filtered.publish("poster-1", MarketEventType.BID_PLACED, {})
        disabled = _notifier(handler, enabled=False)
        await disabled.publish("poster-1", MarketEventType.BID_PLACED, {})

        handler.assert_not_called()

    async def test_error_response_raises(self):
        notifier = _notifier(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(NotificationDeliveryError, match="HTTP 500"):
            await notifier.publish("poster-1", MarketEventType.BID_PLACED, {})

    async def test_unreachable_endpoint_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NotificationDeliveryError):
            await _notifier(handler).publish("poster-1", MarketEventType.BID_PLACED, {})

    async def test_delivery_recorded_in_redis(self):
        redis = AsyncMock()
        notifier = _notifier(lambda request: httpx.Response(200), redis=redis)

        await notifier.publish("poster-1", MarketEventType.BID_PLACED, {"bid_id": "bid-001"})

        key, raw = redis.set.await_args.args
        assert key.startswith("market:webhooks:deliveries:wh_")
        record = json.loads(raw)
        assert record["status"] == "delivered"
        assert record["response_code"] == 200
        redis.lpush.assert_awaited_once()
        assert redis.lpush.await_args.args[0] == "market:webhooks:history:poster-1"

    async def test_delivery_history(self):
        redis = AsyncMock()
        notifier = _notifier(lambda request: httpx.Response(200), redis=redis)
        await notifier.publish("poster-1", MarketEventType.BID_PLACED, {})
        stored = redis.set.await_args.args[1]
        delivery_id = redis.lpush.await_args.args[1]

        redis.lrange.return_value = [delivery_id.encode()]
        redis.get.return_value = stored
        history = await notifier.get_delivery_history("poster-1")

        assert [d.id for d in history] == [delivery_id]
        assert history[0].payload.event == MarketEventType.BID_PLACED

    async def test_history_without_redis(self):
        notifier = _notifier(lambda request: httpx.Response(200))
        assert await notifier.get_delivery_history("poster-1") == []


class TestConfigAndLogNotifier:
    def test_config_from_settings(self):
        settings = Settings(webhook_url=WEBHOOK_URL, webhook_secret="whsec")
        config = create_webhook_config_from_settings(settings)
        assert config.url == WEBHOOK_URL
        assert config.secret == "whsec"

    def test_no_config_without_url(self):
        assert create_webhook_config_from_settings(Settings(webhook_url=None)) is None

    async def test_log_notifier_never_raises(self):
        await LogNotifier().publish("arbiters", MarketEventType.SETTLEMENT_FAILED, {"error": "x"})
