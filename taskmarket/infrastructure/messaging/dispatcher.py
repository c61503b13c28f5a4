"""
Notification Dispatcher

Decouples event publishing from delivery. ``publish`` only enqueues, so
callers are never blocked or failed by a slow or broken backend; a worker
delivers through the wrapped notifier with bounded retries and exponential
backoff.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from ...core.interfaces import INotifier, MarketEventType

logger = structlog.get_logger()


@dataclass(frozen=True)
class _Envelope:
    topic: str
    event_type: MarketEventType
    payload: dict[str, Any]


class NotificationDispatcher(INotifier):
    """
    Bounded queue in front of an ``INotifier``

    Events are dropped (and logged) when the queue is full or when every
    retry fails.
    """

    def __init__(
        self,
        notifier: INotifier,
        retry_count: int = 3,
        retry_delay: float = 1.0,
        max_queue_size: int = 1000,
    ):
        self.notifier = notifier
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[_Envelope] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task | None = None
        self.delivered = 0
        self.dropped = 0

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        logger.info("notification_dispatcher_started")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker, optionally delivering what is already queued"""
        if drain and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("notification_dispatcher_stopped", delivered=self.delivered, dropped=self.dropped)

    async def publish(
        self,
        topic: str,
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        try:
            self._queue.put_nowait(_Envelope(topic, event_type, dict(payload)))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("notification_queue_full", topic=topic, event_type=event_type.value)

    async def join(self) -> None:
        """Wait until every queued event has been handled"""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self._deliver(envelope)
            finally:
                self._queue.task_done()

    async def _deliver(self, envelope: _Envelope) -> bool:
        for attempt in range(self.retry_count):
            try:
                await self.notifier.publish(envelope.topic, envelope.event_type, envelope.payload)
                self.delivered += 1
                return True
            except Exception as e:
                logger.warning(
                    "notification_delivery_failed",
                    topic=envelope.topic,
                    event_type=envelope.event_type.value,
                    attempt=attempt + 1,
                    error=str(e),
                )

            # Wait before retry (exponential backoff)
            if attempt < self.retry_count - 1:
                await asyncio.sleep(self.retry_delay * (2**attempt))

        self.dropped += 1
        logger.error(
            "notification_dropped",
            topic=envelope.topic,
            event_type=envelope.event_type.value,
            attempts=self.retry_count,
        )
        return False
