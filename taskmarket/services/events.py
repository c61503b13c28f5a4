"""Event Publisher

Post-commit notification fan-out. Publishing never fails the operation
that triggered it.
"""

from typing import Any

import structlog

from ..core.entities import Dispute, WorkItem
from ..core.interfaces import ARBITERS_TOPIC, INotifier, MarketEventType

logger = structlog.get_logger()


class EventPublisher:
    """Wraps an ``INotifier`` so that delivery problems are logged, not raised"""

    def __init__(self, notifier: INotifier | None = None):
        self.notifier = notifier

    async def publish(
        self,
        topic: str | None,
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        if self.notifier is None or not topic:
            return
        try:
            await self.notifier.publish(topic, event_type, payload)
        except Exception as e:
            logger.warning(
                "notification_publish_failed",
                topic=topic,
                event_type=event_type.value,
                error=str(e),
            )

    async def publish_many(
        self,
        topics: list[str | None],
        event_type: MarketEventType,
        payload: dict[str, Any],
    ) -> None:
        for topic in dict.fromkeys(t for t in topics if t):
            await self.publish(topic, event_type, payload)

    async def to_parties(
        self,
        work_item: WorkItem,
        event_type: MarketEventType,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        """Notify the poster and the bound doer, optionally skipping the actor who acted"""
        topics = [t for t in (work_item.poster_id, work_item.doer_id) if t and t != exclude]
        await self.publish_many(topics, event_type, payload)

    async def to_dispute_audience(
        self,
        work_item: WorkItem,
        dispute: Dispute,
        event_type: MarketEventType,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        """Notify both parties and the arbiters about a dispute"""
        await self.to_parties(work_item, event_type, payload, exclude=exclude)
        await self.publish(ARBITERS_TOPIC, event_type, {"dispute_id": dispute.dispute_id, **payload})
