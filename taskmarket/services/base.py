"""Shared service helpers"""

import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import structlog

from ..core.exceptions import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger()

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def require(entity: T | None, kind: str, entity_id: str) -> T:
    """Return the entity or raise NotFoundError"""
    if entity is None:
        key = re.sub(r"(?<!^)(?=[A-Z])", "_", kind).lower()
        raise NotFoundError(f"{kind} not found: {entity_id}", {f"{key}_id": entity_id})
    return entity


def parse_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a strictly positive money amount"""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be a number", {field_name: value}) from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero", {field_name: str(value)})
    return amount


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    event: str,
    **context: Any,
) -> T:
    """
    Re-run ``operation`` after a lost optimistic-concurrency race.

    Only for operations that re-read all their inputs on every attempt.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ConflictError:
            if attempt >= max_attempts:
                raise
            logger.info(event, attempt=attempt, max_attempts=max_attempts, **context)
            attempt += 1
