"""Business Exceptions

Typed error taxonomy for the task lifecycle and transaction engine.
Every failure a caller can observe is one of these.
"""

from typing import Any


class MarketplaceError(Exception):
    """Base exception for the marketplace core"""

    code: str = "MARKETPLACE_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(MarketplaceError):
    """Malformed or missing input (always caller-fixable)"""

    code = "VALIDATION_ERROR"
    status_code = 400


class ForbiddenError(MarketplaceError):
    """Caller lacks the role or relationship required for the operation"""

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist"""

    code = "NOT_FOUND"
    status_code = 404


class InvalidStateError(MarketplaceError):
    """Operation is not legal from the entity's current lifecycle state"""

    code = "INVALID_STATE"
    status_code = 409


class ConflictError(MarketplaceError):
    """
    Lost a race against another committed operation.

    Expected under concurrency; callers should re-read and decide,
    not report an error to the user.
    """

    code = "CONFLICT"
    status_code = 409


class GatewayError(MarketplaceError):
    """Payment gateway call failed or timed out"""

    code = "GATEWAY_ERROR"
    status_code = 502


class NotificationDeliveryError(Exception):
    """Outbound notification could not be delivered (never reaches callers)"""


__all__ = [
    "MarketplaceError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidStateError",
    "ConflictError",
    "GatewayError",
    "NotificationDeliveryError",
]
