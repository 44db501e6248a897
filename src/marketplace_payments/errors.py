from __future__ import annotations

from typing import Any, Optional


class MarketplaceError(Exception):
    """
    Base class for every error the services raise on purpose.

    The HTTP layer turns these into JSON responses using `status_code`,
    the message, and the `details` mapping (merged into the payload).
    """

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class ValidationError(MarketplaceError):
    status_code = 400


class AuthenticationError(MarketplaceError):
    status_code = 401


class AuthorizationError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class InsufficientCreditsError(MarketplaceError):
    status_code = 400

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            "Insufficient credits",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class InsufficientFundsError(MarketplaceError):
    status_code = 400

    def __init__(self, requested: float, available: float) -> None:
        super().__init__(
            "Insufficient funds in wallet",
            details={"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


class InvalidStateError(MarketplaceError):
    """An attempted transition is not legal for the entity's current state."""

    status_code = 409

    def __init__(self, message: str, condition: str, **details: Any) -> None:
        super().__init__(message, details={"condition": condition, **details})
        self.condition = condition


class ExternalGatewayError(MarketplaceError):
    status_code = 502
