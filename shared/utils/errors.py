"""
shared/utils/errors.py
Domain error hierarchy. Core services raise these; main.py maps each
kind to an HTTP status with a stable machine-readable code.
"""

from typing import Any, Optional


class MarketplaceError(Exception):
    """Base class for every expected business-rule failure."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFound(MarketplaceError):
    code = "not_found"
    status_code = 404


class Forbidden(MarketplaceError):
    code = "forbidden"
    status_code = 403


class InvalidTransition(MarketplaceError):
    code = "invalid_transition"
    status_code = 409


class Conflict(MarketplaceError):
    code = "conflict"
    status_code = 409


class SlotTaken(Conflict):
    code = "slot_taken"


class InsufficientFunds(MarketplaceError):
    code = "insufficient_funds"
    status_code = 422


class ValidationError(MarketplaceError):
    code = "validation_error"
    status_code = 422
