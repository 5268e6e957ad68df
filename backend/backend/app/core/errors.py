from __future__ import annotations

from typing import Any


class PickingError(ValueError):
    """Base for every error the picking services raise on purpose.

    Subclasses ValueError so callers that only know the service-layer
    convention (``raise ValueError(...)``) still catch it.
    """

    status_code = 400
    code = "picking_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationFailed(PickingError):
    status_code = 400
    code = "validation_failed"


class NotFound(PickingError):
    status_code = 404
    code = "not_found"


class Conflict(PickingError):
    status_code = 409
    code = "conflict"


class CartNotAvailable(Conflict):
    code = "cart_not_available"


class ConcurrentClaim(Conflict):
    code = "concurrent_claim"


class NoOrdersAvailable(Conflict):
    code = "no_orders_available"


class InvalidTransition(Conflict):
    code = "invalid_transition"
