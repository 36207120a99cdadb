"""
Error taxonomy for the reservation engine.

Model code raises these; ``server.py`` renders them as
``{"error": ..., "code": ..., "details"?: ...}`` with the class status code.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class CardMallError(Exception):
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(CardMallError):
    code = "VALIDATION_FAILED"
    default_message = "Validation failed"


class InsufficientStock(CardMallError):
    code = "INSUFFICIENT_STOCK"
    default_message = "Insufficient stock"


class NotFound(CardMallError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found"


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"
    default_message = "Product not found or unavailable"


class TagNotFound(NotFound):
    code = "TAG_NOT_FOUND"
    default_message = "Tag not found"


class CardNotFound(NotFound):
    code = "CARD_NOT_FOUND"
    default_message = "Card not found"


class InvalidState(CardMallError):
    status_code = 409
    code = "INVALID_STATE"
    default_message = "Invalid state transition"


class PaymentMismatch(InvalidState):
    code = "PAYMENT_MISMATCH"
    default_message = "Paid amount does not match order amount"


class RateLimited(CardMallError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."


class Unauthorized(CardMallError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class TokenInvalid(CardMallError):
    status_code = 403
    code = "TOKEN_INVALID"
    default_message = "Link expired or invalid"

    def __init__(self):
        # one message for expired, forged and malformed tokens alike
        super().__init__()


class TransientStoreFailure(CardMallError):
    status_code = 503
    code = "TRANSIENT_STORE_FAILURE"
    default_message = "Temporary datastore failure, please retry"


class ServiceUnavailable(CardMallError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = "Service unavailable"
