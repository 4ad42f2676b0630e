# Overview: Domain error taxonomy for the order core; each error knows its HTTP status.

from __future__ import annotations


class OrderCoreError(Exception):
    """
    Base class for every error the order core surfaces to clients.

    details is a JSON-serialisable dict naming the offending item/state so
    clients can correct and resubmit (e.g. reduce quantity).
    """
    status_code = 500
    error_code = "ORDER_CORE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {
            "status": "error",
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            body["errors"] = self.details
        return body


# =============================================================================
# 400: INPUT PROBLEMS
# =============================================================================

class ValidationError(OrderCoreError):
    """400-level input problem."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class EmptyOrder(ValidationError):
    error_code = "EMPTY_ORDER"


class EmptyCart(ValidationError):
    error_code = "EMPTY_CART"


class InvalidItemSpec(ValidationError):
    error_code = "INVALID_ITEM_SPEC"


class VendorMissing(ValidationError):
    error_code = "VENDOR_MISSING"


class ProductUnavailable(ValidationError):
    """Product exists but is inactive, or its vendor is not approved."""
    error_code = "PRODUCT_UNAVAILABLE"


class CartHasIssues(ValidationError):
    error_code = "CART_HAS_ISSUES"


class InsufficientStock(OrderCoreError):
    status_code = 400
    error_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        message: str,
        *,
        unit_kind: str,
        unit_id: int | None,
        product_id: int | None,
        requested: int,
        available: int,
    ):
        super().__init__(message, details={
            "unit_kind": unit_kind,
            "unit_id": unit_id,
            "product_id": product_id,
            "requested_quantity": requested,
            "available_stock": available,
        })
        self.requested = requested
        self.available = available


class InvalidTransition(OrderCoreError):
    status_code = 400
    error_code = "INVALID_TRANSITION"

    def __init__(self, message: str, *, current: str, requested: str, details: dict | None = None):
        merged = {"current_status": current, "requested_status": requested}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.current = current
        self.requested = requested


# =============================================================================
# 404: MISSING ENTITIES
# =============================================================================

class NotFoundError(OrderCoreError):
    status_code = 404
    error_code = "NOT_FOUND"


class AddressNotFound(NotFoundError):
    error_code = "ADDRESS_NOT_FOUND"


class ProductNotFound(NotFoundError):
    error_code = "PRODUCT_NOT_FOUND"


class VariantNotFound(NotFoundError):
    error_code = "VARIANT_NOT_FOUND"


class OrderNotFound(NotFoundError):
    error_code = "ORDER_NOT_FOUND"


class PaymentNotFound(NotFoundError):
    error_code = "PAYMENT_NOT_FOUND"


# =============================================================================
# 401 / 403: IDENTITY AND OWNERSHIP
# =============================================================================

class Unauthorized(OrderCoreError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class Forbidden(OrderCoreError):
    status_code = 403
    error_code = "FORBIDDEN"


# =============================================================================
# PAYMENTS AND STORAGE
# =============================================================================

class PaymentError(OrderCoreError):
    """Gateway rejected the request or could not be reached."""
    status_code = 402
    error_code = "PAYMENT_ERROR"


class WebhookSignatureError(Unauthorized):
    status_code = 401
    error_code = "INVALID_SIGNATURE"


class PersistenceError(OrderCoreError):
    """Unexpected storage failure. The surrounding transaction has been rolled back."""
    status_code = 500
    error_code = "PERSISTENCE_ERROR"
