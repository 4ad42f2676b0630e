# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

# backend/app/routes/orders.py
"""
Order API Routes

DESIGN:
- Routes only parse input, call one service function and shape JSON.
- Every service failure is an OrderCoreError that knows its HTTP status
  and renders as {"status": "error", "message", "errors"?}.
- Success bodies are {"status": "success", "data": {...}} with an optional
  "warnings" list for best-effort steps that failed after commit.

SECURITY:
- All routes except the payment webhook require a session token.
- The webhook is authenticated by its HMAC signature instead.
- Order reads answer 404 for orders the caller may not see.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderCoreError, ValidationError, WebhookSignatureError
from ..services import cart_service, lifecycle_service, order_service, payment_service
from ..services.payment_gateway import SIGNATURE_HEADER, verify_webhook_signature, webhook_secret


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _success(data: dict, status_code: int = 200, warnings: list | None = None):
    body = {"status": "success", "data": data}
    if warnings:
        body["warnings"] = warnings
    return jsonify(body), status_code


def _error(error: OrderCoreError):
    return jsonify(error.to_dict()), error.status_code


def _server_error():
    return jsonify({"status": "error", "message": "Internal server error"}), 500


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _page_args() -> dict:
    try:
        page = int(request.args.get("page", 1))
        per_page = int(request.args.get("per_page", request.args.get("limit", 20)))
    except ValueError:
        raise ValidationError("page and per_page must be integers")
    return {"page": page, "per_page": per_page, "status": request.args.get("status")}


# =============================================================================
# ORDER PLACEMENT
# =============================================================================

@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Place an order.

    Request body:
    {
        "addressId": 3,
        "items": [
            {"productId": 10, "quantity": 2},
            {"productId": 11, "quantity": 1, "combinationId": 7},
            {"productId": 12, "quantity": 1, "variantId": 4}
        ],
        "shippingCost": "1500.00",
        "taxAmount": "500.00",
        "notes": "Leave at the gate",   (optional)
        "paymentMethod": "paystack"     (optional, or "cash_on_delivery")
    }

    Returns:
        201: Order with items, summary and payment initialisation data
        400: Precondition failure (empty order, invalid item, insufficient stock)
        404: Address, product or variant not found
        500: Server error
    """
    try:
        params = order_service.parse_create_order(g.current_user.id, _json_body())
        placed = order_service.create_order(params)
        return _success({"order": placed.to_dict()}, 201, placed.warnings)
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return _server_error()


@orders_bp.post("/from-cart")
@require_auth
def create_order_from_cart_route():
    """
    Place an order from the caller's persisted cart, then clear the cart.

    Request body:
    {
        "addressId": 3,
        "paymentMethod": "paystack",  (optional)
        "notes": "..."                (optional)
    }
    """
    try:
        data = _json_body()
        address_id = data.get("addressId", data.get("address_id"))
        if address_id is None:
            raise ValidationError("addressId is required", details={"field": "addressId"})
        placed = cart_service.checkout_cart(
            g.current_user.id,
            address_id=address_id,
            payment_method=data.get("paymentMethod") or data.get("payment_method"),
            notes=data.get("notes"),
        )
        return _success({"order": placed.to_dict()}, 201, placed.warnings)
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create order from cart")
        return _server_error()


@orders_bp.get("/cart-summary")
@require_auth
def cart_summary_route():
    """Re-validated view of the caller's cart as checkout would see it."""
    try:
        summary = cart_service.build_cart_summary(g.current_user.id)
        return _success({"cart": summary.to_dict() if summary else None})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to build cart summary")
        return _server_error()


# =============================================================================
# ORDER READS
# =============================================================================

@orders_bp.get("/my-orders")
@require_auth
def my_orders_route():
    """Caller's orders, newest first. Query: page, per_page, status."""
    try:
        orders, pagination = order_service.list_user_orders(g.current_user.id, **_page_args())
        return _success({"orders": [o.to_dict() for o in orders], "pagination": pagination})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list user orders")
        return _server_error()


@orders_bp.get("/vendor")
@require_auth
@require_role("vendor")
def vendor_orders_route():
    """Orders containing the vendor's items; each order lists only those items."""
    try:
        vendor_id = g.session_context.vendor_id
        orders, pagination = order_service.list_vendor_orders(vendor_id, **_page_args())
        return _success({"orders": [o.to_dict() for o in orders], "pagination": pagination})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list vendor orders")
        return _server_error()


@orders_bp.get("")
@require_auth
@require_role("admin")
def list_orders_route():
    """All orders (admin). Query: page, per_page, status, user_id."""
    try:
        user_id = request.args.get("user_id", type=int)
        orders, pagination = order_service.list_all_orders(user_id=user_id, **_page_args())
        return _success({"orders": [o.to_dict() for o in orders], "pagination": pagination})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return _server_error()


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    """
    One order with items, detail and summary.

    Visible to the buyer, admins, and vendors with items in the order
    (vendors see only their own items). Everyone else gets 404.
    """
    try:
        order = order_service.get_order_for_actor(order_id, g.session_context.actor)
        return _success({"order": order.to_dict()})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return _server_error()


# =============================================================================
# LIFECYCLE
# =============================================================================

@orders_bp.patch("/<int:order_id>/status")
@require_auth
@require_role("admin", "vendor")
def update_order_status_route(order_id: int):
    """
    Move an order forward.

    Request body:
    {
        "status": "shipped",
        "notes": "Dispatched from Lagos hub",   (optional)
        "carrier": "GIG Logistics",             (optional, shipment metadata)
        "trackingNumber": "GIG-123"             (optional, shipment metadata)
    }

    Returns:
        200: Transition result
        400: Invalid status or transition
        403: Vendor does not own every item in the order
    """
    try:
        data = _json_body()
        status = data.get("status")
        if not status:
            raise ValidationError("status is required", details={"field": "status"})
        metadata = {}
        if data.get("carrier"):
            metadata["carrier"] = data["carrier"]
        tracking = data.get("trackingNumber") or data.get("tracking_number")
        if tracking:
            metadata["tracking_number"] = tracking

        result = lifecycle_service.transition_order(
            order_id,
            status,
            g.session_context.actor,
            notes=data.get("notes"),
            metadata=metadata,
        )
        order = order_service.get_order_for_actor(order_id, g.session_context.actor)
        return _success({"transition": result.to_dict(), "order": order.to_dict()})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return _server_error()


@orders_bp.patch("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """
    Cancel an order (buyer while pending/processing, or admin).

    Request body: {"reason": "Changed my mind"}  (optional)
    """
    try:
        data = _json_body()
        result = lifecycle_service.cancel_order(order_id, g.session_context.actor, reason=data.get("reason"))
        order = order_service.get_order_for_actor(order_id, g.session_context.actor)
        return _success({"transition": result.to_dict(), "order": order.to_dict()})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return _server_error()


@orders_bp.patch("/items/<int:item_id>/status")
@require_auth
@require_role("admin", "vendor")
def update_item_status_route(item_id: int):
    """
    Vendor status update for one of its own order items.

    Request body: {"status": "shipped", "notes": "..."}
    Allowed statuses: processing, shipped, cancelled.
    """
    try:
        data = _json_body()
        status = data.get("status")
        if not status:
            raise ValidationError("status is required", details={"field": "status"})
        result = lifecycle_service.update_item_status(
            item_id, status, g.session_context.actor, notes=data.get("notes")
        )
        return _success(result.to_dict())
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to update order item status")
        return _server_error()


# =============================================================================
# PAYMENTS
# =============================================================================

@orders_bp.post("/<int:order_id>/payment")
@require_auth
def retry_payment_route(order_id: int):
    """Start a fresh payment attempt for a pending, unpaid order."""
    try:
        payment = payment_service.retry_payment(order_id, g.session_context.actor)
        return _success({"payment": payment.to_dict()}, 201)
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to start payment")
        return _server_error()


@orders_bp.get("/verify-payment/<string:reference>")
@require_auth
def verify_payment_route(reference: str):
    """
    Re-check a payment with the gateway.

    Idempotent: an already-verified reference returns the cached result.

    Returns:
        200: Verification result (data.verified tells success from failure)
        402: Gateway unreachable or rejected the request
        404: Unknown reference, or not the caller's payment
    """
    try:
        result = payment_service.verify_payment(reference, g.session_context.actor)
        return _success({"verification": result.to_dict()})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return _server_error()


@orders_bp.post("/webhook/payment")
def payment_webhook_route():
    """
    Gateway webhook. Public, authenticated by the HMAC-SHA512 signature.

    Valid events are always acknowledged with 200, including events that
    cause no state change.
    """
    try:
        raw_body = request.get_data()
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_webhook_signature(raw_body, signature, webhook_secret()):
            raise WebhookSignatureError("Invalid webhook signature")

        result = payment_service.handle_webhook(request.get_json(silent=True))
        return _success({"webhook": result.to_dict()})
    except OrderCoreError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return _server_error()
