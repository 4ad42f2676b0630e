# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

# backend/app/routes/inventory.py
"""
Inventory management routes.

SECURITY: All routes require authentication and the admin or vendor role.
- Vendors can only read and change stock of their own products.
- Stock changes go through the stock ledger, which writes one history
  row per change.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..errors import OrderCoreError, ValidationError
from ..services import catalog_service, stock_service


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _optional_int(value, field: str):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={"field": field})


@inventory_bp.get("/products/<int:product_id>")
@require_auth
@require_role("admin", "vendor")
def stock_summary_route(product_id: int):
    """Current stock of every unit of a product."""
    try:
        catalog_service.require_product_access(product_id, g.session_context.actor)
        summary = stock_service.get_stock_summary(product_id)
        return jsonify({"status": "success", "data": summary}), 200
    except OrderCoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load stock summary")
        return jsonify({"status": "error", "message": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>/history")
@require_auth
@require_role("admin", "vendor")
def stock_history_route(product_id: int):
    """
    Stock ledger for a product unit, newest first.

    Query params:
    - combination_id: read a combination's ledger instead of the product's
    - limit: max rows (default 200)
    """
    try:
        catalog_service.require_product_access(product_id, g.session_context.actor)
        combination_id = _optional_int(request.args.get("combination_id"), "combination_id")
        limit = _optional_int(request.args.get("limit"), "limit") or 200
        rows = stock_service.product_history(product_id, combination_id=combination_id, limit=min(limit, 1000))
        return jsonify({"status": "success", "data": {"history": [r.to_dict() for r in rows]}}), 200
    except OrderCoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load stock history")
        return jsonify({"status": "error", "message": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@require_auth
@require_role("admin", "vendor")
def adjust_stock_route():
    """
    Manual stock adjustment.

    Request body:
    {
        "product_id": 10,
        "combination_id": 7,       (required for combination-tracked products)
        "quantity_delta": -2,      (signed, non-zero)
        "note": "Damaged in store" (optional)
    }

    Returns:
        200: Stock movement with previous/new stock
        400: Invalid input, or the change would make stock negative
        403: Product belongs to another vendor
    """
    payload = request.get_json(silent=True) or {}

    try:
        product_id = _optional_int(payload.get("product_id"), "product_id")
        if product_id is None:
            raise ValidationError("product_id is required", details={"field": "product_id"})
        quantity_delta = _optional_int(payload.get("quantity_delta"), "quantity_delta")
        if not quantity_delta:
            raise ValidationError("quantity_delta must be a non-zero integer", details={"field": "quantity_delta"})

        catalog_service.require_product_access(product_id, g.session_context.actor)
        movement = stock_service.adjust_stock(
            product_id=product_id,
            combination_id=_optional_int(payload.get("combination_id"), "combination_id"),
            quantity_delta=quantity_delta,
            actor_user_id=g.current_user.id,
            note=payload.get("note"),
        )
        current_app.logger.info(
            "Stock adjusted by user %s: %s %+d -> %d",
            g.current_user.id, movement.unit.sort_key, movement.change_amount, movement.new_stock,
        )
        return jsonify({"status": "success", "data": {"movement": movement.to_dict()}}), 200
    except OrderCoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"status": "error", "message": "Internal server error"}), 500


@inventory_bp.post("/products/<int:product_id>/combinations")
@require_auth
@require_role("admin", "vendor")
def generate_combinations_route(product_id: int):
    """Create every missing variant combination of a product with zero stock."""
    try:
        catalog_service.require_product_access(product_id, g.session_context.actor)
        created = catalog_service.create_combinations_for_product(product_id)
        return jsonify({"status": "success", "data": {"combinations": created, "created": len(created)}}), 201
    except OrderCoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate combinations")
        return jsonify({"status": "error", "message": "Internal server error"}), 500


@inventory_bp.patch("/products/<int:product_id>/combinations/<int:combination_id>")
@require_auth
@require_role("admin", "vendor")
def toggle_combination_route(product_id: int, combination_id: int):
    """
    Activate or deactivate a combination.

    Request body: {"is_active": false}
    """
    payload = request.get_json(silent=True) or {}

    try:
        if not isinstance(payload.get("is_active"), bool):
            raise ValidationError("is_active must be a boolean", details={"field": "is_active"})
        catalog_service.require_product_access(product_id, g.session_context.actor)
        combination = catalog_service.set_combination_active(
            combination_id, payload["is_active"], product_id=product_id
        )
        return jsonify({"status": "success", "data": {"combination": combination}}), 200
    except OrderCoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update combination")
        return jsonify({"status": "error", "message": "Internal server error"}), 500
