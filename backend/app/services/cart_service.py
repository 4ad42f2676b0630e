# Overview: Service-layer operations for checkout; cart re-validation and cart-to-order conversion.

"""
Cart-to-Order Converter

The cart is read, never trusted: every line is re-validated against the
catalog at checkout time (product active, vendor approved, variant choice
still purchasable, enough stock) and re-priced at current prices.

checkout_cart() builds the summary, converts it and places the order in
the SAME write transaction as the cart is cleared, so a failed order
leaves the cart intact and a placed order never leaves it behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from ..errors import CartHasIssues, EmptyCart, Forbidden
from ..extensions import db
from ..models import (
    Cart,
    CartItem,
    Inventory,
    Product,
    ProductVariant,
    VariantCombination,
    Vendor,
    variant_combination_variants,
)
from ..models.catalog import PRODUCT_STATUS_ACTIVE, VENDOR_STATUS_APPROVED
from .concurrency import run_with_retry, transaction_scope
from .order_service import (
    PAYMENT_METHOD_PAYSTACK,
    CreateOrderParams,
    OrderItemRequest,
    PlacedOrder,
    place_order_locked,
    finalize_placed_order,
)
from .pricing_service import (
    CombinationChoice,
    LegacyVariants,
    NoVariant,
    line_sub_total,
    line_unit_price,
    order_total,
)


@dataclass(frozen=True)
class CartLine:
    cart_item_id: int
    product_id: int
    vendor_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    variant_ids: tuple[int, ...] = ()
    combination_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "cart_item_id": self.cart_item_id,
            "product_id": self.product_id,
            "vendor_id": self.vendor_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "variant_ids": list(self.variant_ids),
            "combination_id": self.combination_id,
        }


@dataclass
class CartSummary:
    cart_id: int
    user_id: int
    items: list[CartLine] = field(default_factory=list)
    unavailable_items: list[dict] = field(default_factory=list)
    stock_issues: list[dict] = field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")

    @property
    def has_issues(self) -> bool:
        return bool(self.unavailable_items or self.stock_issues)

    def to_dict(self) -> dict:
        return {
            "cart_id": self.cart_id,
            "user_id": self.user_id,
            "total_items": len(self.items),
            "items": [line.to_dict() for line in self.items],
            "unavailable_items": self.unavailable_items,
            "stock_issues": self.stock_issues,
            "has_issues": self.has_issues,
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
        }


def _cart_variant_ids(selected) -> tuple[int, ...]:
    if not selected:
        return ()
    ids = []
    for entry in selected:
        value = entry.get("id") if isinstance(entry, dict) else entry
        if value is not None:
            ids.append(int(value))
    return tuple(sorted(set(ids)))


def _match_combination(product_id: int, variant_ids: tuple[int, ...]) -> VariantCombination | None:
    """Combination whose variant set equals the selected ids exactly."""
    combinations = db.session.query(VariantCombination).filter_by(product_id=product_id).all()
    for combination in combinations:
        ids = tuple(sorted(
            vid for (vid,) in db.session.query(variant_combination_variants.c.variant_id)
            .filter(variant_combination_variants.c.combination_id == combination.id)
        ))
        if ids == variant_ids:
            return combination
    return None


def _unavailable(item: CartItem, product_name: str, reason: str, **extra) -> dict:
    entry = {
        "item_id": item.id,
        "product_id": item.product_id,
        "product_name": product_name,
        "reason": reason,
    }
    entry.update(extra)
    return entry


def build_cart_summary(user_id: int) -> CartSummary | None:
    """
    Re-validate the user's cart. Returns None when the user has no cart.

    Lines that fail validation are reported in unavailable_items or
    stock_issues and left out of items and totals.
    """
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart is None:
        return None

    summary = CartSummary(cart_id=cart.id, user_id=user_id)
    requested: dict[tuple[str, int | None, int], int] = {}
    cart_items = db.session.query(CartItem).filter_by(cart_id=cart.id).order_by(CartItem.id).all()

    for item in cart_items:
        product = db.session.query(Product).filter_by(id=item.product_id).first()
        if product is None or product.status != PRODUCT_STATUS_ACTIVE:
            summary.unavailable_items.append(
                _unavailable(item, product.name if product else "Unknown Product", "Product is no longer available")
            )
            continue

        vendor_status = None
        if product.vendor_id is not None:
            vendor_status = db.session.query(Vendor.status).filter(Vendor.id == product.vendor_id).scalar()
        if vendor_status != VENDOR_STATUS_APPROVED:
            summary.unavailable_items.append(_unavailable(item, product.name, "Vendor is not active"))
            continue

        variant_ids = _cart_variant_ids(item.selected_variants)
        combination_tracked = (
            db.session.query(VariantCombination.id)
            .filter_by(product_id=product.id, is_active=True)
            .first()
            is not None
        )
        combination = None
        additional_prices = []

        if combination_tracked:
            if not variant_ids:
                summary.unavailable_items.append(
                    _unavailable(item, product.name, "Choose a variant for this product")
                )
                continue
            combination = _match_combination(product.id, variant_ids)
            if combination is None:
                summary.unavailable_items.append(
                    _unavailable(item, product.name, "Selected variant combination is not available")
                )
                continue
            if not combination.is_active:
                summary.unavailable_items.append(
                    _unavailable(
                        item,
                        product.name,
                        "This variant combination is no longer available",
                        variant_combination=combination.combination_name,
                    )
                )
                continue
            unit_key = ("combination", combination.id, product.id)
            available = combination.stock
        else:
            if variant_ids:
                variants = (
                    db.session.query(ProductVariant)
                    .filter(ProductVariant.id.in_(variant_ids), ProductVariant.product_id == product.id)
                    .all()
                )
                if len(variants) != len(variant_ids):
                    summary.unavailable_items.append(
                        _unavailable(item, product.name, "Selected variant is no longer available")
                    )
                    continue
                additional_prices = [v.additional_price for v in variants]
            inventory = db.session.query(Inventory).filter_by(product_id=product.id).first()
            unit_key = ("inventory", inventory.id if inventory else None, product.id)
            available = inventory.stock if inventory else 0

        wanted = requested.get(unit_key, 0) + item.quantity
        if wanted > available:
            summary.stock_issues.append({
                "item_id": item.id,
                "product_id": item.product_id,
                "product_name": product.name,
                "requested_quantity": item.quantity,
                "available_stock": max(available - requested.get(unit_key, 0), 0),
            })
            continue
        requested[unit_key] = wanted

        if combination is not None:
            unit_price = line_unit_price(
                product.price, product.discounted_price, price_modifier=combination.price_modifier
            )
        else:
            unit_price = line_unit_price(
                product.price, product.discounted_price, additional_prices=additional_prices
            )

        summary.items.append(
            CartLine(
                cart_item_id=item.id,
                product_id=product.id,
                vendor_id=product.vendor_id,
                product_name=product.name,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=line_sub_total(unit_price, item.quantity),
                variant_ids=variant_ids,
                combination_id=combination.id if combination is not None else None,
            )
        )

    totals = order_total([line.total_price for line in summary.items])
    summary.subtotal = totals.subtotal
    summary.total = totals.total
    return summary


def convert_cart_to_order(
    summary: CartSummary | None,
    *,
    actor_user_id: int,
    address_id: int,
    payment_method: str | None = None,
    notes: str | None = None,
) -> CreateOrderParams:
    """Turn a validated cart summary into the assembler's input."""
    if summary is None or (not summary.items and not summary.has_issues):
        raise EmptyCart("Cart is empty")
    if summary.user_id != actor_user_id:
        raise Forbidden("Cart does not belong to the current user")

    owner = db.session.query(Cart.user_id).filter(Cart.id == summary.cart_id).scalar()
    if owner != actor_user_id:
        raise Forbidden("Cart does not belong to the current user", details={"cart_id": summary.cart_id})

    if summary.has_issues:
        raise CartHasIssues(
            "Cart has issues that must be resolved before checkout",
            details={
                "unavailable_items": summary.unavailable_items,
                "stock_issues": summary.stock_issues,
            },
        )

    items = []
    for line in summary.items:
        if line.combination_id is not None:
            selection = CombinationChoice(line.combination_id)
        elif line.variant_ids:
            selection = LegacyVariants(line.variant_ids)
        else:
            selection = NoVariant()
        items.append(OrderItemRequest(product_id=line.product_id, quantity=line.quantity, selection=selection))

    return CreateOrderParams(
        user_id=actor_user_id,
        address_id=address_id,
        items=items,
        shipping_cost=summary.shipping_cost,
        tax_amount=summary.tax_amount,
        notes=notes,
        payment_method=payment_method
        or current_app.config.get("DEFAULT_PAYMENT_METHOD", PAYMENT_METHOD_PAYSTACK),
    )


def clear_cart(cart_id: int) -> None:
    """Delete the cart's items and zero its totals. Does NOT commit."""
    db.session.query(CartItem).filter(CartItem.cart_id == cart_id).delete(synchronize_session=False)
    db.session.query(Cart).filter(Cart.id == cart_id).update(
        {Cart.total_items: 0, Cart.total_amount: Decimal("0")},
        synchronize_session=False,
    )


def checkout_cart(
    user_id: int,
    *,
    address_id: int,
    payment_method: str | None = None,
    notes: str | None = None,
) -> PlacedOrder:
    """Place an order from the user's persisted cart and clear the cart."""
    def _op():
        with transaction_scope(write_lock=True):
            summary = build_cart_summary(user_id)
            params = convert_cart_to_order(
                summary,
                actor_user_id=user_id,
                address_id=address_id,
                payment_method=payment_method,
                notes=notes,
            )
            order = place_order_locked(params)
            clear_cart(summary.cart_id)
            order_id = order.id
        return order_id

    order_id = run_with_retry(_op)
    current_app.logger.info("Order %s placed from cart by user %s", order_id, user_id)
    return finalize_placed_order(order_id)
