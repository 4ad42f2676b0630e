# Overview: Service-layer operations for order placement; the assembler and the order read models.

"""
Order Placement (authoritative)

create_order() runs in ONE write transaction:
1. Preconditions, in order, each failing fast:
   items non-empty -> address owned by the buyer -> per item: product
   exists, has a vendor, is purchasable, variant selection resolves to a
   stock unit with enough stock.
2. Order header, items and detail are inserted together (status
   pending/pending), then the order number is derived from the new id.
3. Each line reserves its stock unit. Lines are reserved in (kind, id)
   order so two orders touching the same units lock them in the same order.
4. sold_units is incremented per product by the ordered quantity.
5. Commit. Any failure above rolls back everything, including stock.

After commit (best-effort, never rolls the order back):
- payment initialisation (skipped for cash on delivery)
- buyer and vendor notifications
Failures there are logged and returned as warnings.

Read models are plain dataclasses built from explicit queries; nothing
here relies on lazy-loaded relationships.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from ..errors import (
    AddressNotFound,
    EmptyOrder,
    InsufficientStock,
    InvalidItemSpec,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    ValidationError,
    VariantNotFound,
    VendorMissing,
)
from ..extensions import db
from ..models import (
    Address,
    Order,
    OrderDetail,
    OrderItem,
    Product,
    ProductVariant,
    User,
    VariantCombination,
    Vendor,
    variant_combination_variants,
)
from ..models.catalog import PRODUCT_STATUS_ACTIVE, VENDOR_STATUS_APPROVED
from ..models.orders import ORDER_PENDING, ORDER_PROCESSING, ORDER_STATUSES, PAYMENT_PENDING
from app.time_utils import to_utc_z, utcnow
from . import communications_service
from .concurrency import run_with_retry, transaction_scope
from .identifier_service import generate_order_number
from .pricing_service import (
    CombinationChoice,
    LegacyVariants,
    NoVariant,
    VariantSelection,
    line_sub_total,
    line_unit_price,
    order_total,
    to_money,
)
from .session_service import Actor
from .stock_service import (
    UNIT_COMBINATION,
    UNIT_INVENTORY,
    StockUnit,
    combination_unit,
    get_stock,
    inventory_unit,
    product_has_combinations,
    reserve,
)


PAYMENT_METHOD_PAYSTACK = "paystack"
PAYMENT_METHOD_CASH_ON_DELIVERY = "cash_on_delivery"
VALID_PAYMENT_METHODS = (PAYMENT_METHOD_PAYSTACK, PAYMENT_METHOD_CASH_ON_DELIVERY)


# =============================================================================
# INPUT TYPES
# =============================================================================

@dataclass(frozen=True)
class OrderItemRequest:
    product_id: int
    quantity: int
    selection: VariantSelection = NoVariant()


@dataclass
class CreateOrderParams:
    user_id: int
    address_id: int
    items: list[OrderItemRequest]
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    notes: str | None = None
    payment_method: str = PAYMENT_METHOD_PAYSTACK


def _positive_int(value, field_name: str, index: int | None = None) -> int:
    details = {"field": field_name}
    if index is not None:
        details["item_index"] = index
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive integer", details=details)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive integer", details=details)
    if number <= 0 or (isinstance(value, float) and value != number):
        raise ValidationError(f"{field_name} must be a positive integer", details=details)
    return number


def _variant_id_list(raw, index: int) -> list[int]:
    """selected_variants accepts ids or {"id": ...} objects."""
    if not isinstance(raw, list):
        raise InvalidItemSpec("selected_variants must be a list", details={"item_index": index})
    ids = []
    for entry in raw:
        value = entry.get("id") if isinstance(entry, dict) else entry
        ids.append(_positive_int(value, "selected_variants.id", index))
    return ids


def parse_variant_selection(raw_item: dict, index: int = 0) -> VariantSelection:
    """
    Map the wire shape of one item onto the VariantSelection union.

    combinationId selects a combination; variantId or selected_variants
    select legacy variants. A combination plus any legacy field, or both
    legacy fields at once, is an InvalidItemSpec.
    """
    combination_id = raw_item.get("combinationId", raw_item.get("combination_id"))
    variant_id = raw_item.get("variantId", raw_item.get("variant_id"))
    selected = raw_item.get("selected_variants")

    has_legacy = variant_id is not None or bool(selected)
    if combination_id is not None and has_legacy:
        raise InvalidItemSpec(
            "An item cannot select both a variant combination and individual variants",
            details={"item_index": index},
        )
    if variant_id is not None and selected:
        raise InvalidItemSpec(
            "Use either variantId or selected_variants, not both",
            details={"item_index": index},
        )

    if combination_id is not None:
        return CombinationChoice(_positive_int(combination_id, "combinationId", index))
    if variant_id is not None:
        return LegacyVariants((_positive_int(variant_id, "variantId", index),))
    if selected:
        ids = _variant_id_list(selected, index)
        return LegacyVariants(tuple(OrderedDict.fromkeys(ids)))
    return NoVariant()


def parse_order_items(raw_items) -> list[OrderItemRequest]:
    if not isinstance(raw_items, list) or not raw_items:
        raise EmptyOrder("At least one order item is required")
    parsed = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidItemSpec("Each item must be an object", details={"item_index": index})
        product_id = raw.get("productId", raw.get("product_id"))
        parsed.append(
            OrderItemRequest(
                product_id=_positive_int(product_id, "productId", index),
                quantity=_positive_int(raw.get("quantity"), "quantity", index),
                selection=parse_variant_selection(raw, index),
            )
        )
    return parsed


def parse_create_order(user_id: int, data: dict) -> CreateOrderParams:
    """Build CreateOrderParams from a POST /orders body."""
    items = parse_order_items(data.get("items"))
    address_id = data.get("addressId", data.get("address_id"))
    if address_id is None:
        raise ValidationError("addressId is required", details={"field": "addressId"})
    return CreateOrderParams(
        user_id=user_id,
        address_id=_positive_int(address_id, "addressId"),
        items=items,
        shipping_cost=to_money(data.get("shippingCost", data.get("shipping_cost")), "shippingCost"),
        tax_amount=to_money(data.get("taxAmount", data.get("tax_amount")), "taxAmount"),
        notes=data.get("notes"),
        payment_method=data.get("paymentMethod") or data.get("payment_method")
        or current_app.config.get("DEFAULT_PAYMENT_METHOD", PAYMENT_METHOD_PAYSTACK),
    )


# =============================================================================
# ASSEMBLER
# =============================================================================

@dataclass
class _PlannedLine:
    product: Product
    quantity: int
    unit: StockUnit
    unit_price: Decimal
    sub_total: Decimal
    snapshot: dict | None


def _load_purchasable_product(product_id: int, index: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFound(
            f"Product {product_id} not found",
            details={"product_id": product_id, "item_index": index},
        )
    if product.vendor_id is None:
        raise VendorMissing(
            f"Product {product.name} has no vendor",
            details={"product_id": product_id, "item_index": index},
        )
    vendor_status = db.session.query(Vendor.status).filter(Vendor.id == product.vendor_id).scalar()
    if vendor_status is None:
        raise VendorMissing(
            f"Vendor of product {product.name} no longer exists",
            details={"product_id": product_id, "item_index": index},
        )
    if product.status != PRODUCT_STATUS_ACTIVE or vendor_status != VENDOR_STATUS_APPROVED:
        raise ProductUnavailable(
            f"Product {product.name} is not available for purchase",
            details={"product_id": product_id, "item_index": index},
        )
    return product


def _combination_variants(combination_id: int) -> list[dict]:
    rows = (
        db.session.query(ProductVariant)
        .join(
            variant_combination_variants,
            variant_combination_variants.c.variant_id == ProductVariant.id,
        )
        .filter(variant_combination_variants.c.combination_id == combination_id)
        .order_by(ProductVariant.name)
        .all()
    )
    return [{"id": v.id, "name": v.name, "value": v.value} for v in rows]


def _plan_line(item: OrderItemRequest, index: int) -> _PlannedLine:
    product = _load_purchasable_product(item.product_id, index)
    selection = item.selection
    combination_tracked = product_has_combinations(product.id)

    if isinstance(selection, CombinationChoice):
        unit = combination_unit(selection.combination_id, product.id)
        combination = db.session.query(VariantCombination).filter_by(id=unit.id).first()
        unit_price = line_unit_price(
            product.price, product.discounted_price, price_modifier=combination.price_modifier
        )
        snapshot = {
            "type": "combination",
            "combination_id": combination.id,
            "combination_name": combination.combination_name,
            "price_modifier": str(combination.price_modifier),
            "variants": _combination_variants(combination.id),
        }
    else:
        if combination_tracked:
            raise InvalidItemSpec(
                f"Product {product.name} is sold per variant combination; choose a combination",
                details={"product_id": product.id, "item_index": index},
            )
        variants = []
        if isinstance(selection, LegacyVariants):
            variants = (
                db.session.query(ProductVariant)
                .filter(
                    ProductVariant.id.in_(selection.variant_ids),
                    ProductVariant.product_id == product.id,
                )
                .all()
            )
            found = {v.id for v in variants}
            missing = [vid for vid in selection.variant_ids if vid not in found]
            if missing:
                raise VariantNotFound(
                    f"Variant {missing[0]} not found for product {product.id}",
                    details={"product_id": product.id, "variant_ids": missing, "item_index": index},
                )
            variants.sort(key=lambda v: selection.variant_ids.index(v.id))

        unit = inventory_unit(product.id, create=False)
        if unit is None:
            raise InsufficientStock(
                f"Insufficient stock for product: {product.name}",
                unit_kind=UNIT_INVENTORY,
                unit_id=None,
                product_id=product.id,
                requested=item.quantity,
                available=0,
            )
        unit_price = line_unit_price(
            product.price,
            product.discounted_price,
            additional_prices=[v.additional_price for v in variants],
        )
        snapshot = None
        if variants:
            snapshot = {
                "type": "legacy",
                "variants": [
                    {
                        "id": v.id,
                        "name": v.name,
                        "value": v.value,
                        "additional_price": str(v.additional_price),
                    }
                    for v in variants
                ],
            }

    return _PlannedLine(
        product=product,
        quantity=item.quantity,
        unit=unit,
        unit_price=unit_price,
        sub_total=line_sub_total(unit_price, item.quantity),
        snapshot=snapshot,
    )


def _check_stock(line: _PlannedLine, requested: dict) -> None:
    """
    Unlocked pre-check against the running total for the line's unit.

    reserve() repeats the check under the row lock.
    """
    unit = line.unit
    quantity = requested.get(unit, 0) + line.quantity
    requested[unit] = quantity
    available = get_stock(unit)
    if available < quantity:
        raise InsufficientStock(
            f"Insufficient stock for product: {line.product.name}",
            unit_kind=unit.kind,
            unit_id=unit.id,
            product_id=unit.product_id,
            requested=quantity,
            available=available,
        )


def _increment_sold_units(lines: list[_PlannedLine]) -> None:
    per_product: dict[int, int] = {}
    for line in lines:
        per_product[line.product.id] = per_product.get(line.product.id, 0) + line.quantity
    for product_id, quantity in sorted(per_product.items()):
        db.session.query(Product).filter(Product.id == product_id).update(
            {Product.sold_units: Product.sold_units + quantity},
            synchronize_session=False,
        )


def place_order_locked(params: CreateOrderParams) -> Order:
    """Body of create_order; runs inside the caller's write transaction."""
    if not params.items:
        raise EmptyOrder("At least one order item is required")

    address = (
        db.session.query(Address)
        .filter(Address.id == params.address_id, Address.user_id == params.user_id)
        .first()
    )
    if address is None:
        raise AddressNotFound(
            "Address not found or does not belong to user",
            details={"address_id": params.address_id},
        )

    if params.payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(
            f"Unsupported payment method: {params.payment_method}",
            details={"payment_method": params.payment_method, "allowed": list(VALID_PAYMENT_METHODS)},
        )

    lines = []
    requested: dict[StockUnit, int] = {}
    for index, item in enumerate(params.items):
        line = _plan_line(item, index)
        _check_stock(line, requested)
        lines.append(line)

    totals = order_total(
        [line.sub_total for line in lines],
        shipping_cost=params.shipping_cost,
        tax_amount=params.tax_amount,
    )

    now = utcnow()
    order = Order(
        user_id=params.user_id,
        order_date=now,
        total_amount=totals.total,
        payment_status=PAYMENT_PENDING,
        payment_method=params.payment_method,
        order_status=ORDER_PENDING,
    )
    db.session.add(order)
    db.session.flush()

    items = []
    for line in lines:
        item = OrderItem(
            order_id=order.id,
            product_id=line.product.id,
            vendor_id=line.product.vendor_id,
            combination_id=line.unit.id if line.unit.kind == UNIT_COMBINATION else None,
            inventory_id=line.unit.id if line.unit.kind == UNIT_INVENTORY else None,
            quantity=line.quantity,
            price=line.unit_price,
            sub_total=line.sub_total,
            selected_variants=line.snapshot,
            status=ORDER_PROCESSING,
        )
        items.append(item)
    db.session.add_all(items)
    db.session.add(
        OrderDetail(
            order_id=order.id,
            address_id=address.id,
            shipping_cost=totals.shipping_cost,
            tax_amount=totals.tax_amount,
            note=params.notes,
        )
    )
    db.session.flush()

    order.order_number = generate_order_number(order.id)

    for line in sorted(lines, key=lambda l: l.unit.sort_key):
        reserve(
            line.unit,
            line.quantity,
            actor_user_id=params.user_id,
            order_id=order.id,
            note=f"Order {order.order_number}: stock reserved",
        )

    _increment_sold_units(lines)
    db.session.flush()
    return order


@dataclass
class PlacedOrder:
    order: "OrderWithItems"
    payment: dict | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.order.to_dict()
        data["payment"] = self.payment
        return data


def create_order(params: CreateOrderParams) -> PlacedOrder:
    """
    Place an order and run the post-commit steps.

    Raises an OrderCoreError subclass for every precondition or stock
    failure; nothing is persisted in that case.
    """
    def _op():
        with transaction_scope(write_lock=True):
            order = place_order_locked(params)
            order_id = order.id
        return order_id

    order_id = run_with_retry(_op)
    current_app.logger.info("Order %s placed by user %s", order_id, params.user_id)
    return finalize_placed_order(order_id)


def finalize_placed_order(order_id: int) -> PlacedOrder:
    """
    Post-commit side effects for a freshly committed order.

    Each step is best-effort: a failure is logged and reported as a
    warning, and the committed order stands.
    """
    from .payment_service import initialize_order_payment

    warnings = []
    payment = None

    order = db.session.query(Order).filter_by(id=order_id).first()
    if order.payment_method != PAYMENT_METHOD_CASH_ON_DELIVERY:
        try:
            payment = initialize_order_payment(order_id).to_dict()
        except Exception:
            current_app.logger.exception("Payment initialization failed for order %s", order_id)
            warnings.append(
                "Order was created but payment initialization failed; "
                f"retry with POST /api/orders/{order_id}/payment"
            )

    try:
        with transaction_scope():
            order = db.session.query(Order).filter_by(id=order_id).first()
            created = communications_service.order_placed(order, order_vendor_ids(order_id))
        communications_service.deliver(created)
    except Exception:
        current_app.logger.exception("Order notifications failed for order %s", order_id)
        warnings.append("Order confirmation notifications could not be sent")

    return PlacedOrder(order=load_order_with_items(order_id), payment=payment, warnings=warnings)


# =============================================================================
# READ MODELS
# =============================================================================

def _money(value) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class OrderItemView:
    id: int
    product_id: int
    product_name: str | None
    vendor_id: int
    combination_id: int | None
    inventory_id: int | None
    quantity: int
    price: Decimal
    sub_total: Decimal
    selected_variants: dict | None
    status: str
    status_updated_at: object = None
    status_notes: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "vendor_id": self.vendor_id,
            "combination_id": self.combination_id,
            "inventory_id": self.inventory_id,
            "quantity": self.quantity,
            "price": _money(self.price),
            "sub_total": _money(self.sub_total),
            "selected_variants": self.selected_variants,
            "status": self.status,
            "status_updated_at": to_utc_z(self.status_updated_at) if self.status_updated_at else None,
            "status_notes": self.status_notes,
        }


@dataclass(frozen=True)
class OrderSummary:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total: Decimal
    item_count: int

    def to_dict(self) -> dict:
        return {
            "subtotal": _money(self.subtotal),
            "shipping": _money(self.shipping_cost),
            "tax": _money(self.tax_amount),
            "total": _money(self.total),
            "item_count": self.item_count,
        }


@dataclass(frozen=True)
class OrderWithItems:
    order: dict
    items: list[OrderItemView]
    detail: dict | None
    address: dict | None
    buyer: dict | None
    summary: OrderSummary

    @property
    def id(self) -> int:
        return self.order["id"]

    def to_dict(self) -> dict:
        data = dict(self.order)
        data["items"] = [item.to_dict() for item in self.items]
        data["detail"] = self.detail
        data["address"] = self.address
        data["buyer"] = self.buyer
        data["summary"] = self.summary.to_dict()
        return data


def load_order_with_items(order_id: int, *, vendor_id: int | None = None) -> OrderWithItems:
    """
    Order header, lines, detail, address and buyer as plain values.

    With vendor_id, only that vendor's lines are included (vendor split);
    the summary still describes the whole order.
    """
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})

    q = (
        db.session.query(OrderItem, Product.name)
        .join(Product, Product.id == OrderItem.product_id)
        .filter(OrderItem.order_id == order_id)
    )
    all_rows = q.order_by(OrderItem.id).all()

    items = [
        OrderItemView(
            id=item.id,
            product_id=item.product_id,
            product_name=name,
            vendor_id=item.vendor_id,
            combination_id=item.combination_id,
            inventory_id=item.inventory_id,
            quantity=item.quantity,
            price=item.price,
            sub_total=item.sub_total,
            selected_variants=item.selected_variants,
            status=item.status,
            status_updated_at=item.status_updated_at,
            status_notes=item.status_notes,
        )
        for item, name in all_rows
        if vendor_id is None or item.vendor_id == vendor_id
    ]

    detail = db.session.query(OrderDetail).filter_by(order_id=order_id).first()
    address = None
    if detail is not None:
        address_row = db.session.query(Address).filter_by(id=detail.address_id).first()
        address = address_row.to_dict() if address_row else None
    buyer_row = db.session.query(User).filter_by(id=order.user_id).first()

    subtotal = sum((item.sub_total for item, _ in all_rows), Decimal("0"))
    shipping = detail.shipping_cost if detail else Decimal("0")
    tax = detail.tax_amount if detail else Decimal("0")
    summary = OrderSummary(
        subtotal=subtotal,
        shipping_cost=shipping,
        tax_amount=tax,
        total=order.total_amount,
        item_count=sum(item.quantity for item, _ in all_rows),
    )

    return OrderWithItems(
        order=order.to_dict(),
        items=items,
        detail=detail.to_dict() if detail else None,
        address=address,
        buyer={"id": buyer_row.id, "email": buyer_row.email, "first_name": buyer_row.first_name,
               "last_name": buyer_row.last_name} if buyer_row else None,
        summary=summary,
    )


def order_vendor_ids(order_id: int) -> set[int]:
    return {
        vid for (vid,) in db.session.query(OrderItem.vendor_id).filter_by(order_id=order_id).distinct()
    }


def get_order_for_actor(order_id: int, actor: Actor) -> OrderWithItems:
    """
    Owner, admin or a vendor with lines in the order.

    Anyone else gets OrderNotFound so order ids are not disclosed.
    """
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    if actor.is_admin or order.user_id == actor.user_id:
        return load_order_with_items(order_id)
    if actor.vendor_id is not None and actor.vendor_id in order_vendor_ids(order_id):
        return load_order_with_items(order_id, vendor_id=actor.vendor_id)
    raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})


def _validate_status_filter(status: str | None) -> str | None:
    if status and status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status}", details={"status": status})
    return status or None


def _paginate(q, page: int, per_page: int):
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), 100)
    total = q.count()
    rows = q.offset((page - 1) * per_page).limit(per_page).all()
    pagination = {
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page,
    }
    return rows, pagination


def list_user_orders(user_id: int, *, status: str | None = None, page: int = 1, per_page: int = 20):
    q = db.session.query(Order.id).filter(Order.user_id == user_id)
    status = _validate_status_filter(status)
    if status:
        q = q.filter(Order.order_status == status)
    rows, pagination = _paginate(q.order_by(Order.id.desc()), page, per_page)
    return [load_order_with_items(oid) for (oid,) in rows], pagination


def list_vendor_orders(vendor_id: int, *, status: str | None = None, page: int = 1, per_page: int = 20):
    """Orders containing the vendor's lines; each order carries only those lines."""
    q = (
        db.session.query(Order.id)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .filter(OrderItem.vendor_id == vendor_id)
        .distinct()
    )
    status = _validate_status_filter(status)
    if status:
        q = q.filter(Order.order_status == status)
    rows, pagination = _paginate(q.order_by(Order.id.desc()), page, per_page)
    return [load_order_with_items(oid, vendor_id=vendor_id) for (oid,) in rows], pagination


def list_all_orders(*, status: str | None = None, user_id: int | None = None, page: int = 1, per_page: int = 20):
    q = db.session.query(Order.id)
    status = _validate_status_filter(status)
    if status:
        q = q.filter(Order.order_status == status)
    if user_id:
        q = q.filter(Order.user_id == user_id)
    rows, pagination = _paginate(q.order_by(Order.id.desc()), page, per_page)
    return [load_order_with_items(oid) for (oid,) in rows], pagination
