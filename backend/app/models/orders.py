from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED)

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_REFUNDED)

# Per-item fulfillment mirrors a subset of order status
ITEM_STATUSES = (ORDER_PROCESSING, ORDER_SHIPPED, ORDER_CANCELLED)


def _money(value):
    return str(value) if value is not None else None


class Order(db.Model):
    """
    Order header.

    INVARIANT: total_amount == sum(items.sub_total) + shipping_cost + tax_amount
    at creation time. It is never recomputed afterwards.

    Orders are never physically deleted; cancellation is a status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_created", "order_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Assigned inside the creating transaction once the id is known
    order_number = db.Column(db.String(64), nullable=True)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)

    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order_status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)

    # Cancellation audit trail
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "order_date": to_utc_z(self.order_date),
            "total_amount": _money(self.total_amount),
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "order_status": self.order_status,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancellation_reason": self.cancellation_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderItem(db.Model):
    """
    Order line.

    vendor_id is copied from the product at order time (vendor split).
    price and sub_total are fixed at creation; selected_variants is a
    snapshot, not a live reference.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.Index("ix_order_items_order_vendor", "order_id", "vendor_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    # Stock unit the line was reserved against (exactly one is set)
    combination_id = db.Column(db.Integer, db.ForeignKey("variant_combinations.id"), nullable=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    sub_total = db.Column(db.Numeric(12, 2), nullable=False)
    selected_variants = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PROCESSING, index=True)
    status_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status_notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
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


class OrderDetail(db.Model):
    """Shipping/tax detail, one-to-one with Order and created with it."""
    __tablename__ = "order_details"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_order_details_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=False)

    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "address_id": self.address_id,
            "shipping_cost": _money(self.shipping_cost),
            "tax_amount": _money(self.tax_amount),
            "note": self.note,
        }
