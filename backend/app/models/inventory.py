from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from app.time_utils import to_utc_z


CHANGE_SALE = "sale"
CHANGE_RETURN = "return"
CHANGE_ADJUSTMENT = "adjustment"

VALID_CHANGE_TYPES = (CHANGE_SALE, CHANGE_RETURN, CHANGE_ADJUSTMENT)


class Inventory(db.Model):
    """
    Flat stock counter for a product without purchasable combinations.

    Created lazily by the stock ledger on the first stock-affecting event.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.UniqueConstraint("product_id", name="uq_inventory_product"),
        db.CheckConstraint("stock >= 0", name="ck_inventory_stock_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)

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
            "product_id": self.product_id,
            "stock": self.stock,
            "restocked_at": to_utc_z(self.restocked_at) if self.restocked_at else None,
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryHistory(db.Model):
    """
    Append-only stock ledger.

    Each row references exactly one stock unit (inventory row OR combination)
    and satisfies previous_stock + change_amount == new_stock.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "inventory_history"
    __table_args__ = (
        db.CheckConstraint(
            "(inventory_id IS NULL) <> (combination_id IS NULL)",
            name="ck_inventory_history_one_unit",
        ),
        db.CheckConstraint(
            "previous_stock + change_amount = new_stock",
            name="ck_inventory_history_conservation",
        ),
        db.Index("ix_inventory_history_inventory_created", "inventory_id", "created_at"),
        db.Index("ix_inventory_history_combination_created", "combination_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory.id"), nullable=True)
    combination_id = db.Column(db.Integer, db.ForeignKey("variant_combinations.id"), nullable=True)

    change_amount = db.Column(db.Integer, nullable=False)  # signed
    change_type = db.Column(db.String(16), nullable=False, index=True)  # sale, return, adjustment
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    note = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_id": self.inventory_id,
            "combination_id": self.combination_id,
            "change_amount": self.change_amount,
            "change_type": self.change_type,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "order_id": self.order_id,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("inventory_history is append-only; rows cannot be updated")


@event.listens_for(InventoryHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("inventory_history is append-only; rows cannot be deleted")
