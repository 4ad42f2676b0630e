from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


VENDOR_STATUS_PENDING = "pending"
VENDOR_STATUS_APPROVED = "approved"
VENDOR_STATUS_SUSPENDED = "suspended"

PRODUCT_STATUS_ACTIVE = "active"
PRODUCT_STATUS_INACTIVE = "inactive"


def _money(value):
    return str(value) if value is not None else None


class Vendor(db.Model):
    """A seller on the marketplace. Each vendor is operated by one user."""
    __tablename__ = "vendors"
    __table_args__ = (
        db.UniqueConstraint("user_id", name="uq_vendors_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    business_name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=VENDOR_STATUS_PENDING, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "business_name": self.business_name,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog product.

    STOCK TRACKING: a product is tracked by exactly one path.
    - With one or more active VariantCombination rows, the combinations are
      the stock units and the flat Inventory row is never touched by orders.
    - Otherwise the single Inventory row is the stock unit.

    sold_units is a running counter maintained by order placement/cancellation.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("slug", name="uq_products_slug"),
        db.CheckConstraint("sold_units >= 0", name="ck_products_sold_units_nonneg"),
        db.Index("ix_products_vendor_status", "vendor_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)

    # Money is fixed-point decimal, never float
    price = db.Column(db.Numeric(12, 2), nullable=False)
    discounted_price = db.Column(db.Numeric(12, 2), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=PRODUCT_STATUS_ACTIVE, index=True)
    sold_units = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} vendor_id={self.vendor_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "name": self.name,
            "slug": self.slug,
            "sku": self.sku,
            "price": _money(self.price),
            "discounted_price": _money(self.discounted_price),
            "status": self.status,
            "sold_units": self.sold_units,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """
    A single variant attribute value offered on a product (e.g. Color=Black).

    additional_price belongs to the legacy single-variant pricing path.
    Purchasable SKUs are VariantCombination rows built from these values.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.Index("ix_product_variants_product_name", "product_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(64), nullable=False)  # variant type, e.g. "Size"
    value = db.Column(db.String(128), nullable=False)  # e.g. "M"
    sku_code = db.Column(db.String(16), nullable=True)
    additional_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "value": self.value,
            "sku_code": self.sku_code,
            "additional_price": _money(self.additional_price),
        }


variant_combination_variants = db.Table(
    "variant_combination_variants",
    db.Column("combination_id", db.Integer, db.ForeignKey("variant_combinations.id"), primary_key=True),
    db.Column("variant_id", db.Integer, db.ForeignKey("product_variants.id"), primary_key=True),
)


class VariantCombination(db.Model):
    """
    One purchasable SKU of a product (e.g. Black-M).

    INVARIANT: stock >= 0. Enforced by the stock ledger under a row lock and
    backed by a CHECK constraint.
    """
    __tablename__ = "variant_combinations"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_variant_combinations_stock_nonneg"),
        db.Index("ix_variant_combinations_product_active", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    combination_name = db.Column(db.String(255), nullable=False)
    sku_suffix = db.Column(db.String(50), nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    price_modifier = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

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
            "combination_name": self.combination_name,
            "sku_suffix": self.sku_suffix,
            "stock": self.stock,
            "price_modifier": _money(self.price_modifier),
            "is_active": self.is_active,
        }
