# Overview: Service-layer operations for the stock ledger; owns every stock counter mutation.

"""
Stock Ledger Invariants (authoritative)

Stock units:
- A product WITH active variant combinations is tracked per combination
  (VariantCombination.stock). Its flat Inventory row is never touched here.
- A product WITHOUT combinations is tracked by its single Inventory row,
  created lazily on the first stock-affecting event.
- A product is never tracked by both paths.

Business invariants:
- stock >= 0 always. A reservation that would go negative is rejected and
  leaves the counter unchanged.
- Every mutation appends exactly one InventoryHistory row in the same DB
  transaction, with previous_stock + change_amount == new_stock.
- History rows are append-only.

Locking:
- Every read-then-write of a counter goes through lock_for_update() so a
  concurrent transaction blocks until the first commits, then re-reads.
- reserve()/release() never commit; they run inside the caller's unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func

from ..errors import InsufficientStock, ProductNotFound, ValidationError, VariantNotFound
from ..extensions import db
from ..models import Inventory, InventoryHistory, Product, VariantCombination
from ..models.inventory import CHANGE_ADJUSTMENT, CHANGE_RETURN, CHANGE_SALE
from app.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry, transaction_scope


UNIT_INVENTORY = "inventory"
UNIT_COMBINATION = "combination"


@dataclass(frozen=True)
class StockUnit:
    """Handle on one stock counter: a product Inventory row or a VariantCombination."""
    kind: str
    id: int
    product_id: int

    @property
    def sort_key(self) -> tuple[str, int]:
        return (self.kind, self.id)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.id, "product_id": self.product_id}


@dataclass(frozen=True)
class StockMovement:
    unit: StockUnit
    change_amount: int
    previous_stock: int
    new_stock: int
    history_id: int

    def to_dict(self) -> dict:
        return {
            "unit": self.unit.to_dict(),
            "change_amount": self.change_amount,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "history_id": self.history_id,
        }


# =============================================================================
# UNIT RESOLUTION
# =============================================================================

def product_has_combinations(product_id: int) -> bool:
    """True when the product is tracked per combination."""
    count = (
        db.session.query(func.count(VariantCombination.id))
        .filter(
            VariantCombination.product_id == product_id,
            VariantCombination.is_active.is_(True),
        )
        .scalar()
    )
    return bool(count)


def combination_unit(combination_id: int, product_id: int | None = None) -> StockUnit:
    """
    Resolve a combination handle.

    Raises VariantNotFound if the combination does not exist, is inactive,
    or belongs to a different product.
    """
    combination = db.session.query(VariantCombination).filter_by(id=combination_id).first()
    if combination is None or (product_id is not None and combination.product_id != product_id):
        raise VariantNotFound(
            f"Variant combination {combination_id} not found for product {product_id}",
            details={"combination_id": combination_id, "product_id": product_id},
        )
    if not combination.is_active:
        raise VariantNotFound(
            f"Variant combination {combination.combination_name} is no longer available",
            details={"combination_id": combination_id, "product_id": combination.product_id},
        )
    return StockUnit(UNIT_COMBINATION, combination.id, combination.product_id)


def inventory_unit(product_id: int, *, create: bool = True) -> StockUnit | None:
    """
    Resolve the product-level Inventory handle, creating the row if absent.

    Creation locks the product row so two first-time writers cannot both
    insert an Inventory row.
    """
    inventory = db.session.query(Inventory).filter_by(product_id=product_id).first()
    if inventory is not None:
        return StockUnit(UNIT_INVENTORY, inventory.id, product_id)
    if not create:
        return None

    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    inventory = db.session.query(Inventory).filter_by(product_id=product_id).first()
    if inventory is None:
        inventory = Inventory(product_id=product_id, stock=0)
        db.session.add(inventory)
        db.session.flush()
    return StockUnit(UNIT_INVENTORY, inventory.id, product_id)


def resolve_unit(product_id: int, combination_id: int | None = None) -> StockUnit:
    """Pick the authoritative unit for a product (see module invariants)."""
    if combination_id is not None:
        return combination_unit(combination_id, product_id)
    if product_has_combinations(product_id):
        raise ValidationError(
            "Product is stocked per variant combination; a combination is required",
            details={"product_id": product_id},
        )
    return inventory_unit(product_id)


def get_stock(unit: StockUnit) -> int:
    """Current counter value (no lock)."""
    model = Inventory if unit.kind == UNIT_INVENTORY else VariantCombination
    value = db.session.query(model.stock).filter(model.id == unit.id).scalar()
    return int(value or 0)


# =============================================================================
# MUTATIONS
# =============================================================================

def _lock_counter(unit: StockUnit):
    model = Inventory if unit.kind == UNIT_INVENTORY else VariantCombination
    row = lock_for_update(db.session.query(model).filter_by(id=unit.id)).first()
    if row is None:
        raise VariantNotFound(
            f"Stock unit {unit.kind}:{unit.id} not found",
            details=unit.to_dict(),
        )
    return row


def _append_history(
    unit: StockUnit,
    *,
    change_amount: int,
    change_type: str,
    previous_stock: int,
    new_stock: int,
    actor_user_id: int | None,
    order_id: int | None,
    note: str | None,
) -> InventoryHistory:
    entry = InventoryHistory(
        inventory_id=unit.id if unit.kind == UNIT_INVENTORY else None,
        combination_id=unit.id if unit.kind == UNIT_COMBINATION else None,
        change_amount=change_amount,
        change_type=change_type,
        previous_stock=previous_stock,
        new_stock=new_stock,
        actor_user_id=actor_user_id,
        order_id=order_id,
        note=note,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})


def reserve(
    unit: StockUnit,
    quantity: int,
    *,
    actor_user_id: int | None,
    order_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Decrement a counter for a sale.

    Check and decrement happen under the same row lock. Raises
    InsufficientStock (counter untouched) when stock < quantity.
    Does NOT commit.
    """
    _require_positive(quantity)
    row = _lock_counter(unit)

    previous = int(row.stock)
    if previous < quantity:
        raise InsufficientStock(
            f"Insufficient stock for {unit.kind} {unit.id}: requested {quantity}, available {previous}",
            unit_kind=unit.kind,
            unit_id=unit.id,
            product_id=unit.product_id,
            requested=quantity,
            available=previous,
        )

    row.stock = previous - quantity
    entry = _append_history(
        unit,
        change_amount=-quantity,
        change_type=CHANGE_SALE,
        previous_stock=previous,
        new_stock=row.stock,
        actor_user_id=actor_user_id,
        order_id=order_id,
        note=note or (f"Order #{order_id}: stock reserved" if order_id else None),
    )
    return StockMovement(unit, -quantity, previous, row.stock, entry.id)


def release(
    unit: StockUnit,
    quantity: int,
    *,
    actor_user_id: int | None,
    order_id: int | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Return previously reserved stock (cancellation).

    Callers guarantee one release per reserved line. Does NOT commit.
    """
    _require_positive(quantity)
    row = _lock_counter(unit)

    previous = int(row.stock)
    row.stock = previous + quantity
    note = f"Order #{order_id} cancelled: stock restored" if order_id else "Stock restored"
    if reason:
        note = f"{note} ({reason})"
    entry = _append_history(
        unit,
        change_amount=quantity,
        change_type=CHANGE_RETURN,
        previous_stock=previous,
        new_stock=row.stock,
        actor_user_id=actor_user_id,
        order_id=order_id,
        note=note,
    )
    return StockMovement(unit, quantity, previous, row.stock, entry.id)


def _adjust_locked(unit: StockUnit, quantity_delta: int, *, actor_user_id: int | None, note: str | None) -> StockMovement:
    if not isinstance(quantity_delta, int) or isinstance(quantity_delta, bool) or quantity_delta == 0:
        raise ValidationError("quantity_delta must be a non-zero integer", details={"quantity_delta": quantity_delta})

    row = _lock_counter(unit)
    previous = int(row.stock)
    if previous + quantity_delta < 0:
        raise InsufficientStock(
            "Adjustment would make stock negative",
            unit_kind=unit.kind,
            unit_id=unit.id,
            product_id=unit.product_id,
            requested=-quantity_delta,
            available=previous,
        )

    row.stock = previous + quantity_delta
    if unit.kind == UNIT_INVENTORY and quantity_delta > 0:
        row.restocked_at = utcnow()
    entry = _append_history(
        unit,
        change_amount=quantity_delta,
        change_type=CHANGE_ADJUSTMENT,
        previous_stock=previous,
        new_stock=row.stock,
        actor_user_id=actor_user_id,
        order_id=None,
        note=note,
    )
    return StockMovement(unit, quantity_delta, previous, row.stock, entry.id)


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    combination_id: int | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Manual stock adjustment (restock, shrinkage, correction).

    Same ledger invariants as reserve/release; commits its own transaction.
    """
    def _op():
        with transaction_scope(write_lock=True):
            product = db.session.query(Product).filter_by(id=product_id).first()
            if product is None:
                raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
            unit = resolve_unit(product_id, combination_id)
            movement = _adjust_locked(unit, quantity_delta, actor_user_id=actor_user_id, note=note)
        return movement

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def list_history(unit: StockUnit, *, limit: int = 200) -> list[InventoryHistory]:
    q = db.session.query(InventoryHistory)
    if unit.kind == UNIT_INVENTORY:
        q = q.filter(InventoryHistory.inventory_id == unit.id)
    else:
        q = q.filter(InventoryHistory.combination_id == unit.id)
    return q.order_by(InventoryHistory.id.desc()).limit(limit).all()


def get_stock_summary(product_id: int) -> dict:
    """Stock units of a product with their current counts."""
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    combinations = (
        db.session.query(VariantCombination)
        .filter_by(product_id=product_id)
        .order_by(VariantCombination.combination_name)
        .all()
    )
    tracked_by = UNIT_COMBINATION if any(c.is_active for c in combinations) else UNIT_INVENTORY

    inventory = db.session.query(Inventory).filter_by(product_id=product_id).first()
    return {
        "product_id": product_id,
        "tracked_by": tracked_by,
        "sold_units": product.sold_units,
        "inventory": inventory.to_dict() if inventory else None,
        "combinations": [c.to_dict() for c in combinations],
    }


def product_history(product_id: int, *, combination_id: int | None = None, limit: int = 200) -> list[InventoryHistory]:
    """
    Ledger rows for one of a product's units, newest first.

    Unlike resolve_unit this never creates an Inventory row and also reads
    deactivated combinations.
    """
    if combination_id is not None:
        combination = db.session.query(VariantCombination).filter_by(id=combination_id).first()
        if combination is None or combination.product_id != product_id:
            raise VariantNotFound(
                f"Variant combination {combination_id} not found for product {product_id}",
                details={"combination_id": combination_id, "product_id": product_id},
            )
        return list_history(StockUnit(UNIT_COMBINATION, combination.id, product_id), limit=limit)

    unit = inventory_unit(product_id, create=False)
    if unit is None:
        return []
    return list_history(unit, limit=limit)
