# Overview: Service-layer operations for the catalog; variant combination generation and product access checks.

from __future__ import annotations

from dataclasses import dataclass
from itertools import product as cartesian_product

from ..errors import Forbidden, ProductNotFound, ValidationError, VariantNotFound
from ..extensions import db
from ..models import Product, ProductVariant, VariantCombination, variant_combination_variants
from .concurrency import lock_for_update, run_with_retry, transaction_scope
from .session_service import Actor


@dataclass(frozen=True)
class CombinationSpec:
    combination_name: str
    sku_suffix: str
    variant_ids: tuple[int, ...]


def _sku_part(variant: ProductVariant) -> str:
    return variant.sku_code or variant.value[:2].upper()


def generate_combination_specs(variants: list[ProductVariant]) -> list[CombinationSpec]:
    """
    Cartesian product of a product's variants grouped by type name.

    Types keep the order in which they first appear, so Color then Size
    yields names like "Black-M".
    """
    groups: dict[str, list[ProductVariant]] = {}
    for variant in variants:
        groups.setdefault(variant.name, []).append(variant)
    if not groups:
        return []

    specs = []
    for combo in cartesian_product(*groups.values()):
        specs.append(
            CombinationSpec(
                combination_name="-".join(v.value for v in combo),
                sku_suffix="".join(_sku_part(v) for v in combo),
                variant_ids=tuple(sorted(v.id for v in combo)),
            )
        )
    return specs


def require_product_access(product_id: int, actor: Actor) -> Product:
    """Admins manage every product; a vendor only its own."""
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
    if actor.is_admin:
        return product
    if actor.vendor_id is not None and product.vendor_id == actor.vendor_id:
        return product
    raise Forbidden("You can only manage your own products", details={"product_id": product_id})


def _existing_variant_sets(product_id: int) -> set[tuple[int, ...]]:
    rows = (
        db.session.query(variant_combination_variants.c.combination_id, variant_combination_variants.c.variant_id)
        .join(VariantCombination, VariantCombination.id == variant_combination_variants.c.combination_id)
        .filter(VariantCombination.product_id == product_id)
        .all()
    )
    by_combination: dict[int, list[int]] = {}
    for combination_id, variant_id in rows:
        by_combination.setdefault(combination_id, []).append(variant_id)
    return {tuple(sorted(ids)) for ids in by_combination.values()}


def create_combinations_for_product(product_id: int) -> list[dict]:
    """
    Create every missing combination with zero stock and zero modifier.

    Combinations that already exist for the same variant set are kept as
    they are (stock included). Returns only the rows created.
    """
    def _op():
        with transaction_scope(write_lock=True):
            product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
            if product is None:
                raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

            variants = (
                db.session.query(ProductVariant)
                .filter_by(product_id=product_id)
                .order_by(ProductVariant.id)
                .all()
            )
            if not variants:
                raise ValidationError("Product has no variants to combine", details={"product_id": product_id})

            existing = _existing_variant_sets(product_id)
            created = []
            for spec in generate_combination_specs(variants):
                if spec.variant_ids in existing:
                    continue
                combination = VariantCombination(
                    product_id=product_id,
                    combination_name=spec.combination_name,
                    sku_suffix=spec.sku_suffix,
                    stock=0,
                    price_modifier=0,
                    is_active=True,
                )
                db.session.add(combination)
                db.session.flush()
                db.session.execute(
                    variant_combination_variants.insert(),
                    [{"combination_id": combination.id, "variant_id": vid} for vid in spec.variant_ids],
                )
                created.append(combination)
            db.session.flush()
            result = [c.to_dict() for c in created]
        return result

    return run_with_retry(_op)


def set_combination_active(combination_id: int, is_active: bool, *, product_id: int | None = None) -> dict:
    """Deactivated combinations stop being purchasable; their stock is kept."""
    with transaction_scope(write_lock=True):
        combination = lock_for_update(db.session.query(VariantCombination).filter_by(id=combination_id)).first()
        if combination is None or (product_id is not None and combination.product_id != product_id):
            raise VariantNotFound(
                f"Variant combination {combination_id} not found",
                details={"combination_id": combination_id},
            )
        combination.is_active = bool(is_active)
        db.session.flush()
        result = combination.to_dict()
    return result
