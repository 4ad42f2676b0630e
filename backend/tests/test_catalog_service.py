"""
Variant combination and product access tests.
"""

from types import SimpleNamespace

import pytest

from app.errors import Forbidden, ProductNotFound, ValidationError, VariantNotFound
from app.extensions import db
from app.models import User, VariantCombination
from app.services import stock_service
from app.services.catalog_service import (
    create_combinations_for_product,
    generate_combination_specs,
    require_product_access,
    set_combination_active,
)

from conftest import actor_for, make_product, make_variant


def _variant(id, name, value, sku_code=None):
    return SimpleNamespace(id=id, name=name, value=value, sku_code=sku_code)


class TestCombinationSpecs:

    def test_cartesian_product_keeps_type_order(self):
        specs = generate_combination_specs([
            _variant(1, "Color", "Black", "BK"),
            _variant(2, "Color", "White", "WH"),
            _variant(3, "Size", "M"),
            _variant(4, "Size", "L"),
        ])
        assert [s.combination_name for s in specs] == ["Black-M", "Black-L", "White-M", "White-L"]
        assert specs[0].sku_suffix == "BKM"
        assert specs[0].variant_ids == (1, 3)

    def test_single_type(self):
        specs = generate_combination_specs([_variant(1, "Size", "S"), _variant(2, "Size", "M")])
        assert [s.combination_name for s in specs] == ["S", "M"]

    def test_no_variants(self):
        assert generate_combination_specs([]) == []


class TestCreateCombinations:

    def test_creates_missing_combinations_with_zero_stock(self, vendor):
        product = make_product(vendor, name="Hoodie")
        make_variant(product, "Color", "Black")
        make_variant(product, "Color", "Grey")
        make_variant(product, "Size", "XL")

        created = create_combinations_for_product(product.id)

        assert [c["combination_name"] for c in created] == ["Black-XL", "Grey-XL"]
        assert all(c["stock"] == 0 for c in created)
        assert stock_service.product_has_combinations(product.id) is True

    def test_rerun_keeps_existing_rows(self, tee):
        product, combos = tee
        assert create_combinations_for_product(product.id) == []
        db.session.refresh(combos["Black-M"])
        assert combos["Black-M"].stock == 5
        assert db.session.query(VariantCombination).filter_by(product_id=product.id).count() == 4

    def test_new_variant_adds_only_new_combinations(self, tee):
        product, _ = tee
        make_variant(product, "Size", "XL")

        created = create_combinations_for_product(product.id)

        assert sorted(c["combination_name"] for c in created) == ["Black-XL", "White-XL"]

    def test_product_without_variants(self, vendor):
        product = make_product(vendor)
        with pytest.raises(ValidationError):
            create_combinations_for_product(product.id)

    def test_unknown_product(self, db_session):
        with pytest.raises(ProductNotFound):
            create_combinations_for_product(424242)


class TestCombinationToggle:

    def test_deactivating_every_combination_switches_tracking(self, tee):
        product, combos = tee
        for combination in combos.values():
            result = set_combination_active(combination.id, False, product_id=product.id)
            assert result["is_active"] is False
        assert stock_service.product_has_combinations(product.id) is False

    def test_combination_of_another_product(self, tee, vendor):
        _, combos = tee
        other = make_product(vendor, name="Mug")
        with pytest.raises(VariantNotFound):
            set_combination_active(combos["Black-M"].id, False, product_id=other.id)


class TestProductAccess:

    def test_owner_vendor_and_admin(self, vendor, admin):
        product = make_product(vendor)
        owner = db.session.get(User, vendor.user_id)
        assert require_product_access(product.id, actor_for(owner, vendor=vendor)).id == product.id
        assert require_product_access(product.id, actor_for(admin, admin=True)).id == product.id

    def test_other_vendor_is_forbidden(self, vendor, other_vendor):
        product = make_product(vendor)
        other = db.session.get(User, other_vendor.user_id)
        with pytest.raises(Forbidden):
            require_product_access(product.id, actor_for(other, vendor=other_vendor))

    def test_missing_product(self, admin):
        with pytest.raises(ProductNotFound):
            require_product_access(999, actor_for(admin, admin=True))
