"""
Order placement tests.

Verifies:
- all-or-nothing placement: any failing line leaves no order and no stock change
- totals, per-line price snapshots and order numbers
- combination vs flat inventory stock paths
- post-commit steps (payment start, notifications) never undo the order
- read access: owner/admin see the whole order, vendors only their lines
"""

from decimal import Decimal

import pytest

from app.errors import (
    AddressNotFound,
    EmptyOrder,
    InsufficientStock,
    InvalidItemSpec,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    ValidationError,
    VendorMissing,
)
from app.extensions import db
from app.models import Inventory, InventoryHistory, Notification, Order, PaymentTransaction, Product
from app.models.catalog import VENDOR_STATUS_SUSPENDED
from app.services import order_service
from app.services.identifier_service import is_valid_order_number
from app.services.order_service import (
    CreateOrderParams,
    OrderItemRequest,
    create_order,
    get_order_for_actor,
    list_user_orders,
    list_vendor_orders,
    parse_create_order,
)
from app.services.pricing_service import CombinationChoice, LegacyVariants, NoVariant

from conftest import actor_for, make_address, make_product, make_user, make_variant, make_vendor


def _params(buyer, address, items, **kwargs):
    return CreateOrderParams(user_id=buyer.id, address_id=address.id, items=items, **kwargs)


def _stock(product):
    return db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar()


# =============================================================================
# REQUEST PARSING
# =============================================================================

class TestParseCreateOrder:

    def test_parses_combination_item(self, app):
        params = parse_create_order(1, {
            "items": [{"productId": 7, "quantity": 2, "combinationId": 3}],
            "addressId": 4,
            "shippingCost": 1500.5,
        })
        assert params.items == [OrderItemRequest(7, 2, CombinationChoice(3))]
        assert params.shipping_cost == Decimal("1500.5")
        assert params.payment_method == app.config["DEFAULT_PAYMENT_METHOD"]

    def test_selected_variants_accepts_ids_and_objects(self, app):
        params = parse_create_order(1, {
            "items": [{"productId": 7, "quantity": 1, "selected_variants": [{"id": 2}, 3, 2]}],
            "addressId": 4,
        })
        assert params.items[0].selection == LegacyVariants((2, 3))

    def test_plain_item_has_no_variant(self, app):
        params = parse_create_order(1, {"items": [{"product_id": 7, "quantity": 1}], "address_id": 4})
        assert params.items[0].selection == NoVariant()

    def test_combination_plus_variant_is_rejected(self, app):
        with pytest.raises(InvalidItemSpec):
            parse_create_order(1, {
                "items": [{"productId": 7, "quantity": 1, "combinationId": 3, "variantId": 2}],
                "addressId": 4,
            })

    def test_empty_items(self, app):
        with pytest.raises(EmptyOrder):
            parse_create_order(1, {"items": [], "addressId": 4})

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, "abc", None, True])
    def test_quantity_must_be_positive_integer(self, app, quantity):
        with pytest.raises(ValidationError):
            parse_create_order(1, {"items": [{"productId": 7, "quantity": quantity}], "addressId": 4})

    def test_address_is_required(self, app):
        with pytest.raises(ValidationError):
            parse_create_order(1, {"items": [{"productId": 7, "quantity": 1}]})


# =============================================================================
# SUCCESSFUL PLACEMENT
# =============================================================================

class TestCreateOrder:

    def test_totals_stock_and_sold_units(self, buyer, address, vendor, gateway):
        product = make_product(vendor, name="Tote", price="10000.00", stock=5)

        placed = create_order(_params(
            buyer, address, [OrderItemRequest(product.id, 2)],
            shipping_cost=Decimal("1500.00"), tax_amount=Decimal("500.00"),
        ))

        view = placed.order
        assert view.summary.subtotal == Decimal("20000.00")
        assert view.summary.total == Decimal("22000.00")
        assert view.order["order_status"] == "pending"
        assert view.order["payment_status"] == "pending"
        assert is_valid_order_number(view.order["order_number"])
        assert [item.status for item in view.items] == ["processing"]
        assert view.items[0].price == Decimal("10000.00")

        assert _stock(product) == 3
        assert db.session.get(Product, product.id).sold_units == 2

        assert placed.warnings == []
        assert placed.payment["amount_minor"] == 2200000
        assert placed.payment["reference"] in gateway.initialized

    def test_combination_line_snapshot_and_price(self, buyer, address, tee):
        product, combos = tee
        black_m = combos["Black-M"]

        placed = create_order(_params(buyer, address, [
            OrderItemRequest(product.id, 1, CombinationChoice(black_m.id)),
        ]))

        item = placed.order.items[0]
        assert item.price == Decimal("12000.00")
        assert item.combination_id == black_m.id
        assert item.inventory_id is None
        assert item.selected_variants["type"] == "combination"
        assert item.selected_variants["combination_name"] == "Black-M"
        assert {v["value"] for v in item.selected_variants["variants"]} == {"Black", "M"}

        db.session.refresh(black_m)
        assert black_m.stock == 4
        assert db.session.query(Inventory).filter_by(product_id=product.id).first() is None

    def test_legacy_variant_pricing_and_snapshot(self, buyer, address, vendor):
        product = make_product(vendor, name="Cap", price="100.00", discounted_price="80.00", stock=4)
        red = make_variant(product, "Color", "Red", additional_price="15.00")

        placed = create_order(_params(buyer, address, [
            OrderItemRequest(product.id, 2, LegacyVariants((red.id,))),
        ]))

        item = placed.order.items[0]
        assert item.price == Decimal("95.00")
        assert item.sub_total == Decimal("190.00")
        assert item.selected_variants == {
            "type": "legacy",
            "variants": [{"id": red.id, "name": "Color", "value": "Red", "additional_price": "15.00"}],
        }
        assert _stock(product) == 2

    def test_history_rows_reference_the_order(self, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        placed = create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

        entry = db.session.query(InventoryHistory).one()
        assert entry.order_id == placed.order.id
        assert entry.change_type == "sale"
        assert (entry.previous_stock, entry.new_stock) == (5, 4)

    def test_notifications_for_buyer_and_each_vendor(self, buyer, address, vendor, other_vendor, outbox):
        first = make_product(vendor, name="Tote", stock=5)
        second = make_product(other_vendor, name="Mug", stock=5)

        placed = create_order(_params(buyer, address, [
            OrderItemRequest(first.id, 1),
            OrderItemRequest(second.id, 1),
        ]))

        types = sorted(t for (t,) in db.session.query(Notification.notification_type))
        assert types == ["order_created", "vendor_new_order", "vendor_new_order"]
        recipients = sorted(message.to for message in outbox)
        assert recipients == ["buyer@example.com", "other@example.com", "shop@example.com"]
        assert {item.vendor_id for item in placed.order.items} == {vendor.id, other_vendor.id}

    def test_cash_on_delivery_skips_payment_start(self, buyer, address, vendor, gateway):
        product = make_product(vendor, stock=5)
        placed = create_order(_params(
            buyer, address, [OrderItemRequest(product.id, 1)], payment_method="cash_on_delivery",
        ))
        assert placed.payment is None
        assert placed.warnings == []
        assert gateway.initialized == {}

    def test_payment_start_failure_keeps_the_order(self, buyer, address, vendor, gateway):
        gateway.fail_initialize = True
        product = make_product(vendor, stock=5)

        placed = create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

        assert placed.payment is None
        assert len(placed.warnings) == 1
        assert f"/api/orders/{placed.order.id}/payment" in placed.warnings[0]
        assert db.session.query(Order).count() == 1
        txn = db.session.query(PaymentTransaction).one()
        assert txn.status == "failed"
        assert _stock(product) == 4


# =============================================================================
# PRECONDITIONS AND ATOMICITY
# =============================================================================

class TestCreateOrderFailures:

    def test_failing_second_line_rolls_back_everything(self, buyer, address, vendor):
        first = make_product(vendor, name="Tote", stock=5)
        second = make_product(vendor, name="Mug", stock=1)

        with pytest.raises(InsufficientStock) as exc:
            create_order(_params(buyer, address, [
                OrderItemRequest(first.id, 2),
                OrderItemRequest(second.id, 3),
            ]))

        assert exc.value.details["product_id"] == second.id
        assert exc.value.details["available_stock"] == 1
        assert db.session.query(Order).count() == 0
        assert db.session.query(InventoryHistory).count() == 0
        assert _stock(first) == 5
        assert db.session.get(Product, first.id).sold_units == 0

    def test_reservation_failure_after_earlier_reservation_rolls_back(self, buyer, address, vendor, monkeypatch):
        first = make_product(vendor, name="Tote", stock=5)
        second = make_product(vendor, name="Mug", stock=1)
        # Skip the pre-check so the first line is reserved before the second fails
        monkeypatch.setattr(order_service, "_check_stock", lambda line, requested: None)

        with pytest.raises(InsufficientStock):
            create_order(_params(buyer, address, [
                OrderItemRequest(first.id, 2),
                OrderItemRequest(second.id, 3),
            ]))

        assert _stock(first) == 5
        assert _stock(second) == 1
        assert db.session.query(Order).count() == 0
        assert db.session.query(InventoryHistory).count() == 0

    def test_repeated_lines_are_checked_against_a_running_total(self, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        with pytest.raises(InsufficientStock) as exc:
            create_order(_params(buyer, address, [
                OrderItemRequest(product.id, 3),
                OrderItemRequest(product.id, 3),
            ]))
        assert exc.value.details["requested_quantity"] == 6
        assert _stock(product) == 5

    def test_product_without_inventory_row_has_no_stock(self, buyer, address, vendor):
        product = make_product(vendor)
        with pytest.raises(InsufficientStock) as exc:
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))
        assert exc.value.details["available_stock"] == 0
        assert db.session.query(Inventory).count() == 0

    def test_combination_product_requires_combination(self, buyer, address, tee):
        product, _ = tee
        with pytest.raises(InvalidItemSpec):
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

    def test_out_of_stock_combination(self, buyer, address, tee):
        product, combos = tee
        with pytest.raises(InsufficientStock):
            create_order(_params(buyer, address, [
                OrderItemRequest(product.id, 1, CombinationChoice(combos["White-L"].id)),
            ]))

    def test_address_of_another_user(self, buyer, vendor):
        stranger = make_user("stranger@example.com", "customer")
        foreign_address = make_address(stranger)
        product = make_product(vendor, stock=5)
        with pytest.raises(AddressNotFound):
            create_order(_params(buyer, foreign_address, [OrderItemRequest(product.id, 1)]))

    def test_empty_items(self, buyer, address):
        with pytest.raises(EmptyOrder):
            create_order(_params(buyer, address, []))

    def test_unknown_product(self, buyer, address):
        with pytest.raises(ProductNotFound):
            create_order(_params(buyer, address, [OrderItemRequest(9999, 1)]))

    def test_product_without_vendor(self, buyer, address):
        product = make_product(None, stock=5)
        with pytest.raises(VendorMissing):
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

    def test_inactive_product(self, buyer, address, vendor):
        product = make_product(vendor, stock=5, status="inactive")
        with pytest.raises(ProductUnavailable):
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

    def test_suspended_vendor(self, buyer, address):
        suspended = make_vendor("banned@example.com", status=VENDOR_STATUS_SUSPENDED)
        product = make_product(suspended, stock=5)
        with pytest.raises(ProductUnavailable):
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)]))

    def test_unsupported_payment_method(self, buyer, address, vendor):
        product = make_product(vendor, stock=5)
        with pytest.raises(ValidationError):
            create_order(_params(buyer, address, [OrderItemRequest(product.id, 1)], payment_method="barter"))
        assert _stock(product) == 5


# =============================================================================
# READ ACCESS
# =============================================================================

class TestOrderVisibility:

    @pytest.fixture
    def split_order(self, buyer, address, vendor, other_vendor):
        first = make_product(vendor, name="Tote", stock=5)
        second = make_product(other_vendor, name="Mug", stock=5)
        placed = create_order(_params(buyer, address, [
            OrderItemRequest(first.id, 1),
            OrderItemRequest(second.id, 2),
        ]))
        return placed.order.id

    def test_owner_and_admin_see_all_lines(self, split_order, buyer, admin):
        assert len(get_order_for_actor(split_order, actor_for(buyer)).items) == 2
        assert len(get_order_for_actor(split_order, actor_for(admin, admin=True)).items) == 2

    def test_vendor_sees_only_own_lines(self, split_order, vendor):
        staff = make_user("staff@example.com", "vendor")
        view = get_order_for_actor(split_order, actor_for(staff, vendor=vendor))
        assert [item.vendor_id for item in view.items] == [vendor.id]
        assert view.summary.item_count == 3

    def test_stranger_gets_not_found(self, split_order):
        stranger = make_user("stranger@example.com", "customer")
        with pytest.raises(OrderNotFound):
            get_order_for_actor(split_order, actor_for(stranger))

    def test_listings(self, split_order, buyer, vendor, other_vendor):
        orders, pagination = list_user_orders(buyer.id)
        assert [o.id for o in orders] == [split_order]
        assert pagination["total"] == 1

        vendor_orders, _ = list_vendor_orders(other_vendor.id)
        assert [item.vendor_id for item in vendor_orders[0].items] == [other_vendor.id]

    def test_listing_rejects_unknown_status(self, buyer):
        with pytest.raises(ValidationError):
            list_user_orders(buyer.id, status="lost")
