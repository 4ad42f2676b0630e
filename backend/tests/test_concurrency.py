"""
Concurrent order placement against a file-backed database.

Two buyers race for the last units of the same product. Exactly one order
may win; the loser sees InsufficientStock and stock never goes negative.
"""

import threading

import pytest

from app import create_app
from app.errors import InsufficientStock
from app.extensions import db
from app.models import Inventory, InventoryHistory, Order
from app.services.order_service import CreateOrderParams, OrderItemRequest, create_order

from conftest import FakeGateway, make_address, make_product, make_user, make_vendor


@pytest.fixture
def race_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
    })
    app.extensions['payment_gateway'] = FakeGateway()
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _seed(race_app, stock):
    with race_app.app_context():
        vendor = make_vendor("race-shop@example.com")
        product = make_product(vendor, name="Last Units", stock=stock)
        buyers = []
        for email in ("first@example.com", "second@example.com"):
            user = make_user(email, "customer")
            buyers.append((user.id, make_address(user).id))
        return product.id, buyers


class TestConcurrentPlacement:

    def test_only_one_of_two_competing_orders_wins(self, race_app):
        product_id, buyers = _seed(race_app, stock=5)
        barrier = threading.Barrier(len(buyers))
        outcomes = []
        errors = []

        def place(user_id, address_id):
            with race_app.app_context():
                barrier.wait()
                try:
                    create_order(CreateOrderParams(
                        user_id=user_id,
                        address_id=address_id,
                        items=[OrderItemRequest(product_id, 3)],
                    ))
                    outcomes.append("placed")
                except InsufficientStock:
                    outcomes.append("insufficient")
                except Exception as exc:  # surfaced in the assertion below
                    errors.append(exc)

        threads = [threading.Thread(target=place, args=buyer) for buyer in buyers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert sorted(outcomes) == ["insufficient", "placed"]

        with race_app.app_context():
            assert db.session.query(Inventory.stock).filter_by(product_id=product_id).scalar() == 2
            assert db.session.query(Order).count() == 1
            assert db.session.query(InventoryHistory).count() == 1

    def test_orders_within_stock_both_win(self, race_app):
        product_id, buyers = _seed(race_app, stock=6)
        barrier = threading.Barrier(len(buyers))
        outcomes = []

        def place(user_id, address_id):
            with race_app.app_context():
                barrier.wait()
                create_order(CreateOrderParams(
                    user_id=user_id,
                    address_id=address_id,
                    items=[OrderItemRequest(product_id, 3)],
                ))
                outcomes.append("placed")

        threads = [threading.Thread(target=place, args=buyer) for buyer in buyers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert outcomes == ["placed", "placed"]
        with race_app.app_context():
            assert db.session.query(Inventory.stock).filter_by(product_id=product_id).scalar() == 0
