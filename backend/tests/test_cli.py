"""
Operator CLI tests.

Commands run through Flask's CLI runner against the test database and
call the same services as the HTTP routes.
"""

from app.extensions import db
from app.models import Inventory, Order, Role
from app.services import session_service
from app.services.order_service import CreateOrderParams, OrderItemRequest, create_order

from conftest import make_address, make_product, make_user


def _invoke(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


class TestSystemCommands:

    def test_init_creates_roles_once(self, app, db_session):
        first = _invoke(app, "system", "init")
        second = _invoke(app, "system", "init")

        assert first.exit_code == 0
        assert second.exit_code == 0
        assert sorted(r.name for r in db.session.query(Role).all()) == ["admin", "customer", "vendor"]


class TestUserCommands:

    def test_issue_token_for_existing_user(self, app, buyer):
        result = _invoke(app, "users", "issue-token", buyer.email)

        assert result.exit_code == 0
        token = result.stdout.strip().splitlines()[0]
        context = session_service.validate_session(token)
        assert context.user.id == buyer.id

    def test_issue_token_for_unknown_user(self, app, db_session):
        result = _invoke(app, "users", "issue-token", "nobody@example.com")
        assert result.exit_code != 0
        assert "not found" in result.output


class TestStockCommands:

    def test_adjust_and_show(self, app, vendor):
        product = make_product(vendor, name="Mug")

        adjusted = _invoke(app, "stock", "adjust", "--product-id", str(product.id), "--delta", "7")
        shown = _invoke(app, "stock", "show", str(product.id))

        assert adjusted.exit_code == 0
        assert "0 -> 7" in adjusted.output
        assert "tracked by inventory" in shown.output
        assert db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar() == 7

    def test_adjust_below_zero_fails(self, app, vendor):
        product = make_product(vendor, stock=2)
        result = _invoke(app, "stock", "adjust", "--product-id", str(product.id), "--delta", "-3")
        assert result.exit_code != 0
        assert db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar() == 2


class TestOrderCommands:

    def test_cancel_restores_stock(self, app, buyer, address, vendor, admin):
        product = make_product(vendor, stock=5)
        placed = create_order(CreateOrderParams(
            user_id=buyer.id, address_id=address.id, items=[OrderItemRequest(product.id, 2)],
        ))

        result = _invoke(app, "orders", "cancel", str(placed.order.id), "--reason", "Out of stock")

        assert result.exit_code == 0
        assert "PASS" in result.output
        assert db.session.get(Order, placed.order.id).order_status == "cancelled"
        assert db.session.query(Inventory.stock).filter_by(product_id=product.id).scalar() == 5

    def test_cancel_requires_an_admin(self, app, vendor):
        buyer = make_user("lonely@example.com", "customer")
        product = make_product(vendor, stock=5)
        placed = create_order(CreateOrderParams(
            user_id=buyer.id, address_id=make_address(buyer).id, items=[OrderItemRequest(product.id, 1)],
        ))

        result = _invoke(app, "orders", "cancel", str(placed.order.id))

        assert result.exit_code != 0
        assert db.session.get(Order, placed.order.id).order_status == "pending"
