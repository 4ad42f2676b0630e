"""
Pytest fixtures for Vendora backend tests.

Provides test database setup, catalog/buyer factories, a fake payment
gateway, a capturing e-mail dispatcher and authenticated test clients.
"""

from decimal import Decimal

import pytest

from app import create_app
from app.errors import PaymentError
from app.extensions import db
from app.models import (
    Address,
    Cart,
    CartItem,
    Inventory,
    Product,
    ProductVariant,
    Role,
    User,
    UserRole,
    VariantCombination,
    Vendor,
    variant_combination_variants,
)
from app.models.catalog import VENDOR_STATUS_APPROVED
from app.services import session_service
from app.services.payment_gateway import GatewayInitResult, GatewayVerification
from app.services.session_service import Actor


WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """
    In-process stand-in for the payment gateway.

    verify() answers success with the initialised amount unless
    verify_status, verify_amount or fail_verify say otherwise.
    """

    def __init__(self):
        self.initialized = {}
        self.verify_calls = []
        self.fail_initialize = False
        self.fail_verify = False
        self.verify_status = "success"
        self.verify_amount = None

    def initialize(self, *, email, amount_minor, reference, callback_url=None, metadata=None):
        if self.fail_initialize:
            raise PaymentError("Payment gateway unreachable", details={"reason": "ConnectError"})
        self.initialized[reference] = {"email": email, "amount_minor": amount_minor, "metadata": metadata}
        return GatewayInitResult(
            authorization_url=f"https://checkout.test/{reference}",
            reference=reference,
            access_code=f"ac_{reference}",
            raw={"status": True, "data": {"reference": reference}},
        )

    def verify(self, reference):
        self.verify_calls.append(reference)
        if self.fail_verify:
            raise PaymentError("Payment gateway unreachable", details={"reason": "ReadTimeout"})
        amount = self.verify_amount
        if amount is None:
            amount = self.initialized.get(reference, {}).get("amount_minor")
        return GatewayVerification(
            success=self.verify_status == "success",
            status=self.verify_status,
            reference=reference,
            amount_minor=amount,
            external_id="gw_" + reference,
            raw={"status": True, "data": {"status": self.verify_status, "reference": reference}},
        )


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh database, fake gateway and e-mail outbox for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        app.extensions['payment_gateway'] = FakeGateway()
        app.extensions['notification_dispatcher'] = _Outbox()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class _Outbox(list):
    def __call__(self, message):
        self.append(message)


@pytest.fixture
def gateway(app, db_session):
    return app.extensions['payment_gateway']


@pytest.fixture
def outbox(app, db_session):
    return app.extensions['notification_dispatcher']


# =============================================================================
# FACTORIES
# =============================================================================

def make_user(email: str, *roles: str) -> User:
    user = User(email=email, first_name=email.split("@")[0], is_active=True)
    db.session.add(user)
    db.session.flush()
    for name in roles:
        role = db.session.query(Role).filter_by(name=name).first()
        if role is None:
            role = Role(name=name)
            db.session.add(role)
            db.session.flush()
        db.session.add(UserRole(user_id=user.id, role_id=role.id))
    db.session.commit()
    return user


def make_vendor(email: str, *, status: str = VENDOR_STATUS_APPROVED) -> Vendor:
    user = make_user(email, "vendor")
    vendor = Vendor(user_id=user.id, business_name=f"{user.first_name} store", status=status)
    db.session.add(vendor)
    db.session.commit()
    return vendor


def make_product(vendor, *, name="Widget", price="100.00", discounted_price=None, stock=None,
                 status="active") -> Product:
    slug = f"{name.lower().replace(' ', '-')}-{db.session.query(Product).count() + 1}"
    product = Product(
        vendor_id=vendor.id if vendor is not None else None,
        name=name,
        slug=slug,
        price=Decimal(price),
        discounted_price=Decimal(discounted_price) if discounted_price is not None else None,
        status=status,
        sold_units=0,
    )
    db.session.add(product)
    db.session.flush()
    if stock is not None:
        db.session.add(Inventory(product_id=product.id, stock=stock))
    db.session.commit()
    return product


def make_variant(product, name: str, value: str, *, additional_price="0", sku_code=None) -> ProductVariant:
    variant = ProductVariant(
        product_id=product.id,
        name=name,
        value=value,
        sku_code=sku_code,
        additional_price=Decimal(additional_price),
    )
    db.session.add(variant)
    db.session.commit()
    return variant


def make_combination(product, variants, *, stock=0, price_modifier="0", is_active=True) -> VariantCombination:
    combination = VariantCombination(
        product_id=product.id,
        combination_name="-".join(v.value for v in variants),
        stock=stock,
        price_modifier=Decimal(price_modifier),
        is_active=is_active,
    )
    db.session.add(combination)
    db.session.flush()
    db.session.execute(
        variant_combination_variants.insert(),
        [{"combination_id": combination.id, "variant_id": v.id} for v in variants],
    )
    db.session.commit()
    return combination


def make_address(user) -> Address:
    address = Address(user_id=user.id, address_line1="1 Test Street", city="Lagos", country="Nigeria")
    db.session.add(address)
    db.session.commit()
    return address


def make_cart(user, lines) -> Cart:
    """lines: iterable of (product, quantity, selected_variant_ids)."""
    cart = Cart(user_id=user.id, total_items=0, total_amount=Decimal("0"))
    db.session.add(cart)
    db.session.flush()
    for product, quantity, variant_ids in lines:
        db.session.add(CartItem(
            cart_id=cart.id,
            product_id=product.id,
            quantity=quantity,
            price=product.price,
            selected_variants=[{"id": vid} for vid in variant_ids] or None,
        ))
    db.session.commit()
    return cart


def actor_for(user, *, vendor=None, admin=False) -> Actor:
    return Actor(user_id=user.id, is_admin=admin, vendor_id=vendor.id if vendor is not None else None)


def auth_headers(user) -> dict:
    """Issue a session for a user and build the Authorization header."""
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


# =============================================================================
# SCENARIO FIXTURES
# =============================================================================

@pytest.fixture
def buyer(db_session):
    return make_user("buyer@example.com", "customer")


@pytest.fixture
def address(buyer):
    return make_address(buyer)


@pytest.fixture
def admin(db_session):
    return make_user("admin@example.com", "admin")


@pytest.fixture
def vendor(db_session):
    return make_vendor("shop@example.com")


@pytest.fixture
def other_vendor(db_session):
    return make_vendor("other@example.com")


@pytest.fixture
def tee(vendor):
    """Combination-tracked product: Color (Black, White) x Size (M, L)."""
    product = make_product(vendor, name="Classic Tee", price="10000.00")
    black = make_variant(product, "Color", "Black", sku_code="BK")
    white = make_variant(product, "Color", "White", sku_code="WH")
    medium = make_variant(product, "Size", "M", sku_code="M")
    large = make_variant(product, "Size", "L", sku_code="L")
    combos = {
        "Black-M": make_combination(product, [black, medium], stock=5, price_modifier="2000.00"),
        "Black-L": make_combination(product, [black, large], stock=5),
        "White-M": make_combination(product, [white, medium], stock=5),
        "White-L": make_combination(product, [white, large], stock=0),
    }
    return product, combos
