# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/app/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates the admin, vendor and customer roles.
# - python -m flask system seed-demo
#   Create a demo admin, an approved vendor with stocked products, and a customer with an address.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with roles and active status.
# - python -m flask users create --email admin@vendora.local --role admin
#   Create a user (prompts if options are omitted).
# - python -m flask users create --email shop@vendora.local --role vendor --business-name "Ada Shoes"
#   Create a vendor user together with its approved vendor row.
# - python -m flask users issue-token admin@vendora.local
#   Print a fresh bearer token for a user.
#
# Order inspection/repair:
# - python -m flask orders list --status pending --limit 20
#   List recent orders with payment status.
# - python -m flask orders verify-payment VENDORA-1760000000000-42
#   Re-check a payment reference with the gateway.
# - python -m flask orders cancel 42 --reason "Out of stock"
#   Cancel an order as admin (restores stock, starts a refund if paid).
#
# Stock:
# - python -m flask stock adjust --product-id 10 --delta 25 [--combination-id 7] [--note "Restock"]
#   Manual stock adjustment through the stock ledger.
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions
#   Delete revoked and expired session tokens.

from decimal import Decimal

import click
from flask.cli import with_appcontext

from .errors import OrderCoreError
from .extensions import db
from .models import Address, Order, Product, ProductVariant, Role, SessionToken, User, UserRole, Vendor
from .models.auth import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_VENDOR, VALID_ROLES
from .models.catalog import VENDOR_STATUS_APPROVED
from .services import catalog_service, lifecycle_service, payment_service, session_service, stock_service
from .services.session_service import Actor
from .time_utils import utcnow


ROLE_DESCRIPTIONS = {
    ROLE_ADMIN: "Marketplace operator",
    ROLE_VENDOR: "Seller managing its own products and order items",
    ROLE_CUSTOMER: "Buyer",
}


def ensure_roles() -> list[Role]:
    """Create any missing default role. Commits."""
    roles = []
    for name in VALID_ROLES:
        role = db.session.query(Role).filter_by(name=name).first()
        if role is None:
            role = Role(name=name, description=ROLE_DESCRIPTIONS[name])
            db.session.add(role)
        roles.append(role)
    db.session.commit()
    return roles


def assign_role(user_id: int, role_name: str) -> None:
    role = db.session.query(Role).filter_by(name=role_name).first()
    if role is None:
        raise click.ClickException(f"Role '{role_name}' does not exist; run 'flask system init'")
    exists = db.session.query(UserRole).filter_by(user_id=user_id, role_id=role.id).first()
    if exists is None:
        db.session.add(UserRole(user_id=user_id, role_id=role.id))


def _create_user(email: str, role: str, *, first_name=None, last_name=None, business_name=None) -> User:
    if db.session.query(User).filter_by(email=email).first():
        raise click.ClickException(f"User '{email}' already exists")

    user = User(email=email, first_name=first_name, last_name=last_name, is_active=True)
    db.session.add(user)
    db.session.flush()
    assign_role(user.id, role)
    if role == ROLE_VENDOR:
        db.session.add(Vendor(
            user_id=user.id,
            business_name=business_name or email.split("@")[0],
            status=VENDOR_STATUS_APPROVED,
        ))
    db.session.commit()
    return user


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create default roles (admin, vendor, customer). Safe to re-run."""
    click.echo("START Initializing Vendora...")
    roles = ensure_roles()
    click.echo(f"PASS Roles ready: {', '.join(r.name for r in roles)}")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Create a small demo marketplace.

    - admin@vendora.local (admin)
    - shop@vendora.local (approved vendor "Demo Shop")
      - "Canvas Tote" tracked by product inventory, 50 in stock
      - "Classic Tee" with Color x Size combinations, 10 of each
    - buyer@vendora.local (customer) with one address

    Prints a bearer token for each user.
    """
    ensure_roles()

    admin = _create_user("admin@vendora.local", ROLE_ADMIN, first_name="Demo", last_name="Admin")
    vendor_user = _create_user("shop@vendora.local", ROLE_VENDOR, business_name="Demo Shop")
    buyer = _create_user("buyer@vendora.local", ROLE_CUSTOMER, first_name="Demo", last_name="Buyer")
    vendor = db.session.query(Vendor).filter_by(user_id=vendor_user.id).first()

    tote = Product(vendor_id=vendor.id, name="Canvas Tote", slug="canvas-tote", price=Decimal("4500.00"))
    tee = Product(vendor_id=vendor.id, name="Classic Tee", slug="classic-tee", price=Decimal("10000.00"))
    db.session.add_all([tote, tee])
    db.session.flush()
    for name, value, code in (
        ("Color", "Black", "BK"), ("Color", "White", "WH"),
        ("Size", "M", "M"), ("Size", "L", "L"),
    ):
        db.session.add(ProductVariant(product_id=tee.id, name=name, value=value, sku_code=code))
    db.session.add(Address(
        user_id=buyer.id, label="Home", address_line1="12 Marina Road",
        city="Lagos", state="Lagos", country="Nigeria",
    ))
    db.session.commit()

    stock_service.adjust_stock(product_id=tote.id, quantity_delta=50, actor_user_id=admin.id, note="Demo stock")
    for combination in catalog_service.create_combinations_for_product(tee.id):
        stock_service.adjust_stock(
            product_id=tee.id,
            combination_id=combination["id"],
            quantity_delta=10,
            actor_user_id=admin.id,
            note="Demo stock",
        )

    click.echo("PASS Demo data created")
    for user in (admin, vendor_user, buyer):
        _, token = session_service.create_session(user.id)
        click.echo(f"   {user.email:<24} token: {token}")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), prompt=True, help='Role')
@click.option('--first-name', default=None)
@click.option('--last-name', default=None)
@click.option('--business-name', default=None, help='Vendor business name (vendor role only)')
@with_appcontext
def create_user_cli(email, role, first_name, last_name, business_name):
    """Create a user. Vendor users also get an approved vendor row."""
    user = _create_user(
        email, role, first_name=first_name, last_name=last_name, business_name=business_name
    )
    click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{role}'")


@users_group.command('issue-token')
@click.argument('email')
@with_appcontext
def issue_token_cli(email):
    """Create a session for a user and print its bearer token."""
    user = db.session.query(User).filter_by(email=email).first()
    if user is None:
        raise click.ClickException(f"User '{email}' not found")
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(token)
    click.echo(f"Expires at {session.expires_at.isoformat()}", err=True)


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Email':<32} {'Active':<8} {'Vendor':<8} {'Roles'}")
    click.echo("="*90)

    for user in users:
        roles_str = ", ".join(sorted(session_service.get_user_roles(user.id))) or "none"
        vendor_id = session_service.get_vendor_id_for_user(user.id)
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<32} {active_str:<8} {str(vendor_id or '-'):<8} {roles_str}")

    click.echo("="*90 + "\n")


@click.group('orders')
def orders_group():
    """Order inspection and repair commands."""


@orders_group.command('list')
@click.option('--status', default=None, help='Filter by order status')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def list_orders(status, limit):
    """List recent orders."""
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.order_status == status)
    orders = query.order_by(Order.id.desc()).limit(limit).all()

    if not orders:
        click.echo("No orders found.")
        return

    for order in orders:
        click.echo(
            f"{order.id:<6} {order.order_number or '-':<32} {order.order_status:<11} "
            f"{order.payment_status:<8} {order.total_amount:>12} user={order.user_id}"
        )


@orders_group.command('verify-payment')
@click.argument('reference')
@with_appcontext
def verify_payment_cli(reference):
    """Re-check a payment reference with the gateway."""
    try:
        result = payment_service.verify_payment(reference)
    except OrderCoreError as e:
        raise click.ClickException(e.message)
    status = "PASS" if result.verified else "FAIL"
    click.echo(
        f"{status} order={result.order_id} gateway={result.gateway_status} "
        f"payment={result.payment_status} order_status={result.order_status}"
    )


@orders_group.command('cancel')
@click.argument('order_id', type=int)
@click.option('--reason', default=None)
@with_appcontext
def cancel_order_cli(order_id, reason):
    """Cancel an order as admin."""
    admin_id = (
        db.session.query(UserRole.user_id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(Role.name == ROLE_ADMIN)
        .order_by(UserRole.user_id)
        .limit(1)
        .scalar()
    )
    if admin_id is None:
        raise click.ClickException("No admin user exists; create one with 'flask users create --role admin'")
    try:
        result = lifecycle_service.cancel_order(order_id, Actor(user_id=admin_id, is_admin=True), reason=reason)
    except OrderCoreError as e:
        raise click.ClickException(e.message)
    if result.changed:
        click.echo(f"PASS Order {order_id} cancelled (payment: {result.payment_status})")
    else:
        click.echo(f"WARN Order {order_id} was already cancelled")


@click.group('stock')
def stock_group():
    """Stock ledger commands."""


@stock_group.command('adjust')
@click.option('--product-id', type=int, required=True)
@click.option('--delta', 'quantity_delta', type=int, required=True, help='Signed quantity change')
@click.option('--combination-id', type=int, default=None)
@click.option('--note', default=None)
@with_appcontext
def adjust_stock_cli(product_id, quantity_delta, combination_id, note):
    """Manual stock adjustment."""
    try:
        movement = stock_service.adjust_stock(
            product_id=product_id,
            combination_id=combination_id,
            quantity_delta=quantity_delta,
            note=note,
        )
    except OrderCoreError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS {movement.unit.kind} {movement.unit.id}: {movement.previous_stock} -> {movement.new_stock}")


@stock_group.command('show')
@click.argument('product_id', type=int)
@with_appcontext
def show_stock_cli(product_id):
    """Show a product's stock units."""
    try:
        summary = stock_service.get_stock_summary(product_id)
    except OrderCoreError as e:
        raise click.ClickException(e.message)
    click.echo(f"Product {product_id} tracked by {summary['tracked_by']}, sold {summary['sold_units']}")
    inventory = summary["inventory"]
    if inventory:
        click.echo(f"   inventory #{inventory['id']}: {inventory['stock']}")
    for combination in summary["combinations"]:
        flag = "" if combination["is_active"] else " (inactive)"
        click.echo(f"   {combination['combination_name']:<20} #{combination['id']}: {combination['stock']}{flag}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cli():
    """Delete revoked and expired session tokens."""
    deleted = (
        db.session.query(SessionToken)
        .filter((SessionToken.is_revoked.is_(True)) | (SessionToken.expires_at < utcnow()))
        .delete(synchronize_session=False)
    )
    db.session.commit()
    click.echo(f"Deleted {deleted} session tokens.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(maintenance_group)
