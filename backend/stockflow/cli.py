# Overview: Flask CLI command groups for bootstrap, seeding, inspection and ledger checks.

# backend/stockflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to stockflow (PowerShell: $env:FLASK_APP="stockflow").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --username admin --email admin@stockflow.local --password "Password123!" --role issuer
# - python -m flask users create --username d1 --email d1@x.local --password "Password123!" --role dealer --parent-id 2
#   Legacy role names (admin, stalkist, dealer, dellear, salesman) are accepted.
# - python -m flask users list
#
# Catalog / central stock:
# - python -m flask products create --name "Seed Mix" --packet-price-cents 1500 --packets-per-unit 10 --stock 500
# - python -m flask products restock 1 --units 200
# - python -m flask products list
#
# Ledger:
# - python -m flask ledger lots --distributor-id 3
# - python -m flask ledger check
#   Verify lot arithmetic and allocation sums; exits non-zero on violations.
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import NotFoundError, ValidationError
from .models import Role, User
from .services import auth_service, catalog_service, ledger_service, session_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', prompt=True, help='issuer, regional_distributor, distributor, field_agent (or legacy names)')
@click.option('--parent-id', type=int, default=None, help='Owning user ID (required for non-issuer roles)')
@with_appcontext
def create_user_cli(username, email, password, role, parent_id):
    """Create a user in the distribution hierarchy."""
    try:
        user = auth_service.create_user(username, email, password, role, parent_id=parent_id)
        db.session.commit()
        click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")
    except ValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)


@users_group.command('list')
@click.option('--role', help='Filter by role (legacy names accepted)')
@with_appcontext
def list_users(role):
    """List all users."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=Role.from_legacy(role).value)

    users = query.order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<30} {'Role':<22} {'Parent':<7} {'Active'}")
    click.echo("="*100)

    for user in users:
        parent = user.parent_id if user.parent_id is not None else "-"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<30} {user.role:<22} {parent!s:<7} {active_str}")

    click.echo("="*100 + "\n")


@click.group('products')
def products_group():
    """Catalog seeding and central stock commands."""


@products_group.command('create')
@click.option('--name', required=True, help='Product name')
@click.option('--packet-price-cents', type=int, required=True, help='Price per packet in cents')
@click.option('--packets-per-unit', type=int, default=1, show_default=True, help='Packaging factor')
@click.option('--stock', 'stock_units', type=int, default=0, show_default=True, help='Initial central stock (units)')
@click.option('--description', default=None)
@with_appcontext
def create_product_cli(name, packet_price_cents, packets_per_unit, stock_units, description):
    try:
        product = catalog_service.create_product(
            name,
            packet_price_cents=packet_price_cents,
            packets_per_unit=packets_per_unit,
            stock_units=stock_units,
            description=description,
        )
        db.session.commit()
        click.echo(f"PASS Created product {product.name} (ID: {product.id}, stock: {product.stock_units})")
    except ValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)


@products_group.command('restock')
@click.argument('product_id', type=int)
@click.option('--units', type=int, required=True, help='Units to add to central stock')
@with_appcontext
def restock_product_cli(product_id, units):
    try:
        product = catalog_service.add_central_stock(product_id, units)
        db.session.commit()
        click.echo(f"PASS Product {product.id} central stock is now {product.stock_units}")
    except (ValidationError, NotFoundError) as e:
        db.session.rollback()
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)


@products_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive products')
@with_appcontext
def list_products_cli(include_inactive):
    products = catalog_service.list_products(include_inactive=include_inactive)
    if not products:
        click.echo("No products found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Name':<35} {'Packet price':<14} {'Per unit':<10} {'Stock'}")
    click.echo("="*90)
    for p in products:
        click.echo(f"{p.id:<5} {p.name:<35} {p.packet_price_cents:<14} {p.packets_per_unit:<10} {p.stock_units}")
    click.echo("="*90 + "\n")


@click.group('ledger')
def ledger_group():
    """Inventory ledger inspection."""


@ledger_group.command('lots')
@click.option('--distributor-id', type=int, required=True)
@click.option('--product-id', type=int, default=None)
@with_appcontext
def list_lots_cli(distributor_id, product_id):
    """List a distributor's lots, oldest first."""
    lots = ledger_service.get_lots(distributor_id, product_id)
    if not lots:
        click.echo("No lots found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'Lot':<6} {'Product':<8} {'Total':<8} {'Allocated':<10} {'Available':<10} {'Request':<8} {'Created'}")
    click.echo("="*90)
    for lot in lots:
        click.echo(
            f"{lot.id:<6} {lot.product_id:<8} {lot.total_units:<8} {lot.allocated_units:<10} "
            f"{lot.available_units:<10} {lot.source_request_id:<8} {lot.created_at}"
        )
    click.echo("="*90 + "\n")


@ledger_group.command('check')
@with_appcontext
def check_ledger_cli():
    """Verify lot invariants and allocation sums."""
    violations = ledger_service.check_ledger_consistency()
    if not violations:
        click.echo("PASS Ledger is consistent.")
        return

    for violation in violations:
        lot = violation["lot"]
        for problem in violation["problems"]:
            click.echo(f"FAIL lot {lot.get('id')}: {problem}")
    click.echo(f"FAIL {len(violations)} lot(s) inconsistent.")
    raise SystemExit(1)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cli():
    """Delete expired and revoked sessions older than 30 days."""
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"Deleted {deleted} expired sessions.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(maintenance_group)
