# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/orderdesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Customers:
# - python -m flask customers create --external-id admin-1 --name "Shop Admin" --admin
#   Create or refresh a customer and print a fresh bearer token.
# - python -m flask customers issue-token 1
#   Replace a customer's bearer token.
# - python -m flask customers list
#
# Catalog:
# - python -m flask catalog seed
#   Insert a few demo products (idempotent by SKU).
# - python -m flask catalog adjust-stock 1 --delta 25
#   Add (or with a negative delta, remove) stock through the stock ledger.
#
# Payments:
# - python -m flask payments expire-sessions
#   Close gateway orders whose payment session lapsed (payment expired, order cancelled).
#
# Ledger:
# - python -m flask ledger summary [--period week]
#   Print inflow/outflow/net per window.
# - python -m flask ledger record-supplier-payment 12 --amount 2500000
#   Book the outflow for a received supply order.

import click
from flask.cli import with_appcontext

from .extensions import db, summary_cache
from .models import Product, Customer
from .services import identity_service, ledger_service, reconciliation_service, stock_service
from .services.identity_service import IdentityError
from .services.stock_service import StockError


DEMO_PRODUCTS = [
    ("RICE-5KG", "Jasmine Rice 5kg", 125000, 40),
    ("FISH-SAUCE", "Fish Sauce 500ml", 38000, 60),
    ("COFFEE-G", "Ground Coffee 500g", 95000, 25),
    ("NOODLE-30", "Instant Noodles (30 pack)", 110000, 30),
    ("TEA-GREEN", "Green Tea 200g", 45000, 50),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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
    summary_cache.invalidate()

    click.echo("PASS Database reset complete. Run 'python -m flask catalog seed' for demo data.")


@click.group('customers')
def customers_group():
    """Customer identity commands."""


@customers_group.command('create')
@click.option('--external-id', prompt=True, help='Identity provider subject id')
@click.option('--name', prompt=True)
@click.option('--email', default=None)
@click.option('--admin', 'is_admin', is_flag=True, help='Grant admin access')
@with_appcontext
def create_customer(external_id, name, email, is_admin):
    """Create or refresh a customer and print a bearer token."""
    try:
        customer = identity_service.upsert_customer(
            external_id=external_id, name=name, email=email, is_admin=is_admin
        )
        token = identity_service.issue_token(customer.id)
    except IdentityError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    click.echo(f"PASS Customer {customer.id} ({customer.name}) admin={customer.is_admin}")
    click.echo(f"TOKEN {token}")


@customers_group.command('issue-token')
@click.argument('customer_id', type=int)
@with_appcontext
def issue_token(customer_id):
    """Replace a customer's bearer token."""
    try:
        token = identity_service.issue_token(customer_id)
    except IdentityError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"TOKEN {token}")


@customers_group.command('list')
@with_appcontext
def list_customers():
    """List customers."""
    customers = db.session.query(Customer).order_by(Customer.id).all()
    if not customers:
        click.echo("No customers found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'External ID':<25} {'Name':<25} {'Admin':<7} {'Active'}")
    click.echo("="*90)
    for c in customers:
        click.echo(
            f"{c.id:<5} {c.external_id:<25} {c.name:<25} "
            f"{'Yes' if c.is_admin else 'No':<7} {'Yes' if c.is_active else 'No'}"
        )
    click.echo("="*90 + "\n")


@click.group('catalog')
def catalog_group():
    """Product catalog helpers for local runs."""


@catalog_group.command('seed')
@with_appcontext
def seed_catalog():
    """Insert demo products; existing SKUs are left alone."""
    created = 0
    for sku, name, price, stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(sku=sku).first():
            continue
        db.session.add(Product(sku=sku, name=name, selling_price=price, current_stock=stock))
        created += 1
    db.session.commit()
    click.echo(f"PASS Seeded {created} products ({len(DEMO_PRODUCTS) - created} already present)")


@catalog_group.command('adjust-stock')
@click.argument('product_id', type=int)
@click.option('--delta', type=int, required=True, help='Units to add (negative to remove)')
@with_appcontext
def adjust_stock(product_id, delta):
    """Adjust stock through the stock ledger (floor-checked)."""
    try:
        stock_service.adjust_stock(product_id, delta)
        db.session.commit()
    except StockError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Product {product_id} stock now {stock_service.get_stock(product_id)}")


@click.group('payments')
def payments_group():
    """Payment session maintenance."""


@payments_group.command('expire-sessions')
@with_appcontext
def expire_sessions():
    """Close gateway orders whose payment session has lapsed."""
    count = reconciliation_service.expire_stale_sessions()
    click.echo(f"PASS Expired {count} payment sessions")


@click.group('ledger')
def ledger_group():
    """Financial ledger inspection."""


@ledger_group.command('summary')
@click.option('--period', type=click.Choice(['today', 'week', 'month', 'year']), default=None)
@with_appcontext
def ledger_summary(period):
    """Print inflow/outflow/net per window (recomputed, not cached)."""
    summary_cache.invalidate()
    periods = [period] if period else ['today', 'week', 'month', 'year']
    click.echo(f"{'Window':<8} {'Inflow':>15} {'Outflow':>15} {'Net':>15}")
    for p in periods:
        s = summary_cache.get(p)
        click.echo(f"{p:<8} {s['inflow']:>15,} {s['outflow']:>15,} {s['net']:>15,}")


@ledger_group.command('record-supplier-payment')
@click.argument('supply_order_id', type=int)
@click.option('--amount', type=int, required=True)
@with_appcontext
def record_supplier_payment(supply_order_id, amount):
    """Book the outflow for a received supply order (idempotent)."""
    entry = ledger_service.record_supplier_payment(supply_order_id, amount)
    if entry is None:
        click.echo("SKIP Amount is not positive; nothing recorded")
        return
    click.echo(f"PASS Transaction {entry.id} for PO-{supply_order_id:06d} ({entry.amount:,})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(ledger_group)
