# Overview: Flask CLI command groups for bootstrap, maintenance sweeps, and inspection.

# backend/ordering/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed-demo [--branch-code MAIN]
#   Idempotent demo branch, products, attribute options, stock and a discount code.
#
# Pricing:
# - python -m flask pricing sweep-expired
#   Deactivate auto-reverting price overrides whose window has ended. Safe to run from cron.
#
# Payments:
# - python -m flask payments reconcile [--hours 24]
#   Poll the gateway for pending card payments and retry refunds owed on cancelled orders.
#
# Stock:
# - python -m flask stock low [--branch-id 1]
#   List managed items at or under their low-stock threshold.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import (
    Branch,
    Discount,
    Product,
    ProductAttribute,
    ProductAttributeItem,
    StockRecord,
)
from .models.discounts import DISCOUNT_PERCENTAGE
from .money import fmt_cents
from .services import order_service, pricing_service, stock_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    click.echo("BUILD  Creating missing tables...")
    db.create_all()
    click.echo("PASS Database ready")


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

    click.echo("PASS Database reset complete")


@click.group('catalog')
def catalog_group():
    """Catalog bootstrap commands (catalog CRUD lives outside this service)."""


DEMO_PRODUCTS = [
    # name, base price, managed stock quantity (None = unmanaged)
    ("Margherita Pizza", 899, None),
    ("Pepperoni Pizza", 1099, None),
    ("Garlic Bread", 399, 40),
    ("Tiramisu", 549, 12),
    ("Cola 330ml", 199, 100),
]

DEMO_EXTRAS = [
    ("Extra cheese", 150),
    ("Jalapenos", 75),
    ("Stuffed crust", 250),
]


@catalog_group.command('seed-demo')
@click.option('--branch-code', default='MAIN', help='Branch code for the demo branch')
@click.option('--timezone', 'tz_name', default='Europe/London', help='Branch timezone')
@with_appcontext
def seed_demo(branch_code, tz_name):
    """Seed a demo branch with products, extras, stock and a WELCOME10 code."""
    click.echo("START Seeding demo catalog...")

    branch = db.session.query(Branch).filter_by(code=branch_code).first()
    if not branch:
        branch = Branch(name=f"Demo Branch {branch_code}", code=branch_code, timezone=tz_name)
        db.session.add(branch)
        db.session.commit()
        click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id}, Code: {branch.code})")
    else:
        click.echo(f"PASS Using existing branch: {branch.name} (ID: {branch.id})")

    extras = db.session.query(ProductAttribute).filter_by(name="Extras").first()
    if not extras:
        extras = ProductAttribute(name="Extras", type="multiple")
        db.session.add(extras)
        db.session.flush()

    for name, price_cents, quantity in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(branch_id=branch.id, name=name).first()
        if product:
            click.echo(f"WARN  Product '{name}' already exists, skipping...")
            continue

        product = Product(branch_id=branch.id, name=name, base_price_cents=price_cents, is_active=True)
        db.session.add(product)
        db.session.flush()

        if name.endswith("Pizza"):
            for extra_name, extra_cents in DEMO_EXTRAS:
                db.session.add(ProductAttributeItem(
                    product_id=product.id,
                    attribute_id=extras.id,
                    name=extra_name,
                    price_cents=extra_cents,
                ))

        if quantity is not None:
            db.session.add(StockRecord(
                product_id=product.id,
                is_managed=True,
                quantity=quantity,
                low_stock_threshold=5,
            ))

        click.echo(f"PASS Created product: {name} ({fmt_cents(price_cents)})")

    if not db.session.query(Discount).filter_by(code="WELCOME10").first():
        db.session.add(Discount(
            code="WELCOME10",
            name="10% off your first order",
            discount_type=DISCOUNT_PERCENTAGE,
            discount_value=10,
            min_order_cents=1000,
            max_uses_per_user=1,
        ))
        click.echo("PASS Created discount code: WELCOME10")

    db.session.commit()
    click.echo("DONE Demo catalog ready")


@click.group('pricing')
def pricing_group():
    """Price override maintenance."""


@pricing_group.command('sweep-expired')
@with_appcontext
def sweep_expired():
    """Deactivate expired auto-reverting overrides."""
    count = pricing_service.sweep_expired()
    click.echo(f"PASS Deactivated {count} expired override(s)")


@click.group('payments')
def payments_group():
    """Payment maintenance commands."""


@payments_group.command('reconcile')
@click.option('--hours', type=int, default=None, help='Look-back window (defaults to PAYMENT_RECONCILE_WINDOW_HOURS)')
@with_appcontext
def reconcile(hours):
    """Reconcile pending card payments with the gateway."""
    summary = order_service.reconcile_payments(hours=hours)
    click.echo(
        f"PASS Checked {summary.checked} order(s), updated {summary.updated}, "
        f"refunds retried {summary.refunds_retried} (succeeded {summary.refunds_succeeded})"
    )
    for error in summary.errors:
        click.echo(f"FAIL Order {error.get('order_id')}: {error.get('error')}")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('low')
@click.option('--branch-id', type=int, help='Filter by branch ID')
@with_appcontext
def low_stock(branch_id):
    """List managed items at or under their threshold."""
    rows = stock_service.low_stock_report(branch_id)
    if not rows:
        click.echo("PASS No low-stock items")
        return

    click.echo(f"{'PRODUCT':<8} {'NAME':<30} {'QTY':>5} {'MIN':>5} {'DEFICIT':>8}")
    for row in rows:
        click.echo(
            f"{row['product_id']:<8} {row['product_name'][:30]:<30} "
            f"{row['quantity']:>5} {row['low_stock_threshold']:>5} {row['deficit']:>8}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(pricing_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(stock_group)
