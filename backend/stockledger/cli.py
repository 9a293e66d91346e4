# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory settings:
# - python -m flask settings show
#   Print the active cost update method.
# - python -m flask settings set-cost-method weighted_average
#   Switch the cost policy (none, last_cost, weighted_average, fifo).
#
# Ledger integrity:
# - python -m flask ledger verify
#   Replay every stock level from its movements and report drift.
#
# Batches:
# - python -m flask batches expiring --days 30
#   List batches with stock that expire within the window.
# - python -m flask batches write-off-expired
#   Write off every expired batch through the ledger.
#
# Reordering:
# - python -m flask reorders check
#   Create draft purchase orders for products at or below reorder point.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .services import batch_service, purchase_order_service, settings_service, stock_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (existing tables are left untouched)."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the movement ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('settings')
def settings_group():
    """Inventory settings."""


@settings_group.command('show')
@with_appcontext
def show_settings():
    settings = settings_service.get_inventory_settings()
    click.echo(f"cost_update_method: {settings['cost_update_method']}")


@settings_group.command('set-cost-method')
@click.argument('method', type=click.Choice(settings_service.COST_METHODS))
@click.option('--actor', default=None, help='Actor id recorded in the audit log')
@with_appcontext
def set_cost_method(method, actor):
    """Switch the global cost update policy."""
    result = settings_service.update_inventory_settings(method, actor_id=actor)
    click.echo(f"PASS cost_update_method set to {result['cost_update_method']}")


@click.group('ledger')
def ledger_group():
    """Movement ledger inspection."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledger_cli():
    """
    Replay all movements and compare against stock levels.

    Exits non-zero when any problem is found.
    """
    report = stock_service.verify_ledger()
    click.echo(
        f"Checked {report['levels_checked']} stock levels,"
        f" {report['movements_checked']} movements."
    )
    if report["ok"]:
        click.echo("PASS Ledger is consistent.")
        return

    for problem in report["problems"]:
        click.echo(f"FAIL {problem}")
    raise click.ClickException(f"{len(report['problems'])} ledger problem(s) found")


@click.group('batches')
def batches_group():
    """Batch/lot maintenance."""


@batches_group.command('expiring')
@click.option('--days', type=int, default=None, help='Horizon in days (default: BATCH_EXPIRY_HORIZON_DAYS)')
@with_appcontext
def list_expiring(days):
    batches = batch_service.find_expiring_batches(days)
    if not batches:
        click.echo("No batches expiring in the window.")
        return
    for batch in batches:
        click.echo(
            f"  Batch {batch.id}: lot {batch.lot_number}, product {batch.product_id},"
            f" {batch.remaining_quantity} left, expires {batch.expiration_date:%Y-%m-%d}"
        )


@batches_group.command('write-off-expired')
@click.option('--actor', default=None, help='Actor id recorded on movements and audit log')
@with_appcontext
def write_off_expired(actor):
    """Write off the full remainder of every expired batch."""
    result = batch_service.write_off_expired_batches(actor_id=actor)
    for row in result["written_off"]:
        click.echo(f"PASS Batch {row['batch_id']}: wrote off {row['quantity']} units")
    for row in result["failed"]:
        click.echo(f"FAIL Batch {row['batch_id']}: {row['message']}")
    if not result["written_off"] and not result["failed"]:
        click.echo("No expired batches.")


@click.group('reorders')
def reorders_group():
    """Automatic reordering."""


@reorders_group.command('check')
@click.option('--actor', default=None, help='Actor id recorded on created orders')
@with_appcontext
def check_reorders_cli(actor):
    """Create draft purchase orders for low-stock products."""
    try:
        result = purchase_order_service.check_reorders(actor_id=actor)
    except LedgerError as exc:
        current_app.logger.exception("Reorder check failed")
        raise click.ClickException(exc.message) from exc
    click.echo(
        f"Low-stock rows: {result['low_stock_count']},"
        f" orders created: {result['created']}, skipped: {result['skipped']}"
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(settings_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(batches_group)
    app.cli.add_command(reorders_group)
