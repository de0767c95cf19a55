# Overview: Flask CLI command groups for the periodic reconciliation job and stock projection maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Jobs:
# - python -m flask jobs reconcile [--as-of 2025-01-31T00:00:00Z]
#   One reconciliation pass over every open promissory note (schedule it periodically).
#
# Inventory maintenance:
# - python -m flask inventory drift
#   List (product, store) keys where StoreStock disagrees with the ledger.
# - python -m flask inventory rebuild-stock
#   Reset drifted StoreStock rows to their ledger sums.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import ledger_service
from .services import reconciliation_service
from .time_utils import parse_iso_datetime


@click.group('jobs')
def jobs_group():
    """Periodic jobs."""


@jobs_group.command('reconcile')
@click.option('--as-of', 'as_of', default=None, help='ISO-8601 timestamp to evaluate due dates against (default: now)')
@with_appcontext
def reconcile_cli(as_of):
    """Reconcile promissory notes against their receipts."""
    try:
        as_of_dt = parse_iso_datetime(as_of) if as_of else None
    except ValueError:
        raise click.BadParameter("must be an ISO-8601 timestamp", param_hint="--as-of")

    result = reconciliation_service.reconcile(as_of=as_of_dt)
    click.echo(f"Reconciled {result.reconciled_count} promissory note(s).")
    for error in result.errors:
        click.echo(f"  ERROR note {error['promissory_note_id']}: {error['error']}", err=True)
    if result.errors:
        raise SystemExit(1)


@click.group('inventory')
def inventory_group():
    """Stock projection maintenance."""


@inventory_group.command('drift')
@with_appcontext
def drift_cli():
    """Report StoreStock rows that disagree with the ledger."""
    drift = ledger_service.find_balance_drift()
    if not drift:
        click.echo("No drift: StoreStock matches the ledger.")
        return
    for item in drift:
        click.echo(json.dumps(item))


@inventory_group.command('rebuild-stock')
@with_appcontext
def rebuild_stock_cli():
    """Recompute drifted StoreStock rows from the ledger."""
    corrected = ledger_service.rebuild_store_stock()
    if not corrected:
        click.echo("Nothing to rebuild.")
        return
    for item in corrected:
        click.echo(
            f"product {item['product_id']} @ store {item['store_id']}: "
            f"{item['projected_quantity']} -> {item['ledger_quantity']}"
        )
    click.echo(f"Rebuilt {len(corrected)} stock row(s).")


@click.group('system')
def system_group():
    """Schema bootstrap commands."""


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
    db.drop_all()
    db.create_all()
    click.echo("Schema recreated.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(jobs_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(system_group)
