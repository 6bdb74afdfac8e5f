# Overview: Flask CLI command groups for bootstrap and stock maintenance.

# backend/vaxstock/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use "flask db upgrade" for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock maintenance:
# - python -m flask stock expire-lots [--as-of 2025-06-01]
#   Flip VALID lots past their expiration to EXPIRED and fix aggregates.
# - python -m flask stock recompute-aggregates
#   Rebuild every aggregate row from lots.
# - python -m flask stock pending-transfers [--level DISTRICT --id 4]
#   List PENDING transfers (all, or incoming/outgoing for one owner).
# - python -m flask stock events [--entity-type LOT --entity-id 7]
#   Show the most recent audit events.

import click
from flask.cli import with_appcontext

from .extensions import db
from .owners import Owner
from .services import event_log_service, lot_service, transfer_service
from .services.concurrency import commit_with_retry
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created")


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

    click.echo("DONE Database reset")


@click.group('stock')
def stock_group():
    """Stock maintenance commands."""


@stock_group.command('expire-lots')
@click.option('--as-of', 'as_of', default=None, help='Date to expire against (YYYY-MM-DD, default today UTC)')
@with_appcontext
def expire_lots(as_of):
    """Flip VALID lots past their expiration date to EXPIRED."""
    try:
        day = parse_iso_date(as_of) if as_of else None
        lots = commit_with_retry(lambda: lot_service.mark_expired(day))
    except Exception as e:
        db.session.rollback()
        raise click.ClickException(f"Expiration sweep failed: {e}")

    click.echo(f"PASS Expired {len(lots)} lot(s)")
    for lot in lots:
        click.echo(f"  lot {lot.id}: vaccine {lot.vaccine_id} at {lot.owner}, expired {lot.expiration.isoformat()}")


@stock_group.command('recompute-aggregates')
@with_appcontext
def recompute_aggregates():
    """Rebuild every aggregate row from the lots."""
    try:
        count = commit_with_retry(lot_service.recompute_all_aggregates)
    except Exception as e:
        db.session.rollback()
        raise click.ClickException(f"Recompute failed: {e}")

    click.echo(f"PASS Recomputed {count} owner/vaccine aggregate(s)")


@stock_group.command('pending-transfers')
@click.option('--level', default=None, help='Owner level (NATIONAL, REGIONAL, DISTRICT, HEALTHCENTER)')
@click.option('--id', 'owner_id', type=int, default=None, help='Owner id')
@click.option('--direction', type=click.Choice(['incoming', 'outgoing', 'all']), default='all')
@with_appcontext
def pending_transfers(level, owner_id, direction):
    """List PENDING transfers; they stay until confirmed, rejected or cancelled."""
    try:
        owner = Owner.from_dict({"level": level, "id": owner_id}) if level else None
    except ValueError as e:
        raise click.BadParameter(str(e))

    transfers = transfer_service.list_pending_transfers(owner, direction=direction)
    if not transfers:
        click.echo("No pending transfers")
        return

    for transfer in transfers:
        click.echo(
            f"#{transfer.id} vaccine {transfer.vaccine_id}: {transfer.from_owner} -> {transfer.to_owner} "
            f"qty={transfer.total_quantity} created {transfer.created_at}"
        )


@stock_group.command('events')
@click.option('--entity-type', default=None, help='Filter by entity type (LOT, PENDING_TRANSFER, DISTRICT, ...)')
@click.option('--entity-id', type=int, default=None, help='Filter by entity id')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def events(entity_type, entity_id, limit):
    """Show the most recent audit events."""
    rows = event_log_service.list_events(entity_type=entity_type, entity_id=entity_id, limit=limit)
    if not rows:
        click.echo("No events")
        return

    for ev in rows:
        click.echo(f"{ev.occurred_at} {ev.event_type} {ev.entity_type}#{ev.entity_id} by {ev.actor_level or '-'}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
