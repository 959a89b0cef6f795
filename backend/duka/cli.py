# Overview: Flask CLI command groups for database bootstrap and payment reconciliation.

# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Database:
# - python -m flask db upgrade
#   Apply migrations (preferred for real databases).
# - python -m flask db-tools init
#   Create any missing tables directly from the models (dev/test).
# - python -m flask db-tools reset --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# M-Pesa:
# - python -m flask mpesa reconcile [--older-than 120]
#   Poll the gateway for STK pushes still pending after N seconds.
#   Safe to run from cron; resolved attempts are never touched twice.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import mpesa_service


@click.group('db-tools')
def db_tools_group():
    """Schema bootstrap commands."""


@db_tools_group.command('init')
@with_appcontext
def init_db():
    """Create missing tables from the models."""
    db.create_all()
    click.echo("PASS Tables created.")


@db_tools_group.command('reset')
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


@click.group('mpesa')
def mpesa_group():
    """M-Pesa payment maintenance."""


@mpesa_group.command('reconcile')
@click.option('--older-than', 'older_than', type=int, default=None,
              help='Only poll attempts pending for at least this many seconds')
@with_appcontext
def reconcile(older_than):
    """Resolve pending STK pushes by querying the gateway."""
    summary = mpesa_service.reconcile_pending(older_than)
    click.echo(
        f"Checked {summary['checked']}: "
        f"{summary['resolved']} resolved, {summary['pending']} still pending, "
        f"{summary['errors']} errors"
    )
    if summary["errors"]:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(db_tools_group)
    app.cli.add_command(mpesa_group)
