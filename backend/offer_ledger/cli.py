# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/offer_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users (local projection of the identity provider):
# - python -m flask users create --email admin@example.com --role admin --name "Ops Admin"
# - python -m flask users list
# - python -m flask users issue-token --email admin@example.com
#   Print a bearer token for API calls.
#
# Offers:
# - python -m flask offers expire-due
#   Sweep approved offers past expiry (safe to schedule from cron).
# - python -m flask offers stats
#
# Payments:
# - python -m flask payments stats
# - python -m flask payments export --status completed --from 2026-01-01 --to 2026-01-31 --output ledger.csv

import json

import click
from flask.cli import with_appcontext

from .exceptions import LedgerError
from .extensions import db
from .models import User
from .models.auth import VALID_ROLES
from .services import offer_service, payment_service, progress_service, session_service
from .services.auth_service import create_user


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create any missing tables. Existing data is untouched."""
    db.create_all()
    click.echo("PASS Database tables ready.")


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
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), prompt=True, help='Role')
@click.option('--name', 'display_name', default=None, help='Display name')
@with_appcontext
def create_user_cli(email, role, display_name):
    """Register a user from the identity provider."""
    try:
        user = create_user(email, role, display_name)
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created {user.role} {user.email} (ID: {user.id})")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Email':<35} {'Role':<8} {'Active':<8} {'Name'}")
    click.echo("="*80)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<35} {user.role:<8} {active_str:<8} {user.display_name or ''}")

    click.echo("="*80 + "\n")


@users_group.command('issue-token')
@click.option('--email', required=True, help='Email address')
@with_appcontext
def issue_token(email):
    """Issue a bearer token for a user (printed once, stored hashed)."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        raise click.ClickException(f"User {email} not found")
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(token)
    click.echo(f"Expires: {session.expires_at.isoformat()}Z", err=True)


@click.group('offers')
def offers_group():
    """Offer lifecycle maintenance."""


@offers_group.command('expire-due')
@with_appcontext
def expire_due_cli():
    """Expire approved offers whose expiry has passed."""
    expired = offer_service.expire_due()
    if not expired:
        click.echo("No offers due for expiry.")
        return
    click.echo(f"PASS Expired {len(expired)} offer(s): {', '.join(str(i) for i in expired)}")


@offers_group.command('stats')
@with_appcontext
def offer_stats_cli():
    """Print offer counts per status."""
    click.echo(json.dumps(offer_service.get_offer_stats(), indent=2))


@click.group('payments')
def payments_group():
    """Payment ledger reporting."""


@payments_group.command('stats')
@with_appcontext
def payment_stats_cli():
    click.echo(json.dumps(progress_service.payment_stats(), indent=2))


@payments_group.command('export')
@click.option('--status', default=None, help='Payment status filter')
@click.option('--from', 'date_from', default=None, help='Created on/after (YYYY-MM-DD or ISO datetime)')
@click.option('--to', 'date_to', default=None, help='Created on/before; a bare date includes the whole day')
@click.option('-q', '--query', 'q', default=None, help='Free-text search')
@click.option('--output', type=click.File('w'), default='-', help='Output file (default stdout)')
@with_appcontext
def export_payments_cli(status, date_from, date_to, q, output):
    """Export the payment ledger as CSV."""
    try:
        payments = payment_service.list_by_filter(status=status, date_from=date_from, date_to=date_to, q=q)
    except LedgerError as e:
        raise click.ClickException(e.message)
    output.write(payment_service.export_csv(payments))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(offers_group)
    app.cli.add_command(payments_group)
