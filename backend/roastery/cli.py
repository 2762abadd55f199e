# Overview: Flask CLI command groups for bootstrap, accounts, payment recovery and maintenance.

# backend/roastery/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` where migrations are applied).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list [--role ADMIN]
# - python -m flask users create --email admin@roastery.local --password "Password123" --role ADMIN
# - python -m flask users reset-password --email admin@roastery.local --password "NewPassword1"
# - python -m flask users deactivate --email someone@example.com
#
# Payment recovery:
# - python -m flask payments recover pi_123
#   Create the order for a succeeded intent whose webhook never arrived.
# - python -m flask payments check-incomplete --days 7
#   List recent intents that never completed or have no order.
#
# Maintenance:
# - python -m flask maintenance on|off|status
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import ALL_ROLES
from .services import auth_service
from .services import reconciliation_service
from .services import security_service
from .services import settings_service
from .services.auth_service import PasswordValidationError
from .services.reconciliation_service import IntentNotSucceeded, MalformedNotification
from .services.stripe_gateway import UpstreamFailure
from .validation import ValidationError, ConflictError, NotFoundError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    click.echo("PASS Database reset complete. Run 'python -m flask users create' to add an admin.")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ALL_ROLES)), default='ADMIN', show_default=True, help='Role')
@click.option('--name', default=None, help='Display name')
@with_appcontext
def create_user_cli(email, password, role, name):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    """
    try:
        user = auth_service.create_user(email=email, password=password, role=role, name=name)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit")
        return
    except (ConflictError, ValidationError) as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        return

    click.echo(f"PASS Created user: {user.email} with role '{user.role}' (ID: {user.id})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@users_group.command('list')
@click.option('--role', type=click.Choice(list(ALL_ROLES)), default=None, help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users with their roles."""
    users = auth_service.list_users(role=role)

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Email':<35} {'Name':<25} {'Role':<10} {'Active'}")
    click.echo("="*90)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.email:<35} {(user.name or ''):<25} {user.role:<10} {active_str}")

    click.echo("="*90 + "\n")


@users_group.command('reset-password')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='New password')
@with_appcontext
def reset_password_cli(email, password):
    """Set a new password for an account."""
    try:
        user = auth_service.set_password(email, password)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        return
    except NotFoundError:
        click.echo(f"FAIL User '{email}' not found")
        return

    click.echo(f"PASS Password updated for {user.email}")


@users_group.command('deactivate')
@click.option('--email', prompt=True, help='Email address')
@with_appcontext
def deactivate_user_cli(email):
    """
    Deactivate an account.

    Takes effect on the next request: tokens already issued stop verifying.
    """
    user = auth_service.get_user_by_email(email)
    if not user:
        click.echo(f"FAIL User '{email}' not found")
        return

    user.is_active = False
    db.session.commit()
    security_service.log_security_event(
        user_id=user.id,
        event_type="USER_UPDATED",
        success=True,
        action="CLI",
        reason="Deactivated from CLI",
    )
    click.echo(f"PASS Deactivated {user.email}")


@click.group('payments')
def payments_group():
    """Stripe payment recovery commands."""


@payments_group.command('recover')
@click.argument('intent_id')
@with_appcontext
def recover_payment_cli(intent_id):
    """Create the order for a succeeded payment intent (idempotent)."""
    try:
        result = reconciliation_service.recover_missing(intent_id)
    except IntentNotSucceeded as e:
        click.echo(f"FAIL {intent_id}: {str(e)}")
        return
    except (MalformedNotification, UpstreamFailure) as e:
        click.echo(f"FAIL {intent_id}: {str(e)}")
        return

    if result.outcome == reconciliation_service.OUTCOME_CREATED:
        click.echo(f"PASS Created order {result.order_id} for {intent_id}")
    else:
        click.echo(f"PASS Order {result.order_id} already exists for {intent_id}")


@payments_group.command('check-incomplete')
@click.option('--days', type=click.IntRange(1, 90), default=7, show_default=True)
@with_appcontext
def check_incomplete_cli(days):
    """List recent intents that did not complete or have no local order."""
    try:
        report = reconciliation_service.list_incomplete_intents(days=days)
    except UpstreamFailure as e:
        click.echo(f"FAIL {str(e)}")
        return

    summary = report["summary"]
    click.echo(f"Intents needing attention (last {days} days): {summary['total']}")
    click.echo(f"  Succeeded without order: {summary['missing_orders']}")
    for status, count in sorted(summary["by_status"].items()):
        click.echo(f"  {status}: {count}")

    for intent in report["intents"]:
        flag = "MISSING ORDER" if intent["missing_order"] else ""
        click.echo(
            f"{intent['id']:<32} {intent['status']:<24} {intent['amount_cents'] or 0:>10} "
            f"{intent['currency']:<4} {intent['customer']['email'] or '-':<30} {flag}"
        )


@click.group('maintenance')
def maintenance_group():
    """Maintenance mode and housekeeping commands."""


@maintenance_group.command('on')
@with_appcontext
def maintenance_on():
    settings_service.set_maintenance_mode(True)
    click.echo("PASS Maintenance mode ON (checkout disabled)")


@maintenance_group.command('off')
@with_appcontext
def maintenance_off():
    settings_service.set_maintenance_mode(False)
    click.echo("PASS Maintenance mode OFF")


@maintenance_group.command('status')
@with_appcontext
def maintenance_status():
    state = "ON" if settings_service.is_maintenance_mode() else "OFF"
    click.echo(f"Maintenance mode: {state}")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = security_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(maintenance_group)
