# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, seeds the chart of accounts and tax settings.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --name "Gudang 1" --role admin_gudang
#   Create a staff user (credentials are managed by the upstream auth service).
# - python -m flask users list [--role kasir]
#   List users with role and status.
#
# Accounts / ledger:
# - python -m flask accounts seed
#   Insert any missing default accounts.
# - python -m flask accounts list
#   Print the chart of accounts.
# - python -m flask ledger check
#   List journals whose lines do not balance (expected empty).
# - python -m flask ledger close-period --year 2026 --month 1
#   Close an accounting month; later postings dated inside it are rejected.
#
# Inventory:
# - python -m flask inventory check-consistency [--product-id 1]
#   Compare stock_quantity against the sum of its stock mutations.
#
# Reports:
# - python -m flask reports show balance_sheet [--as-of 2026-01-31]
#   Print any report kind as JSON.
#
# Maintenance:
# - python -m flask maintenance expire-orders
#   Expire pending orders older than ORDER_EXPIRY_DAYS and release their stock.
# - python -m flask maintenance reactivate-bots
#   Switch the chat bot back on for sessions idle past BOT_SESSION_IDLE_MINUTES.
# - python -m flask maintenance sweep
#   Run every periodic job once.

import json

import click
from flask.cli import with_appcontext

from .auth import ROLES, SYSTEM_ACTOR
from .errors import BackofficeError
from .extensions import db
from .models import Account, User
from .services import account_service, maintenance_service
from .services.inventory_service import check_stock_consistency
from .services.ledger_service import close_period, unbalanced_journals
from .services.reporting_service import REPORTS, DateRange, get_financial_report, serialize_report
from .services.tax_service import ensure_tax_defaults, get_tax_config
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the back office: schema, chart of accounts, tax settings.

    Safe to re-run; existing accounts and settings are left untouched.
    """
    click.echo("START Initializing back office...")

    db.create_all()
    click.echo("PASS Tables created")

    created = account_service.seed_chart_of_accounts()
    ensure_tax_defaults()
    db.session.commit()

    total = db.session.query(Account).count()
    click.echo(f"PASS Chart of accounts: {created} created, {total} total")
    click.echo(f"PASS Tax settings: {get_tax_config().to_dict()}")
    click.echo("\nDONE Back office ready.")


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
    """User inspection and bootstrap."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--role', type=click.Choice(sorted(ROLES)), prompt=True, help='Role')
@click.option('--whatsapp', 'whatsapp_number', default=None, help='WhatsApp number')
@with_appcontext
def create_user_cli(name, role, whatsapp_number):
    """Create a user. The id it prints goes into the X-Actor-Id header."""
    user = User(name=name, role=role, status="active", whatsapp_number=whatsapp_number)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.name} (ID: {user.id}, role: {user.role})")


@users_group.command('list')
@click.option('--role', default=None, help='Filter by role')
@with_appcontext
def list_users(role):
    query = db.session.query(User).order_by(User.id)
    if role:
        query = query.filter(User.role == role)
    users = query.all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        click.echo(f"{user.id:>5}  {user.role:<14} {user.status:<9} {user.name}")


@click.group('accounts')
def accounts_group():
    """Chart of accounts."""


@accounts_group.command('seed')
@with_appcontext
def seed_accounts():
    created = account_service.seed_chart_of_accounts()
    db.session.commit()
    click.echo(f"PASS Seeded {created} account(s)")


@accounts_group.command('list')
@with_appcontext
def list_accounts():
    accounts = db.session.query(Account).filter(Account.deleted_at.is_(None)).order_by(Account.code).all()
    for account in accounts:
        indent = "  " if account.parent_id else ""
        flag = "" if account.is_active else " (inactive)"
        click.echo(f"{indent}{account.code}  {account.name} [{account.type}]{flag}")


@click.group('ledger')
def ledger_group():
    """Ledger integrity and period control."""


@ledger_group.command('check')
@with_appcontext
def ledger_check():
    """Exit code 1 when any journal is unbalanced."""
    bad = unbalanced_journals()
    if not bad:
        click.echo("PASS All journals balance")
        return
    for row in bad:
        click.echo(f"FAIL Journal {row['journal_id']}: debit {row['debit']} != credit {row['credit']}")
    raise SystemExit(1)


@ledger_group.command('close-period')
@click.option('--year', type=int, required=True)
@click.option('--month', type=int, required=True)
@with_appcontext
def close_period_cli(year, month):
    try:
        period = close_period(year, month, actor=SYSTEM_ACTOR)
    except BackofficeError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Closed period {period.year}-{period.month:02d}")


@click.group('inventory')
def inventory_group():
    """Stock integrity checks."""


@inventory_group.command('check-consistency')
@click.option('--product-id', type=int, default=None)
@with_appcontext
def check_consistency(product_id):
    """Exit code 1 when stock_quantity drifted from its mutation history."""
    drift = check_stock_consistency(product_id)
    if not drift:
        click.echo("PASS Stock matches mutation history")
        return
    for row in drift:
        click.echo(
            f"FAIL {row['sku']} (ID {row['product_id']}): stock {row['stock_quantity']} "
            f"!= mutations {row['mutation_sum']}"
        )
    raise SystemExit(1)


@click.group('reports')
def reports_group():
    """Financial and operational reports."""


@reports_group.command('show')
@click.argument('kind', type=click.Choice(sorted(REPORTS)))
@click.option('--start', default=None, help='YYYY-MM-DD')
@click.option('--end', default=None, help='YYYY-MM-DD')
@click.option('--as-of', 'as_of', default=None, help='YYYY-MM-DD')
@with_appcontext
def show_report(kind, start, end, as_of):
    try:
        date_range = DateRange(start=parse_iso_date(start), end=parse_iso_date(end), as_of=parse_iso_date(as_of))
    except ValueError as e:
        raise click.BadParameter(str(e))
    report = get_financial_report(kind, date_range)
    click.echo(json.dumps(serialize_report(report), indent=2))


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('expire-orders')
@with_appcontext
def expire_orders_cli():
    result = maintenance_service.expire_stale_orders()
    click.echo(f"Expired {len(result['expired'])} order(s) created before {result['cutoff']}.")
    if result["failed"]:
        click.echo(f"FAIL Could not expire: {', '.join(str(i) for i in result['failed'])}")


@maintenance_group.command('reactivate-bots')
@with_appcontext
def reactivate_bots_cli():
    count = maintenance_service.reactivate_idle_bot_sessions()
    click.echo(f"Reactivated bot on {count} chat session(s).")


@maintenance_group.command('sweep')
@with_appcontext
def sweep_cli():
    result = maintenance_service.run_sweeps()
    click.echo(json.dumps(result))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(accounts_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(reports_group)
    app.cli.add_command(maintenance_group)
