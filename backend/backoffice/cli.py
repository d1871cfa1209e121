# Overview: Flask CLI command groups for tenant bootstrap and batch maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="backoffice:create_app").
# - Use: python -m flask <group> <command> [options]
#
# Company management (MULTI-TENANT):
# - python -m flask companies list
#   List all companies.
# - python -m flask companies create --name "Acme Ltda" --code "ACME"
#   Create a new company (tenant).
#
# Cash ledger:
# - python -m flask ledger pending --company-id 1
#   Count settled records not yet mirrored into the cash ledger.
# - python -m flask ledger sync --company-id 1
#   Mirror them (idempotent; safe to re-run after an interruption).
#
# Categorization:
# - python -m flask categorization reprocess --company-id 1
#   Re-run categorization over unreconciled transactions with the latest learned rules.
#
# Marketplace:
# - python -m flask marketplace stock-exit --company-id 1 --transaction-id 42
#   Post stock exits and COGS for one settlement.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Company
from .services import categorization_service, marketplace_stock_service, sync_service
from .services.tenant_service import CompanyContextError, create_company, require_company


def _company_or_fail(company_id):
    try:
        return require_company(company_id)
    except CompanyContextError as e:
        click.echo(f"FAIL {e}")
        return None


def _progress(processed, total):
    click.echo(f"  ... {processed}/{total}")


# =============================================================================
# COMPANY COMMANDS
# =============================================================================

@click.group('companies')
def companies_group():
    """Company (tenant) management commands."""


@companies_group.command('list')
@with_appcontext
def list_companies():
    """List all companies."""
    companies = db.session.query(Company).order_by(Company.id).all()

    if not companies:
        click.echo("No companies found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active'}")
    click.echo("="*60)

    for company in companies:
        active_str = "Yes" if company.is_active else "No"
        click.echo(f"{company.id:<5} {company.name:<30} {company.code or '-':<15} {active_str}")

    click.echo("="*60 + "\n")


@companies_group.command('create')
@click.option('--name', required=True, help='Company name')
@click.option('--code', default=None, help='Short code (unique)')
@with_appcontext
def create_company_cli(name, code):
    """Create a new company (tenant)."""
    try:
        company = create_company(name, code)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created company: {company.name} (ID: {company.id}, Code: {company.code or '-'})")


# =============================================================================
# CASH LEDGER COMMANDS
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Unified cash ledger commands."""


@ledger_group.command('pending')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def ledger_pending(company_id):
    """Count settled records with no cash movement yet."""
    if _company_or_fail(company_id) is None:
        return

    counts = sync_service.count_pending_sync(company_id)
    for source, count in counts.items():
        click.echo(f"{source:<12} {count}")


@ledger_group.command('sync')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def ledger_sync(company_id):
    """Mirror settled payables, receivables, marketplace and statement lines."""
    if _company_or_fail(company_id) is None:
        return

    click.echo(f"START Synchronizing cash ledger for company {company_id}...")
    result = sync_service.sync_all_movements(company_id)

    click.echo(f"PASS Payables:     {result.payables_synced}")
    click.echo(f"PASS Receivables:  {result.receivables_synced}")
    click.echo(f"PASS Marketplace:  {result.marketplace_synced}")
    click.echo(f"PASS Statements:   {result.statements_synced}")
    for error in result.errors:
        click.echo(f"FAIL {error['source']} {error['record_id']}: {error['error']}")


# =============================================================================
# CATEGORIZATION COMMANDS
# =============================================================================

@click.group('categorization')
def categorization_group():
    """Auto-categorization commands."""


@categorization_group.command('reprocess')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def categorization_reprocess(company_id):
    """Re-run categorization over every unreconciled transaction."""
    if _company_or_fail(company_id) is None:
        return

    click.echo(f"START Reprocessing categorization for company {company_id}...")
    summary = categorization_service.reprocess_uncategorized(company_id, on_progress=_progress)
    click.echo(
        f"PASS {summary['processed']} processed, {summary['updated']} updated, "
        f"{summary['reconciled']} reconciled"
    )
    for error in summary["errors"]:
        click.echo(f"FAIL record {error['record_id']}: {error['error']}")


# =============================================================================
# MARKETPLACE COMMANDS
# =============================================================================

@click.group('marketplace')
def marketplace_group():
    """Marketplace stock commands."""


@marketplace_group.command('stock-exit')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--transaction-id', type=int, required=True, help='Marketplace transaction ID')
@with_appcontext
def marketplace_stock_exit(company_id, transaction_id):
    """Post stock exits and COGS for one marketplace settlement."""
    if _company_or_fail(company_id) is None:
        return

    try:
        result = marketplace_stock_service.process_sale_exit(company_id, transaction_id)
    except marketplace_stock_service.MarketplaceStockError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(
        f"PASS {result['costed']} costed, {result['no_product']} without product, {result['skipped']} skipped"
    )
    for error in result["errors"]:
        click.echo(f"FAIL item {error['item_id']}: {error['error']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(companies_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(categorization_group)
    app.cli.add_command(marketplace_group)
