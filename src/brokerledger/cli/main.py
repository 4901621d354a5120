#!/usr/bin/env python3
"""
brokerledger CLI - commission statements and ledger from the command line.

Usage:
    brokerledger --user alice company add Acme --slabs '[{"minAmount":0,"maxAmount":99999,"commissionRate":2},
                                                        {"minAmount":100000,"maxAmount":0,"commissionRate":3}]'
    brokerledger --user alice upload march.json
    brokerledger --user alice ledger --year 2024
    brokerledger --user alice advance add --title Float --amount 5000 --type given \\
                                          --counterparty-type company --counterparty-id 1
    brokerledger --user alice report --output ledger.xlsx
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from brokerledger.commission.resolver import CommissionStrategy
from brokerledger.core.config import Settings
from brokerledger.core.database import DatabaseManager
from brokerledger.core.exceptions import BrokerLedgerError, ValidationError
from brokerledger.core.models import SlabOwner
from brokerledger.ledger.advances import AdvanceService
from brokerledger.ledger.aggregator import LedgerAggregator
from brokerledger.ledger.expenses import ExpenseService
from brokerledger.reports.ledger_report import LedgerReport
from brokerledger.repositories import BankRepository, BrokerRepository, CompanyRepository, UserRepository
from brokerledger.statements.bank_statement import BankStatementReconciler
from brokerledger.statements.pipeline import StatementIngestionPipeline
from brokerledger.statements.service import StatementService

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, debug: bool = False):
    """Configure logging."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def load_json_argument(value: str) -> Any:
    """Inline JSON, or @path to a JSON file."""
    try:
        if value.startswith("@"):
            with open(value[1:], encoding="utf-8") as f:
                return json.load(f)
        return json.loads(value)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Could not read JSON from {value!r}: {e}")


def format_money(settings: Settings, amount) -> str:
    return settings.display.format_currency(amount)


# ============================================================================
# Command Handlers
# ============================================================================

def cmd_company(args, conn, settings: Settings, user_id: int) -> int:
    companies = CompanyRepository(conn)

    if args.company_command == "add":
        slabs = load_json_argument(args.slabs) if args.slabs else []
        company = companies.create(args.name, args.type, slabs=slabs, created_by=user_id)
        print(f"Created company {company.name} (id={company.id}, {len(company.slabs)} slabs)")
        return 0

    company = companies.require_by_name(args.name)
    if args.slabs:
        schedule = companies.set_slabs(company.id, load_json_argument(args.slabs), changed_by=user_id)
    else:
        schedule = company.slabs

    print(f"Commission slabs for {company.name}:")
    if schedule.is_empty:
        print("  (none)")
    for slab in schedule:
        upper = "and above" if slab.is_unbounded else f"- {slab.max_amount:,}"
        print(f"  {slab.min_amount:,} {upper}: {slab.commission_rate}%")
    return 0


def cmd_user_slabs(args, conn, settings: Settings, user_id: int) -> int:
    users = UserRepository(conn)
    owner = SlabOwner.USER_CLIENT if args.kind == "client" else SlabOwner.USER_PROVIDER

    if args.slabs:
        slabs = load_json_argument(args.slabs)
        if owner is SlabOwner.USER_CLIENT:
            schedule = users.set_client_slabs(user_id, slabs)
        else:
            schedule = users.set_provider_slabs(user_id, slabs)
    else:
        schedule = users.get_slabs(user_id, owner)

    print(json.dumps(schedule.to_list(), indent=2))
    return 0


def cmd_broker(args, conn, settings: Settings, user_id: int) -> int:
    broker_id = BrokerRepository(conn).create(args.name)
    print(f"Created broker {args.name} (id={broker_id})")
    return 0


def cmd_bank(args, conn, settings: Settings, user_id: int) -> int:
    bank_id = BankRepository(conn).create(args.bank_name, args.account_number, user_id)
    print(f"Registered bank {args.bank_name} {args.account_number} (id={bank_id})")
    return 0


def cmd_upload(args, conn, settings: Settings, user_id: int) -> int:
    """Handle upload command - ingest a JSON statement payload."""
    payload = load_json_argument(f"@{args.file}")
    pipeline = StatementIngestionPipeline.from_settings(conn, settings)
    if args.strategy:
        pipeline.strategy = CommissionStrategy.from_name(args.strategy)

    result = StatementService(conn, pipeline).upload(user_id, payload)
    if not result.ok:
        print(f"Upload failed ({result.status_code}): {result.body['message']}")
        return 1

    record = result.record
    print(f"Statement {record.id} processed: {record.file_name}")
    for summary in record.company_summaries:
        print(
            f"  {summary.company_name:<30} {format_money(settings, summary.total_amount):>18} "
            f"-> {format_money(settings, summary.commission)} "
            f"@ {summary.applied_slab.commission_rate}%"
        )
    print(f"  Total commission: {format_money(settings, record.total_commission)}")
    return 0


def cmd_statements(args, conn, settings: Settings, user_id: int) -> int:
    pipeline = StatementIngestionPipeline.from_settings(conn, settings)
    service = StatementService(conn, pipeline)

    if args.id is not None:
        print(json.dumps(service.get_statement(user_id, args.id).to_dict(), indent=2))
        return 0

    statements = service.list_statements(user_id)
    if not statements:
        print("No statements uploaded.")
    for s in statements:
        line = (
            f"{s.id:>5}  {s.statement_date.isoformat()}  {s.status.value:<9}  "
            f"{s.file_name:<30} {format_money(settings, s.total_commission):>14}"
        )
        if s.error_message:
            line += f"  ({s.error_message})"
        print(line)
    return 0


def cmd_ledger(args, conn, settings: Settings, user_id: int) -> int:
    ledger = LedgerAggregator(conn).get_ledger(user_id=user_id)
    if args.year:
        ledger = {y: m for y, m in ledger.items() if y == args.year}

    if not ledger:
        print("Ledger is empty.")
        return 0

    for year, months in ledger.items():
        print(year)
        for month, amount in months.items():
            print(f"  {month.title():<10} {format_money(settings, amount):>18}")
    return 0


def cmd_advance(args, conn, settings: Settings, user_id: int) -> int:
    advances = AdvanceService(conn)

    if args.advance_command == "add":
        advance = advances.create(
            user_id=user_id,
            title=args.title,
            amount=args.amount,
            advance_type=args.type,
            counterparty_type=args.counterparty_type,
            counterparty_id=args.counterparty_id,
            description=args.description,
            given_date=args.date,
        )
    else:
        advance = advances.toggle(args.id, user_id=user_id)

    print(
        f"Advance {advance.id}: {advance.title} {advance.advance_type.value} "
        f"{format_money(settings, advance.amount)} ({advance.status.value})"
    )
    return 0


def cmd_expense(args, conn, settings: Settings, user_id: int) -> int:
    expenses = ExpenseService(conn)

    if args.expense_command == "add":
        company = CompanyRepository(conn).require_by_name(args.company)
        expense = expenses.create(
            user_id=user_id,
            title=args.title,
            amount=args.amount,
            category=args.category,
            company_id=company.id,
            expense_date=args.date,
            description=args.description,
        )
    else:
        expense = expenses.update_status(args.id, args.status, user_id=user_id)

    print(
        f"Expense {expense.id}: {expense.title} {format_money(settings, expense.amount)} "
        f"({expense.status.value})"
    )
    return 0


def cmd_reconcile(args, conn, settings: Settings, user_id: int) -> int:
    result = BankStatementReconciler(conn).reconcile(args.bank_id, Path(args.file))
    if result.error:
        print(f"Reconciliation failed: {result.error}")
        return 1
    print(
        f"Bank statement {result.statement_id}: {len(result.matched)} rows matched, "
        f"{result.skipped} skipped, total {format_money(settings, result.total_amount)}"
    )
    return 0


def cmd_report(args, conn, settings: Settings, user_id: int) -> int:
    generator = LedgerReport(conn)
    report = generator.generate(user_id, year=args.year)
    output = generator.export_xlsx(report, Path(args.output))
    print(f"Report written to {output}")
    print(f"  Net total: {format_money(settings, report.net_total)}")
    print(f"  Commission: {format_money(settings, report.total_commission)}")
    return 0


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='brokerledger',
        description='brokerledger - commission statements and per-user ledger',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  brokerledger --user alice company add Acme --slabs @acme_slabs.json
  brokerledger --user alice upload march.json
  brokerledger --user alice statements
  brokerledger --user alice ledger --year 2024
  brokerledger --user alice expense status 3 approved
  brokerledger --user alice report --output ledger.xlsx
        """
    )

    # Global arguments
    parser.add_argument('--user', '-u', required=True, help='User name')
    parser.add_argument('--config', '-c', help='Settings JSON file')
    parser.add_argument('--db', help='Database path (overrides settings)')
    parser.add_argument('--db-password', help='Database password (overrides settings)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--debug', action='store_true', help='Debug output')

    subparsers = parser.add_subparsers(dest='command', help='Command')

    # company
    company_parser = subparsers.add_parser('company', help='Manage companies and their slabs')
    company_sub = company_parser.add_subparsers(dest='company_command', required=True)
    company_add = company_sub.add_parser('add', help='Create a company')
    company_add.add_argument('name')
    company_add.add_argument('--type', default='client', choices=['client', 'provider', 'both'])
    company_add.add_argument('--slabs', help='Slabs as JSON or @file')
    company_slabs = company_sub.add_parser('slabs', help='Show or replace company slabs')
    company_slabs.add_argument('name')
    company_slabs.add_argument('--slabs', help='New slabs as JSON or @file')

    # user
    user_parser = subparsers.add_parser('user', help='User commission slabs')
    user_sub = user_parser.add_subparsers(dest='user_command', required=True)
    user_slabs = user_sub.add_parser('slabs', help='Show or replace user slabs')
    user_slabs.add_argument('--kind', default='client', choices=['client', 'provider'])
    user_slabs.add_argument('--slabs', help='New slabs as JSON or @file')

    # broker
    broker_parser = subparsers.add_parser('broker', help='Manage brokers')
    broker_sub = broker_parser.add_subparsers(dest='broker_command', required=True)
    broker_add = broker_sub.add_parser('add', help='Create a broker')
    broker_add.add_argument('name')

    # bank
    bank_parser = subparsers.add_parser('bank', help='Manage bank accounts')
    bank_sub = bank_parser.add_subparsers(dest='bank_command', required=True)
    bank_add = bank_sub.add_parser('add', help='Register a bank account')
    bank_add.add_argument('bank_name')
    bank_add.add_argument('account_number')

    # upload
    upload_parser = subparsers.add_parser('upload', help='Upload a statement (JSON payload)')
    upload_parser.add_argument('file', help='JSON file with fileName, fileType, statementDate, transactions')
    upload_parser.add_argument('--strategy', choices=[s.value for s in CommissionStrategy],
                               help='Commission strategy (default: from settings)')

    # statements
    statements_parser = subparsers.add_parser('statements', help='List uploaded statements')
    statements_parser.add_argument('--id', type=int, help='Show one statement in full')

    # ledger
    ledger_parser = subparsers.add_parser('ledger', help='Show the ledger')
    ledger_parser.add_argument('--year', help='Only this year (e.g., 2024)')

    # advance
    advance_parser = subparsers.add_parser('advance', help='Advances given or received')
    advance_sub = advance_parser.add_subparsers(dest='advance_command', required=True)
    advance_add = advance_sub.add_parser('add', help='Record an advance')
    advance_add.add_argument('--title', required=True)
    advance_add.add_argument('--amount', required=True)
    advance_add.add_argument('--type', required=True, choices=['given', 'received'])
    advance_add.add_argument('--counterparty-type', required=True, choices=['company', 'broker'])
    advance_add.add_argument('--counterparty-id', required=True, type=int)
    advance_add.add_argument('--description')
    advance_add.add_argument('--date', help='Given date (YYYY-MM-DD, default today)')
    advance_toggle = advance_sub.add_parser('toggle', help='Flip given/received')
    advance_toggle.add_argument('id', type=int)

    # expense
    expense_parser = subparsers.add_parser('expense', help='Company expenses')
    expense_sub = expense_parser.add_subparsers(dest='expense_command', required=True)
    expense_add = expense_sub.add_parser('add', help='Record an expense')
    expense_add.add_argument('--title', required=True)
    expense_add.add_argument('--amount', required=True)
    expense_add.add_argument('--category', required=True)
    expense_add.add_argument('--company', required=True, help='Company name')
    expense_add.add_argument('--description')
    expense_add.add_argument('--date', help='Expense date (YYYY-MM-DD, default today)')
    expense_status = expense_sub.add_parser('status', help='Change expense status')
    expense_status.add_argument('id', type=int)
    expense_status.add_argument('status', choices=['pending', 'approved', 'rejected'])

    # reconcile
    reconcile_parser = subparsers.add_parser('reconcile', help='Reconcile a bank statement file')
    reconcile_parser.add_argument('bank_id', type=int)
    reconcile_parser.add_argument('file', help='CSV or XML bank export')

    # report
    report_parser = subparsers.add_parser('report', help='Export the ledger workbook')
    report_parser.add_argument('--year', help='Only this year (e.g., 2024)')
    report_parser.add_argument('--output', '-o', default='ledger_report.xlsx', help='Output .xlsx path')

    return parser


COMMANDS = {
    'company': cmd_company,
    'user': cmd_user_slabs,
    'broker': cmd_broker,
    'bank': cmd_bank,
    'upload': cmd_upload,
    'statements': cmd_statements,
    'ledger': cmd_ledger,
    'advance': cmd_advance,
    'expense': cmd_expense,
    'reconcile': cmd_reconcile,
    'report': cmd_report,
}


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.debug)

    try:
        settings = Settings.load(Path(args.config) if args.config else None)
    except BrokerLedgerError as e:
        print(f"Configuration error: {e.message}")
        return 1

    db_path = args.db or settings.database.path
    db_password = args.db_password or settings.database.password

    db = DatabaseManager()
    try:
        conn = db.init(db_path, db_password)
    except BrokerLedgerError as e:
        print(f"Database error: {e.message}")
        return 1

    try:
        user_id = UserRepository(conn).get_or_create(args.user)
        return COMMANDS[args.command](args, conn, settings, user_id)
    except BrokerLedgerError as e:
        print(f"Error: {e.message}")
        if args.debug:
            logger.exception("Command failed")
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled")
        return 130
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
