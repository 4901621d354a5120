"""Ledger Report Generator.

Summarizes a user's ledger by month together with the statements and
per-company commissions that fed it, and exports the result to Excel.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional
import sqlite3

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side

from brokerledger.core.models import StatementRecord, StatementStatus
from brokerledger.ledger.aggregator import LedgerAggregator, normalize_period
from brokerledger.statements.store import StatementStore


@dataclass
class CompanyCommission:
    """Commission earned from one company across processed statements."""

    company_id: int
    company_name: str
    total_amount: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    statements: int = 0


@dataclass
class LedgerReportData:
    """Ledger report data."""

    user_id: int
    year: Optional[str] = None
    ledger: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)
    statements: List[StatementRecord] = field(default_factory=list)
    commissions: List[CompanyCommission] = field(default_factory=list)
    net_total: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")

    def calculate_totals(self):
        self.net_total = sum(
            (amount for months in self.ledger.values() for amount in months.values()), Decimal("0")
        )
        self.total_commission = sum((c.commission for c in self.commissions), Decimal("0"))


class LedgerReport:
    """
    Generate the ledger workbook for a user.

    Sheets: Ledger (year/month/net amount), Statements (one row per upload,
    failed ones included with their error), Commissions (per company).
    """

    def __init__(self, db_connection: sqlite3.Connection):
        """
        Initialize report generator.

        Args:
            db_connection: Database connection
        """
        self.conn = db_connection
        self.ledger = LedgerAggregator(db_connection)
        self.store = StatementStore(db_connection)

    def generate(self, user_id: int, year: Optional[str] = None) -> LedgerReportData:
        """
        Collect report data, optionally restricted to one year.

        Statements are filtered on the year of their statement date.
        """
        if year is not None:
            year, _ = normalize_period(year, "january")

        ledger = self.ledger.get_ledger(user_id=user_id)
        if year is not None:
            ledger = OrderedDict((y, m) for y, m in ledger.items() if y == year)

        statements = [
            s for s in self.store.list(user_id)
            if year is None or str(s.statement_date.year) == year
        ]

        by_company: "OrderedDict[int, CompanyCommission]" = OrderedDict()
        for statement in reversed(statements):
            if statement.status is not StatementStatus.PROCESSED:
                continue
            for summary in statement.company_summaries:
                entry = by_company.setdefault(
                    summary.company_id,
                    CompanyCommission(summary.company_id, summary.company_name),
                )
                entry.total_amount += summary.total_amount
                entry.commission += summary.commission
                entry.statements += 1

        report = LedgerReportData(
            user_id=user_id,
            year=year,
            ledger=ledger,
            statements=statements,
            commissions=sorted(by_company.values(), key=lambda c: c.commission, reverse=True),
        )
        report.calculate_totals()
        return report

    def export_xlsx(self, report: LedgerReportData, output_path: Path) -> Path:
        """
        Export the report to Excel.

        Args:
            report: LedgerReportData from generate()
            output_path: Output file path (.xlsx)

        Returns:
            Path to generated Excel file
        """
        wb = Workbook()

        title_font = Font(bold=True, size=14)
        header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
        header_font_white = Font(bold=True, color="FFFFFF")
        border = Border(
            left=Side(style="thin"),
            right=Side(style="thin"),
            top=Side(style="thin"),
            bottom=Side(style="thin"),
        )
        money_format = '#,##0.00'

        def write_header(ws, row, headers):
            for col, header in enumerate(headers, 1):
                cell = ws.cell(row=row, column=col, value=header)
                cell.font = header_font_white
                cell.fill = header_fill
                cell.border = border
                cell.alignment = Alignment(horizontal="center")

        def write_row(ws, row, values, money_columns=()):
            for col, value in enumerate(values, 1):
                cell = ws.cell(row=row, column=col, value=value)
                cell.border = border
                if col in money_columns:
                    cell.number_format = money_format

        # Ledger
        ws = wb.active
        ws.title = "Ledger"
        scope = f"Year {report.year}" if report.year else "All years"
        ws.cell(row=1, column=1, value=f"Ledger Report - {scope}").font = title_font
        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=3)
        write_header(ws, 3, ["Year", "Month", "Net Amount"])
        row = 4
        for year, months in report.ledger.items():
            for month, amount in months.items():
                write_row(ws, row, [year, month.title(), amount], money_columns=(3,))
                row += 1
        ws.cell(row=row, column=1, value="TOTAL").font = Font(bold=True)
        cell = ws.cell(row=row, column=3, value=report.net_total)
        cell.font = Font(bold=True)
        cell.number_format = money_format
        ws.column_dimensions["A"].width = 10
        ws.column_dimensions["B"].width = 14
        ws.column_dimensions["C"].width = 18

        # Statements
        ws = wb.create_sheet("Statements")
        write_header(ws, 1, ["ID", "File", "Type", "Statement Date", "Status",
                             "Total Amount", "Commission", "Error"])
        for row, statement in enumerate(report.statements, 2):
            write_row(
                ws, row,
                [
                    statement.id,
                    statement.file_name,
                    statement.file_type.value.upper(),
                    statement.statement_date.strftime("%d-%b-%Y"),
                    statement.status.value,
                    statement.total_amount,
                    statement.total_commission,
                    statement.error_message or "",
                ],
                money_columns=(6, 7),
            )
        for letter, width in zip("ABCDEFGH", (8, 28, 8, 16, 12, 16, 16, 40)):
            ws.column_dimensions[letter].width = width

        # Commissions
        ws = wb.create_sheet("Commissions")
        write_header(ws, 1, ["Company", "Statements", "Total Amount", "Commission"])
        row = 2
        for entry in report.commissions:
            write_row(ws, row, [entry.company_name, entry.statements, entry.total_amount, entry.commission],
                      money_columns=(3, 4))
            row += 1
        ws.cell(row=row, column=1, value="TOTAL").font = Font(bold=True)
        cell = ws.cell(row=row, column=4, value=report.total_commission)
        cell.font = Font(bold=True)
        cell.number_format = money_format
        for letter, width in zip("ABCD", (28, 12, 18, 18)):
            ws.column_dimensions[letter].width = width

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        wb.save(output_path)
        return output_path
