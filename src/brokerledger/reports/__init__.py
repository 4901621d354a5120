"""Reports module for generating ledger reports.

Provides:
- Ledger Report (Excel) - monthly ledger, statements and per-company commission
"""

from .ledger_report import LedgerReport, LedgerReportData, CompanyCommission

__all__ = ["LedgerReport", "LedgerReportData", "CompanyCommission"]
