"""
Bank statement reconciliation from uploaded files.

Reads a CSV (pandas) or XML (ElementTree) bank export, keeps the rows that
belong to the registered bank account (same account number, same bank name
ignoring case) and stores them on a bank_statements record. This path only
reconciles: it computes no commission and posts nothing to the ledger.

Expected columns / XML child tags (aliases accepted, case-insensitive):
    date, companyName, bankName, accountNo, amount, type
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import sqlite3

import pandas as pd

from brokerledger.core.database import atomic
from brokerledger.core.exceptions import NotFoundError, ValidationError
from brokerledger.core.models import FileType, StatementStatus, canonical_amount, parse_amount

logger = logging.getLogger(__name__)

COLUMN_ALIASES = {
    "date": ["date", "transaction date", "txn date", "value date"],
    "companyName": ["companyname", "company name", "company", "description", "narration"],
    "bankName": ["bankname", "bank name", "bank"],
    "accountNo": ["accountno", "account no", "account number", "accountnumber", "account"],
    "amount": ["amount", "creditamount", "credit amount", "credit"],
    "type": ["type", "creditdebit", "credit/debit", "dr/cr"],
}

REQUIRED_COLUMNS = ("date", "bankName", "accountNo", "amount")


def normalize_account_number(value: Any) -> str:
    """'001234', 1234.0 and ' 1234 ' style values to a digit string without float suffix."""
    if value is None:
        return ""
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


@dataclass
class ReconciliationResult:
    statement_id: int
    status: StatementStatus
    matched: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    error: Optional[str] = None

    @property
    def total_amount(self):
        return sum((Decimal(row["amount"]) for row in self.matched), Decimal("0"))


class BankStatementReconciler:
    """
    Usage:
        reconciler = BankStatementReconciler(conn)
        result = reconciler.reconcile(bank_id, Path("hdfc_march.csv"))
        result.matched      # rows of this bank account
    """

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def reconcile(self, bank_id: int, file_path: Union[str, Path]) -> ReconciliationResult:
        """
        Raises:
            NotFoundError: Unknown bank
            ValidationError: Unsupported file extension
        """
        file_path = Path(file_path)
        bank = self.conn.execute(
            "SELECT id, bank_name, account_number FROM banks WHERE id = ?", (bank_id,)
        ).fetchone()
        if bank is None:
            raise NotFoundError(f"Bank not found: {bank_id}", code="BANK_NOT_FOUND")

        suffix = file_path.suffix.lower().lstrip(".")
        if suffix not in FileType._value2member_map_:
            raise ValidationError(f"Unsupported file format: .{suffix}", field="file")
        file_type = FileType(suffix)

        with atomic(self.conn):
            cursor = self.conn.execute(
                """
                INSERT INTO bank_statements (bank_id, file_name, file_type, file_path, status)
                VALUES (?, ?, ?, ?, 'pending')
                """,
                (bank_id, file_path.name, file_type.value, str(file_path)),
            )
        statement_id = cursor.lastrowid

        try:
            rows = self._read_csv(file_path) if file_type is FileType.CSV else self._read_xml(file_path)
        except (OSError, ValueError, ET.ParseError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            message = f"Failed to read {file_path.name}: {e}"
            self._finish(statement_id, StatementStatus.FAILED, error=message)
            logger.warning(message)
            return ReconciliationResult(statement_id, StatementStatus.FAILED, error=message)

        account = normalize_account_number(bank["account_number"])
        bank_name = bank["bank_name"].strip().lower()
        matched = [
            row for row in rows
            if normalize_account_number(row.get("accountNo")) == account
            and str(row.get("bankName", "")).strip().lower() == bank_name
        ]

        self._finish(statement_id, StatementStatus.PROCESSED, processed=matched)
        logger.info(
            f"Reconciled {file_path.name} against bank {bank_id}: "
            f"{len(matched)} matched, {len(rows) - len(matched)} skipped"
        )
        return ReconciliationResult(
            statement_id, StatementStatus.PROCESSED, matched=matched, skipped=len(rows) - len(matched)
        )

    def _finish(self, statement_id: int, status: StatementStatus, processed=None, error=None) -> None:
        with atomic(self.conn):
            self.conn.execute(
                "UPDATE bank_statements SET status = ?, processed_data = ?, error = ? WHERE id = ?",
                (
                    status.value,
                    json.dumps(processed) if processed is not None else None,
                    error,
                    statement_id,
                ),
            )

    @staticmethod
    def _canonical_column(name: str) -> Optional[str]:
        key = str(name).strip().lower()
        for canonical, aliases in COLUMN_ALIASES.items():
            if key in aliases:
                return canonical
        return None

    def _normalize(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        rows = []
        for record in records:
            row = {}
            for key, value in record.items():
                canonical = self._canonical_column(key)
                if canonical and canonical not in row:
                    row[canonical] = "" if value is None else str(value).strip()
            amount = parse_amount(row.get("amount", "").replace(",", ""))
            if amount is None:
                continue
            row["amount"] = canonical_amount(amount)
            row["accountNo"] = normalize_account_number(row.get("accountNo"))
            rows.append(row)
        return rows

    def _check_columns(self, columns) -> None:
        present = {self._canonical_column(c) for c in columns}
        missing = [c for c in REQUIRED_COLUMNS if c not in present]
        if missing:
            raise ValueError(f"Missing required columns: {missing}. Found: {list(columns)}")

    def _read_csv(self, file_path: Path) -> List[Dict[str, Any]]:
        # Read as text so account numbers keep leading zeros
        df = pd.read_csv(file_path, dtype=str, keep_default_na=False)
        df.columns = df.columns.str.strip()
        self._check_columns(df.columns)
        return self._normalize(df.to_dict(orient="records"))

    def _read_xml(self, file_path: Path) -> List[Dict[str, Any]]:
        root = ET.parse(file_path).getroot()
        records = [
            {child.tag: (child.text or "") for child in element}
            for element in root.iter()
            if len(element) and all(len(child) == 0 for child in element)
        ]
        if not records:
            raise ValueError("No transaction elements found")
        self._check_columns({key for record in records for key in record})
        return self._normalize(records)

    def get(self, statement_id: int) -> Dict[str, Any]:
        row = self.conn.execute("SELECT * FROM bank_statements WHERE id = ?", (statement_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Bank statement not found: {statement_id}", code="BANK_STATEMENT_NOT_FOUND")
        data = dict(row)
        data["processed_data"] = json.loads(data["processed_data"]) if data["processed_data"] else None
        return data
