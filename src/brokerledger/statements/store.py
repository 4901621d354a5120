"""
Persistence of StatementRecords.

Statements are append-only: a row is inserted pending (or directly as failed)
and its status changes at most once. Original transactions and company
summaries are written once and never updated; schema triggers reject any
attempt to do otherwise.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
import sqlite3

from brokerledger.core.exceptions import StatementNotFoundError
from brokerledger.core.models import (
    CompanySummary,
    FileType,
    Slab,
    StatementRecord,
    StatementStatus,
    Transaction,
    canonical_amount,
)

logger = logging.getLogger(__name__)


class StatementStore:
    """Reads and writes statements; never commits (callers wrap in atomic())."""

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def insert(self, record: StatementRecord) -> int:
        """Insert the statement row with its original transactions; sets record.id."""
        cursor = self.conn.execute(
            """
            INSERT INTO statements
            (user_id, file_name, file_type, statement_date, status, error_message,
             total_amount, total_commission)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.user_id,
                record.file_name,
                record.file_type.value,
                record.statement_date.isoformat(),
                record.status.value,
                record.error_message,
                canonical_amount(record.total_amount),
                canonical_amount(record.total_commission),
            ),
        )
        record.id = cursor.lastrowid
        self.conn.executemany(
            """
            INSERT INTO statement_transactions
            (statement_id, position, date, company_name, bank_name, account_no, credit_amount)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (record.id, position, t.date, t.company_name, t.bank_name, t.account_no,
                 canonical_amount(t.credit_amount))
                for position, t in enumerate(record.transactions)
            ],
        )
        return record.id

    def save_processed(self, record: StatementRecord) -> None:
        """Write the summaries and flip a pending row to processed."""
        self.conn.executemany(
            """
            INSERT INTO company_summaries
            (statement_id, company_id, company_name, total_amount, commission,
             slab_min_amount, slab_max_amount, slab_commission_rate)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.id, s.company_id, s.company_name,
                    canonical_amount(s.total_amount), canonical_amount(s.commission),
                    s.applied_slab.min_amount, s.applied_slab.max_amount,
                    canonical_amount(s.applied_slab.commission_rate),
                )
                for s in record.company_summaries
            ],
        )
        year, month = record.ledger_period
        self.conn.execute(
            """
            UPDATE statements SET status = ?, total_amount = ?, total_commission = ?,
            ledger_year = ?, ledger_month = ?
            WHERE id = ? AND status = 'pending'
            """,
            (
                record.status.value,
                canonical_amount(record.total_amount),
                canonical_amount(record.total_commission),
                year,
                month,
                record.id,
            ),
        )

    def load(self, statement_id: int, user_id: int) -> StatementRecord:
        row = self.conn.execute(
            "SELECT * FROM statements WHERE id = ? AND user_id = ?", (statement_id, user_id)
        ).fetchone()
        if row is None:
            raise StatementNotFoundError(statement_id)
        return self._from_row(row)

    def list(self, user_id: int, status: Optional[StatementStatus] = None) -> List[StatementRecord]:
        """Statements of a user, latest statement date first; same-date uploads newest first."""
        query = "SELECT * FROM statements WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(StatementStatus(status).value)
        query += " ORDER BY statement_date DESC, id DESC"
        return [self._from_row(row) for row in self.conn.execute(query, params).fetchall()]

    def _from_row(self, row: sqlite3.Row) -> StatementRecord:
        statement_id = row["id"]
        transactions = [
            Transaction(
                date=t["date"],
                company_name=t["company_name"],
                bank_name=t["bank_name"],
                account_no=t["account_no"],
                credit_amount=Decimal(t["credit_amount"]),
            )
            for t in self.conn.execute(
                "SELECT * FROM statement_transactions WHERE statement_id = ? ORDER BY position",
                (statement_id,),
            ).fetchall()
        ]
        summaries = [
            CompanySummary(
                company_id=s["company_id"],
                company_name=s["company_name"],
                total_amount=Decimal(s["total_amount"]),
                commission=Decimal(s["commission"]),
                applied_slab=Slab(
                    min_amount=s["slab_min_amount"],
                    max_amount=s["slab_max_amount"],
                    commission_rate=Decimal(s["slab_commission_rate"]),
                ),
            )
            for s in self.conn.execute(
                "SELECT * FROM company_summaries WHERE statement_id = ? ORDER BY id",
                (statement_id,),
            ).fetchall()
        ]
        uploaded_at = row["uploaded_at"]
        return StatementRecord(
            id=statement_id,
            user_id=row["user_id"],
            file_name=row["file_name"],
            file_type=FileType(row["file_type"]),
            statement_date=date.fromisoformat(row["statement_date"]),
            transactions=transactions,
            company_summaries=summaries,
            total_amount=Decimal(row["total_amount"]),
            total_commission=Decimal(row["total_commission"]),
            status=StatementStatus(row["status"]),
            error_message=row["error_message"],
            uploaded_at=datetime.fromisoformat(uploaded_at) if isinstance(uploaded_at, str) else uploaded_at,
        )
