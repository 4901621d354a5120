"""
Expenses - company expenses that reduce the ledger once approved.

Only the approved state carries a ledger effect (-amount in the period of the
expense date):

    pending  -> approved   posts -amount
    approved -> pending    posts +amount
    approved -> rejected   posts +amount
    anything else          posts nothing
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Union
import sqlite3

from brokerledger.core.audit import AuditLogger
from brokerledger.core.database import atomic
from brokerledger.core.exceptions import NotFoundError, ValidationError
from brokerledger.core.models import (
    Expense,
    ExpenseStatus,
    LedgerSource,
    canonical_amount,
    ledger_period,
    parse_amount,
)
from brokerledger.core.security import ensure_user_exists, require_user_context
from brokerledger.ledger.aggregator import LedgerAggregator

logger = logging.getLogger(__name__)


class ExpenseNotFoundError(NotFoundError):
    def __init__(self, expense_id: int):
        super().__init__(f"Expense not found: {expense_id}", code="EXPENSE_NOT_FOUND")
        self.expense_id = expense_id


def _positive_amount(value: Any) -> Decimal:
    amount = parse_amount(value)
    if amount is None or amount <= 0:
        raise ValidationError("Expense amount must be a positive number", field="amount")
    return amount


def _as_date(value: Union[date, str, None]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}", field="date")


class ExpenseService:
    """Create and approve expenses; status changes and postings commit together."""

    def __init__(self, db_connection: sqlite3.Connection, ledger: Optional[LedgerAggregator] = None):
        self.conn = db_connection
        self.ledger = ledger or LedgerAggregator(db_connection)

    def _post(self, expense: Expense, delta: Decimal, on: Optional[date] = None, note: str = "") -> None:
        year, month = ledger_period(on or expense.date)
        self.ledger.post(
            user_id=expense.user_id,
            year=year,
            month=month,
            delta=delta,
            source=LedgerSource.EXPENSE,
            reference_id=expense.id,
            description=f"Expense {note}: {expense.title}",
        )

    @require_user_context
    def create(
        self,
        user_id: int,
        title: str,
        amount: Union[Decimal, int, str],
        category: str,
        company_id: int,
        expense_date: Union[date, str, None] = None,
        description: Optional[str] = None,
    ) -> Expense:
        """New expenses start pending and post nothing."""
        if not title or not str(title).strip():
            raise ValidationError("Expense title is required", field="title")
        if not category or not str(category).strip():
            raise ValidationError("Expense category is required", field="category")
        amount = _positive_amount(amount)
        on = _as_date(expense_date)

        with atomic(self.conn):
            ensure_user_exists(self.conn, user_id)
            if self.conn.execute("SELECT 1 FROM companies WHERE id = ?", (company_id,)).fetchone() is None:
                raise NotFoundError("Company not found", code="COMPANY_NOT_FOUND")
            cursor = self.conn.execute(
                """
                INSERT INTO expenses (user_id, title, description, amount, category, date, company_id, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, title, description, canonical_amount(amount), category,
                 on.isoformat(), company_id, ExpenseStatus.PENDING.value),
            )

        logger.info(f"Created expense {cursor.lastrowid} ({amount}) for user {user_id}")
        return self.get(cursor.lastrowid, user_id=user_id)

    @require_user_context
    def update_status(
        self,
        expense_id: int,
        status: Union[ExpenseStatus, str],
        user_id: int,
        approver_id: Optional[int] = None,
    ) -> Expense:
        """
        Move an expense to a new status and apply the ledger effect of the move.

        Raises:
            ValidationError: Unknown status
            ExpenseNotFoundError: No such expense for the user
        """
        try:
            target = ExpenseStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid expense status: {status!r}", field="status")

        with atomic(self.conn):
            expense = self.get(expense_id, user_id=user_id)
            if target is expense.status:
                return expense

            self.conn.execute(
                """
                UPDATE expenses SET status = ?, approved_by = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (
                    target.value,
                    (approver_id or user_id) if target is ExpenseStatus.APPROVED else expense.approved_by,
                    expense_id,
                ),
            )
            if target is ExpenseStatus.APPROVED:
                self._post(expense, -expense.amount, note="approved")
            elif expense.status is ExpenseStatus.APPROVED:
                self._post(expense, expense.amount, note=f"moved to {target.value}")

            AuditLogger(self.conn, approver_id or user_id).log_update(
                "expenses", expense_id, {"status": expense.status.value}, {"status": target.value}
            )

        logger.info(f"Expense {expense_id}: {expense.status.value} -> {target.value}")
        return self.get(expense_id, user_id=user_id)

    @require_user_context
    def update(
        self,
        expense_id: int,
        user_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        amount: Union[Decimal, int, str, None] = None,
        category: Optional[str] = None,
        expense_date: Union[date, str, None] = None,
    ) -> Expense:
        """Edit an expense; on an approved one an amount or date change re-posts it."""
        with atomic(self.conn):
            expense = self.get(expense_id, user_id=user_id)
            new_amount = _positive_amount(amount) if amount is not None else expense.amount
            new_date = _as_date(expense_date) if expense_date is not None else expense.date

            self.conn.execute(
                """
                UPDATE expenses SET title = ?, description = ?, amount = ?, category = ?, date = ?,
                updated_at = CURRENT_TIMESTAMP WHERE id = ?
                """,
                (
                    title if title is not None else expense.title,
                    description if description is not None else expense.description,
                    canonical_amount(new_amount),
                    category if category is not None else expense.category,
                    new_date.isoformat(),
                    expense_id,
                ),
            )

            if expense.status is ExpenseStatus.APPROVED and (
                new_amount != expense.amount or new_date != expense.date
            ):
                self._post(expense, expense.amount, note="edit reversal")
                self._post(expense, -new_amount, on=new_date, note="edit")

        return self.get(expense_id, user_id=user_id)

    def _from_row(self, row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            category=row["category"],
            date=date.fromisoformat(row["date"]),
            company_id=row["company_id"],
            status=ExpenseStatus(row["status"]),
            approved_by=row["approved_by"],
        )

    @require_user_context
    def get(self, expense_id: int, user_id: int) -> Expense:
        row = self.conn.execute(
            "SELECT * FROM expenses WHERE id = ? AND user_id = ?", (expense_id, user_id)
        ).fetchone()
        if row is None:
            raise ExpenseNotFoundError(expense_id)
        return self._from_row(row)

    @require_user_context
    def list(self, user_id: int, status: Union[ExpenseStatus, str, None] = None) -> List[Expense]:
        query = "SELECT * FROM expenses WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(ExpenseStatus(status).value)
        query += " ORDER BY date DESC, id DESC"
        return [self._from_row(row) for row in self.conn.execute(query, params).fetchall()]
