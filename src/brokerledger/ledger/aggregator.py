"""
Ledger Aggregator - per-user running totals by year and month.

The ledger is a flat table (user_id, year, month) -> amount exposed as an
ordered two-level mapping. Every change goes through post(), which:

1. Validates year ("2024"), month ("march") and delta
2. Creates the period with 0 on first write
3. Adds the delta and appends a row to the postings journal

All in one immediate-mode transaction, so concurrent posts never lose an
update and the running total of a period always equals the sum of its
postings.
"""

import logging
import re
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union
import sqlite3

from brokerledger.core.database import StorageError, atomic
from brokerledger.core.exceptions import LedgerError, ValidationError
from brokerledger.core.models import (
    MONTHS,
    LedgerPosting,
    LedgerSource,
    canonical_amount,
    month_index,
    parse_amount,
)
from brokerledger.core.security import ensure_user_exists, require_user_context

logger = logging.getLogger(__name__)

YEAR_PATTERN = re.compile(r"^\d{4}$")

ZERO = Decimal("0")


def normalize_period(year: Union[str, int], month: str) -> Tuple[str, str]:
    """
    Validate a ledger period.

    Raises:
        ValidationError: Year is not four digits or month is not an English month name
    """
    year_text = str(year).strip() if year is not None and not isinstance(year, bool) else ""
    if not YEAR_PATTERN.match(year_text):
        raise ValidationError(f"Invalid ledger year: {year!r}", field="year")

    month_text = month.strip().lower() if isinstance(month, str) else ""
    if month_text not in MONTHS:
        raise ValidationError(f"Invalid ledger month: {month!r}", field="month")
    return year_text, month_text


class LedgerAggregator:
    """
    Single writer of ledger_entries / ledger_postings.

    Usage:
        ledger = LedgerAggregator(conn)
        ledger.post(user_id=1, year="2024", month="march", delta=Decimal("-5000"),
                    source=LedgerSource.ADVANCE, reference_id=advance_id)
        ledger.get_ledger(1)   # {"2024": {"march": Decimal("-5000")}}
    """

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    @require_user_context
    def post(
        self,
        user_id: int,
        year: Union[str, int],
        month: str,
        delta: Union[Decimal, int, str],
        source: Union[LedgerSource, str],
        reference_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Decimal:
        """
        Add delta (may be negative) to the user's period total.

        Returns:
            The new running total of the period

        Raises:
            ValidationError: Bad period, delta or source
            UserNotFoundError: Unknown user
            LedgerError: Storage failure
        """
        year, month = normalize_period(year, month)
        amount = parse_amount(delta)
        if amount is None:
            raise ValidationError(f"Invalid ledger delta: {delta!r}", field="delta")
        try:
            source = LedgerSource(source)
        except ValueError:
            raise ValidationError(f"Invalid ledger source: {source!r}", field="source")

        try:
            with atomic(self.conn):
                ensure_user_exists(self.conn, user_id)
                self.conn.execute(
                    "INSERT OR IGNORE INTO ledger_entries (user_id, year, month, amount) VALUES (?, ?, ?, '0')",
                    (user_id, year, month),
                )
                row = self.conn.execute(
                    "SELECT amount FROM ledger_entries WHERE user_id = ? AND year = ? AND month = ?",
                    (user_id, year, month),
                ).fetchone()
                balance = Decimal(row["amount"]) + amount

                self.conn.execute(
                    """
                    UPDATE ledger_entries SET amount = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE user_id = ? AND year = ? AND month = ?
                    """,
                    (canonical_amount(balance), user_id, year, month),
                )
                self.conn.execute(
                    """
                    INSERT INTO ledger_postings (user_id, year, month, delta, source, reference_id, description)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, year, month, canonical_amount(amount), source.value, reference_id, description),
                )
        except StorageError as e:
            logger.error(f"Ledger post failed for user {user_id} {year}/{month}: {e}")
            raise LedgerError(f"Failed to post to ledger {year}/{month}: {e}") from e

        logger.info(f"Posted {amount} to user {user_id} ledger {year}/{month} ({source.value})")
        return balance

    @require_user_context
    def get_ledger(self, user_id: int) -> Dict[str, Dict[str, Decimal]]:
        """Years ascending, months in calendar order."""
        rows = self.conn.execute(
            "SELECT year, month, amount FROM ledger_entries WHERE user_id = ?", (user_id,)
        ).fetchall()

        ordered = sorted(rows, key=lambda r: (r["year"], month_index(r["month"])))
        ledger: Dict[str, Dict[str, Decimal]] = OrderedDict()
        for row in ordered:
            ledger.setdefault(row["year"], OrderedDict())[row["month"]] = Decimal(row["amount"])
        return ledger

    @require_user_context
    def get_balance(self, user_id: int, year: Union[str, int], month: str) -> Decimal:
        """Running total of one period; 0 when nothing was posted."""
        year, month = normalize_period(year, month)
        row = self.conn.execute(
            "SELECT amount FROM ledger_entries WHERE user_id = ? AND year = ? AND month = ?",
            (user_id, year, month),
        ).fetchone()
        return Decimal(row["amount"]) if row else ZERO

    @require_user_context
    def year_total(self, user_id: int, year: Union[str, int]) -> Decimal:
        year, _ = normalize_period(year, MONTHS[0])
        rows = self.conn.execute(
            "SELECT amount FROM ledger_entries WHERE user_id = ? AND year = ?",
            (user_id, year),
        ).fetchall()
        return sum((Decimal(r["amount"]) for r in rows), ZERO)

    @require_user_context
    def get_postings(
        self,
        user_id: int,
        year: Optional[Union[str, int]] = None,
        month: Optional[str] = None,
        source: Optional[Union[LedgerSource, str]] = None,
    ) -> List[LedgerPosting]:
        """Journal of postings, oldest first, optionally filtered."""
        query = "SELECT * FROM ledger_postings WHERE user_id = ?"
        params: list = [user_id]
        if year is not None:
            year, _ = normalize_period(year, month or MONTHS[0])
            query += " AND year = ?"
            params.append(year)
        if month is not None:
            _, month = normalize_period(year or "2000", month)
            query += " AND month = ?"
            params.append(month)
        if source is not None:
            query += " AND source = ?"
            params.append(LedgerSource(source).value)
        query += " ORDER BY id"

        return [
            LedgerPosting(
                id=row["id"],
                user_id=row["user_id"],
                year=row["year"],
                month=row["month"],
                delta=Decimal(row["delta"]),
                source=LedgerSource(row["source"]),
                reference_id=row["reference_id"],
                description=row["description"],
                posted_at=datetime.fromisoformat(row["posted_at"]) if row["posted_at"] else None,
            )
            for row in self.conn.execute(query, params).fetchall()
        ]

    @require_user_context
    def find_discrepancies(self, user_id: int) -> Dict[Tuple[str, str], Tuple[Decimal, Decimal]]:
        """
        Periods whose running total differs from the sum of their postings.

        Returns:
            {(year, month): (entry_amount, postings_sum)}; empty when consistent
        """
        sums: Dict[Tuple[str, str], Decimal] = {}
        for row in self.conn.execute(
            "SELECT year, month, delta FROM ledger_postings WHERE user_id = ?", (user_id,)
        ).fetchall():
            key = (row["year"], row["month"])
            sums[key] = sums.get(key, ZERO) + Decimal(row["delta"])

        issues = {}
        for year, months in self.get_ledger(user_id).items():
            for month, amount in months.items():
                posted = sums.pop((year, month), ZERO)
                if posted != amount:
                    issues[(year, month)] = (amount, posted)
        for key, posted in sums.items():
            issues[key] = (ZERO, posted)

        if issues:
            logger.warning(f"Ledger of user {user_id} has {len(issues)} inconsistent periods")
        return issues
