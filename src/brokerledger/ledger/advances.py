"""
Advances - money given to or received from a company or broker.

Ledger effect of an advance is its signed amount (given = -amount,
received = +amount), posted to the period of its given_date. Toggling the
type or editing type/amount posts the difference so the ledger always holds
the current signed amount.
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
    Advance,
    AdvanceStatus,
    AdvanceType,
    CounterpartyType,
    LedgerSource,
    canonical_amount,
    ledger_period,
    parse_amount,
    signed_advance_amount,
)
from brokerledger.core.security import ensure_user_exists, require_user_context
from brokerledger.ledger.aggregator import LedgerAggregator

logger = logging.getLogger(__name__)


class AdvanceNotFoundError(NotFoundError):
    def __init__(self, advance_id: int):
        super().__init__(f"Advance not found: {advance_id}", code="ADVANCE_NOT_FOUND")
        self.advance_id = advance_id


def _positive_amount(value: Any) -> Decimal:
    amount = parse_amount(value)
    if amount is None or amount <= 0:
        raise ValidationError("Advance amount must be a positive number", field="amount")
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
        raise ValidationError(f"Invalid date: {value!r}", field="given_date")


class AdvanceService:
    """
    Create, toggle and edit advances; each change and its ledger posting
    commit together.

    Usage:
        advances = AdvanceService(conn)
        adv = advances.create(user_id=1, title="Float", amount=5000, advance_type="given",
                              counterparty_type="company", counterparty_id=acme.id,
                              given_date=date(2024, 3, 10))
        advances.toggle(adv.id, user_id=1)
    """

    def __init__(self, db_connection: sqlite3.Connection, ledger: Optional[LedgerAggregator] = None):
        self.conn = db_connection
        self.ledger = ledger or LedgerAggregator(db_connection)

    def _require_counterparty(self, counterparty_type: CounterpartyType, counterparty_id: int) -> None:
        table = "companies" if counterparty_type is CounterpartyType.COMPANY else "brokers"
        row = self.conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (counterparty_id,)).fetchone()
        if row is None:
            raise NotFoundError("Counterparty not found", code="COUNTERPARTY_NOT_FOUND")

    def _post(self, user_id: int, advance_id: int, on: date, delta: Decimal, description: str) -> None:
        if delta == 0:
            return
        year, month = ledger_period(on)
        self.ledger.post(
            user_id=user_id,
            year=year,
            month=month,
            delta=delta,
            source=LedgerSource.ADVANCE,
            reference_id=advance_id,
            description=description,
        )

    @require_user_context
    def create(
        self,
        user_id: int,
        title: str,
        amount: Union[Decimal, int, str],
        advance_type: Union[AdvanceType, str],
        counterparty_type: Union[CounterpartyType, str],
        counterparty_id: int,
        description: Optional[str] = None,
        given_date: Union[date, str, None] = None,
    ) -> Advance:
        """
        Record an advance and post its signed amount.

        Raises:
            ValidationError: Bad amount, type or date
            NotFoundError: Counterparty does not exist
        """
        if not title or not str(title).strip():
            raise ValidationError("Advance title is required", field="title")
        amount = _positive_amount(amount)
        try:
            advance_type = AdvanceType(advance_type)
            counterparty_type = CounterpartyType(counterparty_type)
        except ValueError as e:
            raise ValidationError(str(e))
        on = _as_date(given_date)

        with atomic(self.conn):
            ensure_user_exists(self.conn, user_id)
            self._require_counterparty(counterparty_type, counterparty_id)
            cursor = self.conn.execute(
                """
                INSERT INTO advances
                (user_id, title, description, amount, advance_type, initial_type, status,
                 counterparty_type, counterparty_id, given_date, updated_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, title, description, canonical_amount(amount),
                    advance_type.value, advance_type.value, AdvanceStatus.ACTIVE.value,
                    counterparty_type.value, counterparty_id, on.isoformat(), user_id,
                ),
            )
            advance_id = cursor.lastrowid
            self._post(user_id, advance_id, on, signed_advance_amount(amount, advance_type),
                       f"Advance {advance_type.value}: {title}")

        logger.info(f"Created advance {advance_id} ({advance_type.value} {amount}) for user {user_id}")
        return self.get(advance_id, user_id=user_id)

    @require_user_context
    def toggle(self, advance_id: int, user_id: int) -> Advance:
        """
        Flip given <-> received.

        Status is active when the type is back to the initial type, returned
        otherwise. The ledger receives one combined delta: the reversal of
        the old signed amount plus the new signed amount.
        """
        with atomic(self.conn):
            advance = self.get(advance_id, user_id=user_id)
            new_type = advance.advance_type.opposite
            new_status = AdvanceStatus.ACTIVE if new_type is advance.initial_type else AdvanceStatus.RETURNED

            self.conn.execute(
                """
                UPDATE advances SET advance_type = ?, status = ?, updated_by = ?,
                updated_at = CURRENT_TIMESTAMP WHERE id = ?
                """,
                (new_type.value, new_status.value, user_id, advance_id),
            )
            delta = signed_advance_amount(advance.amount, new_type) - advance.signed_amount
            self._post(user_id, advance_id, advance.given_date, delta,
                       f"Advance toggled to {new_type.value}: {advance.title}")
            AuditLogger(self.conn, user_id).log_update(
                "advances", advance_id,
                {"advance_type": advance.advance_type.value, "status": advance.status.value},
                {"advance_type": new_type.value, "status": new_status.value},
            )

        logger.info(f"Toggled advance {advance_id} to {new_type.value} ({new_status.value})")
        return self.get(advance_id, user_id=user_id)

    @require_user_context
    def update(
        self,
        advance_id: int,
        user_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        amount: Union[Decimal, int, str, None] = None,
        advance_type: Union[AdvanceType, str, None] = None,
    ) -> Advance:
        """Edit an advance; a type or amount change re-posts the signed amount."""
        with atomic(self.conn):
            advance = self.get(advance_id, user_id=user_id)
            new_amount = _positive_amount(amount) if amount is not None else advance.amount
            try:
                new_type = AdvanceType(advance_type) if advance_type is not None else advance.advance_type
            except ValueError as e:
                raise ValidationError(str(e), field="advance_type")
            new_status = AdvanceStatus.ACTIVE if new_type is advance.initial_type else AdvanceStatus.RETURNED

            self.conn.execute(
                """
                UPDATE advances SET title = ?, description = ?, amount = ?, advance_type = ?,
                status = ?, updated_by = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?
                """,
                (
                    title if title is not None else advance.title,
                    description if description is not None else advance.description,
                    canonical_amount(new_amount),
                    new_type.value,
                    new_status.value,
                    user_id,
                    advance_id,
                ),
            )

            if new_type is not advance.advance_type or new_amount != advance.amount:
                delta = signed_advance_amount(new_amount, new_type) - advance.signed_amount
                self._post(user_id, advance_id, advance.given_date, delta,
                           f"Advance edited: {advance.title}")

        return self.get(advance_id, user_id=user_id)

    def _from_row(self, row: sqlite3.Row) -> Advance:
        return Advance(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            advance_type=AdvanceType(row["advance_type"]),
            initial_type=AdvanceType(row["initial_type"]),
            status=AdvanceStatus(row["status"]),
            counterparty_type=CounterpartyType(row["counterparty_type"]),
            counterparty_id=row["counterparty_id"],
            given_date=date.fromisoformat(row["given_date"]),
        )

    @require_user_context
    def get(self, advance_id: int, user_id: int) -> Advance:
        row = self.conn.execute(
            "SELECT * FROM advances WHERE id = ? AND user_id = ?", (advance_id, user_id)
        ).fetchone()
        if row is None:
            raise AdvanceNotFoundError(advance_id)
        return self._from_row(row)

    @require_user_context
    def list(
        self,
        user_id: int,
        advance_type: Union[AdvanceType, str, None] = None,
        status: Union[AdvanceStatus, str, None] = None,
    ) -> List[Advance]:
        query = "SELECT * FROM advances WHERE user_id = ?"
        params: list = [user_id]
        if advance_type is not None:
            query += " AND advance_type = ?"
            params.append(AdvanceType(advance_type).value)
        if status is not None:
            query += " AND status = ?"
            params.append(AdvanceStatus(status).value)
        query += " ORDER BY created_at DESC, id DESC"
        return [self._from_row(row) for row in self.conn.execute(query, params).fetchall()]
