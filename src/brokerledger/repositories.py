"""
Repositories for the entities the engine reads: companies (with their
commission schedule), users (client and provider schedules), brokers and
banks.

Every slab write goes through validate_schedule(); a schedule is replaced as a
whole inside one transaction and audited.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
import sqlite3

from brokerledger.commission.slabs import SlabInput, validate_schedule
from brokerledger.core.audit import AuditLogger
from brokerledger.core.database import IntegrityError, atomic
from brokerledger.core.exceptions import (
    CompanyNotFoundError,
    ConflictError,
    NotFoundError,
    UserNotFoundError,
    ValidationError,
)
from brokerledger.core.models import (
    Company,
    CompanyType,
    Slab,
    SlabOwner,
    SlabSchedule,
    canonical_amount,
)

logger = logging.getLogger(__name__)


def load_schedule(conn: sqlite3.Connection, owner: SlabOwner, owner_id: int) -> SlabSchedule:
    """Read a stored schedule (already validated on write)."""
    cursor = conn.execute(
        """
        SELECT min_amount, max_amount, commission_rate FROM slabs
        WHERE owner_type = ? AND owner_id = ?
        ORDER BY position
        """,
        (owner.value, owner_id),
    )
    return SlabSchedule(slabs=tuple(
        Slab(
            min_amount=row["min_amount"],
            max_amount=row["max_amount"],
            commission_rate=Decimal(row["commission_rate"]),
        )
        for row in cursor.fetchall()
    ))


def replace_schedule(
    conn: sqlite3.Connection,
    owner: SlabOwner,
    owner_id: int,
    slabs: Iterable[SlabInput],
    changed_by: Optional[int] = None,
) -> SlabSchedule:
    """
    Validate slabs and store them as the owner's schedule.

    Raises:
        SlabError: The schedule fails validation; nothing is written
    """
    schedule = validate_schedule(slabs)

    with atomic(conn):
        previous = load_schedule(conn, owner, owner_id)
        conn.execute(
            "DELETE FROM slabs WHERE owner_type = ? AND owner_id = ?",
            (owner.value, owner_id),
        )
        conn.executemany(
            """
            INSERT INTO slabs (owner_type, owner_id, position, min_amount, max_amount, commission_rate)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (owner.value, owner_id, position, s.min_amount, s.max_amount,
                 canonical_amount(s.commission_rate))
                for position, s in enumerate(schedule)
            ],
        )
        AuditLogger(conn, changed_by).log_update(
            table_name=f"slabs:{owner.value}",
            record_id=owner_id,
            old_values={"slabs": previous.to_list()},
            new_values={"slabs": schedule.to_list()},
        )

    logger.info(f"Replaced {owner.value} schedule of {owner_id} ({len(schedule)} slabs)")
    return schedule


class CompanyRepository:
    """
    Company lookup and company commission schedules.

    Usage:
        companies = CompanyRepository(conn)
        acme = companies.create("Acme", slabs=[{"minAmount": 0, "maxAmount": 0, "commissionRate": 2}])
        companies.find_by_name("Acme").slabs
    """

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def create(
        self,
        name: str,
        company_type: CompanyType = CompanyType.CLIENT,
        slabs: Optional[Iterable[SlabInput]] = None,
        created_by: Optional[int] = None,
        status: str = "pending_verification",
    ) -> Company:
        if not name or not str(name).strip():
            raise ValidationError("Company name is required", field="name")
        company_type = CompanyType(company_type)
        schedule = validate_schedule(slabs or [])

        try:
            with atomic(self.conn):
                cursor = self.conn.execute(
                    "INSERT INTO companies (name, company_type, status, created_by) VALUES (?, ?, ?, ?)",
                    (name, company_type.value, status, created_by),
                )
                company_id = cursor.lastrowid
                replace_schedule(self.conn, SlabOwner.COMPANY, company_id, schedule.slabs, created_by)
        except IntegrityError as e:
            raise ConflictError(f"Company already exists: {name}") from e

        logger.info(f"Created company {name} (id={company_id})")
        return Company(
            id=company_id, name=name, company_type=company_type, status=status, slabs=schedule
        )

    def _from_row(self, row: sqlite3.Row) -> Company:
        return Company(
            id=row["id"],
            name=row["name"],
            company_type=CompanyType(row["company_type"]),
            status=row["status"],
            slabs=load_schedule(self.conn, SlabOwner.COMPANY, row["id"]),
        )

    def find_by_name(self, name: str) -> Optional[Company]:
        """Exact-name lookup, or None."""
        row = self.conn.execute(
            "SELECT id, name, company_type, status FROM companies WHERE name = ?", (name,)
        ).fetchone()
        return self._from_row(row) if row else None

    def require_by_name(self, name: str) -> Company:
        company = self.find_by_name(name)
        if company is None:
            raise CompanyNotFoundError(name)
        return company

    def get(self, company_id: int) -> Company:
        row = self.conn.execute(
            "SELECT id, name, company_type, status FROM companies WHERE id = ?", (company_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Company not found: {company_id}", code="COMPANY_NOT_FOUND")
        return self._from_row(row)

    def exists(self, company_id: int) -> bool:
        return self.conn.execute("SELECT 1 FROM companies WHERE id = ?", (company_id,)).fetchone() is not None

    def list(self) -> List[Company]:
        rows = self.conn.execute(
            "SELECT id, name, company_type, status FROM companies ORDER BY name"
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def set_slabs(self, company_id: int, slabs: Iterable[SlabInput], changed_by: Optional[int] = None) -> SlabSchedule:
        """Replace the company's schedule after validation."""
        if not self.exists(company_id):
            raise NotFoundError(f"Company not found: {company_id}", code="COMPANY_NOT_FOUND")
        return replace_schedule(self.conn, SlabOwner.COMPANY, company_id, slabs, changed_by)

    def get_slabs(self, company_id: int) -> SlabSchedule:
        return load_schedule(self.conn, SlabOwner.COMPANY, company_id)


class UserRepository:
    """Users and their client / provider commission schedules."""

    ROLES = ("admin", "broker", "accountant", "viewer")

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def create(self, name: str, email: Optional[str] = None, role: str = "broker") -> int:
        if role not in self.ROLES:
            raise ValidationError(f"Invalid role: {role}", field="role")
        try:
            with atomic(self.conn):
                cursor = self.conn.execute(
                    "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
                    (name, email, role),
                )
        except IntegrityError as e:
            raise ConflictError(f"User already exists: {name}") from e
        logger.info(f"Created user {name} (id={cursor.lastrowid})")
        return cursor.lastrowid

    def get_or_create(self, name: str, email: Optional[str] = None) -> int:
        row = self.conn.execute("SELECT id FROM users WHERE name = ?", (name,)).fetchone()
        if row:
            return row["id"]
        return self.create(name, email)

    def get(self, user_id: int) -> Dict[str, Any]:
        row = self.conn.execute(
            "SELECT id, name, email, role, is_active FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise UserNotFoundError(user_id)
        return dict(row)

    def _require(self, user_id: int) -> None:
        if self.conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
            raise UserNotFoundError(user_id)

    def set_client_slabs(self, user_id: int, slabs: Iterable[SlabInput]) -> SlabSchedule:
        self._require(user_id)
        return replace_schedule(self.conn, SlabOwner.USER_CLIENT, user_id, slabs, user_id)

    def set_provider_slabs(self, user_id: int, slabs: Iterable[SlabInput]) -> SlabSchedule:
        self._require(user_id)
        return replace_schedule(self.conn, SlabOwner.USER_PROVIDER, user_id, slabs, user_id)

    def get_slabs(self, user_id: int, owner: SlabOwner = SlabOwner.USER_CLIENT) -> SlabSchedule:
        if owner is SlabOwner.COMPANY:
            raise ValidationError("Company schedules are read through CompanyRepository")
        return load_schedule(self.conn, owner, user_id)


class BrokerRepository:
    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def create(self, name: str) -> int:
        if not name or not str(name).strip():
            raise ValidationError("Broker name is required", field="name")
        with atomic(self.conn):
            cursor = self.conn.execute("INSERT INTO brokers (name) VALUES (?)", (name,))
        return cursor.lastrowid

    def exists(self, broker_id: int) -> bool:
        return self.conn.execute("SELECT 1 FROM brokers WHERE id = ?", (broker_id,)).fetchone() is not None

    def get(self, broker_id: int) -> Dict[str, Any]:
        row = self.conn.execute("SELECT id, name FROM brokers WHERE id = ?", (broker_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Broker not found: {broker_id}", code="BROKER_NOT_FOUND")
        return dict(row)


class BankRepository:
    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def create(self, bank_name: str, account_number: str, user_id: Optional[int] = None) -> int:
        if not bank_name or not account_number:
            raise ValidationError("Bank name and account number are required")
        try:
            with atomic(self.conn):
                cursor = self.conn.execute(
                    "INSERT INTO banks (bank_name, account_number, user_id) VALUES (?, ?, ?)",
                    (bank_name, str(account_number), user_id),
                )
        except IntegrityError as e:
            raise ConflictError(f"Bank account already exists: {bank_name} {account_number}") from e
        return cursor.lastrowid

    def get(self, bank_id: int) -> Dict[str, Any]:
        row = self.conn.execute(
            "SELECT id, bank_name, account_number, user_id FROM banks WHERE id = ?", (bank_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Bank not found: {bank_id}", code="BANK_NOT_FOUND")
        return dict(row)
