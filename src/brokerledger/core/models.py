"""
Core models for brokerledger - commission schedules, statements and ledger.

This module provides:
- Slab / SlabSchedule: commission brackets and a validated schedule
- Transaction: one credit line of an uploaded statement
- CompanySummary / StatementRecord: the append-only statement history
- LedgerPosting: one delta applied to a user's ledger
- Advance / Expense / Company: the fields of the CRUD entities the engine reads

All monetary values use Decimal for precision.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from brokerledger.core.exceptions import InvalidTransitionError


MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

TRANSACTION_DATE_FORMAT = "%d-%m-%Y"


class StatementStatus(Enum):
    """Lifecycle of an uploaded statement."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class FileType(Enum):
    """Accepted statement file types."""
    CSV = "csv"
    XML = "xml"


class CompanyType(Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    BOTH = "both"


class SlabOwner(Enum):
    """Who a commission schedule belongs to."""
    COMPANY = "company"
    USER_CLIENT = "user_client"
    USER_PROVIDER = "user_provider"


class AdvanceType(Enum):
    GIVEN = "given"
    RECEIVED = "received"

    @property
    def opposite(self) -> "AdvanceType":
        return AdvanceType.RECEIVED if self is AdvanceType.GIVEN else AdvanceType.GIVEN


class AdvanceStatus(Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class CounterpartyType(Enum):
    COMPANY = "company"
    BROKER = "broker"


class ExpenseStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LedgerSource(Enum):
    """Flows allowed to post to the ledger."""
    ADVANCE = "advance"
    EXPENSE = "expense"
    STATEMENT = "statement"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Convert a numeric input (int, float, Decimal or numeric string) to Decimal.

    Returns None when the value is not a finite number. Booleans are rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        text = str(value).strip() if isinstance(value, str) else str(value)
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None

    if not amount.is_finite():
        return None
    return amount


def canonical_amount(amount: Decimal) -> str:
    """Render an amount without exponent or trailing zeros ("100", "100.5")."""
    text = format(amount.normalize(), "f")
    return "0" if text in ("-0", "") else text


def amount_to_json(amount: Decimal):
    """Numbers in API bodies: int when integral, float otherwise."""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)


def ledger_period(on: date) -> Tuple[str, str]:
    """Year string and lowercase month name under which a date is posted."""
    return str(on.year), MONTHS[on.month - 1]


def month_index(month: str) -> int:
    """1-based month number of a lowercase month name."""
    return MONTHS.index(month) + 1


# ---------------------------------------------------------------------------
# Commission schedules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Slab:
    """A commission bracket. max_amount == 0 means unbounded."""

    min_amount: int
    max_amount: int
    commission_rate: Decimal

    @property
    def is_unbounded(self) -> bool:
        return self.max_amount == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minAmount": self.min_amount,
            "maxAmount": self.max_amount,
            "commissionRate": amount_to_json(self.commission_rate),
        }


@dataclass(frozen=True)
class SlabSchedule:
    """A schedule that passed validation: slabs sorted by min_amount."""

    slabs: Tuple[Slab, ...] = ()

    def __iter__(self) -> Iterator[Slab]:
        return iter(self.slabs)

    def __len__(self) -> int:
        return len(self.slabs)

    @property
    def is_empty(self) -> bool:
        return not self.slabs

    def to_list(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.slabs]


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transaction:
    """A validated credit transaction; date is kept as the submitted string."""

    date: str
    company_name: str
    bank_name: str
    account_no: str
    credit_amount: Decimal

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Transaction":
        """Build from a payload that already passed validate_transaction()."""
        return cls(
            date=str(payload["date"]).strip(),
            company_name=str(payload["companyName"]),
            bank_name=str(payload["bankName"]),
            account_no=str(payload["accountNo"]),
            credit_amount=parse_amount(payload["creditAmount"]),
        )

    @property
    def transaction_date(self) -> date:
        return datetime.strptime(self.date, TRANSACTION_DATE_FORMAT).date()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "companyName": self.company_name,
            "bankName": self.bank_name,
            "accountNo": self.account_no,
            "creditAmount": amount_to_json(self.credit_amount),
        }


@dataclass(frozen=True)
class CompanySummary:
    """Per-statement, per-company aggregate. Never mutated after creation."""

    company_id: int
    company_name: str
    total_amount: Decimal
    commission: Decimal
    applied_slab: Slab

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company": {"id": self.company_id, "name": self.company_name},
            "totalAmount": amount_to_json(self.total_amount),
            "commission": amount_to_json(self.commission),
            "applicableSlab": self.applied_slab.to_dict(),
        }


@dataclass
class StatementRecord:
    """
    A statement upload and its processing outcome.

    Status moves pending -> processed or pending -> failed, exactly once.
    """

    user_id: int
    file_name: str
    file_type: FileType
    statement_date: date
    transactions: List[Transaction] = field(default_factory=list)
    company_summaries: List[CompanySummary] = field(default_factory=list)
    total_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    total_commission: Decimal = field(default_factory=lambda: Decimal("0"))
    status: StatementStatus = StatementStatus.PENDING
    error_message: Optional[str] = None
    id: Optional[int] = None
    uploaded_at: Optional[datetime] = None

    def add_summary(self, summary: CompanySummary) -> None:
        self.company_summaries.append(summary)
        self.total_amount += summary.total_amount
        self.total_commission += summary.commission

    def mark_processed(self) -> None:
        self._transition(StatementStatus.PROCESSED)

    def mark_failed(self, message: str) -> None:
        self._transition(StatementStatus.FAILED)
        self.error_message = message

    def _transition(self, target: StatementStatus) -> None:
        if self.status is not StatementStatus.PENDING:
            raise InvalidTransitionError("statement", self.status.value, target.value)
        self.status = target

    @property
    def ledger_period(self) -> Tuple[str, str]:
        return ledger_period(self.statement_date)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "fileName": self.file_name,
            "fileType": self.file_type.value,
            "uploadDate": self.statement_date.isoformat(),
            "status": self.status.value,
            "originalTransactions": [t.to_dict() for t in self.transactions],
            "companySummaries": [s.to_dict() for s in self.company_summaries],
            "totalAmount": amount_to_json(self.total_amount),
            "totalCommission": amount_to_json(self.total_commission),
        }
        if self.error_message:
            data["error"] = self.error_message
        return data


# ---------------------------------------------------------------------------
# Ledger and its feeders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerPosting:
    """One delta applied to a user's ledger."""

    user_id: int
    year: str
    month: str
    delta: Decimal
    source: LedgerSource
    reference_id: Optional[int] = None
    description: Optional[str] = None
    id: Optional[int] = None
    posted_at: Optional[datetime] = None


@dataclass
class Company:
    """The parts of a company record the engine reads."""

    id: int
    name: str
    company_type: CompanyType
    status: str = "pending_verification"
    slabs: SlabSchedule = field(default_factory=SlabSchedule)


@dataclass
class Advance:
    """Money given to or received from a counterparty."""

    id: int
    user_id: int
    title: str
    amount: Decimal
    advance_type: AdvanceType
    initial_type: AdvanceType
    status: AdvanceStatus
    counterparty_type: CounterpartyType
    counterparty_id: int
    given_date: date
    description: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Ledger effect: given reduces the net amount, received adds to it."""
        return signed_advance_amount(self.amount, self.advance_type)


def signed_advance_amount(amount: Decimal, advance_type: AdvanceType) -> Decimal:
    return -amount if advance_type is AdvanceType.GIVEN else amount


@dataclass
class Expense:
    """A company expense awaiting or holding approval."""

    id: int
    user_id: int
    title: str
    amount: Decimal
    category: str
    date: date
    company_id: int
    status: ExpenseStatus = ExpenseStatus.PENDING
    description: Optional[str] = None
    approved_by: Optional[int] = None
