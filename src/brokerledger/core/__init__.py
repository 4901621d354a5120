"""
Core module - Foundation components for brokerledger.

Provides:
- DatabaseManager / atomic: embedded SQLite (SQLCipher when available) store
- Settings: defaults + JSON file + environment configuration
- AuditLogger: audit trail reads and explicit entries
- Security: user context management and record ownership checks
- Core models: Slab, SlabSchedule, Transaction, StatementRecord, LedgerPosting, ...
"""

from brokerledger.core.database import DatabaseManager, atomic, connect, get_connection
from brokerledger.core.config import Settings
from brokerledger.core.audit import AuditAction, AuditLogger, AuditLogEntry
from brokerledger.core.security import (
    UserContext,
    require_user_context,
    ensure_user_exists,
    validate_user_owns_record,
)
from brokerledger.core.exceptions import (
    BrokerLedgerError,
    DatabaseError,
    UserContextError,
    ValidationError,
    MissingFieldsError,
    InvalidAmountError,
    InvalidDateError,
    FutureDateError,
    InvalidTransitionError,
    ConflictError,
    DuplicateBatchError,
    NotFoundError,
    CompanyNotFoundError,
    UserNotFoundError,
    StatementNotFoundError,
    SlabError,
    InvalidSlabError,
    NonContiguousSlabError,
    ResolverError,
    NoApplicableSlabError,
    LedgerError,
    DeadlineExceededError,
)
from brokerledger.core.models import (
    MONTHS,
    StatementStatus,
    FileType,
    CompanyType,
    SlabOwner,
    AdvanceType,
    AdvanceStatus,
    CounterpartyType,
    ExpenseStatus,
    LedgerSource,
    Slab,
    SlabSchedule,
    Transaction,
    CompanySummary,
    StatementRecord,
    LedgerPosting,
    Company,
    Advance,
    Expense,
)

__all__ = [
    # Database & Infrastructure
    "DatabaseManager",
    "atomic",
    "connect",
    "get_connection",
    "Settings",
    "AuditLogger",
    "AuditLogEntry",
    "AuditAction",
    # Security
    "UserContext",
    "require_user_context",
    "ensure_user_exists",
    "validate_user_owns_record",
    # Exceptions
    "BrokerLedgerError",
    "DatabaseError",
    "UserContextError",
    "ValidationError",
    "MissingFieldsError",
    "InvalidAmountError",
    "InvalidDateError",
    "FutureDateError",
    "InvalidTransitionError",
    "ConflictError",
    "DuplicateBatchError",
    "NotFoundError",
    "CompanyNotFoundError",
    "UserNotFoundError",
    "StatementNotFoundError",
    "SlabError",
    "InvalidSlabError",
    "NonContiguousSlabError",
    "ResolverError",
    "NoApplicableSlabError",
    "LedgerError",
    "DeadlineExceededError",
    # Models
    "MONTHS",
    "StatementStatus",
    "FileType",
    "CompanyType",
    "SlabOwner",
    "AdvanceType",
    "AdvanceStatus",
    "CounterpartyType",
    "ExpenseStatus",
    "LedgerSource",
    "Slab",
    "SlabSchedule",
    "Transaction",
    "CompanySummary",
    "StatementRecord",
    "LedgerPosting",
    "Company",
    "Advance",
    "Expense",
]
