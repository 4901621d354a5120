"""
Custom exceptions for brokerledger.

All brokerledger exceptions inherit from BrokerLedgerError for easy catching.
Each family carries the HTTP-equivalent status used by the service layer.
"""

from typing import List, Optional


class BrokerLedgerError(Exception):
    """Base exception for all brokerledger errors."""

    status_code = 500

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code


class DatabaseError(BrokerLedgerError):
    """Database operation errors."""

    def __init__(self, message: str, code: str = "DB_ERROR"):
        super().__init__(message, code)


class UserContextError(BrokerLedgerError):
    """Raised when user context is missing or invalid."""

    status_code = 403

    def __init__(self, message: str = "User context required", code: str = "USER_CONTEXT_ERROR"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Validation (user-correctable input problems)
# ---------------------------------------------------------------------------

class ValidationError(BrokerLedgerError):
    """Bad input shape or values."""

    status_code = 400

    def __init__(self, message: str, field: str = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message, code)
        self.field = field


class MissingFieldsError(ValidationError):
    """One or more required transaction fields are absent."""

    def __init__(self, fields: List[str]):
        super().__init__(
            f"Missing required fields: {', '.join(fields)}",
            field=fields[0] if fields else None,
            code="MISSING_FIELDS",
        )
        self.fields = list(fields)


class InvalidAmountError(ValidationError):
    """Credit amount is not a positive number."""

    def __init__(self, value=None):
        super().__init__(
            "Credit amount must be a positive number",
            field="creditAmount",
            code="INVALID_AMOUNT",
        )
        self.value = value


class InvalidDateError(ValidationError):
    """A date could not be parsed."""

    def __init__(self, value, field: str = "date", message: str = None):
        super().__init__(message or f"Invalid date format: {value!r}", field=field, code="INVALID_DATE")
        self.value = value


class FutureDateError(ValidationError):
    """A date lies after today."""

    def __init__(self, value, field: str = "date", message: str = None):
        super().__init__(
            message or f"Transaction date cannot be in the future: {value}",
            field=field,
            code="FUTURE_DATE",
        )
        self.value = value


class InvalidTransitionError(ValidationError):
    """A status change that the entity's lifecycle does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            code="INVALID_TRANSITION",
        )
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

class ConflictError(BrokerLedgerError):
    """The request conflicts with existing data."""

    status_code = 409

    def __init__(self, message: str, code: str = "CONFLICT"):
        super().__init__(message, code)


class DuplicateBatchError(ConflictError):
    """At least one transaction of the batch was already uploaded."""

    def __init__(self, duplicates: Optional[list] = None):
        super().__init__(
            "Duplicate transactions detected. These transactions have already been uploaded.",
            code="DUPLICATE_BATCH",
        )
        self.duplicates = duplicates or []


# ---------------------------------------------------------------------------
# Missing references
# ---------------------------------------------------------------------------

class NotFoundError(BrokerLedgerError):
    """A referenced record does not exist."""

    status_code = 404

    def __init__(self, message: str, code: str = "NOT_FOUND"):
        super().__init__(message, code)


class CompanyNotFoundError(NotFoundError):
    """Raised when a company lookup fails."""

    def __init__(self, company: str):
        super().__init__(f"Company not found: {company}", code="COMPANY_NOT_FOUND")
        self.company = company


class UserNotFoundError(NotFoundError):
    """Raised when a user does not exist."""

    def __init__(self, user_id):
        super().__init__(f"User not found: {user_id}", code="USER_NOT_FOUND")
        self.user_id = user_id


class StatementNotFoundError(NotFoundError):
    """Raised when a statement does not exist for the user."""

    def __init__(self, statement_id):
        super().__init__(f"Statement not found: {statement_id}", code="STATEMENT_NOT_FOUND")
        self.statement_id = statement_id


# ---------------------------------------------------------------------------
# Commission schedules
# ---------------------------------------------------------------------------

class SlabError(BrokerLedgerError):
    """Commission schedule is malformed."""

    status_code = 422

    def __init__(self, message: str, code: str = "SLAB_ERROR"):
        super().__init__(message, code)


class InvalidSlabError(SlabError):
    """A single slab has out-of-range values."""

    def __init__(self, message: str, index: int = None):
        super().__init__(message, code="INVALID_SLAB")
        self.index = index


class NonContiguousSlabError(SlabError):
    """Adjacent slabs leave a gap or overlap."""

    def __init__(self, previous_max: int, next_min: int):
        super().__init__(
            "Slabs must be continuous without gaps or overlaps: "
            f"slab ending at {previous_max} is followed by slab starting at {next_min} "
            f"(expected {previous_max + 1})",
            code="NON_CONTIGUOUS_SLABS",
        )
        self.previous_max = previous_max
        self.next_min = next_min


class ResolverError(BrokerLedgerError):
    """Commission could not be resolved."""

    status_code = 422

    def __init__(self, message: str, code: str = "RESOLVER_ERROR"):
        super().__init__(message, code)


class NoApplicableSlabError(ResolverError):
    """No slab of the schedule covers the amount."""

    def __init__(self, amount, company: str = None):
        target = f" for company: {company}" if company else ""
        super().__init__(
            f"No applicable commission slab found{target} (amount {amount})",
            code="NO_APPLICABLE_SLAB",
        )
        self.amount = amount
        self.company = company


# ---------------------------------------------------------------------------
# Ledger / processing
# ---------------------------------------------------------------------------

class LedgerError(BrokerLedgerError):
    """Storage-level failure while posting to the ledger."""

    status_code = 500

    def __init__(self, message: str, code: str = "LEDGER_ERROR"):
        super().__init__(message, code)


class DeadlineExceededError(BrokerLedgerError):
    """Statement processing ran past its deadline."""

    status_code = 408

    def __init__(self, seconds: float, stage: str):
        super().__init__(
            f"Statement processing exceeded {seconds:g}s deadline during {stage}",
            code="DEADLINE_EXCEEDED",
        )
        self.seconds = seconds
        self.stage = stage
