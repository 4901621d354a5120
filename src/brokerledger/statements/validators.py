"""
Statement validators - structural and business checks on upload payloads.

Provides:
- validate_statement_header: fileName / fileType / statementDate / batch shape
- validate_transaction: one raw transaction, in a fixed order of checks
- validate_transactions: every record of a batch, before any computation

Usage:
    from brokerledger.statements.validators import validate_transaction

    txn = validate_transaction({
        "date": "15-03-2024", "companyName": "Acme", "bankName": "HDFC",
        "accountNo": "001", "creditAmount": 1500,
    })
    txn.credit_amount   # Decimal('1500')
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from brokerledger.core.exceptions import (
    FutureDateError,
    InvalidAmountError,
    InvalidDateError,
    MissingFieldsError,
    ValidationError,
)
from brokerledger.core.models import FileType, TRANSACTION_DATE_FORMAT, Transaction, parse_amount

logger = logging.getLogger(__name__)

REQUIRED_TRANSACTION_FIELDS = ("date", "companyName", "bankName", "accountNo", "creditAmount")


@dataclass
class StatementHeader:
    """Validated top-level fields of an upload."""
    file_name: str
    file_type: FileType
    statement_date: date
    raw_transactions: List[Dict[str, Any]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_transaction(payload: Dict[str, Any], today: Optional[date] = None) -> Transaction:
    """
    Validate one raw transaction and return it as a Transaction.

    Checks run in order: required fields, positive amount, DD-MM-YYYY date,
    date not after today. The first failure is raised.

    Raises:
        MissingFieldsError, InvalidAmountError, InvalidDateError, FutureDateError
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"Transaction must be an object, got {type(payload).__name__}")

    missing = [name for name in REQUIRED_TRANSACTION_FIELDS if _is_blank(payload.get(name))]
    if missing:
        raise MissingFieldsError(missing)

    amount = parse_amount(payload["creditAmount"])
    if amount is None or amount <= 0:
        raise InvalidAmountError(payload["creditAmount"])

    raw_date = str(payload["date"]).strip()
    try:
        txn_date = datetime.strptime(raw_date, TRANSACTION_DATE_FORMAT).date()
    except ValueError:
        raise InvalidDateError(raw_date, message="Invalid date format")

    today = today or date.today()
    if txn_date > today:
        raise FutureDateError(raw_date, message="Transaction date cannot be in the future")

    return Transaction.from_payload(payload)


def validate_transactions(payloads: Iterable[Dict[str, Any]], today: Optional[date] = None) -> List[Transaction]:
    """Validate every record; one invalid record fails the whole batch."""
    return [validate_transaction(p, today) for p in payloads]


def parse_statement_date(value: Any, today: Optional[date] = None) -> date:
    """
    Parse an ISO statement date (date or datetime text, or a date object).

    Raises:
        InvalidDateError: Not parseable
        FutureDateError: After today
    """
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text).date()
        except ValueError:
            raise InvalidDateError(text, field="statementDate", message="Invalid statement date format")

    today = today or date.today()
    if parsed > today:
        raise FutureDateError(value, field="statementDate", message="Statement date cannot be in the future")
    return parsed


def validate_statement_header(
    payload: Dict[str, Any],
    today: Optional[date] = None,
    max_batch_size: Optional[int] = None,
    file_types: Sequence[str] = ("csv", "xml"),
) -> StatementHeader:
    """
    Structural checks on an upload payload.

    Raises:
        ValidationError: Missing or empty transactions, batch too large,
            bad file type, missing file name or statement date
        InvalidDateError / FutureDateError: Bad statement date
    """
    if not isinstance(payload, dict):
        raise ValidationError("Upload payload must be an object")

    transactions = payload.get("transactions")
    if not isinstance(transactions, list) or not transactions:
        raise ValidationError("No transactions provided", field="transactions")

    if max_batch_size is not None and len(transactions) > max_batch_size:
        raise ValidationError(
            f"Batch of {len(transactions)} transactions exceeds the limit of {max_batch_size}",
            field="transactions",
            code="BATCH_TOO_LARGE",
        )

    # Duplicate detection reads raw items before per-transaction validation
    for index, item in enumerate(transactions):
        if not isinstance(item, dict):
            raise ValidationError(
                f"Transaction {index + 1} must be an object, got {type(item).__name__}",
                field="transactions",
            )

    file_type = payload.get("fileType")
    if file_type not in file_types or file_type not in FileType._value2member_map_:
        raise ValidationError("Invalid file type. Must be CSV or XML", field="fileType")

    file_name = payload.get("fileName")
    if _is_blank(file_name):
        raise ValidationError("File name is required", field="fileName")

    statement_date = payload.get("statementDate")
    if _is_blank(statement_date):
        raise ValidationError("Statement date is required", field="statementDate")

    return StatementHeader(
        file_name=str(file_name),
        file_type=FileType(file_type),
        statement_date=parse_statement_date(statement_date, today),
        raw_transactions=transactions,
    )
