"""
Statement Ingestion Pipeline.

Turns an upload payload into a processed StatementRecord:

1. Structural checks (batch shape and size, file type, file name, statement date)
2. Duplicate check of the whole batch against the user's processed history
3. Validation of every transaction
4. Grouping by companyName, in first-seen order
5. Company lookup by name
6. Commission resolution against the company schedule
7. Per-company summaries and statement totals
8. Ledger posting of the total commission to the statement's month
9. Statement persisted as processed, with its duplicate fingerprints

Steps 4-9 run in one storage transaction. A failure there rolls everything
back and leaves a single failed statement row carrying the error; failures in
steps 1-3 persist nothing.
"""

import logging
import time
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
import sqlite3

from brokerledger.commission.resolver import CommissionStrategy, resolve
from brokerledger.core.database import StorageError, atomic
from brokerledger.core.exceptions import (
    BrokerLedgerError,
    DatabaseError,
    DeadlineExceededError,
    DuplicateBatchError,
)
from brokerledger.core.models import (
    CompanySummary,
    LedgerSource,
    StatementRecord,
    StatementStatus,
    Transaction,
)
from brokerledger.core.security import ensure_user_exists, require_user_context
from brokerledger.ledger.aggregator import LedgerAggregator
from brokerledger.repositories import CompanyRepository
from brokerledger.statements.duplicates import FingerprintIndex
from brokerledger.statements.store import StatementStore
from brokerledger.statements.validators import validate_statement_header, validate_transactions

logger = logging.getLogger(__name__)


def group_by_company(transactions: Sequence[Transaction]) -> "OrderedDict[str, List[Transaction]]":
    """Group transactions by exact companyName, keeping first-seen order."""
    groups: "OrderedDict[str, List[Transaction]]" = OrderedDict()
    for txn in transactions:
        groups.setdefault(txn.company_name, []).append(txn)
    return groups


class StatementIngestionPipeline:
    """
    Usage:
        pipeline = StatementIngestionPipeline(conn, CommissionStrategy.BRACKET)
        record = pipeline.ingest(user_id=1, payload={
            "fileName": "march.csv", "fileType": "csv", "statementDate": "2024-03-31",
            "transactions": [...],
        })
        record.status          # StatementStatus.PROCESSED
        record.total_commission
    """

    def __init__(
        self,
        db_connection: sqlite3.Connection,
        strategy: CommissionStrategy,
        max_batch_size: int = 5000,
        deadline_seconds: float = 30.0,
        file_types: Sequence[str] = ("csv", "xml"),
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ):
        if not isinstance(strategy, CommissionStrategy):
            strategy = CommissionStrategy.from_name(strategy)
        self.conn = db_connection
        self.strategy = strategy
        self.max_batch_size = max_batch_size
        self.deadline_seconds = deadline_seconds
        self.file_types = tuple(file_types)
        self.clock = clock
        self.today = today

        self.companies = CompanyRepository(db_connection)
        self.ledger = LedgerAggregator(db_connection)
        self.fingerprints = FingerprintIndex(db_connection)
        self.store = StatementStore(db_connection)

    @classmethod
    def from_settings(cls, db_connection: sqlite3.Connection, settings) -> "StatementIngestionPipeline":
        return cls(
            db_connection,
            CommissionStrategy.from_name(settings.commission_strategy),
            max_batch_size=settings.statements.max_batch_size,
            deadline_seconds=settings.statements.processing_deadline_seconds,
            file_types=settings.statements.file_types,
        )

    def _check_deadline(self, started: float, stage: str) -> None:
        if self.clock() - started > self.deadline_seconds:
            raise DeadlineExceededError(self.deadline_seconds, stage)

    @require_user_context
    def ingest(self, user_id: int, payload: Dict[str, Any]) -> StatementRecord:
        """
        Process one upload.

        Raises:
            ValidationError: Structural or per-transaction problem (nothing stored)
            DuplicateBatchError: A transaction was already processed (nothing stored)
            CompanyNotFoundError / NoApplicableSlabError / LedgerError /
            DeadlineExceededError: Recorded as a failed statement, then re-raised
        """
        started = self.clock()
        today = self.today()

        header = validate_statement_header(
            payload, today=today, max_batch_size=self.max_batch_size, file_types=self.file_types
        )
        ensure_user_exists(self.conn, user_id)

        self._reject_duplicates(user_id, header.file_name, header.raw_transactions)

        transactions = validate_transactions(header.raw_transactions, today)
        self._check_deadline(started, "validation")

        record = StatementRecord(
            user_id=user_id,
            file_name=header.file_name,
            file_type=header.file_type,
            statement_date=header.statement_date,
            transactions=transactions,
        )

        try:
            with atomic(self.conn):
                # A concurrent upload of the same batch may have committed since the first check
                self._reject_duplicates(user_id, record.file_name, transactions)
                self.store.insert(record)
                self._summarize(record, started)

                year, month = record.ledger_period
                self.ledger.post(
                    user_id=user_id,
                    year=year,
                    month=month,
                    delta=record.total_commission,
                    source=LedgerSource.STATEMENT,
                    reference_id=record.id,
                    description=f"Commission on {record.file_name}",
                )

                record.mark_processed()
                self.store.save_processed(record)
                self.fingerprints.record(user_id, record.id, transactions)
                self._check_deadline(started, "persistence")
        except DuplicateBatchError:
            raise
        except BrokerLedgerError as e:
            self._record_failure(record, e.message)
            raise
        except StorageError as e:
            logger.exception(f"Storage failure while processing {record.file_name}")
            self._record_failure(record, str(e))
            raise DatabaseError(f"Failed to store statement: {e}") from e

        logger.info(
            f"Processed statement {record.id} ({record.file_name}) for user {user_id}: "
            f"{len(transactions)} transactions, {len(record.company_summaries)} companies, "
            f"commission {record.total_commission}"
        )
        return record

    def _reject_duplicates(self, user_id: int, file_name: str, transactions: Sequence) -> None:
        duplicates = self.fingerprints.find_duplicates(user_id, transactions)
        if duplicates:
            logger.warning(
                f"Rejected statement {file_name} for user {user_id}: "
                f"{len(duplicates)} duplicate transactions"
            )
            raise DuplicateBatchError([transactions[i] for i in duplicates])

    def _summarize(self, record: StatementRecord, started: float) -> None:
        for company_name, txns in group_by_company(record.transactions).items():
            self._check_deadline(started, "commission resolution")
            company = self.companies.require_by_name(company_name)
            total = sum((t.credit_amount for t in txns), Decimal("0"))
            result = resolve(total, company.slabs, self.strategy, company=company_name)
            record.add_summary(CompanySummary(
                company_id=company.id,
                company_name=company.name,
                total_amount=total,
                commission=result.commission,
                applied_slab=result.applied_slab,
            ))

    def _record_failure(self, record: StatementRecord, message: str) -> None:
        """Store a failed statement with its original transactions and no summaries."""
        failed = StatementRecord(
            user_id=record.user_id,
            file_name=record.file_name,
            file_type=record.file_type,
            statement_date=record.statement_date,
            transactions=record.transactions,
        )
        failed.mark_failed(message)
        with atomic(self.conn):
            self.store.insert(failed)
        logger.warning(f"Statement {failed.id} ({failed.file_name}) failed: {message}")

        # The rolled-back work is gone; mirror what was stored
        record.id = failed.id
        record.company_summaries = []
        record.total_amount = Decimal("0")
        record.total_commission = Decimal("0")
        record.status = StatementStatus.FAILED
        record.error_message = message
