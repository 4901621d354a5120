"""Tests for StatementIngestionPipeline."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import make_payload, make_transaction
from brokerledger.commission.resolver import CommissionStrategy
from brokerledger.core.exceptions import (
    CompanyNotFoundError,
    DeadlineExceededError,
    DuplicateBatchError,
    InvalidAmountError,
    LedgerError,
    NoApplicableSlabError,
    UserNotFoundError,
    ValidationError,
)
from brokerledger.core.models import LedgerSource, StatementStatus, Transaction
from brokerledger.ledger.aggregator import LedgerAggregator
from brokerledger.repositories import CompanyRepository
from brokerledger.statements.pipeline import StatementIngestionPipeline, group_by_company
from brokerledger.statements.store import StatementStore


class FakeClock:
    """Returns the given readings in order, then repeats the last one."""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self):
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


def statement_count(conn):
    return conn.execute("SELECT COUNT(*) FROM statements").fetchone()[0]


class TestProcessedStatement:

    def test_summaries_totals_and_ledger(self, db_connection, sample_user, acme, globex, pipeline):
        payload = make_payload([
            make_transaction(company="Acme Corp", amount=50000),
            make_transaction(company="Globex", amount=1000, account="9"),
            make_transaction(company="Acme Corp", amount=100000, account="2"),
        ])

        record = pipeline.ingest(user_id=sample_user["id"], payload=payload)

        assert record.status is StatementStatus.PROCESSED
        assert [s.company_name for s in record.company_summaries] == ["Acme Corp", "Globex"]
        acme_summary = record.company_summaries[0]
        assert acme_summary.total_amount == Decimal("150000")
        assert acme_summary.commission == Decimal("4500")
        assert acme_summary.applied_slab.min_amount == 100000
        assert record.company_summaries[1].commission == Decimal("15")
        assert record.total_amount == Decimal("151000")
        assert record.total_commission == Decimal("4515")

        ledger = LedgerAggregator(db_connection)
        assert ledger.get_balance(user_id=sample_user["id"], year="2024", month="march") == Decimal("4515")
        postings = ledger.get_postings(user_id=sample_user["id"])
        assert len(postings) == 1
        assert postings[0].source is LedgerSource.STATEMENT
        assert postings[0].reference_id == record.id

    def test_record_is_persisted(self, db_connection, sample_user, acme, pipeline):
        record = pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction()]))

        stored = StatementStore(db_connection).load(record.id, sample_user["id"])
        assert stored.status is StatementStatus.PROCESSED
        assert stored.total_commission == Decimal("20")
        assert stored.transactions == record.transactions
        assert stored.company_summaries == record.company_summaries

    def test_progressive_strategy(self, db_connection, sample_user, acme):
        pipeline = StatementIngestionPipeline(db_connection, "progressive")
        record = pipeline.ingest(
            user_id=sample_user["id"], payload=make_payload([make_transaction(amount=150000)])
        )
        assert record.total_commission == Decimal("3500")

    def test_ledger_accumulates_across_statements(self, db_connection, sample_user, acme, pipeline):
        pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction(amount=1000)]))
        pipeline.ingest(
            user_id=sample_user["id"],
            payload=make_payload([make_transaction(amount=2000)], file_name="march-2.csv"),
        )

        ledger = LedgerAggregator(db_connection)
        assert ledger.get_balance(user_id=sample_user["id"], year=2024, month="march") == Decimal("60")

    def test_duplicates_within_one_batch_are_allowed(self, sample_user, acme, pipeline):
        payload = make_payload([make_transaction(), make_transaction()])
        record = pipeline.ingest(user_id=sample_user["id"], payload=payload)
        assert record.total_amount == Decimal("2000")


class TestRejectedBatches:

    def test_second_upload_is_duplicate(self, db_connection, sample_user, acme, pipeline):
        payload = make_payload([make_transaction(amount=1500)])
        pipeline.ingest(user_id=sample_user["id"], payload=payload)

        again = make_payload([make_transaction(amount="1500.00", bank="ICICI")], file_name="again.csv")
        with pytest.raises(DuplicateBatchError) as exc_info:
            pipeline.ingest(user_id=sample_user["id"], payload=again)

        assert exc_info.value.status_code == 409
        assert len(exc_info.value.duplicates) == 1
        assert statement_count(db_connection) == 1
        ledger = LedgerAggregator(db_connection)
        assert ledger.get_balance(user_id=sample_user["id"], year="2024", month="march") == Decimal("30")

    def test_one_duplicate_rejects_whole_batch(self, db_connection, sample_user, acme, pipeline):
        pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction()]))

        mixed = make_payload([make_transaction(amount=999), make_transaction()])
        with pytest.raises(DuplicateBatchError):
            pipeline.ingest(user_id=sample_user["id"], payload=mixed)

        assert statement_count(db_connection) == 1

    def test_other_user_may_upload_same_transactions(self, sample_user, other_user, acme, pipeline):
        payload = make_payload([make_transaction()])
        pipeline.ingest(user_id=sample_user["id"], payload=payload)
        record = pipeline.ingest(user_id=other_user["id"], payload=payload)
        assert record.status is StatementStatus.PROCESSED

    def test_invalid_transaction_stores_nothing(self, db_connection, sample_user, acme, pipeline):
        payload = make_payload([make_transaction(), make_transaction(amount=-1)])

        with pytest.raises(InvalidAmountError):
            pipeline.ingest(user_id=sample_user["id"], payload=payload)

        assert statement_count(db_connection) == 0
        assert LedgerAggregator(db_connection).get_ledger(user_id=sample_user["id"]) == {}

    def test_batch_size_limit(self, db_connection, sample_user, acme):
        pipeline = StatementIngestionPipeline(db_connection, CommissionStrategy.BRACKET, max_batch_size=2)
        payload = make_payload([make_transaction(amount=n) for n in (1, 2, 3)])

        with pytest.raises(ValidationError) as exc_info:
            pipeline.ingest(user_id=sample_user["id"], payload=payload)
        assert exc_info.value.code == "BATCH_TOO_LARGE"

    def test_unknown_user(self, db_connection, acme, pipeline):
        with pytest.raises(UserNotFoundError):
            pipeline.ingest(user_id=999, payload=make_payload([make_transaction()]))
        assert statement_count(db_connection) == 0


class TestFailedStatements:

    def test_unknown_company_records_failed_statement(self, db_connection, sample_user, acme, pipeline):
        payload = make_payload([
            make_transaction(company="Acme Corp"),
            make_transaction(company="Unknown Co"),
        ])

        with pytest.raises(CompanyNotFoundError) as exc_info:
            pipeline.ingest(user_id=sample_user["id"], payload=payload)
        assert exc_info.value.message == "Company not found: Unknown Co"

        statements = StatementStore(db_connection).list(sample_user["id"])
        assert len(statements) == 1
        failed = statements[0]
        assert failed.status is StatementStatus.FAILED
        assert failed.error_message == "Company not found: Unknown Co"
        assert len(failed.transactions) == 2
        assert failed.company_summaries == []
        assert failed.total_commission == 0

        ledger = LedgerAggregator(db_connection)
        assert ledger.get_ledger(user_id=sample_user["id"]) == {}
        assert ledger.get_postings(user_id=sample_user["id"]) == []

    def test_failed_statement_does_not_block_retry(self, db_connection, sample_user, acme, pipeline):
        payload = make_payload([make_transaction(company="Initech")])
        with pytest.raises(CompanyNotFoundError):
            pipeline.ingest(user_id=sample_user["id"], payload=payload)

        CompanyRepository(db_connection).create(
            "Initech", slabs=[{"minAmount": 0, "maxAmount": 0, "commissionRate": 1}]
        )
        record = pipeline.ingest(user_id=sample_user["id"], payload=payload)

        assert record.status is StatementStatus.PROCESSED
        assert record.total_commission == Decimal("10")

    def test_no_applicable_slab(self, db_connection, sample_user, pipeline):
        CompanyRepository(db_connection).create(
            "Tiny", slabs=[{"minAmount": 5000, "maxAmount": 0, "commissionRate": 1}]
        )
        payload = make_payload([make_transaction(company="Tiny", amount=100)])

        with pytest.raises(NoApplicableSlabError):
            pipeline.ingest(user_id=sample_user["id"], payload=payload)

        failed = StatementStore(db_connection).list(sample_user["id"], StatementStatus.FAILED)
        assert len(failed) == 1
        assert "Tiny" in failed[0].error_message

    def test_company_without_slabs(self, db_connection, sample_user, pipeline):
        CompanyRepository(db_connection).create("Bare")
        with pytest.raises(NoApplicableSlabError):
            pipeline.ingest(
                user_id=sample_user["id"], payload=make_payload([make_transaction(company="Bare")])
            )

    def test_record_mirrors_failure(self, db_connection, sample_user, pipeline):
        payload = make_payload([make_transaction(company="Nobody")])
        with pytest.raises(CompanyNotFoundError):
            pipeline.ingest(user_id=sample_user["id"], payload=payload)

        # Only the failed row remains; the rolled-back pending row left no trace
        rows = db_connection.execute("SELECT status FROM statements").fetchall()
        assert [r["status"] for r in rows] == ["failed"]
        assert db_connection.execute("SELECT COUNT(*) FROM company_summaries").fetchone()[0] == 0
        assert db_connection.execute("SELECT COUNT(*) FROM transaction_fingerprints").fetchone()[0] == 0

    def test_ledger_failure_rolls_back_and_records_failure(self, db_connection, sample_user, acme, pipeline):
        db_connection.execute(
            """
            CREATE TRIGGER ledger_postings_unavailable BEFORE INSERT ON ledger_postings
            BEGIN
                SELECT RAISE(ABORT, 'ledger unavailable');
            END
            """
        )

        with pytest.raises(LedgerError) as exc_info:
            pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction()]))
        assert exc_info.value.status_code == 500

        statements = StatementStore(db_connection).list(sample_user["id"])
        assert [s.status for s in statements] == [StatementStatus.FAILED]
        assert statements[0].error_message == exc_info.value.message
        assert "ledger unavailable" in statements[0].error_message
        assert statements[0].company_summaries == []

        ledger = LedgerAggregator(db_connection)
        assert ledger.get_ledger(user_id=sample_user["id"]) == {}
        assert db_connection.execute("SELECT COUNT(*) FROM ledger_entries").fetchone()[0] == 0
        assert db_connection.execute("SELECT COUNT(*) FROM transaction_fingerprints").fetchone()[0] == 0


class TestDeadline:

    def test_deadline_before_processing_stores_nothing(self, db_connection, sample_user, acme):
        pipeline = StatementIngestionPipeline(
            db_connection, CommissionStrategy.BRACKET, deadline_seconds=5, clock=FakeClock(0, 10)
        )
        with pytest.raises(DeadlineExceededError) as exc_info:
            pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction()]))

        assert exc_info.value.stage == "validation"
        assert exc_info.value.status_code == 408
        assert statement_count(db_connection) == 0

    def test_deadline_during_resolution_records_failure(self, db_connection, sample_user, acme):
        pipeline = StatementIngestionPipeline(
            db_connection, CommissionStrategy.BRACKET, deadline_seconds=5, clock=FakeClock(0, 1, 10)
        )
        with pytest.raises(DeadlineExceededError):
            pipeline.ingest(user_id=sample_user["id"], payload=make_payload([make_transaction()]))

        statements = StatementStore(db_connection).list(sample_user["id"])
        assert [s.status for s in statements] == [StatementStatus.FAILED]
        assert LedgerAggregator(db_connection).get_ledger(user_id=sample_user["id"]) == {}


class TestConfiguredDates:

    def test_injected_today_rejects_future_transactions(self, db_connection, sample_user, acme):
        pipeline = StatementIngestionPipeline(
            db_connection, CommissionStrategy.BRACKET, today=lambda: date(2024, 3, 1)
        )
        payload = make_payload([make_transaction()], statement_date="2024-02-29")
        with pytest.raises(ValidationError, match="cannot be in the future"):
            pipeline.ingest(user_id=sample_user["id"], payload=payload)


class TestGroupByCompany:

    def test_first_seen_order(self):
        txns = [
            Transaction("01-01-2024", name, "HDFC", "1", Decimal("1"))
            for name in ("Zeta", "Alpha", "Zeta", "Mid", "Alpha")
        ]
        groups = group_by_company(txns)

        assert list(groups) == ["Zeta", "Alpha", "Mid"]
        assert len(groups["Zeta"]) == 2
