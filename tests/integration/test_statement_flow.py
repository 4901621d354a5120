"""
End-to-end flow: companies and slabs, statement uploads, advances and
expenses all feeding one user's ledger.
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import ACME_SLABS, make_payload, make_transaction
from brokerledger.core.models import LedgerSource, StatementStatus
from brokerledger.ledger.advances import AdvanceService
from brokerledger.ledger.aggregator import LedgerAggregator
from brokerledger.ledger.expenses import ExpenseService
from brokerledger.repositories import CompanyRepository
from brokerledger.statements.service import StatementService


@pytest.mark.integration
class TestMonthEndFlow:
    """A broker's March: two statements, an advance and an approved expense."""

    def test_ledger_reflects_every_source(self, db_connection, sample_user, acme, globex, broker, pipeline):
        uid = sample_user["id"]
        service = StatementService(db_connection, pipeline)
        ledger = LedgerAggregator(db_connection)

        first = service.upload(uid, make_payload([
            make_transaction(company="Acme Corp", amount=60000, date="05-03-2024"),
            make_transaction(company="Acme Corp", amount=40000, date="12-03-2024"),
            make_transaction(company="Globex", amount=10000, date="12-03-2024"),
        ]))
        assert first.status_code == 201
        # Acme 100000 at 3%, Globex 10000 at 1.5%
        assert first.record.total_commission == Decimal("3150")

        rejected = service.upload(uid, make_payload(
            [make_transaction(company="Acme Corp", amount=60000, date="05-03-2024")],
            file_name="resend.csv",
        ))
        assert rejected.status_code == 409

        advance = AdvanceService(db_connection).create(
            user_id=uid, title="Float", amount=1000, advance_type="given",
            counterparty_type="broker", counterparty_id=broker["id"], given_date=date(2024, 3, 20),
        )
        expenses = ExpenseService(db_connection)
        expense = expenses.create(
            user_id=uid, title="Courier", amount=150, category="ops",
            company_id=acme.id, expense_date=date(2024, 3, 25),
        )
        expenses.update_status(expense.id, "approved", user_id=uid)

        assert ledger.get_balance(user_id=uid, year="2024", month="march") == Decimal("2000")

        sources = [p.source for p in ledger.get_postings(user_id=uid, year="2024", month="march")]
        assert sources == [LedgerSource.STATEMENT, LedgerSource.ADVANCE, LedgerSource.EXPENSE]
        assert advance.id is not None
        assert ledger.find_discrepancies(user_id=uid) == {}

    def test_schedule_change_applies_to_later_uploads_only(self, db_connection, sample_user, acme, pipeline):
        uid = sample_user["id"]
        service = StatementService(db_connection, pipeline)

        before = service.upload(uid, make_payload([make_transaction(amount=1000)]))
        CompanyRepository(db_connection).set_slabs(
            acme.id, [{"minAmount": 0, "maxAmount": 0, "commissionRate": 10}], changed_by=uid
        )
        after = service.upload(uid, make_payload([make_transaction(amount=2000)], file_name="b.csv"))

        stored = service.get_statement(user_id=uid, statement_id=before.record.id)
        assert stored.total_commission == Decimal("20")
        assert stored.company_summaries[0].applied_slab.commission_rate == Decimal("2")
        assert after.record.total_commission == Decimal("200")

    def test_failed_then_fixed_upload(self, db_connection, sample_user, pipeline):
        uid = sample_user["id"]
        service = StatementService(db_connection, pipeline)
        payload = make_payload([make_transaction(company="Late Co", amount=5000)])

        assert service.upload(uid, payload).status_code == 404
        CompanyRepository(db_connection).create("Late Co", slabs=ACME_SLABS)
        assert service.upload(uid, payload).status_code == 201

        statuses = [s.status for s in service.list_statements(user_id=uid)]
        assert statuses == [StatementStatus.PROCESSED, StatementStatus.FAILED]
        assert LedgerAggregator(db_connection).get_balance(
            user_id=uid, year="2024", month="march"
        ) == Decimal("100")
