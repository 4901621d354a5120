"""Tests for bank statement reconciliation."""

from decimal import Decimal

import pytest

from brokerledger.core.exceptions import NotFoundError, ValidationError
from brokerledger.core.models import StatementStatus
from brokerledger.repositories import BankRepository
from brokerledger.statements.bank_statement import BankStatementReconciler, normalize_account_number


@pytest.fixture
def hdfc(db_connection, sample_user):
    return BankRepository(db_connection).create("HDFC", "001122", user_id=sample_user["id"])


@pytest.fixture
def reconciler(db_connection):
    return BankStatementReconciler(db_connection)


CSV_CONTENT = """Date,Company Name,Bank Name,Account No,Amount,Type
15-03-2024,Acme Corp,HDFC,001122,"1,500.00",credit
16-03-2024,Globex,hdfc ,001122,250,credit
17-03-2024,Acme Corp,ICICI,001122,900,credit
18-03-2024,Acme Corp,HDFC,999999,100,credit
19-03-2024,Acme Corp,HDFC,001122,n/a,credit
"""

XML_CONTENT = """<?xml version="1.0"?>
<statement>
  <transactions>
    <transaction>
      <date>15-03-2024</date>
      <companyName>Acme Corp</companyName>
      <bankName>HDFC</bankName>
      <accountNo>001122</accountNo>
      <amount>1200</amount>
    </transaction>
    <transaction>
      <date>16-03-2024</date>
      <companyName>Acme Corp</companyName>
      <bankName>SBI</bankName>
      <accountNo>001122</accountNo>
      <amount>300</amount>
    </transaction>
  </transactions>
</statement>
"""


class TestReconcileCSV:

    def test_matches_account_and_bank(self, reconciler, hdfc, tmp_path):
        path = tmp_path / "hdfc_march.csv"
        path.write_text(CSV_CONTENT)

        result = reconciler.reconcile(hdfc, path)

        assert result.status is StatementStatus.PROCESSED
        assert [row["amount"] for row in result.matched] == ["1500", "250"]
        assert result.matched[0]["accountNo"] == "001122"
        assert result.skipped == 2
        assert result.total_amount == Decimal("1750")

    def test_result_is_stored(self, reconciler, hdfc, tmp_path):
        path = tmp_path / "hdfc.csv"
        path.write_text(CSV_CONTENT)

        result = reconciler.reconcile(hdfc, path)
        stored = reconciler.get(result.statement_id)

        assert stored["status"] == "processed"
        assert stored["file_name"] == "hdfc.csv"
        assert len(stored["processed_data"]) == 2

    def test_missing_columns_marks_failed(self, reconciler, hdfc, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("Date,Amount\n15-03-2024,100\n")

        result = reconciler.reconcile(hdfc, path)

        assert result.status is StatementStatus.FAILED
        assert "Missing required columns" in result.error
        assert reconciler.get(result.statement_id)["status"] == "failed"

    def test_missing_file_marks_failed(self, reconciler, hdfc, tmp_path):
        result = reconciler.reconcile(hdfc, tmp_path / "absent.csv")
        assert result.status is StatementStatus.FAILED


class TestReconcileXML:

    def test_leaf_records_are_read(self, reconciler, hdfc, tmp_path):
        path = tmp_path / "hdfc.xml"
        path.write_text(XML_CONTENT)

        result = reconciler.reconcile(hdfc, path)

        assert result.status is StatementStatus.PROCESSED
        assert len(result.matched) == 1
        assert result.matched[0]["amount"] == "1200"
        assert result.skipped == 1

    def test_malformed_xml_marks_failed(self, reconciler, hdfc, tmp_path):
        path = tmp_path / "broken.xml"
        path.write_text("<statement><transaction>")

        result = reconciler.reconcile(hdfc, path)
        assert result.status is StatementStatus.FAILED


class TestReconcileArguments:

    def test_unknown_bank(self, reconciler, tmp_path):
        with pytest.raises(NotFoundError):
            reconciler.reconcile(42, tmp_path / "x.csv")

    def test_unsupported_extension(self, reconciler, hdfc, tmp_path):
        with pytest.raises(ValidationError):
            reconciler.reconcile(hdfc, tmp_path / "statement.pdf")

    @pytest.mark.parametrize("value,expected", [
        ("001122", "001122"),
        (1234.0, "1234"),
        (" 55 ", "55"),
        (None, ""),
    ])
    def test_normalize_account_number(self, value, expected):
        assert normalize_account_number(value) == expected
