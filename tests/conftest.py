"""
Shared pytest fixtures for brokerledger tests.

Provides database connections, users, companies with slab schedules, and a
statement payload builder.
"""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from brokerledger.commission.resolver import CommissionStrategy
from brokerledger.core.database import DatabaseManager
from brokerledger.core.security import UserContext
from brokerledger.repositories import BrokerRepository, CompanyRepository, UserRepository
from brokerledger.statements.pipeline import StatementIngestionPipeline


# Test password for encrypted database
TEST_DB_PASSWORD = "test_password_123"

# Two-tier schedule used across the suite: 2% below 100000, 3% from 100000 up
ACME_SLABS = [
    {"minAmount": 0, "maxAmount": 99999, "commissionRate": 2},
    {"minAmount": 100000, "maxAmount": 0, "commissionRate": 3},
]


@pytest.fixture
def db_manager():
    """Provide a fresh DatabaseManager instance for each test."""
    # Reset singleton to ensure clean state
    DatabaseManager.reset_instance()
    manager = DatabaseManager()
    yield manager
    # Cleanup
    manager.close()
    DatabaseManager.reset_instance()
    UserContext.clear()


@pytest.fixture
def db_connection(db_manager):
    """Provide an initialized in-memory database connection."""
    conn = db_manager.init(":memory:", TEST_DB_PASSWORD)
    yield conn
    # Connection is closed by db_manager fixture


@pytest.fixture
def sample_user(db_connection):
    """Create a sample user in the database."""
    user_id = UserRepository(db_connection).create("Test User", "test@example.com")
    return {"id": user_id, "name": "Test User", "email": "test@example.com"}


@pytest.fixture
def other_user(db_connection):
    """A second user, for isolation checks."""
    user_id = UserRepository(db_connection).create("Other User", "other@example.com")
    return {"id": user_id, "name": "Other User", "email": "other@example.com"}


@pytest.fixture
def acme(db_connection, sample_user):
    """Company with the two-tier schedule."""
    return CompanyRepository(db_connection).create(
        "Acme Corp", "client", slabs=ACME_SLABS, created_by=sample_user["id"]
    )


@pytest.fixture
def globex(db_connection, sample_user):
    """Company with a flat 1.5% schedule."""
    return CompanyRepository(db_connection).create(
        "Globex", "provider",
        slabs=[{"minAmount": 0, "maxAmount": 0, "commissionRate": "1.5"}],
        created_by=sample_user["id"],
    )


@pytest.fixture
def broker(db_connection):
    broker_id = BrokerRepository(db_connection).create("Ravi Brokers")
    return {"id": broker_id, "name": "Ravi Brokers"}


@pytest.fixture
def pipeline(db_connection):
    """Bracket-strategy ingestion pipeline on the test database."""
    return StatementIngestionPipeline(db_connection, CommissionStrategy.BRACKET)


def make_transaction(date="15-03-2024", company="Acme Corp", amount=1000,
                     account="001122", bank="HDFC"):
    return {
        "date": date,
        "companyName": company,
        "bankName": bank,
        "accountNo": account,
        "creditAmount": amount,
    }


def make_payload(transactions, file_name="march.csv", file_type="csv", statement_date="2024-03-31"):
    return {
        "fileName": file_name,
        "fileType": file_type,
        "statementDate": statement_date,
        "transactions": transactions,
    }


@pytest.fixture
def payload_factory():
    """Build upload payloads: payload_factory([make_transaction(...), ...])."""
    return make_payload


@pytest.fixture
def txn_factory():
    return make_transaction
