"""Concurrent ledger posts and uploads never lose an update."""

import threading
from decimal import Decimal

import pytest

from conftest import ACME_SLABS, make_payload, make_transaction
from brokerledger.commission.resolver import CommissionStrategy
from brokerledger.core.database import connect, release_connection_lock
from brokerledger.core.exceptions import DuplicateBatchError
from brokerledger.ledger.aggregator import LedgerAggregator
from brokerledger.repositories import CompanyRepository, UserRepository
from brokerledger.statements.pipeline import StatementIngestionPipeline

THREADS = 8
POSTS_PER_THREAD = 25


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / "concurrent.db")
    conn = connect(path)
    user_id = UserRepository(conn).create("Concurrent User")
    CompanyRepository(conn).create("Acme Corp", slabs=ACME_SLABS)
    release_connection_lock(conn)
    conn.close()
    return path, user_id


def run_threads(target, count=THREADS):
    errors = []

    def wrapper(n):
        try:
            target(n)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=wrapper, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


@pytest.mark.integration
class TestConcurrentPosts:

    def test_shared_connection(self, db_file):
        path, user_id = db_file
        conn = connect(path)
        ledger = LedgerAggregator(conn)

        def post(n):
            for _ in range(POSTS_PER_THREAD):
                ledger.post(user_id=user_id, year="2024", month="march", delta="0.01", source="manual")

        try:
            assert run_threads(post) == []
            expected = Decimal("0.01") * THREADS * POSTS_PER_THREAD
            assert ledger.get_balance(user_id=user_id, year="2024", month="march") == expected
            assert len(ledger.get_postings(user_id=user_id)) == THREADS * POSTS_PER_THREAD
        finally:
            release_connection_lock(conn)
            conn.close()

    def test_connection_per_thread(self, db_file):
        path, user_id = db_file

        def post(n):
            conn = connect(path)
            try:
                ledger = LedgerAggregator(conn)
                for _ in range(POSTS_PER_THREAD):
                    ledger.post(user_id=user_id, year="2024", month="april", delta=n, source="manual")
            finally:
                release_connection_lock(conn)
                conn.close()

        assert run_threads(post) == []

        conn = connect(path)
        try:
            expected = Decimal(sum(range(THREADS)) * POSTS_PER_THREAD)
            ledger = LedgerAggregator(conn)
            assert ledger.get_balance(user_id=user_id, year="2024", month="april") == expected
            assert ledger.find_discrepancies(user_id=user_id) == {}
        finally:
            release_connection_lock(conn)
            conn.close()


@pytest.mark.integration
class TestConcurrentUploads:

    def test_same_batch_is_processed_once(self, db_file):
        path, user_id = db_file
        conn = connect(path)
        pipeline = StatementIngestionPipeline(conn, CommissionStrategy.BRACKET)
        payload = make_payload([make_transaction(amount=1000)])
        outcomes = []

        def upload(n):
            try:
                pipeline.ingest(user_id=user_id, payload=payload)
                outcomes.append("processed")
            except DuplicateBatchError:
                outcomes.append("duplicate")

        try:
            assert run_threads(upload, count=4) == []
            assert sorted(outcomes) == ["duplicate"] * 3 + ["processed"]
            ledger = LedgerAggregator(conn)
            assert ledger.get_balance(user_id=user_id, year="2024", month="march") == Decimal("20")
        finally:
            release_connection_lock(conn)
            conn.close()
