"""
Statement service - the outward face of statement ingestion.

Maps pipeline outcomes onto a transport-neutral result that an HTTP handler or
the CLI can return as-is: the processed record on success, {"message": ...}
with the matching status code on failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import sqlite3

from brokerledger.core.exceptions import BrokerLedgerError
from brokerledger.core.models import StatementRecord, StatementStatus
from brokerledger.core.security import require_user_context
from brokerledger.statements.pipeline import StatementIngestionPipeline
from brokerledger.statements.store import StatementStore

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    ok: bool
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    record: Optional[StatementRecord] = None


class StatementService:
    """
    Usage:
        service = StatementService(conn, StatementIngestionPipeline(conn, CommissionStrategy.BRACKET))
        result = service.upload(user_id, payload)
        if not result.ok:
            print(result.status_code, result.body["message"])
    """

    def __init__(self, db_connection: sqlite3.Connection, pipeline: StatementIngestionPipeline):
        self.conn = db_connection
        self.pipeline = pipeline
        self.store = StatementStore(db_connection)

    def upload(self, user_id: int, payload: Dict[str, Any]) -> UploadResult:
        try:
            record = self.pipeline.ingest(user_id=user_id, payload=payload)
        except BrokerLedgerError as e:
            logger.warning(f"Statement upload rejected ({e.code}): {e.message}")
            return UploadResult(ok=False, status_code=e.status_code, body={"message": e.message})

        return UploadResult(ok=True, status_code=201, body=record.to_dict(), record=record)

    @require_user_context
    def list_statements(self, user_id: int, status: Optional[StatementStatus] = None) -> List[StatementRecord]:
        """Latest statement date first."""
        return self.store.list(user_id, status)

    @require_user_context
    def get_statement(self, user_id: int, statement_id: int) -> StatementRecord:
        """Raises StatementNotFoundError unless the statement belongs to the user."""
        return self.store.load(statement_id, user_id)
