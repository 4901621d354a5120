"""
Statements module - ingestion of commission statements and bank reconciliation.

Provides:
- StatementIngestionPipeline: validate, de-duplicate, resolve commission, post
- StatementService: upload result mapping and statement queries
- FingerprintIndex / is_duplicate: duplicate detection against history
- BankStatementReconciler: file-based CSV/XML bank reconciliation
"""

from brokerledger.statements.validators import (
    StatementHeader,
    validate_transaction,
    validate_transactions,
    validate_statement_header,
    parse_statement_date,
)
from brokerledger.statements.duplicates import FingerprintIndex, is_duplicate, transaction_fingerprint
from brokerledger.statements.store import StatementStore
from brokerledger.statements.pipeline import StatementIngestionPipeline, group_by_company
from brokerledger.statements.service import StatementService, UploadResult
from brokerledger.statements.bank_statement import BankStatementReconciler, ReconciliationResult

__all__ = [
    "StatementHeader",
    "validate_transaction",
    "validate_transactions",
    "validate_statement_header",
    "parse_statement_date",
    "FingerprintIndex",
    "is_duplicate",
    "transaction_fingerprint",
    "StatementStore",
    "StatementIngestionPipeline",
    "group_by_company",
    "StatementService",
    "UploadResult",
    "BankStatementReconciler",
    "ReconciliationResult",
]
