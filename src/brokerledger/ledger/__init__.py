"""
Ledger module - per-user running totals and the flows that feed them.

Provides:
- LedgerAggregator: the single writer of ledger entries and postings
- AdvanceService: advances given / received, with toggle
- ExpenseService: expense approval transitions
"""

from brokerledger.ledger.aggregator import LedgerAggregator, normalize_period
from brokerledger.ledger.advances import AdvanceService, AdvanceNotFoundError
from brokerledger.ledger.expenses import ExpenseService, ExpenseNotFoundError

__all__ = [
    "LedgerAggregator",
    "normalize_period",
    "AdvanceService",
    "AdvanceNotFoundError",
    "ExpenseService",
    "ExpenseNotFoundError",
]
