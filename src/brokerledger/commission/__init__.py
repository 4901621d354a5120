"""
Commission module - slab schedules and commission resolution.

Provides:
- validate_schedule: the one validator every slab writer goes through
- resolve: commission owed on an amount under a named strategy
"""

from brokerledger.commission.slabs import validate_schedule, coerce_slab, is_contiguous
from brokerledger.commission.resolver import (
    CommissionStrategy,
    CommissionResult,
    SlabContribution,
    find_bracket,
    resolve,
)

__all__ = [
    "validate_schedule",
    "coerce_slab",
    "is_contiguous",
    "CommissionStrategy",
    "CommissionResult",
    "SlabContribution",
    "find_bracket",
    "resolve",
]
