"""
Commission resolution against a validated slab schedule.

Two named strategies are available and the caller must pick one:

- BRACKET: the single slab with total >= min_amount and
  (max_amount == 0 or total < max_amount) applies to the whole amount.
  Statement ingestion uses this one.
- PROGRESSIVE: each slab charges its own rate on the part of the amount that
  falls inside its range, and the parts are summed.

Note the bracket upper bound is exclusive while schedules are contiguous on
max_amount + 1, so an amount exactly equal to a bounded max_amount (99999 in
[0-99999, 100000-0]) matches no slab and raises NoApplicableSlabError.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from brokerledger.core.exceptions import NoApplicableSlabError, ResolverError
from brokerledger.core.models import Slab, SlabSchedule

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class CommissionStrategy(Enum):
    BRACKET = "bracket"
    PROGRESSIVE = "progressive"

    @classmethod
    def from_name(cls, name: str) -> "CommissionStrategy":
        try:
            return cls(str(name).lower())
        except ValueError:
            raise ResolverError(f"Unknown commission strategy: {name!r}", code="UNKNOWN_STRATEGY")


@dataclass(frozen=True)
class SlabContribution:
    """Portion of an amount charged at one slab's rate."""
    slab: Slab
    taxable_amount: Decimal
    commission: Decimal


@dataclass(frozen=True)
class CommissionResult:
    """
    Outcome of a resolution.

    applied_slab is the slab the amount falls in (for PROGRESSIVE, the
    highest slab that charged anything).
    """
    commission: Decimal
    applied_slab: Slab
    strategy: CommissionStrategy
    breakdown: Tuple[SlabContribution, ...] = field(default_factory=tuple)


def find_bracket(total_amount: Decimal, schedule: SlabSchedule) -> Optional[Slab]:
    """Return the first slab whose range covers the amount, or None."""
    for slab in schedule:
        if total_amount >= slab.min_amount and (slab.is_unbounded or total_amount < slab.max_amount):
            return slab
    return None


def _resolve_bracket(total_amount: Decimal, schedule: SlabSchedule, company: Optional[str]) -> CommissionResult:
    slab = find_bracket(total_amount, schedule)
    if slab is None:
        raise NoApplicableSlabError(total_amount, company)

    commission = total_amount * slab.commission_rate / HUNDRED
    return CommissionResult(
        commission=commission,
        applied_slab=slab,
        strategy=CommissionStrategy.BRACKET,
        breakdown=(SlabContribution(slab, total_amount, commission),),
    )


def _resolve_progressive(total_amount: Decimal, schedule: SlabSchedule, company: Optional[str]) -> CommissionResult:
    if schedule.is_empty:
        raise NoApplicableSlabError(total_amount, company)

    top = schedule.slabs[-1]
    if not top.is_unbounded and total_amount > top.max_amount:
        raise NoApplicableSlabError(total_amount, company)

    contributions: List[SlabContribution] = []
    for slab in schedule:
        if total_amount < slab.min_amount:
            break
        # Width of a bounded slab is inclusive of both ends
        if slab.is_unbounded:
            taxable = total_amount - slab.min_amount
        else:
            taxable = min(total_amount, Decimal(slab.max_amount + 1)) - slab.min_amount
        if taxable <= 0:
            continue
        contributions.append(
            SlabContribution(slab, taxable, taxable * slab.commission_rate / HUNDRED)
        )

    if not contributions:
        raise NoApplicableSlabError(total_amount, company)

    return CommissionResult(
        commission=sum((c.commission for c in contributions), Decimal("0")),
        applied_slab=contributions[-1].slab,
        strategy=CommissionStrategy.PROGRESSIVE,
        breakdown=tuple(contributions),
    )


def resolve(
    total_amount: Decimal,
    schedule: SlabSchedule,
    strategy: CommissionStrategy,
    company: Optional[str] = None,
) -> CommissionResult:
    """
    Compute the commission owed on total_amount.

    Args:
        total_amount: Non-negative amount to charge
        schedule: Schedule returned by validate_schedule()
        strategy: CommissionStrategy (or its name); there is no default
        company: Company name, only used in error messages

    Raises:
        NoApplicableSlabError: No slab covers the amount, or the schedule is empty
        ResolverError: Unknown strategy or negative amount
    """
    if not isinstance(strategy, CommissionStrategy):
        strategy = CommissionStrategy.from_name(strategy)

    total_amount = Decimal(total_amount)
    if total_amount < 0:
        raise ResolverError(f"Cannot resolve commission on a negative amount: {total_amount}")

    if strategy is CommissionStrategy.BRACKET:
        result = _resolve_bracket(total_amount, schedule, company)
    else:
        result = _resolve_progressive(total_amount, schedule, company)

    logger.debug(
        f"Resolved {strategy.value} commission {result.commission} on {total_amount}"
        f"{' for ' + company if company else ''}"
    )
    return result
