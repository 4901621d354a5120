"""
Commission slab schedule validation.

A schedule is a list of brackets that, sorted by min_amount, must satisfy
slabs[i].max_amount + 1 == slabs[i+1].min_amount for every adjacent pair.
Company schedules and user client/provider schedules all go through
validate_schedule(); no writer stores slabs without it.

Usage:
    from brokerledger.commission.slabs import validate_schedule

    schedule = validate_schedule([
        {"minAmount": 100000, "maxAmount": 0, "commissionRate": 3},
        {"minAmount": 0, "maxAmount": 99999, "commissionRate": 2},
    ])
    [s.min_amount for s in schedule]   # [0, 100000]
"""

import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping, Union

from brokerledger.core.exceptions import InvalidSlabError, NonContiguousSlabError
from brokerledger.core.models import Slab, SlabSchedule, parse_amount

logger = logging.getLogger(__name__)

MAX_COMMISSION_RATE = Decimal("100")

SlabInput = Union[Slab, Mapping[str, Any]]


def _pick(data: Mapping[str, Any], *keys: str):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _whole_amount(value: Any, name: str, index: int) -> int:
    amount = parse_amount(value)
    if amount is None or amount != amount.to_integral_value():
        raise InvalidSlabError(f"Slab {index}: {name} must be a whole number, got {value!r}", index)
    if amount < 0:
        raise InvalidSlabError(f"Slab {index}: {name} cannot be negative, got {value!r}", index)
    return int(amount)


def coerce_slab(raw: SlabInput, index: int = 0) -> Slab:
    """
    Build a Slab from a Slab or a mapping with camelCase or snake_case keys.

    The rate may be given as commissionRate, commission_rate or commission.

    Raises:
        InvalidSlabError: If a field is missing or out of range
    """
    if isinstance(raw, Slab):
        min_value, max_value, rate_value = raw.min_amount, raw.max_amount, raw.commission_rate
    elif isinstance(raw, Mapping):
        min_value = _pick(raw, "minAmount", "min_amount")
        max_value = _pick(raw, "maxAmount", "max_amount")
        rate_value = _pick(raw, "commissionRate", "commission_rate", "commission")
    else:
        raise InvalidSlabError(f"Slab {index}: expected a mapping, got {type(raw).__name__}", index)

    missing = [
        name for name, value in
        (("minAmount", min_value), ("maxAmount", max_value), ("commissionRate", rate_value))
        if value is None
    ]
    if missing:
        raise InvalidSlabError(f"Slab {index}: missing {', '.join(missing)}", index)

    min_amount = _whole_amount(min_value, "minAmount", index)
    max_amount = _whole_amount(max_value, "maxAmount", index)

    rate = parse_amount(rate_value)
    if rate is None or rate < 0 or rate > MAX_COMMISSION_RATE:
        raise InvalidSlabError(
            f"Slab {index}: commissionRate must be between 0 and 100, got {rate_value!r}", index
        )

    if max_amount != 0 and max_amount < min_amount:
        raise InvalidSlabError(
            f"Slab {index}: maxAmount {max_amount} is below minAmount {min_amount}", index
        )

    return Slab(min_amount=min_amount, max_amount=max_amount, commission_rate=rate)


def validate_schedule(slabs: Iterable[SlabInput]) -> SlabSchedule:
    """
    Validate a slab list and return it as a sorted SlabSchedule.

    An empty list is a valid (empty) schedule.

    Raises:
        InvalidSlabError: A slab has bad values, or an unbounded slab is not last
        NonContiguousSlabError: Two adjacent slabs leave a gap or overlap
    """
    coerced = [coerce_slab(raw, index) for index, raw in enumerate(slabs or [])]
    ordered = sorted(coerced, key=lambda s: s.min_amount)

    for position, (prev, nxt) in enumerate(zip(ordered, ordered[1:])):
        if prev.is_unbounded:
            raise InvalidSlabError(
                f"Only the last slab may be unbounded (maxAmount 0); "
                f"slab starting at {prev.min_amount} is followed by one starting at {nxt.min_amount}",
                position,
            )
        if prev.max_amount + 1 != nxt.min_amount:
            raise NonContiguousSlabError(prev.max_amount, nxt.min_amount)

    return SlabSchedule(slabs=tuple(ordered))


def is_contiguous(schedule: Iterable[Slab]) -> bool:
    """True when sorted slabs satisfy max_amount + 1 == next min_amount throughout."""
    ordered = sorted(schedule, key=lambda s: s.min_amount)
    return all(a.max_amount + 1 == b.min_amount for a, b in zip(ordered, ordered[1:]))
