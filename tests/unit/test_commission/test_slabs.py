"""Tests for slab schedule validation."""

from decimal import Decimal

import pytest

from brokerledger.commission.slabs import coerce_slab, is_contiguous, validate_schedule
from brokerledger.core.exceptions import InvalidSlabError, NonContiguousSlabError, SlabError
from brokerledger.core.models import Slab


class TestValidateSchedule:

    def test_accepts_contiguous_schedule_and_sorts(self):
        schedule = validate_schedule([
            {"minAmount": 100000, "maxAmount": 0, "commissionRate": 3},
            {"minAmount": 0, "maxAmount": 99999, "commissionRate": 2},
        ])

        assert [s.min_amount for s in schedule] == [0, 100000]
        assert schedule.slabs[0].commission_rate == Decimal("2")
        assert is_contiguous(schedule)

    def test_empty_schedule_is_valid(self):
        assert validate_schedule([]).is_empty

    def test_gap_rejected(self):
        with pytest.raises(NonContiguousSlabError) as exc_info:
            validate_schedule([
                {"minAmount": 0, "maxAmount": 1000, "commissionRate": 1},
                {"minAmount": 1002, "maxAmount": 0, "commissionRate": 2},
            ])

        error = exc_info.value
        assert error.previous_max == 1000
        assert error.next_min == 1002
        assert "1001" in error.message

    def test_overlap_rejected(self):
        with pytest.raises(NonContiguousSlabError):
            validate_schedule([
                {"minAmount": 0, "maxAmount": 1000, "commissionRate": 1},
                {"minAmount": 900, "maxAmount": 0, "commissionRate": 2},
            ])

    def test_boundary_shared_by_two_slabs_rejected(self):
        # max + 1 == next min, so an equal boundary is an overlap
        with pytest.raises(NonContiguousSlabError):
            validate_schedule([
                {"minAmount": 0, "maxAmount": 1000, "commissionRate": 1},
                {"minAmount": 1000, "maxAmount": 0, "commissionRate": 2},
            ])

    def test_unbounded_slab_must_be_last(self):
        with pytest.raises(InvalidSlabError):
            validate_schedule([
                {"minAmount": 0, "maxAmount": 0, "commissionRate": 1},
                {"minAmount": 1, "maxAmount": 500, "commissionRate": 2},
            ])

    def test_schedule_need_not_start_at_zero(self):
        schedule = validate_schedule([{"minAmount": 500, "maxAmount": 999, "commissionRate": 1}])
        assert schedule.slabs[0].min_amount == 500

    def test_snake_case_and_commission_alias(self):
        schedule = validate_schedule([
            {"min_amount": 0, "max_amount": 10, "commission": "1.25"},
            Slab(11, 0, Decimal("2")),
        ])
        assert schedule.slabs[0].commission_rate == Decimal("1.25")
        assert len(schedule) == 2

    def test_errors_share_status_code(self):
        with pytest.raises(SlabError) as exc_info:
            validate_schedule([{"minAmount": 0, "maxAmount": 5}])
        assert exc_info.value.status_code == 422


class TestCoerceSlab:

    @pytest.mark.parametrize("raw", [
        {"minAmount": -1, "maxAmount": 0, "commissionRate": 1},
        {"minAmount": 0, "maxAmount": 0, "commissionRate": 101},
        {"minAmount": 0, "maxAmount": 0, "commissionRate": -0.5},
        {"minAmount": 1.5, "maxAmount": 0, "commissionRate": 1},
        {"minAmount": "abc", "maxAmount": 0, "commissionRate": 1},
        {"minAmount": 500, "maxAmount": 100, "commissionRate": 1},
        "not a slab",
    ])
    def test_invalid_slabs(self, raw):
        with pytest.raises(InvalidSlabError):
            coerce_slab(raw)

    def test_missing_fields_named(self):
        with pytest.raises(InvalidSlabError) as exc_info:
            coerce_slab({"minAmount": 0}, index=3)
        assert "maxAmount" in exc_info.value.message
        assert "commissionRate" in exc_info.value.message
        assert exc_info.value.index == 3

    def test_numeric_strings_accepted(self):
        slab = coerce_slab({"minAmount": "100", "maxAmount": "200", "commissionRate": "2.5"})
        assert slab == Slab(100, 200, Decimal("2.5"))
