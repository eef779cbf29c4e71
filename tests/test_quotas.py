"""
Tests for quota policy calculations.
"""

from decimal import Decimal

import pytest

from plan_usage.core.quotas import (
    QuotaState,
    can_use,
    crossed_threshold,
    grace_amount,
    is_exceeded,
    quota_state,
    remaining,
    to_decimal,
    usage_percentage,
)

D = Decimal


class TestAmounts:
    """Test amount conversion."""

    def test_float_goes_through_str(self):
        assert to_decimal(0.1) == D("0.1")

    def test_int_and_str(self):
        assert to_decimal(5) == D("5")
        assert to_decimal("2.5") == D("2.5")

    @pytest.mark.parametrize("bad", ["abc", float("nan"), float("inf"), True, None])
    def test_rejects_non_finite(self, bad):
        with pytest.raises(ValueError):
            to_decimal(bad)


class TestAdmission:
    """Test can_use and is_exceeded."""

    @pytest.mark.parametrize("used,amount,expected", [
        ("0", "1000", True),
        ("850", "150", True),
        ("850", "151", False),
        ("1000", "0", True),
        ("1000", "1", False),
    ])
    def test_hard_limit(self, used, amount, expected):
        assert can_use(D("1000"), D(used), D(amount)) is expected

    def test_unlimited_admits_anything(self):
        assert can_use(None, D("1e9"), D("1e9"))
        assert remaining(None, D("5")) is None

    def test_grace_ignored_without_soft_limit(self):
        assert grace_amount(D("100"), D("10"), False) == 0
        assert not can_use(D("100"), D("100"), D("5"), D("10"), False)

    def test_grace_with_soft_limit(self):
        assert grace_amount(D("100"), D("10"), True) == D("10")
        assert can_use(D("100"), D("100"), D("10"), D("10"), True)
        assert not can_use(D("100"), D("100"), D("11"), D("10"), True)

    def test_is_exceeded(self):
        assert not is_exceeded(D("100"), D("100"))
        assert is_exceeded(D("100"), D("100.5"))
        assert not is_exceeded(D("100"), D("105"), D("10"), True)
        assert is_exceeded(D("100"), D("111"), D("10"), True)
        assert not is_exceeded(None, D("1e9"))


class TestDerivedValues:
    def test_remaining_never_negative(self):
        assert remaining(D("100"), D("150")) == 0
        assert remaining(D("100"), D("40")) == D("60")

    def test_percentage(self):
        assert usage_percentage(D("1000"), D("850")) == 85.0
        assert usage_percentage(D("3"), D("1")) == 33.33
        assert usage_percentage(D("100"), D("250")) == 100.0
        assert usage_percentage(D("0"), D("1")) is None
        assert usage_percentage(None, D("1")) is None

    def test_states(self):
        assert quota_state(None, D("5")) is QuotaState.UNLIMITED
        assert quota_state(D("100"), D("100")) is QuotaState.WITHIN_LIMIT
        assert quota_state(D("100"), D("105"), D("10"), True) is QuotaState.WITHIN_GRACE
        assert quota_state(D("100"), D("105")) is QuotaState.EXCEEDED


class TestThresholdCrossing:
    """Test warning threshold detection."""

    def test_crossing_fires_once(self):
        thresholds = [80, 100]
        fired = []
        for used in range(0, 100):
            threshold = crossed_threshold(D("100"), D(used), D(used + 1), thresholds)
            if threshold is not None:
                fired.append(threshold)
        assert fired == [80, 100]

    def test_large_jump_is_detected(self):
        assert crossed_threshold(D("100"), D("70"), D("95"), [80, 100]) == 80

    def test_highest_crossed_threshold_wins(self):
        assert crossed_threshold(D("100"), D("10"), D("120"), [80, 90, 100]) == 100

    def test_no_crossing_while_above(self):
        assert crossed_threshold(D("100"), D("85"), D("90"), [80, 100]) is None

    def test_unlimited_never_warns(self):
        assert crossed_threshold(None, D("0"), D("100"), [80]) is None
