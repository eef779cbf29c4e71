"""
Quota policy calculations.

Pure functions deriving admission, grace and warning decisions from a
quota's limit and usage. State is never stored; it is always computed
from ``limit``/``used`` and the grace settings at query time.

Grace handling:
- Grace only applies when soft limits are enabled
- ``can_use`` and ``is_exceeded`` take their grace percentage separately
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Optional, Union

Amount = Union[Decimal, int, float, str]

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class QuotaState(Enum):
    """Derived state of a quota."""
    UNLIMITED = "unlimited"
    WITHIN_LIMIT = "within_limit"
    WITHIN_GRACE = "within_grace"
    EXCEEDED = "exceeded"


def to_decimal(amount: Amount) -> Decimal:
    """Convert an amount to a finite Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: If the amount is not a finite number
    """
    if isinstance(amount, bool):
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Amount must be finite, got {amount!r}")
    return value


def grace_amount(
    limit: Optional[Decimal],
    grace_percentage: Decimal,
    soft_limit_enabled: bool
) -> Decimal:
    """Allowance above the nominal limit; zero unless soft limits are on."""
    if limit is None or not soft_limit_enabled:
        return _ZERO
    return limit * grace_percentage / _HUNDRED


def ceiling(
    limit: Optional[Decimal],
    grace_percentage: Decimal,
    soft_limit_enabled: bool
) -> Optional[Decimal]:
    """Highest admissible ``used`` value, or None when unlimited."""
    if limit is None:
        return None
    return limit + grace_amount(limit, grace_percentage, soft_limit_enabled)


def remaining(limit: Optional[Decimal], used: Decimal) -> Optional[Decimal]:
    """Units left before the nominal limit; None means unlimited, not zero."""
    if limit is None:
        return None
    return max(_ZERO, limit - used)


def raw_percentage(limit: Optional[Decimal], used: Decimal) -> Optional[float]:
    """Unclamped ``used / limit`` percentage, None without a positive limit."""
    if limit is None or limit <= 0:
        return None
    return float(used / limit * _HUNDRED)


def usage_percentage(limit: Optional[Decimal], used: Decimal) -> Optional[float]:
    """Percentage of the limit consumed, capped at 100 and rounded to 2 places."""
    percentage = raw_percentage(limit, used)
    if percentage is None:
        return None
    return round(min(100.0, percentage), 2)


def can_use(
    limit: Optional[Decimal],
    used: Decimal,
    amount: Decimal,
    grace_percentage: Decimal = _ZERO,
    soft_limit_enabled: bool = False
) -> bool:
    """True if consuming ``amount`` keeps usage within limit plus grace."""
    top = ceiling(limit, grace_percentage, soft_limit_enabled)
    return top is None or used + amount <= top


def is_exceeded(
    limit: Optional[Decimal],
    used: Decimal,
    grace_percentage: Decimal = _ZERO,
    soft_limit_enabled: bool = False
) -> bool:
    top = ceiling(limit, grace_percentage, soft_limit_enabled)
    return top is not None and used > top


def quota_state(
    limit: Optional[Decimal],
    used: Decimal,
    grace_percentage: Decimal = _ZERO,
    soft_limit_enabled: bool = False
) -> QuotaState:
    if limit is None:
        return QuotaState.UNLIMITED
    if used <= limit:
        return QuotaState.WITHIN_LIMIT
    if is_exceeded(limit, used, grace_percentage, soft_limit_enabled):
        return QuotaState.EXCEEDED
    return QuotaState.WITHIN_GRACE


def crossed_threshold(
    limit: Optional[Decimal],
    used_before: Decimal,
    used_after: Decimal,
    thresholds: Iterable[int]
) -> Optional[int]:
    """Highest warning threshold crossed by moving from ``used_before`` to ``used_after``.

    A threshold is crossed when the percentage was below it before and is
    at or above it after, so a single large increment still registers and
    further increments past the same threshold do not fire again.

    Returns:
        The crossed threshold, or None
    """
    before = raw_percentage(limit, used_before)
    after = raw_percentage(limit, used_after)
    if before is None or after is None:
        return None

    crossed = [t for t in thresholds if before < t <= after]
    return max(crossed) if crossed else None
