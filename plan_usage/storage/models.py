"""
Data models for storage layer.

Rows of the quota table and the usage ledger, as read back from storage.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Quota:
    """Snapshot of the accounting state for one (subject, feature) pair.

    ``limit`` of None means unlimited; ``reset_at`` of None means the
    quota never resets. Snapshots are immutable: every mutation reads
    the row back into a fresh instance.
    """
    id: int
    subject_type: str
    subject_id: str
    feature: str
    limit: Optional[Decimal]
    used: Decimal
    reset_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @property
    def is_unlimited(self) -> bool:
        return self.limit is None


@dataclass(frozen=True)
class UsageRecord:
    """Ledger entry for consumption within one period."""
    id: int
    subject_type: str
    subject_id: str
    feature: str
    used: Decimal
    period_start: datetime
    period_end: datetime
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageStatistic:
    """Aggregates of usage rows falling into one reporting bucket."""
    period: str
    total: Decimal
    count: int
    average: Decimal
    maximum: Decimal
    minimum: Decimal
