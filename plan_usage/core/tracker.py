"""
Usage ledger.

Records consumption per (subject, feature, period) and answers
historical and statistical questions about it. Features aggregating by
``sum`` or ``count`` keep a single row per period when same-period
aggregation is enabled; every other record is appended as a new row.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from ..config.loader import EngineConfig
from ..storage.models import UsageRecord, UsageStatistic
from ..storage.repository import UsageRepository
from .catalog import Catalog, Feature, Subject, subject_key
from .events import EventSink, NullSink, UsageRecorded
from .periods import Period, PeriodBounds, StatisticsBucket, calculate_period
from .quotas import Amount, to_decimal

logger = logging.getLogger(__name__)


class UsageTracker:
    """Append/aggregate usage records and query them."""

    def __init__(
        self,
        repository: UsageRepository,
        catalog: Catalog,
        config: EngineConfig,
        sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.catalog = catalog
        self.config = config
        self.sink = sink or NullSink()
        self.clock = clock

    def period_for(self, feature: Feature, at: datetime) -> PeriodBounds:
        """Ledger period of ``feature`` containing ``at``.

        Features that never reset are bucketed by calendar month.
        """
        period = feature.reset_period if feature.reset_period.resets else Period.MONTHLY
        return calculate_period(period, at, self.config.week_start)

    def should_aggregate(self, feature: Feature) -> bool:
        return feature.aggregation.merges_rows and self.config.aggregate_same_period

    def record(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> UsageRecord:
        """Record consumption of a feature.

        Negative amounts are accepted as corrections; their meaning is the
        caller's responsibility.

        Args:
            subject: Subject consuming the feature
            feature_slug: Feature identifier
            amount: Units consumed
            metadata: Opaque payload stored with the record
            timestamp: Instant of consumption (defaults to now)

        Returns:
            The created or aggregated usage record

        Raises:
            UnknownFeature: If the feature is not in the catalog
            ValueError: If amount is not a finite number
            StorageFailure: If the write fails
        """
        value = to_decimal(amount)
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)
        at = timestamp or self.clock()
        bounds = self.period_for(feature, at)

        if self.should_aggregate(feature):
            usage = self.repository.add_to_period(
                subject_type, subject_id, feature.slug, value,
                bounds.start, bounds.end, metadata,
                self.config.merge_metadata, at
            )
        else:
            usage = self.repository.insert(
                subject_type, subject_id, feature.slug, value,
                bounds.start, bounds.end, metadata, at
            )

        logger.debug(
            "Recorded %s of %s for %s:%s (row %s, period %s)",
            value, feature.slug, subject_type, subject_id, usage.id, bounds.start
        )
        self.sink.emit(UsageRecorded(subject=subject, feature=feature, amount=value, usage=usage))
        return usage

    def total_usage(
        self,
        subject: Subject,
        feature_slug: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Decimal:
        """Sum of usage whose period overlaps [start, end]; all usage if unbounded."""
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)
        return self.repository.total(subject_type, subject_id, feature.slug, start, end)

    def current_period_usage(self, subject: Subject, feature_slug: str) -> Decimal:
        feature = self.catalog.resolve_feature(feature_slug)
        bounds = self.period_for(feature, self.clock())
        return self.total_usage(subject, feature.slug, bounds.start, bounds.end)

    def history(
        self,
        subject: Subject,
        feature_slug: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Usage records of the subject, newest first."""
        if feature_slug is not None:
            feature_slug = self.catalog.resolve_feature(feature_slug).slug
        subject_type, subject_id = subject_key(subject)
        return self.repository.history(subject_type, subject_id, feature_slug, limit)

    def reset_usage(
        self,
        subject: Subject,
        feature_slug: str,
        period_start: Optional[datetime] = None
    ) -> int:
        """Delete the subject's records for a feature, or only one period's.

        Returns:
            Number of records deleted
        """
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)
        deleted = self.repository.delete(subject_type, subject_id, feature.slug, period_start)
        logger.info(
            "Deleted %d usage records of %s for %s:%s",
            deleted, feature.slug, subject_type, subject_id
        )
        return deleted

    def statistics(
        self,
        subject: Subject,
        feature_slug: str,
        start: datetime,
        end: datetime,
        bucket: Union[StatisticsBucket, str] = StatisticsBucket.DAY
    ) -> List[UsageStatistic]:
        """Aggregates of usage recorded in [start, end], grouped by bucket.

        Weekly buckets start on the configured ``week_start`` and are
        labelled with that date.

        Raises:
            ValueError: If start is after end or bucket is unknown
        """
        if start > end:
            raise ValueError("start must be before end")
        bucket = StatisticsBucket(bucket) if isinstance(bucket, str) else bucket
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)
        week_start = self.config.week_start
        return self.repository.statistics(
            subject_type, subject_id, feature.slug, start, end,
            lambda at: bucket.label(at, week_start)
        )
