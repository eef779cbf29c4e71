"""
Quota store.

Holds the current limit/used/reset-at state per (subject, feature) and
answers admission questions. Quotas are created lazily from the
subject's plan and reset lazily when read after their ``reset_at``.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from ..config.loader import EngineConfig
from ..storage.models import Quota
from ..storage.repository import QuotaRepository
from . import quotas as policy
from .cache import TaggedCache, quota_tags
from .catalog import NOT_GRANTED, Catalog, Feature, Subject, subject_key
from .errors import UnknownFeature
from .quotas import Amount, QuotaState, to_decimal

logger = logging.getLogger(__name__)


class QuotaStore:
    """Per-(subject, feature) quota state backed by a QuotaRepository."""

    def __init__(
        self,
        repository: QuotaRepository,
        catalog: Catalog,
        config: EngineConfig,
        cache: Optional[TaggedCache] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.catalog = catalog
        self.config = config
        self.cache = cache
        self.clock = clock

    # Period handling

    def next_reset(self, feature: Feature, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next reset instant for ``feature``, computed from ``now``."""
        return feature.reset_period.next_reset(now or self.clock(), self.config.week_start)

    def _reset_if_due(self, quota: Quota, feature: Feature) -> Quota:
        now = self.clock()
        if quota.reset_at is None or quota.reset_at > now:
            return quota
        refreshed = self.repository.reset_if_due(
            quota.id, quota.reset_at, self.next_reset(feature, now), now
        )
        self._flush(quota.subject_type, quota.subject_id)
        return refreshed

    # Lookup and creation

    def plan_limit(self, subject: Subject, feature: Feature):
        """Initial limit the subject's plan grants, or NOT_GRANTED."""
        plan = self.catalog.get_subject_plan(subject)
        if plan is None:
            return NOT_GRANTED
        value = self.catalog.get_plan_feature_value(plan, feature.slug)
        if value is NOT_GRANTED or value is False:
            return NOT_GRANTED
        if value is None or value is True:
            return None
        return to_decimal(value)

    def get_or_create(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        """Return the subject's quota, creating it from the plan if needed.

        Returns None when the subject has no plan or the plan does not grant
        the feature; nothing is written in that case. An existing quota past
        its ``reset_at`` is reset before being returned.

        Raises:
            UnknownFeature: If the feature is not in the catalog
        """
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)

        quota = self.repository.find(subject_type, subject_id, feature.slug)
        if quota is None:
            limit = self.plan_limit(subject, feature)
            if limit is NOT_GRANTED:
                return None
            now = self.clock()
            quota = self.repository.find_or_create(
                subject_type, subject_id, feature.slug,
                limit, self.next_reset(feature, now), now
            )
            logger.debug(
                "Quota ready for %s:%s on %s (limit %s)",
                subject_type, subject_id, feature.slug, quota.limit
            )
            self._flush(subject_type, subject_id)
            return quota

        return self._reset_if_due(quota, feature)

    def get(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        """Return the stored quota without creating or resetting it.

        Raises:
            UnknownFeature: If the feature is not in the catalog
        """
        feature = self.catalog.resolve_feature(feature_slug)
        subject_type, subject_id = subject_key(subject)
        return self.repository.find(subject_type, subject_id, feature.slug)

    def features_for(self, subject: Subject) -> List[str]:
        """Slugs of every feature the subject holds a quota row for."""
        subject_type, subject_id = subject_key(subject)
        return [quota.feature for quota in self.repository.for_subject(subject_type, subject_id)]

    def all_for_subject(self, subject: Subject) -> List[Quota]:
        """Every quota row of the subject, served from cache when enabled."""
        subject_type, subject_id = subject_key(subject)

        def loader() -> List[Quota]:
            return self.repository.for_subject(subject_type, subject_id)

        if self.cache is None:
            return loader()
        return self.cache.remember(
            f"billable:{subject_type}:{subject_id}:quotas",
            quota_tags(subject_type, subject_id),
            loader,
            "quotas"
        )

    # Mutation

    def increment(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount = 1,
        quota: Optional[Quota] = None
    ) -> Optional[Quota]:
        """Add ``amount`` to ``used`` after the lazy-reset check.

        ``quota`` skips the lookup when the caller already resolved it.

        Returns:
            The updated quota, or None if the feature is not granted

        Raises:
            ValueError: If amount is negative or not a finite number
            UnknownFeature: If the feature is not in the catalog
        """
        value = self._non_negative(amount)
        if quota is None:
            quota = self.get_or_create(subject, feature_slug)
        if quota is None:
            return None
        updated = self.repository.increment(quota.id, value, self.clock())
        self._flush(quota.subject_type, quota.subject_id)
        return updated

    def increment_within_limit(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount = 1,
        quota: Optional[Quota] = None
    ) -> Optional[Quota]:
        """Conditionally add ``amount`` as one atomic step.

        The increment only applies if ``used + amount`` stays within the
        limit plus grace, so concurrent callers cannot overshoot.

        Returns:
            The updated quota, or None if refused or not granted
        """
        value = self._non_negative(amount)
        if quota is None:
            quota = self.get_or_create(subject, feature_slug)
        if quota is None:
            return None
        ceiling = policy.ceiling(
            quota.limit, self.config.grace_percentage, self.config.soft_limit_enabled
        )
        updated = self.repository.increment_within(quota.id, value, ceiling, self.clock())
        if updated is not None:
            self._flush(quota.subject_type, quota.subject_id)
        return updated

    def decrement(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> Optional[Quota]:
        """Subtract ``amount`` from ``used``, never going below zero."""
        value = self._non_negative(amount)
        quota = self.get(subject, feature_slug)
        if quota is None:
            return None
        updated = self.repository.decrement(quota.id, value, self.clock())
        self._flush(quota.subject_type, quota.subject_id)
        return updated

    def reset(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        """Force ``used = 0`` and recompute ``reset_at`` from now."""
        feature = self.catalog.resolve_feature(feature_slug)
        quota = self.get(subject, feature.slug)
        if quota is None:
            return None
        now = self.clock()
        updated = self.repository.reset(quota.id, self.next_reset(feature, now), now)
        logger.info(
            "Quota reset for %s:%s on %s",
            quota.subject_type, quota.subject_id, feature.slug
        )
        self._flush(quota.subject_type, quota.subject_id)
        return updated

    def reset_all(self, subject: Subject) -> int:
        """Reset every quota row of the subject unconditionally.

        Rows whose feature has left the catalog are zeroed with no reset
        schedule.

        Returns:
            Number of quotas reset
        """
        subject_type, subject_id = subject_key(subject)
        now = self.clock()
        resets = []
        for quota in self.repository.for_subject(subject_type, subject_id):
            try:
                feature = self.catalog.resolve_feature(quota.feature)
            except UnknownFeature:
                logger.warning(
                    "Quota %s references feature %s missing from the catalog",
                    quota.id, quota.feature
                )
                resets.append((quota.id, None))
                continue
            resets.append((quota.id, self.next_reset(feature, now)))

        count = self.repository.reset_many(resets, now)
        logger.info("Reset %d quotas for %s:%s", count, subject_type, subject_id)
        self._flush(subject_type, subject_id)
        return count

    def reset_expired(self, subject: Subject) -> int:
        """Apply the lazy reset to every quota of the subject that is due.

        Returns:
            Number of quotas reset
        """
        subject_type, subject_id = subject_key(subject)
        now = self.clock()
        count = 0
        for quota in self.repository.for_subject(subject_type, subject_id):
            if quota.reset_at is None or quota.reset_at > now:
                continue
            try:
                next_reset = self.next_reset(self.catalog.resolve_feature(quota.feature), now)
            except UnknownFeature:
                logger.warning(
                    "Quota %s references feature %s missing from the catalog",
                    quota.id, quota.feature
                )
                next_reset = None
            self.repository.reset_if_due(quota.id, quota.reset_at, next_reset, now)
            count += 1
        if count:
            logger.info("Reset %d expired quotas for %s:%s", count, subject_type, subject_id)
            self._flush(subject_type, subject_id)
        return count

    def set_limit(self, quota: Quota, limit: Optional[Decimal]) -> Quota:
        updated = self.repository.set_limit(quota.id, limit, self.clock())
        self._flush(quota.subject_type, quota.subject_id)
        return updated

    def increase_limit(self, subject: Subject, feature_slug: str, amount: Amount) -> Optional[Quota]:
        """Raise the quota's limit by ``amount``; unlimited quotas are unchanged.

        Returns:
            The updated quota, or None if the feature is not granted

        Raises:
            ValueError: If amount is negative or not a finite number
            UnknownFeature: If the feature is not in the catalog
        """
        value = self._non_negative(amount)
        quota = self.get_or_create(subject, feature_slug)
        if quota is None:
            return None
        updated = self.repository.increase_limit(quota.id, value, self.clock())
        logger.info(
            "Limit of %s for %s:%s raised to %s",
            quota.feature, quota.subject_type, quota.subject_id, updated.limit
        )
        self._flush(quota.subject_type, quota.subject_id)
        return updated

    def remove(self, subject: Subject, feature_slug: str) -> bool:
        """Delete the subject's quota row for a feature, if any."""
        subject_type, subject_id = subject_key(subject)
        removed = self.repository.delete(subject_type, subject_id, feature_slug)
        self._flush(subject_type, subject_id)
        return removed

    # Queries

    def remaining(self, subject: Subject, feature_slug: str) -> Optional[Decimal]:
        """Units left; None means unlimited or no quota."""
        quota = self.get(subject, feature_slug)
        if quota is None:
            return None
        return policy.remaining(quota.limit, quota.used)

    def usage_percentage(self, subject: Subject, feature_slug: str) -> Optional[float]:
        quota = self.get(subject, feature_slug)
        if quota is None:
            return None
        return policy.usage_percentage(quota.limit, quota.used)

    def is_exceeded(self, quota: Quota) -> bool:
        return policy.is_exceeded(
            quota.limit, quota.used,
            self.config.grace_percentage, self.config.soft_limit_enabled
        )

    def state(self, quota: Quota) -> QuotaState:
        return policy.quota_state(
            quota.limit, quota.used,
            self.config.grace_percentage, self.config.soft_limit_enabled
        )

    def has_feature(self, subject: Subject, feature_slug: str) -> bool:
        """True if the plan grants the feature and its quota is not exceeded.

        Boolean features only need the grant. No quota row is created; a
        metered feature without one is available.

        Raises:
            UnknownFeature: If the feature is not in the catalog
        """
        feature = self.catalog.resolve_feature(feature_slug)
        if self.plan_limit(subject, feature) is NOT_GRANTED:
            return False
        if not feature.is_metered:
            return True
        subject_type, subject_id = subject_key(subject)
        quota = self.repository.find(subject_type, subject_id, feature.slug)
        if quota is None:
            return True
        return not self.is_exceeded(self._reset_if_due(quota, feature))

    def can_use(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> bool:
        """True if the subject may consume ``amount`` more units.

        A feature that is not granted has no quota and is never usable.
        """
        value = to_decimal(amount)
        quota = self.get_or_create(subject, feature_slug)
        if quota is None:
            return False
        return policy.can_use(
            quota.limit, quota.used, value,
            self.config.grace_percentage, self.config.soft_limit_enabled
        )

    # Helpers

    @staticmethod
    def _non_negative(amount: Amount) -> Decimal:
        value = to_decimal(amount)
        if value < 0:
            raise ValueError(f"Amount cannot be negative, got {amount!r}")
        return value

    def _flush(self, subject_type: str, subject_id: str) -> None:
        if self.cache is not None:
            self.cache.flush_tags([f"billable:{subject_type}:{subject_id}"])
