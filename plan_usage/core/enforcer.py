"""
Quota enforcement.

Admission checks, enforcement with side-effect events, warning
thresholds and plan-change reconciliation on top of the quota store.

Enforcement Order:
1. Resolve the quota (lazily created from the plan, lazily reset)
2. Admission - limit plus grace, unlimited always admits
3. Increment - only on acceptance, then threshold warnings
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ..storage.models import Quota
from . import quotas as policy
from .catalog import Subject
from .errors import QuotaExceededError, UnknownFeature
from .events import EventSink, NullSink, QuotaExceeded, QuotaWarning
from .quota_store import QuotaStore
from .quotas import Amount, QuotaState, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    """Reporting view of one quota."""
    feature: str
    name: str
    limit: Optional[Decimal]
    used: Decimal
    remaining: Optional[Decimal]
    percentage: Optional[float]
    state: QuotaState
    exceeded: bool
    reset_at: Optional[datetime]


@dataclass
class SyncResult:
    """Outcome of reconciling a subject's quotas with its plan."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)


class QuotaEnforcer:
    """Admission and enforcement policy over a QuotaStore."""

    def __init__(self, store: QuotaStore, sink: Optional[EventSink] = None):
        self.store = store
        self.sink = sink or NullSink()

    @property
    def config(self):
        return self.store.config

    def has_feature(self, subject: Subject, feature_slug: str) -> bool:
        """True if the subject's plan grants the feature and it is not exhausted."""
        try:
            return self.store.has_feature(subject, feature_slug)
        except UnknownFeature:
            logger.warning("Feature check for unknown feature %s", feature_slug)
            return False

    def can_use(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> bool:
        """True if the subject may consume ``amount`` units of the feature.

        Unknown features and features missing from the subject's plan are
        unavailable rather than errors, and never create quota rows.
        """
        try:
            return self.store.can_use(subject, feature_slug, amount)
        except UnknownFeature:
            logger.warning("Admission check for unknown feature %s", feature_slug)
            return False

    def try_enforce(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> bool:
        """Accept and consume ``amount``, or reject without changing state.

        Rejection emits QuotaExceeded. With strict enforcement the check and
        the increment are a single conditional write; otherwise concurrent
        callers may overshoot by up to (callers - 1) * amount.

        Returns:
            True if accepted, False if rejected
        """
        value = to_decimal(amount)
        if value < 0:
            raise ValueError(f"Amount cannot be negative, got {amount!r}")

        try:
            quota = self.store.get_or_create(subject, feature_slug)
        except UnknownFeature:
            logger.warning("Enforcement requested for unknown feature %s", feature_slug)
            return False
        if quota is None:
            logger.debug("Feature %s not granted to %s", feature_slug, _label(subject))
            return False

        if self.config.strict_enforcement:
            updated = self.store.increment_within_limit(subject, feature_slug, value, quota)
            if updated is None:
                self._reject(subject, feature_slug, value)
                return False
            self._check_warning(subject, feature_slug, updated.used - value, updated)
            return True

        if not self._admits(quota, value):
            self._reject(subject, feature_slug, value, quota)
            return False
        self.increment(subject, feature_slug, value, quota)
        return True

    enforce = try_enforce

    def enforce_or_fail(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> Quota:
        """Consume ``amount`` or raise.

        Returns:
            The quota after the increment

        Raises:
            QuotaExceededError: If the amount does not fit, or the feature is
                not granted to the subject
            UnknownFeature: If the feature is not in the catalog
        """
        value = to_decimal(amount)
        self.store.catalog.resolve_feature(feature_slug)
        if not self.try_enforce(subject, feature_slug, value):
            quota = self.store.get(subject, feature_slug)
            raise QuotaExceededError(
                feature=feature_slug,
                limit=quota.limit if quota else Decimal("0"),
                used=quota.used if quota else Decimal("0"),
                requested=value
            )
        return self.store.get(subject, feature_slug)

    def increment(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount = 1,
        quota: Optional[Quota] = None
    ) -> Optional[Quota]:
        """Add usage to the quota and fire any newly crossed warning."""
        value = to_decimal(amount)
        updated = self.store.increment(subject, feature_slug, value, quota)
        if updated is not None:
            self._check_warning(subject, feature_slug, updated.used - value, updated)
        return updated

    def decrement(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> Optional[Quota]:
        return self.store.decrement(subject, feature_slug, amount)

    def increase_limit(self, subject: Subject, feature_slug: str, amount: Amount) -> Optional[Quota]:
        return self.store.increase_limit(subject, feature_slug, amount)

    def reset(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        return self.store.reset(subject, feature_slug)

    def reset_all(self, subject: Subject) -> int:
        return self.store.reset_all(subject)

    def reset_expired(self, subject: Subject) -> int:
        return self.store.reset_expired(subject)

    def get_quota(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        return self.store.get(subject, feature_slug)

    def get_or_create_quota(self, subject: Subject, feature_slug: str) -> Optional[Quota]:
        return self.store.get_or_create(subject, feature_slug)

    def get_all_quotas(self, subject: Subject) -> List[Quota]:
        """Every quota of the subject, with due resets applied first."""
        self.store.reset_expired(subject)
        return self.store.all_for_subject(subject)

    def remaining(self, subject: Subject, feature_slug: str) -> Optional[Decimal]:
        return self.store.remaining(subject, feature_slug)

    def usage_percentage(self, subject: Subject, feature_slug: str) -> Optional[float]:
        return self.store.usage_percentage(subject, feature_slug)

    def is_exceeded(self, subject: Subject, feature_slug: str) -> bool:
        quota = self.store.get(subject, feature_slug)
        return quota is not None and self.store.is_exceeded(quota)

    def sync_with_plan(self, subject: Subject) -> SyncResult:
        """Align quota limits with the subject's current plan.

        Limits change in place; ``used`` is kept, so a plan change moves the
        ceiling without discarding consumption in the current period.
        Quotas for features the plan no longer grants are reported as stale
        and left for the caller to remove.
        """
        result = SyncResult()
        catalog = self.store.catalog
        plan = catalog.get_subject_plan(subject)
        existing = set(self.store.features_for(subject))

        if plan is None:
            result.stale = sorted(existing)
            logger.info("%s has no plan, %d quotas stale", _label(subject), len(result.stale))
            return result

        granted = set()
        for feature in catalog.plan_features(plan):
            limit = self.store.plan_limit(subject, feature)
            quota = self.store.get_or_create(subject, feature.slug)
            if quota is None:
                continue
            granted.add(feature.slug)
            if feature.slug not in existing:
                result.created.append(feature.slug)
            elif quota.limit != limit:
                self.store.set_limit(quota, limit)
                result.updated.append(feature.slug)
            else:
                result.unchanged.append(feature.slug)

        result.stale = sorted(existing - granted)
        logger.info(
            "Synced %s with plan %s: %d created, %d updated, %d stale",
            _label(subject), plan.slug, len(result.created),
            len(result.updated), len(result.stale)
        )
        return result

    def remove_stale(self, subject: Subject, result: SyncResult) -> int:
        """Delete the quotas a sync reported as stale."""
        return sum(1 for slug in result.stale if self.store.remove(subject, slug))

    def quotas_status(self, subject: Subject) -> List[QuotaStatus]:
        statuses = []
        for quota in self.get_all_quotas(subject):
            try:
                name = self.store.catalog.resolve_feature(quota.feature).name
            except UnknownFeature:
                name = quota.feature
            statuses.append(QuotaStatus(
                feature=quota.feature,
                name=name,
                limit=quota.limit,
                used=quota.used,
                remaining=policy.remaining(quota.limit, quota.used),
                percentage=policy.usage_percentage(quota.limit, quota.used),
                state=self.store.state(quota),
                exceeded=self.store.is_exceeded(quota),
                reset_at=quota.reset_at
            ))
        return statuses

    def _admits(self, quota: Quota, amount: Decimal) -> bool:
        return policy.can_use(
            quota.limit, quota.used, amount,
            self.config.grace_percentage, self.config.soft_limit_enabled
        )

    def _reject(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Decimal,
        quota: Optional[Quota] = None
    ) -> None:
        quota = quota or self.store.get(subject, feature_slug)
        feature = self.store.catalog.resolve_feature(feature_slug)
        logger.warning(
            "Rejected %s of %s for %s (used %s of %s)",
            amount, feature_slug, _label(subject), quota.used, quota.limit
        )
        self.sink.emit(QuotaExceeded(subject=subject, feature=feature, quota=quota))

    def _check_warning(
        self,
        subject: Subject,
        feature_slug: str,
        used_before: Decimal,
        quota: Quota
    ) -> None:
        threshold = policy.crossed_threshold(
            quota.limit, used_before, quota.used, self.config.warning_thresholds
        )
        if threshold is None:
            return
        feature = self.store.catalog.resolve_feature(feature_slug)
        self.sink.emit(QuotaWarning(subject=subject, feature=feature, threshold=threshold, quota=quota))


def _label(subject: Subject) -> str:
    return f"{subject.type_tag()}:{subject.id()}"
