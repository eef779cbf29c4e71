"""
Feature and plan catalog.

Read-only descriptors for features and plans, the Subject contract that
billable entities implement, and an in-memory catalog used by default.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

from .errors import UnknownFeature
from .periods import Period
from .quotas import to_decimal

FeatureValue = Union[Decimal, bool, None]


class FeatureType(Enum):
    """Kind of capability a feature represents."""
    BOOLEAN = "boolean"
    LIMIT = "limit"
    QUOTA = "quota"


class AggregationMethod(Enum):
    """How usage records within one period are combined."""
    SUM = "sum"
    COUNT = "count"
    MAX = "max"
    LAST = "last"

    @property
    def merges_rows(self) -> bool:
        return self in (AggregationMethod.SUM, AggregationMethod.COUNT)


class _NotGranted:
    """Sentinel for a feature missing from a plan."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_GRANTED"

    def __bool__(self) -> bool:
        return False


NOT_GRANTED = _NotGranted()


@dataclass(frozen=True)
class Feature:
    """Catalog entry for a feature."""
    slug: str
    name: str
    type: FeatureType = FeatureType.QUOTA
    reset_period: Period = Period.NONE
    aggregation: AggregationMethod = AggregationMethod.SUM
    unit: Optional[str] = None
    meter_ref: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not self.slug or not self.slug.strip():
            raise ValueError("feature slug is required and cannot be empty")

    @property
    def is_metered(self) -> bool:
        """Limit and quota features track consumption; boolean ones do not."""
        return self.type in (FeatureType.LIMIT, FeatureType.QUOTA)


@dataclass(frozen=True)
class Plan:
    """A plan and the value it grants for each feature.

    A value of None grants the feature without limit.
    """
    slug: str
    name: str
    features: Dict[str, FeatureValue] = field(default_factory=dict)

    def grants(self, feature_slug: str) -> bool:
        if feature_slug not in self.features:
            return False
        return self.features[feature_slug] is not False

    def feature_value(self, feature_slug: str) -> Any:
        if not self.grants(feature_slug):
            return NOT_GRANTED
        return self.features[feature_slug]


class Subject(Protocol):
    """Contract for any entity usage is tracked against."""

    def id(self) -> str:
        ...

    def type_tag(self) -> str:
        ...

    def current_plan_ref(self) -> Optional[str]:
        ...


@dataclass(frozen=True)
class SubjectRef:
    """Plain Subject implementation: a (type, id) pair plus its plan."""
    subject_type: str
    subject_id: str
    plan_ref: Optional[str] = None

    def id(self) -> str:
        return str(self.subject_id)

    def type_tag(self) -> str:
        return self.subject_type

    def current_plan_ref(self) -> Optional[str]:
        return self.plan_ref

    def on_plan(self, plan_ref: Optional[str]) -> "SubjectRef":
        return SubjectRef(self.subject_type, self.subject_id, plan_ref)


def subject_key(subject: Subject) -> tuple:
    """Composite storage key of a subject."""
    return (subject.type_tag(), str(subject.id()))


class Catalog(Protocol):
    """Lookups the engine needs from the feature/plan catalog."""

    def resolve_feature(self, slug: str) -> Feature:
        ...

    def get_subject_plan(self, subject: Subject) -> Optional[Plan]:
        ...

    def get_plan_feature_value(self, plan: Plan, feature_slug: str) -> Any:
        ...

    def plan_features(self, plan: Plan) -> List[Feature]:
        ...


class InMemoryCatalog:
    """Catalog held in memory, typically loaded from YAML."""

    def __init__(self, features: List[Feature] = (), plans: List[Plan] = ()):
        self._features: Dict[str, Feature] = {}
        self._plans: Dict[str, Plan] = {}
        for feature in features:
            self.add_feature(feature)
        for plan in plans:
            self.add_plan(plan)

    def add_feature(self, feature: Feature) -> None:
        self._features[feature.slug] = feature

    def add_plan(self, plan: Plan) -> None:
        unknown = [slug for slug in plan.features if slug not in self._features]
        if unknown:
            raise ValueError(f"Plan '{plan.slug}' references unknown features: {unknown}")
        self._plans[plan.slug] = plan

    @property
    def features(self) -> List[Feature]:
        return list(self._features.values())

    @property
    def plans(self) -> List[Plan]:
        return list(self._plans.values())

    def resolve_feature(self, slug: str) -> Feature:
        feature = self._features.get(slug)
        if feature is None:
            raise UnknownFeature(slug)
        return feature

    def find_plan(self, plan_ref: Optional[str]) -> Optional[Plan]:
        if plan_ref is None:
            return None
        return self._plans.get(plan_ref)

    def get_subject_plan(self, subject: Subject) -> Optional[Plan]:
        return self.find_plan(subject.current_plan_ref())

    def get_plan_feature_value(self, plan: Plan, feature_slug: str) -> Any:
        value = plan.feature_value(feature_slug)
        if value is NOT_GRANTED or value is None or isinstance(value, bool):
            return value
        return to_decimal(value)

    def plan_features(self, plan: Plan) -> List[Feature]:
        return [
            self.resolve_feature(slug)
            for slug in plan.features
            if plan.grants(slug)
        ]

    def compare_plans(self, first: str, second: str) -> Dict[str, Dict[str, Any]]:
        """Compare the feature values of two plans.

        Numeric differences are reported for limit/quota features when both
        plans carry a finite value; boolean features report same/different.

        Returns:
            Mapping of feature slug to plan values and difference, or an
            empty dict if either plan is unknown
        """
        plan_a = self.find_plan(first)
        plan_b = self.find_plan(second)
        if plan_a is None or plan_b is None:
            return {}

        comparison = {}
        for feature in self._features.values():
            value_a = plan_a.feature_value(feature.slug)
            value_b = plan_b.feature_value(feature.slug)
            comparison[feature.slug] = {
                "feature": feature.name,
                "first": value_a,
                "second": value_b,
                "difference": _difference(feature, value_a, value_b),
            }
        return comparison


def _difference(feature: Feature, value_a: Any, value_b: Any) -> Any:
    if feature.type is FeatureType.BOOLEAN:
        return "same" if bool(value_a) == bool(value_b) else "different"
    numeric = (Decimal, int, float)
    if isinstance(value_a, numeric) and isinstance(value_b, numeric) \
            and not isinstance(value_a, bool) and not isinstance(value_b, bool):
        return to_decimal(value_b) - to_decimal(value_a)
    return None
