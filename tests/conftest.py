"""
Shared fixtures for the Plan Usage test suite.
"""

import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from plan_usage.config.loader import EngineConfig
from plan_usage.core.catalog import (
    AggregationMethod,
    Feature,
    FeatureType,
    InMemoryCatalog,
    Plan,
    SubjectRef,
)
from plan_usage.core.events import CollectingSink
from plan_usage.core.periods import Period
from plan_usage.sdk.client import PlanUsage


class FrozenClock:
    """Clock returning a fixed instant until advanced."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_catalog() -> InMemoryCatalog:
    """Catalog used across tests."""
    return InMemoryCatalog(
        features=[
            Feature("api-calls", "API Calls", FeatureType.QUOTA, Period.MONTHLY,
                    AggregationMethod.SUM, unit="calls"),
            Feature("storage", "Storage", FeatureType.LIMIT, Period.NONE,
                    AggregationMethod.MAX, unit="gb"),
            Feature("exports", "Exports", FeatureType.QUOTA, Period.DAILY,
                    AggregationMethod.LAST),
            Feature("sso", "Single Sign-On", FeatureType.BOOLEAN),
        ],
        plans=[
            Plan("basic", "Basic", {
                "api-calls": Decimal("1000"),
                "storage": Decimal("50"),
                "exports": Decimal("10"),
            }),
            Plan("pro", "Pro", {
                "api-calls": Decimal("5000"),
                "storage": Decimal("50"),
                "exports": None,
                "sso": True,
            }),
            Plan("free", "Free", {
                "api-calls": Decimal("100"),
                "sso": False,
            }),
        ]
    )


@pytest.fixture
def clock():
    # Friday
    return FrozenClock(datetime(2024, 3, 15, 10, 30, 0))


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "test.db")


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def make_client(db_path, catalog, sink, clock):
    """Factory building a PlanUsage client with an optional config."""
    def _make(config: EngineConfig = None) -> PlanUsage:
        return PlanUsage(catalog, db_path=db_path, config=config, sink=sink, clock=clock)
    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def user():
    return SubjectRef("user", "1", "basic")
