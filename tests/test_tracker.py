"""
Tests for the usage ledger.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from plan_usage.config.loader import EngineConfig
from plan_usage.core.catalog import SubjectRef
from plan_usage.core.errors import UnknownFeature
from plan_usage.core.events import UsageRecorded
from plan_usage.core.periods import MONDAY, SUNDAY, StatisticsBucket


class TestRecording:
    """Test aggregation and period assignment."""

    def test_summing_feature_keeps_one_row_per_period(self, client, user):
        for amount in (10, 20, 30):
            client.usage.record(user, "api-calls", amount)
        [row] = client.usage.history(user, "api-calls")
        assert row.used == Decimal("60")
        assert row.period_start == datetime(2024, 3, 1)
        assert row.period_end == datetime(2024, 3, 31, 23, 59, 59, 999999)

    def test_non_aggregating_feature_appends(self, client, user):
        for amount in (1, 2, 3):
            client.usage.record(user, "exports", amount)
        assert len(client.usage.history(user, "exports")) == 3

    def test_aggregation_disabled_by_config(self, make_client, user):
        client = make_client(EngineConfig(aggregate_same_period=False))
        for amount in (1, 2, 3):
            client.usage.record(user, "api-calls", amount)
        assert len(client.usage.history(user, "api-calls")) == 3

    def test_new_period_starts_new_row(self, client, user):
        client.usage.record(user, "api-calls", 5)
        client.usage.record(user, "api-calls", 7, timestamp=datetime(2024, 4, 2, 9, 0))
        rows = client.usage.history(user, "api-calls")
        assert [r.used for r in rows] == [Decimal("7"), Decimal("5")]

    def test_never_resetting_feature_bucketed_monthly(self, client, user):
        usage = client.usage.record(user, "storage", 12)
        assert usage.period_start == datetime(2024, 3, 1)
        assert usage.period_end == datetime(2024, 3, 31, 23, 59, 59, 999999)

    def test_negative_correction_accepted(self, client, user):
        client.usage.record(user, "api-calls", 10)
        usage = client.usage.record(user, "api-calls", -4)
        assert usage.used == Decimal("6")

    def test_unknown_feature(self, client, user):
        with pytest.raises(UnknownFeature):
            client.usage.record(user, "teleport", 1)

    def test_invalid_amount(self, client, user):
        with pytest.raises(ValueError):
            client.usage.record(user, "api-calls", "lots")

    def test_emits_usage_recorded(self, client, user, sink):
        usage = client.usage.record(user, "api-calls", 3, metadata={"endpoint": "/v1/search"})
        [event] = sink.of_type(UsageRecorded)
        assert event.amount == Decimal("3")
        assert event.usage == usage
        assert event.subject == user
        assert usage.metadata == {"endpoint": "/v1/search"}

    def test_metadata_merge(self, make_client, user):
        client = make_client(EngineConfig(merge_metadata=True))
        client.usage.record(user, "api-calls", 1, metadata={"a": 1})
        usage = client.usage.record(user, "api-calls", 1, metadata={"b": 2})
        assert usage.metadata == {"a": 1, "b": 2}


class TestQueries:
    """Test totals, history and deletes."""

    def test_total_and_current_period(self, client, user):
        client.usage.record(user, "api-calls", 100, timestamp=datetime(2024, 2, 10))
        client.usage.record(user, "api-calls", 40)

        assert client.usage.total_usage(user, "api-calls") == Decimal("140")
        assert client.usage.current_period_usage(user, "api-calls") == Decimal("40")
        assert client.usage.total_usage(
            user, "api-calls", datetime(2024, 2, 1), datetime(2024, 2, 29)
        ) == Decimal("100")

    def test_totals_are_per_subject(self, client, user):
        client.usage.record(user, "api-calls", 5)
        other = SubjectRef("user", "2", "basic")
        assert client.usage.total_usage(other, "api-calls") == 0

    def test_history_filters(self, client, user, clock):
        client.usage.record(user, "exports", 1)
        clock.advance(minutes=1)
        client.usage.record(user, "api-calls", 2)
        clock.advance(minutes=1)
        client.usage.record(user, "exports", 3)

        assert [r.feature for r in client.usage.history(user)] == ["exports", "api-calls", "exports"]
        assert [r.used for r in client.usage.history(user, "exports", limit=1)] == [Decimal("3")]

    def test_reset_usage(self, client, user):
        client.usage.record(user, "api-calls", 1, timestamp=datetime(2024, 2, 10))
        client.usage.record(user, "api-calls", 1)
        assert client.usage.reset_usage(user, "api-calls", period_start=datetime(2024, 2, 1)) == 1
        assert client.usage.reset_usage(user, "api-calls") == 1
        assert client.usage.history(user) == []


class TestStatistics:
    """Test bucketed statistics."""

    def _seed(self, client, user):
        for amount, at in (
            (2, datetime(2024, 3, 1, 9)),
            (4, datetime(2024, 3, 1, 17)),
            (9, datetime(2024, 3, 2, 8)),
            (1, datetime(2024, 4, 3, 8)),
        ):
            client.usage.record(user, "exports", amount, timestamp=at)

    def test_daily_buckets(self, client, user):
        self._seed(client, user)
        stats = client.usage.statistics(
            user, "exports", datetime(2024, 3, 1), datetime(2024, 3, 31), StatisticsBucket.DAY
        )
        assert [(s.period, s.total, s.count) for s in stats] == [
            ("2024-03-01", Decimal("6"), 2),
            ("2024-03-02", Decimal("9"), 1),
        ]
        assert stats[0].average == Decimal("3")
        assert stats[0].maximum == Decimal("4")
        assert stats[0].minimum == Decimal("2")

    def test_monthly_bucket_by_name(self, client, user):
        self._seed(client, user)
        stats = client.usage.statistics(
            user, "exports", datetime(2024, 1, 1), datetime(2024, 12, 31), "month"
        )
        assert [(s.period, s.total) for s in stats] == [
            ("2024-03", Decimal("15")),
            ("2024-04", Decimal("1")),
        ]

    @pytest.mark.parametrize("week_start,expected", [
        (MONDAY, [("2024-03-04", Decimal("3")), ("2024-03-11", Decimal("4"))]),
        (SUNDAY, [("2024-03-03", Decimal("1")), ("2024-03-10", Decimal("6"))]),
    ])
    def test_weekly_buckets_follow_week_start(self, make_client, user, week_start, expected):
        client = make_client(EngineConfig(week_start=week_start))
        # Saturday, Sunday, Monday
        for amount, day in ((1, 9), (2, 10), (4, 11)):
            client.usage.record(user, "exports", amount, timestamp=datetime(2024, 3, day, 12))

        stats = client.usage.statistics(
            user, "exports", datetime(2024, 3, 1), datetime(2024, 3, 31), StatisticsBucket.WEEK
        )
        assert [(s.period, s.total) for s in stats] == expected

    def test_start_after_end(self, client, user):
        with pytest.raises(ValueError, match="start"):
            client.usage.statistics(user, "exports", datetime(2024, 3, 2), datetime(2024, 3, 1))

    def test_unknown_bucket(self, client, user):
        with pytest.raises(ValueError):
            client.usage.statistics(
                user, "exports", datetime(2024, 3, 1), datetime(2024, 3, 2), "fortnight"
            )
