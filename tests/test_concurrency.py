"""
Concurrency tests against a shared database file.

Each operation opens its own connection, so threads sharing one client
exercise the same locking paths as separate processes would.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from plan_usage.config.loader import EngineConfig
from plan_usage.core.catalog import SubjectRef

WORKERS = 8


def _run_parallel(task, count):
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(lambda _: task(), range(count)))


class TestConcurrentWrites:
    """Test that parallel writers neither lose nor duplicate updates."""

    def test_no_lost_increments(self, client, user):
        client.quotas.get_or_create_quota(user, "api-calls")

        _run_parallel(lambda: client.quotas.increment(user, "api-calls", 1), WORKERS * 20)

        assert client.quotas.get_quota(user, "api-calls").used == Decimal("160")

    def test_lazy_creation_yields_single_quota(self, client, user):
        _run_parallel(lambda: client.quotas.increment(user, "api-calls", 1), 40)

        quotas = client.quotas.get_all_quotas(user)
        assert [q.feature for q in quotas] == ["api-calls"]
        assert quotas[0].used == Decimal("40")

    def test_aggregated_records_share_one_period_row(self, client, user):
        _run_parallel(lambda: client.usage.record(user, "api-calls", "0.5"), 40)

        [usage] = client.usage.history(user, "api-calls")
        assert usage.used == Decimal("20")
        assert client.usage.total_usage(user, "api-calls") == Decimal("20")


class TestStrictEnforcement:
    """Test that strict enforcement never admits past the limit."""

    def test_no_overshoot(self, make_client):
        client = make_client(EngineConfig(strict_enforcement=True))
        subject = SubjectRef("org", "acme", "basic")

        results = _run_parallel(lambda: client.quotas.enforce(subject, "exports", 1), 40)

        assert results.count(True) == 10
        assert results.count(False) == 30
        assert client.quotas.get_quota(subject, "exports").used == Decimal("10")

    def test_consume_keeps_ledger_in_step(self, make_client):
        client = make_client(EngineConfig(strict_enforcement=True))
        subject = SubjectRef("org", "acme", "basic")

        results = _run_parallel(lambda: client.consume(subject, "api-calls", 100), 25)

        assert results.count(True) == 10
        assert client.quotas.get_quota(subject, "api-calls").used == Decimal("1000")
        assert client.usage.total_usage(subject, "api-calls") == Decimal("1000")
