"""
PlanUsage client.

Wires the catalog, stores, ledger and enforcer together and exposes the
operations applications call on every request.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..config.loader import EngineConfig, load_catalog, load_engine_config
from ..core.cache import CachedCatalog, TaggedCache
from ..core.catalog import Catalog, Subject
from ..core.enforcer import QuotaEnforcer
from ..core.events import EventSink, NullSink
from ..core.quota_store import QuotaStore
from ..core.quotas import Amount, to_decimal
from ..core.tracker import UsageTracker
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageRecord
from ..storage.repository import QuotaRepository, UsageRepository, initialize_schema

logger = logging.getLogger(__name__)


class PlanUsage:
    """Entry point for quota checks and usage recording.

    Quota rows and usage records are written through separate paths;
    ``record`` and ``consume`` keep the two ledgers in step.
    """

    def __init__(
        self,
        catalog: Catalog,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[EngineConfig] = None,
        sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        create_schema: bool = True
    ):
        """Initialize the client.

        Args:
            catalog: Feature and plan lookups
            db_path: SQLite database file path
            config: Engine settings (defaults apply when omitted)
            sink: Receiver of usage and quota events
            clock: Source of "now", injectable for tests
            create_schema: Create the tables if they don't exist
        """
        self.config = config or EngineConfig()
        self.sink = sink or NullSink()
        self.db_path = db_path

        self.cache = None
        if self.config.cache.enabled:
            self.cache = TaggedCache(ttl=self.config.cache.ttl, maxsize=self.config.cache.maxsize)
            catalog = CachedCatalog(catalog, self.cache)
        self.catalog = catalog

        if create_schema:
            initialize_schema(db_path)

        self.store = QuotaStore(QuotaRepository(db_path), catalog, self.config, self.cache, clock)
        self.quotas = QuotaEnforcer(self.store, self.sink)
        self.usage = UsageTracker(UsageRepository(db_path), catalog, self.config, self.sink, clock)

    @classmethod
    def from_files(
        cls,
        catalog_path: str,
        db_path: str = DEFAULT_DB_PATH,
        config_path: Optional[str] = None,
        sink: Optional[EventSink] = None
    ) -> "PlanUsage":
        """Build a client from a catalog YAML and an optional config YAML."""
        config = load_engine_config(config_path) if config_path else EngineConfig()
        return cls(load_catalog(catalog_path), db_path=db_path, config=config, sink=sink)

    def can(self, subject: Subject, feature_slug: str, amount: Amount = 1) -> bool:
        return self.quotas.can_use(subject, feature_slug, amount)

    def record(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount = 1,
        metadata: Optional[Dict[str, Any]] = None
    ) -> UsageRecord:
        """Write usage to the ledger and count it against the quota.

        No admission check is made; use ``consume`` to gate first. A
        negative amount is a correction: the ledger keeps it and the quota
        is decremented by its magnitude.

        Raises:
            UnknownFeature: If the feature is not in the catalog
            ValueError: If amount is not a finite number
        """
        value = to_decimal(amount)
        feature = self.catalog.resolve_feature(feature_slug)
        usage = self.usage.record(subject, feature.slug, value, metadata)
        if feature.is_metered:
            if value < 0:
                self.quotas.decrement(subject, feature.slug, -value)
            else:
                self.quotas.increment(subject, feature.slug, value)
        return usage

    def consume(
        self,
        subject: Subject,
        feature_slug: str,
        amount: Amount = 1,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Admit and consume ``amount``, recording it only when accepted.

        Returns:
            True if accepted, False if rejected
        """
        if not self.quotas.try_enforce(subject, feature_slug, amount):
            return False
        self.usage.record(subject, feature_slug, amount, metadata)
        return True
