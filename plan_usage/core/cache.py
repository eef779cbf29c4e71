"""
Advisory caching for catalog lookups and quota snapshots.

Each cache kind gets its own TTL-bounded store; keys can carry tags so
that every entry belonging to a subject or a plan can be flushed at
once. The cache is only an optimization: admission decisions always
read the store of record.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from cachetools import TTLCache

from .catalog import Catalog, Feature, Plan, Subject

logger = logging.getLogger(__name__)

DEFAULT_KIND = "default"

_MISSING = object()


def quota_tags(subject_type: str, subject_id: str) -> List[str]:
    return ["plan-usage", "quotas", f"billable:{subject_type}:{subject_id}"]


def plan_tags(plan_slug: Optional[str] = None) -> List[str]:
    tags = ["plan-usage", "plans"]
    if plan_slug:
        tags.append(f"plan:{plan_slug}")
    return tags


def feature_tags(feature_slug: str) -> List[str]:
    return ["plan-usage", "features", f"feature:{feature_slug}"]


class TaggedCache:
    """TTL caches per kind, with tag-based invalidation.

    Safe to share between threads. The tag index only tracks keys still
    held by a store: entries evicted by size or expiry are pruned from it.
    """

    def __init__(
        self,
        ttl: Dict[str, int],
        maxsize: int = 1024,
        enabled: bool = True,
        prefix: str = "plan_usage",
        timer: Callable[[], float] = time.monotonic
    ):
        if DEFAULT_KIND not in ttl:
            raise ValueError(f"ttl must define a '{DEFAULT_KIND}' entry")
        self.enabled = enabled
        self.prefix = prefix
        self._ttl = dict(ttl)
        self._maxsize = maxsize
        self._timer = timer
        self._lock = threading.RLock()
        self._stores: Dict[str, TTLCache] = {}
        self._tagged: Dict[str, Set[str]] = defaultdict(set)
        self._key_tags: Dict[str, Set[str]] = {}

    def _store(self, kind: Optional[str]) -> TTLCache:
        kind = kind if kind in self._ttl else DEFAULT_KIND
        if kind not in self._stores:
            self._stores[kind] = TTLCache(maxsize=self._maxsize, ttl=self._ttl[kind], timer=self._timer)
        return self._stores[kind]

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def remember(
        self,
        key: str,
        tags: Iterable[str],
        loader: Callable[[], Any],
        kind: Optional[str] = None
    ) -> Any:
        """Return the cached value for ``key``, loading and storing it on a miss."""
        if not self.enabled:
            return loader()

        full_key = self._key(key)
        with self._lock:
            store = self._store(kind)
            value = store.get(full_key, _MISSING)
            if value is not _MISSING:
                return value

            value = loader()
            store[full_key] = value
            self._untag(full_key)
            tags = set(tags)
            for tag in tags:
                self._tagged[tag].add(full_key)
            self._key_tags[full_key] = tags
            if len(self._key_tags) > self._maxsize * len(self._stores):
                self._prune()
            return value

    def forget(self, key: str) -> None:
        full_key = self._key(key)
        with self._lock:
            for store in self._stores.values():
                store.pop(full_key, None)
            self._untag(full_key)

    def flush_tags(self, tags: Iterable[str]) -> None:
        """Drop every entry carrying any of ``tags``."""
        if not self.enabled:
            return
        with self._lock:
            for tag in tags:
                keys = self._tagged.pop(tag, set())
                for full_key in keys:
                    for store in self._stores.values():
                        store.pop(full_key, None)
                    self._untag(full_key)
                if keys:
                    logger.debug("Flushed %d cache entries for tag %s", len(keys), tag)

    def clear(self) -> None:
        with self._lock:
            for store in self._stores.values():
                store.clear()
            self._tagged.clear()
            self._key_tags.clear()

    def _untag(self, full_key: str) -> None:
        for tag in self._key_tags.pop(full_key, ()):
            keys = self._tagged.get(tag)
            if keys is None:
                continue
            keys.discard(full_key)
            if not keys:
                del self._tagged[tag]

    def _prune(self) -> None:
        """Drop index entries for keys no store holds anymore."""
        for store in self._stores.values():
            store.expire()
        stale = [
            full_key for full_key in self._key_tags
            if not any(full_key in store for store in self._stores.values())
        ]
        for full_key in stale:
            self._untag(full_key)
        if stale:
            logger.debug("Pruned %d evicted cache keys", len(stale))


class CachedCatalog:
    """Catalog decorator memoizing feature and plan lookups."""

    def __init__(self, catalog: Catalog, cache: TaggedCache):
        self.catalog = catalog
        self.cache = cache

    def resolve_feature(self, slug: str) -> Feature:
        return self.cache.remember(
            f"feature:{slug}",
            feature_tags(slug),
            lambda: self.catalog.resolve_feature(slug),
            "features"
        )

    def get_subject_plan(self, subject: Subject) -> Optional[Plan]:
        plan_ref = subject.current_plan_ref()
        if plan_ref is None:
            return None
        return self.cache.remember(
            f"plan:{plan_ref}",
            plan_tags(plan_ref),
            lambda: self.catalog.get_subject_plan(subject),
            "plans"
        )

    def get_plan_feature_value(self, plan: Plan, feature_slug: str) -> Any:
        return self.catalog.get_plan_feature_value(plan, feature_slug)

    def plan_features(self, plan: Plan) -> List[Feature]:
        return self.cache.remember(
            f"plan:{plan.slug}:features",
            plan_tags(plan.slug),
            lambda: self.catalog.plan_features(plan),
            "plans"
        )

    def invalidate(self, plan_slug: Optional[str] = None) -> None:
        """Flush cached plans (one or all) and features."""
        self.cache.flush_tags(plan_tags(plan_slug) if plan_slug else ["plan-usage"])
