"""
Query Cache - TTL side-table for aggregation results.

Cache key: SHA-256 of the canonical JSON of (filters, group_by, operation,
field, time_range, comparison_target, dataset fingerprint). Entries expire
after a fixed TTL and the oldest entry is evicted when the table is full.
The whole table is dropped when the merchant dataset changes (see attach()),
and the fingerprint keeps a result computed on an older snapshot from being
served for a newer one.
"""
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from mall_assistant.core.models import AnalyticalPlan, Merchant

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single cache entry with value and metadata."""
    value: Any
    created_at: float
    hits: int = 0


class QueryCache:
    """
    LRU cache with TTL for aggregation results.

    Features:
    - TTL-based expiration (default 5 minutes)
    - LRU eviction when max size reached
    - Invalidation hook for dataset changes
    - Hit/miss statistics
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: int = 300,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the cache.

        Args:
            max_size: Maximum number of entries to store
            ttl_seconds: Time-to-live for each entry in seconds
            enabled: Whether caching is enabled
            clock: Time source, injectable for tests
        """
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._enabled = enabled
        self._clock = clock

        self._hits = 0
        self._misses = 0

    @staticmethod
    def dataset_fingerprint(merchants: Iterable[Merchant]) -> str:
        """SHA-256 over the serialized records, in snapshot order."""
        digest = hashlib.sha256()
        for merchant in merchants:
            digest.update(merchant.model_dump_json(by_alias=True).encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()

    @staticmethod
    def generate_cache_key(plan: AnalyticalPlan, merchants: Optional[Iterable[Merchant]] = None) -> str:
        """
        Build the canonical key for an aggregation request.

        Args:
            plan: Analytical plan (only aggregation-relevant parts are used)
            merchants: Snapshot the plan runs against; its fingerprint is part
                of the key so a different dataset never reuses a result

        Returns:
            str: SHA-256 hex digest
        """
        entities = plan.entities
        aggregation = plan.aggregation
        key_parts = {
            "filters": entities.filters.model_dump(mode="json", exclude_none=True) if entities.filters else {},
            "group_by": aggregation.group_by if aggregation else None,
            "operation": aggregation.operation.value if aggregation else "count",
            "field": aggregation.field if aggregation else None,
            "time_range": entities.time_range.model_dump(mode="json", exclude_none=True) if entities.time_range else None,
            "comparison_target": entities.comparison_target,
            "dataset": QueryCache.dataset_fingerprint(merchants) if merchants is not None else None,
        }
        key_str = json.dumps(key_parts, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
        return hashlib.sha256(key_str.encode("utf-8")).hexdigest()

    def get(self, cache_key: str) -> Tuple[bool, Any]:
        """
        Get a value from the cache.

        Returns:
            Tuple of (hit, value); (False, None) on a miss or expired entry
        """
        if not self._enabled:
            return False, None

        entry = self._cache.get(cache_key)
        if entry is None:
            self._misses += 1
            return False, None

        if self._clock() - entry.created_at > self._ttl_seconds:
            del self._cache[cache_key]
            self._misses += 1
            return False, None

        self._cache.move_to_end(cache_key)
        entry.hits += 1
        self._hits += 1
        return True, entry.value

    def set(self, cache_key: str, value: Any) -> None:
        if not self._enabled:
            return

        if cache_key in self._cache:
            del self._cache[cache_key]

        while len(self._cache) >= self._max_size:
            self._cache.popitem(last=False)

        self._cache[cache_key] = CacheEntry(value=value, created_at=self._clock())

    def clear(self) -> int:
        """Drop all entries. Returns the number removed."""
        count = len(self._cache)
        self._cache.clear()
        if count:
            logger.info(f"🧹 Query cache cleared ({count} entries)")
        return count

    def attach(self, repository) -> Callable[[], None]:
        """
        Clear this cache whenever the repository's dataset changes.

        Args:
            repository: Object exposing subscribe(callback)

        Returns:
            The repository's unsubscribe function
        """
        return repository.subscribe(lambda _snapshot: self.clear())

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "enabled": self._enabled,
            "size": len(self._cache),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }

    def __len__(self) -> int:
        return len(self._cache)
