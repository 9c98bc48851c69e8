"""
Rate/price cache with soft and hard expiry tiers.

- Within the soft TTL a value is fresh and returned without fetching.
- Between soft and hard TTL a value is stale: a fetch is attempted, and the
  stale value is served only if that fetch fails.
- Beyond the hard TTL (or never cached) a failed fetch yields the caller's
  default.

Keys are plain strings; rate_key() and close_key() build the two shapes used
by the refresh pipeline. Process-local, not durable.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from ...utils.logging_setup import get_logger

logger = get_logger(__name__)


def rate_key(from_currency: str, to_currency: str) -> str:
    return f"fx:{from_currency.upper()}:{to_currency.upper()}"


def close_key(symbol: str) -> str:
    return f"close:{symbol.upper()}"


@dataclass
class CacheEntry:
    value: float
    stored_at: float  # clock() seconds


class RateCache:
    """
    Time-boxed key -> float cache shared by FX conversion and close-price lookups.

    Concurrent get_or_fetch() calls for the same key share one fetch.
    """

    def __init__(
        self,
        soft_ttl_sec: float = 300,
        hard_ttl_sec: float = 900,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        if hard_ttl_sec < soft_ttl_sec:
            raise ValueError("hard_ttl_sec must be >= soft_ttl_sec")
        self._soft_ttl = soft_ttl_sec
        self._hard_ttl = hard_ttl_sec
        self._max_size = max_size
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._stale_served = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _age(self, entry: CacheEntry) -> float:
        return self._clock() - entry.stored_at

    def get_fresh(self, key: str) -> Optional[float]:
        """Value if younger than the soft TTL."""
        entry = self._entries.get(key)
        if entry is not None and self._age(entry) < self._soft_ttl:
            return entry.value
        return None

    def get_stale(self, key: str) -> Optional[float]:
        """Value if younger than the hard TTL."""
        entry = self._entries.get(key)
        if entry is not None and self._age(entry) < self._hard_ttl:
            return entry.value
        return None

    def put(self, key: str, value: float) -> None:
        """
        Store a value, evicting the oldest entries when full.

        Evicts 10% of the cache at a time to avoid evicting on every put.
        """
        if key not in self._entries and len(self._entries) >= self._max_size:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1].stored_at)
            evict_count = max(1, self._max_size // 10)
            for k, _ in oldest[:evict_count]:
                del self._entries[k]
            logger.debug(f"Rate cache evicted {evict_count} oldest entries")

        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Optional[float]]],
        default: Optional[float] = None,
    ) -> Optional[float]:
        """
        Return a fresh cached value, else fetch; fall back to stale, then default.

        A fetch returning None or raising counts as a failed fetch. Fetch
        exceptions are logged, not raised.
        """
        fresh = self.get_fresh(key)
        if fresh is not None:
            self._hits += 1
            return fresh

        self._misses += 1
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_and_store(key, fetch))
            self._inflight[key] = pending
            pending.add_done_callback(lambda _f: self._inflight.pop(key, None))

        value = await asyncio.shield(pending)
        if value is not None:
            return value

        stale = self.get_stale(key)
        if stale is not None:
            self._stale_served += 1
            logger.debug(f"Serving stale cached value for {key}")
            return stale

        return default

    async def _fetch_and_store(
        self, key: str, fetch: Callable[[], Awaitable[Optional[float]]]
    ) -> Optional[float]:
        try:
            value = await fetch()
        except Exception as e:
            logger.warning(f"Fetch for {key} failed: {e}")
            return None
        if value is None:
            return None
        self.put(key, value)
        return value

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "stale_served": self._stale_served,
        }
