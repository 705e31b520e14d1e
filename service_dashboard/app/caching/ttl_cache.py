"""
In-process TTL cache for dashboard responses.

Entries carry an absolute expiry on the cache clock and are removed lazily
on read, by the periodic sweep, or by the capacity guard on insert. All
operations are synchronous so they are atomic with respect to the event
loop; only the sweep loop itself awaits.
"""

import asyncio
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import DashboardConfig
    from shared.metrics import MetricsCollector


DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_SIZE_BYTES = 50 * 1024 * 1024
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


@dataclass
class SweepResult:
    expired: int
    evicted: int
    estimated_bytes: int
    remaining: int


class TTLCache:
    """Bounded key/value store with per-entry time-to-live."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        *,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        bytes_per_char: int = 2,
        sweep_target_ratio: float = 0.8,
        sweep_max_evict_fraction: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.max_entries = max_entries
        self.max_size_bytes = max_size_bytes
        self.sweep_interval_seconds = sweep_interval_seconds
        self.bytes_per_char = bytes_per_char
        self.sweep_target_ratio = sweep_target_ratio
        self.sweep_max_evict_fraction = sweep_max_evict_fraction
        self.logger = get_logger("dashboard.cache")
        self.metrics = metrics

        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._sweeps = 0
        self._estimated_bytes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        # An entry is still valid at exactly its expiry instant.
        return now > entry.expires_at

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            self._record_removal("expired")
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store value under key for ttl_seconds, replacing any previous entry."""
        if key in self._entries:
            # Overwrites re-enter at the back of the insertion order.
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
            self._evictions += 1
            self._record_removal("capacity")

        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._estimated_bytes = 0

    def _estimate_size(self, value: Any) -> int:
        try:
            return len(json.dumps(value, default=str)) * self.bytes_per_char
        except (TypeError, ValueError):
            return 0

    def sweep(self) -> SweepResult:
        """Drop expired entries, then relieve count or size pressure."""
        now = self._clock()
        expired_keys: List[str] = []
        sizes: Dict[str, int] = {}

        for key, entry in self._entries.items():
            if self._is_expired(entry, now):
                expired_keys.append(key)
            else:
                sizes[key] = self._estimate_size(entry.value)

        for key in expired_keys:
            del self._entries[key]
        self._expirations += len(expired_keys)
        if expired_keys:
            self._record_removal("expired", len(expired_keys))

        estimated_bytes = sum(sizes.values())
        count = len(self._entries)
        evicted = 0

        if count > self.max_entries or estimated_bytes > self.max_size_bytes:
            target = math.floor(self.max_entries * self.sweep_target_ratio)
            cap = max(1, math.floor(count * self.sweep_max_evict_fraction))
            needed = count - target
            to_evict = min(needed, cap) if needed > 0 else cap

            soonest_first = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
            for key, _ in soonest_first[:to_evict]:
                del self._entries[key]
                estimated_bytes -= sizes.get(key, 0)
                evicted += 1

            self._evictions += evicted
            self._record_removal("pressure", evicted)
            self.logger.warning(
                "Cache over limits, evicted soonest-expiring entries",
                evicted=evicted,
                remaining=len(self._entries),
                estimated_bytes=estimated_bytes,
                max_entries=self.max_entries,
                max_size_bytes=self.max_size_bytes,
            )

        self._sweeps += 1
        self._estimated_bytes = estimated_bytes
        if self.metrics:
            self.metrics.set_gauge("cache_entries", len(self._entries))
            self.metrics.set_gauge("cache_estimated_bytes", estimated_bytes)

        return SweepResult(
            expired=len(expired_keys),
            evicted=evicted,
            estimated_bytes=estimated_bytes,
            remaining=len(self._entries),
        )

    def _record_removal(self, reason: str, amount: int = 1) -> None:
        if self.metrics and amount:
            self.metrics.increment_counter("cache_evictions_total", amount, reason=reason)

    async def start(self):
        """Start the periodic sweep."""
        if self.running:
            return

        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Cache sweep started", interval_seconds=self.sweep_interval_seconds)

    async def stop(self):
        """Stop the periodic sweep."""
        self.running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.logger.info("Cache sweep stopped")

    async def _sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                result = self.sweep()
                if result.expired or result.evicted:
                    self.logger.debug(
                        "Cache sweep completed",
                        expired=result.expired,
                        evicted=result.evicted,
                        remaining=result.remaining,
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Cache sweep failed", error=str(e))

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "estimated_bytes": self._estimated_bytes,
            "max_size_bytes": self.max_size_bytes,
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": round(self._hits / lookups, 4) if lookups else 0.0,
            "evictions": self._evictions,
            "expirations": self._expirations,
            "sweeps": self._sweeps,
        }


def create_cache(
    config: "DashboardConfig",
    metrics: Optional["MetricsCollector"] = None,
    clock: Callable[[], float] = time.monotonic,
) -> TTLCache:
    """Build the response cache from service configuration."""
    return TTLCache(
        max_entries=config.cache_max_entries,
        max_size_bytes=config.cache_max_size_bytes,
        sweep_interval_seconds=config.cache_sweep_interval_seconds,
        bytes_per_char=config.cache_bytes_per_char,
        sweep_target_ratio=config.cache_sweep_target_ratio,
        sweep_max_evict_fraction=config.cache_sweep_max_evict_fraction,
        clock=clock,
        metrics=metrics,
    )
