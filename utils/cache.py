from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from utils.errors import is_rate_limited

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_AGE_S = 5 * 60
RELAXED_MAX_AGE_S = 30 * 60
DEFAULT_FALLBACK_MAX_AGE_S = 24 * 60 * 60
DEFAULT_MAX_STALENESS_S = 24 * 60 * 60


class CacheSource(str, Enum):
    FRESH = "fresh"
    CACHED = "cached"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class EntryMetadata:
    api_limit_exceeded: bool = False
    last_successful_fetch: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"apiLimitExceeded": self.api_limit_exceeded}
        if self.last_successful_fetch is not None:
            out["lastSuccessfulFetch"] = self.last_successful_fetch
        if self.error_message is not None:
            out["errorMessage"] = self.error_message
        return out


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """One cached payload plus its provenance.

    ``timestamp`` is the time of the last real fetch; relabelling an entry
    keeps it, so ``age()`` always measures from the upstream read.
    """

    data: T
    timestamp: float
    source: CacheSource
    expires_at: float
    metadata: EntryMetadata = field(default_factory=EntryMetadata)

    def age(self, now: float) -> float:
        return max(0.0, now - self.timestamp)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source.value,
            "expiresAt": self.expires_at,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class CacheConfig:
    max_age: float = DEFAULT_MAX_AGE_S
    fallback_max_age: float = DEFAULT_FALLBACK_MAX_AGE_S
    # Not used by the cache itself; callers that retry read them from here.
    max_retries: int = 3
    retry_delay: float = 1.0

    @classmethod
    def for_mode(cls, relaxed: bool = False) -> "CacheConfig":
        return cls(max_age=RELAXED_MAX_AGE_S if relaxed else DEFAULT_MAX_AGE_S)

    def ttl_for(self, source: CacheSource) -> float:
        return self.fallback_max_age if source is CacheSource.FALLBACK else self.max_age


@dataclass
class CacheStats:
    total_entries: int = 0
    fresh_entries: int = 0
    cached_entries: int = 0
    fallback_entries: int = 0
    expired_entries: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalEntries": self.total_entries,
            "freshEntries": self.fresh_entries,
            "cachedEntries": self.cached_entries,
            "fallbackEntries": self.fallback_entries,
            "expiredEntries": self.expired_entries,
        }


class FreshnessCache:
    """In-memory cache that degrades to older data when the upstream fails.

    Entries are tagged ``fresh`` when written from a successful fetch,
    ``fallback`` when served because the upstream is rate limiting, and
    ``cached`` when served after any other upstream failure. The map is
    guarded by a lock; fetch functions always run outside it.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def now(self) -> float:
        return self._clock()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def update_config(self, **changes: Any) -> None:
        self.config = replace(self.config, **changes)

    def set(
        self,
        key: str,
        data: T,
        source: CacheSource = CacheSource.FRESH,
        metadata: EntryMetadata | None = None,
    ) -> None:
        source = CacheSource(source)
        now = self._clock()
        entry = CacheEntry(
            data=data,
            timestamp=now,
            source=source,
            expires_at=now + self.config.ttl_for(source),
            metadata=metadata or EntryMetadata(),
        )
        with self._lock:
            self._entries[key] = entry

    def get(self, key: str) -> Optional[CacheEntry[Any]]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def get_with_fallback(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        *,
        allow_stale: bool = True,
        max_staleness: float = DEFAULT_MAX_STALENESS_S,
        on_rate_limit: Optional[Callable[[Optional[CacheEntry[T]]], Optional[T]]] = None,
    ) -> CacheEntry[T]:
        """Fetch ``key`` from upstream, degrading to older data on failure.

        Makes a single attempt. On a rate-limit failure the newest stored
        entry is re-tagged ``fallback`` (and persisted) even if its short TTL
        has lapsed, provided it is younger than both ``fallback_max_age`` and
        ``max_staleness``; ``on_rate_limit`` may substitute its own payload.
        On any other failure, with ``allow_stale``, an entry younger than
        ``max_staleness`` is returned tagged ``cached`` without touching the
        store. When nothing usable exists the original exception is re-raised.
        """
        try:
            data = await fetch_fn()
        except Exception as exc:
            logger.warning("Failed to fetch fresh data for %s: %s", key, exc)
            degraded = self._degraded_entry(key, exc, allow_stale, max_staleness, on_rate_limit)
            if degraded is None:
                raise
            return degraded

        now = self._clock()
        entry = CacheEntry(
            data=data,
            timestamp=now,
            source=CacheSource.FRESH,
            expires_at=now + self.config.max_age,
            metadata=EntryMetadata(last_successful_fetch=now),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def _degraded_entry(
        self,
        key: str,
        exc: Exception,
        allow_stale: bool,
        max_staleness: float,
        on_rate_limit: Optional[Callable[[Optional[CacheEntry[Any]]], Any]],
    ) -> Optional[CacheEntry[Any]]:
        message = str(exc)

        if is_rate_limited(exc):
            fallback = self._mark_rate_limited(key, message, max_staleness)
            if on_rate_limit is not None:
                custom = on_rate_limit(fallback)
                if custom is not None:
                    self.set(key, custom, CacheSource.FALLBACK, EntryMetadata(api_limit_exceeded=True))
                    logger.info("Rate limit exceeded for %s, serving substitute data", key)
                    return self.get(key)
            if fallback is not None:
                logger.info("Rate limit exceeded for %s, using cached data", key)
                return fallback

        if allow_stale:
            now = self._clock()
            with self._lock:
                entry = self._entries.get(key)
            if entry is not None and entry.age(now) < max_staleness:
                logger.info("Using stale data for %s (%d minutes old)", key, round(entry.age(now) / 60))
                return replace(
                    entry,
                    source=CacheSource.CACHED,
                    metadata=replace(entry.metadata, error_message=message),
                )

        return None

    def _mark_rate_limited(self, key: str, message: str, max_staleness: float) -> Optional[CacheEntry[Any]]:
        now = self._clock()
        ceiling = min(self.config.fallback_max_age, max_staleness)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.age(now) >= ceiling:
                return None
            fallback = replace(
                entry,
                source=CacheSource.FALLBACK,
                expires_at=entry.timestamp + self.config.fallback_max_age,
                metadata=replace(entry.metadata, api_limit_exceeded=True, error_message=message),
            )
            self._entries[key] = fallback
        return fallback

    def is_fresh(self, key: str) -> bool:
        entry = self.get(key)
        if entry is None or entry.source is not CacheSource.FRESH:
            return False
        return entry.timestamp > self._clock() - self.config.max_age

    def is_available(self, key: str) -> bool:
        return self.get(key) is not None

    def stats(self) -> CacheStats:
        now = self._clock()
        out = CacheStats()
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            out.total_entries += 1
            if entry.is_expired(now):
                out.expired_entries += 1
            elif entry.source is CacheSource.FRESH:
                out.fresh_entries += 1
            elif entry.source is CacheSource.CACHED:
                out.cached_entries += 1
            else:
                out.fallback_entries += 1
        return out

    def cleanup(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
