"""Process-wide caches: single-flight TTL cache, feed freshness and train positions."""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .models import TrainPosition, format_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    value: Any
    expires_at: float  # Monotonic clock
    updated_at: float  # Wall clock


@dataclass
class FeedStatus:
    last_updated: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    fetch_count: int = 0
    error_count: int = 0


class ReconciliationCache:
    """
    TTL cache where at most one computation per key runs at a time.

    A hit within the TTL returns the stored value. On a miss the first caller
    runs compute(); callers arriving before it finishes wait on the same
    future and get its value (or its exception). Failed computations never
    replace what is stored.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, Future] = {}
        self._feeds: Dict[str, FeedStatus] = {}

    def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute: Callable[[], T],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Return the cached value for key, computing it at most once when stale.

        Args:
            key: Cache key (e.g., "feed:ACE").
            ttl: Seconds the computed value stays fresh.
            compute: Zero-argument function producing the value.
            timeout: Seconds a waiting caller will block on another caller's
                computation before concurrent.futures.TimeoutError.

        Returns:
            The cached or freshly computed value.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is not None and entry.expires_at > self._clock():
                logger.debug(f"Cache hit for {key}")
                return entry.value
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.debug(f"Waiting on in-flight computation for {key}")
            return future.result(timeout=timeout)

        try:
            value = compute()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            with self._lock:
                self._store[key] = CacheEntry(value, self._clock() + ttl, time.time())
            future.set_result(value)
            return value
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def get(self, key: str) -> Optional[Any]:
        """Return the value for key if present and fresh."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    def peek(self, key: str) -> Optional[Any]:
        """Return the last stored value for key even if it has expired."""
        with self._lock:
            entry = self._store.get(key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._store[key] = CacheEntry(value, self._clock() + ttl, time.time())

    def clear(self, key: Optional[str] = None) -> None:
        """Remove one key, or every key when key is None."""
        with self._lock:
            if key is None:
                count = len(self._store)
                self._store.clear()
            else:
                count = 1 if self._store.pop(key, None) is not None else 0
        logger.info(f"Cleared {count} cache entries")

    def evict_expired(self) -> int:
        """Remove expired entries to bound memory."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if entry.expires_at <= now]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return len(expired)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._store.keys())

    def set_feed_timestamp(self, group_id: str, iso_time: str) -> None:
        """Record the last successful poll of a feed group."""
        with self._lock:
            status = self._feeds.setdefault(group_id, FeedStatus())
            status.last_updated = iso_time
            status.fetch_count += 1

    def get_feed_timestamp(self, group_id: str) -> Optional[str]:
        with self._lock:
            status = self._feeds.get(group_id)
            return status.last_updated if status else None

    def record_feed_error(self, group_id: str, error: str) -> None:
        with self._lock:
            status = self._feeds.setdefault(group_id, FeedStatus())
            status.last_error = error
            status.last_error_at = format_timestamp(int(time.time()))
            status.error_count += 1

    def feed_statuses(self) -> Dict[str, FeedStatus]:
        """Copy of the freshness metadata for every feed group seen so far."""
        with self._lock:
            return {
                group_id: FeedStatus(**vars(status)) for group_id, status in self._feeds.items()
            }

    def feed_timestamps(self) -> Dict[str, str]:
        with self._lock:
            return {
                group_id: status.last_updated
                for group_id, status in self._feeds.items()
                if status.last_updated
            }

    def staleness_seconds(self, group_id: str, now: Optional[float] = None) -> Optional[int]:
        """Seconds since the last successful poll, or None if never polled."""
        iso_time = self.get_feed_timestamp(group_id)
        if iso_time is None:
            return None
        updated = datetime.strptime(iso_time, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
        now = time.time() if now is None else now
        return max(0, int(now - updated.timestamp()))


class PositionMap:
    """Latest TrainPosition per trip_id, tagged with the feed group it came from."""

    def __init__(self):
        self._lock = threading.Lock()
        self._trains: Dict[str, Tuple[str, TrainPosition]] = {}

    def merge(self, group_id: str, positions: Iterable[TrainPosition]) -> int:
        """Replace whole records by trip_id; the last position per trip wins."""
        count = 0
        with self._lock:
            for position in positions:
                self._trains[position.trip_id] = (group_id, position)
                count += 1
        return count

    def replace_group(self, group_id: str, positions: Iterable[TrainPosition]) -> int:
        """Make positions the whole set for group_id, dropping its missing trips."""
        with self._lock:
            gone = [trip_id for trip_id, (group, _) in self._trains.items() if group == group_id]
            for trip_id in gone:
                del self._trains[trip_id]
            count = 0
            for position in positions:
                self._trains[position.trip_id] = (group_id, position)
                count += 1
        return count

    def snapshot(self, group_ids: Optional[Iterable[str]] = None) -> List[TrainPosition]:
        wanted = set(group_ids) if group_ids is not None else None
        with self._lock:
            return [
                position
                for group_id, position in self._trains.values()
                if wanted is None or group_id in wanted
            ]

    def has_group(self, group_id: str) -> bool:
        with self._lock:
            return any(group == group_id for group, _ in self._trains.values())

    def prune(self, cutoff: float) -> int:
        """Drop trains whose next-stop ETA is before cutoff (unix seconds)."""
        with self._lock:
            stale = [trip_id for trip_id, (_, p) in self._trains.items() if p.eta < cutoff]
            for trip_id in stale:
                del self._trains[trip_id]
        if stale:
            logger.debug(f"Pruned {len(stale)} stale train positions")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._trains.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._trains)
