"""Main feed tracker: the query interface over topology, feeds and caches."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .arrivals import (
    DIRECTION_SUFFIXES,
    build_arrival_map,
    dedupe_arrivals,
    merge_station_arrivals,
    sort_arrivals,
)
from .cache import PositionMap, ReconciliationCache
from .config import TrackerSettings
from .exceptions import FeedFetchError, FeedUnavailableError
from .gtfs_loader import GTFSLoader, TopologyIndex, TopologyStore
from .headsign import HeadsignResolver
from .models import ArrivalBoard, ArrivalItem, FeedEntity, Stop, TrainPosition, format_timestamp
from .mta_client import MTAClient, list_groups, resolve_group_id
from .positions import compute_positions
from .trip_ids import is_child_stop_id, parent_station_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FeedTracker:
    """
    Live train positions and arrival boards for MTA subway feeds.

    This class provides methods to:
    - Interpolate train positions across one or all feed groups
    - Build arrival boards for a stop or for both platforms of a station
    - Search stops and report feed freshness

    All shared state (topology, caches, position map) is owned by the
    instance, so separate trackers never share data.
    """

    def __init__(
        self,
        settings: Optional[TrackerSettings] = None,
        topology: Optional[TopologyStore] = None,
        cache: Optional[ReconciliationCache] = None,
        client: Optional[MTAClient] = None,
        positions: Optional[PositionMap] = None,
    ):
        """
        Initialize the tracker.

        Args:
            settings: Runtime settings. Defaults to TrackerSettings.from_env().
            topology: Static topology store. Defaults to loading from
                settings.data_dir, or downloading settings.gtfs_url.
            cache: Reconciliation cache for feeds, positions and boards.
            client: Feed client. Defaults to an MTAClient using settings.
            positions: Keyed train position map.
        """
        self.settings = settings or TrackerSettings.from_env()
        if topology is None:
            loader = GTFSLoader(self.settings.data_dir, self.settings.gtfs_url)
            topology = TopologyStore(loader.load)
        self.topology = topology
        self.cache = cache if cache is not None else ReconciliationCache()
        self.client = client or MTAClient(
            api_key=self.settings.api_key,
            timeout=self.settings.request_timeout,
            max_workers=self.settings.max_workers,
        )
        self.positions = positions if positions is not None else PositionMap()

        self._resolver_lock = threading.Lock()
        self._resolver: Optional[HeadsignResolver] = None

    def get_train_positions(self, group_id: Optional[str] = None) -> List[TrainPosition]:
        """
        Get interpolated positions for every train in one or all feed groups.

        Groups that fail to fetch keep the positions from their last good poll;
        feed_status() tells callers how old those are.

        Args:
            group_id: Optional feed group filter (e.g., "ACE").

        Returns:
            List of TrainPosition, one per trip_id.

        Raises:
            UnknownFeedGroupError: If group_id is not a known group.
            FeedUnavailableError: If every requested group failed and none
                has ever been polled successfully.
        """
        index = self.topology.load()
        group_ids = [resolve_group_id(group_id)] if group_id else list_groups()

        def compute(gid: str) -> List[TrainPosition]:
            return self.cache.get_or_compute(
                f"positions:{gid}",
                self.settings.positions_ttl,
                lambda: compute_positions(
                    self._group_entities(gid, index), index, self._resolver_for(index)
                ),
                timeout=self.settings.request_timeout,
            )

        failed = []
        for gid, result in self._fan_out(group_ids, compute).items():
            if isinstance(result, FeedFetchError):
                logger.warning(f"No positions for {gid} this cycle: {result}")
                failed.append(gid)
                continue
            # Trips gone from a successful poll are dropped; failed groups keep theirs
            self.positions.replace_group(gid, result)

        self.positions.prune(time.time() - self.settings.position_retention)

        if len(failed) == len(group_ids) and not any(
            self.cache.get_feed_timestamp(gid) for gid in group_ids
        ):
            raise FeedUnavailableError(f"No train data available for {', '.join(group_ids)}")

        return self.positions.snapshot(group_ids)

    def get_arrival_board(
        self, group_id: str, stop_id: str, use_cache: bool = True
    ) -> ArrivalBoard:
        """
        Get the arrival board for a stop from one feed group.

        Args:
            group_id: Feed group ID (e.g., "1234567").
            stop_id: Stop ID (e.g., "127N"). A platform ID with no arrivals
                falls back to its parent station ID.
            use_cache: If False, bypass the feed and board caches.

        Returns:
            ArrivalBoard, empty if no predictions reference the stop.
        """
        index = self.topology.load()
        gid = resolve_group_id(group_id)
        boards = self._group_boards(gid, index, use_cache)

        board = boards.get(stop_id)
        if board is None and is_child_stop_id(stop_id):
            board = boards.get(parent_station_id(stop_id))
        if board is not None:
            return board

        stop = index.get_stop(stop_id)
        return ArrivalBoard(
            stop_id=stop_id,
            stop_name=stop.name if stop else None,
            updated_at=None,
            arrivals=[],
        )

    def get_arrivals_for_stop(self, stop_id: str, use_cache: bool = True) -> List[ArrivalItem]:
        """
        Get arrivals for a stop across all feed groups, sorted and deduplicated.

        Raises:
            FeedUnavailableError: If every feed group failed with no cached data.
        """
        group_ids = list_groups()
        results = self._fan_out(
            group_ids, lambda gid: self.get_arrival_board(gid, stop_id, use_cache).arrivals
        )

        arrivals: List[ArrivalItem] = []
        failures = 0
        for gid, result in results.items():
            if isinstance(result, FeedFetchError):
                logger.warning(f"Skipping {gid} arrivals for {stop_id}: {result}")
                failures += 1
                continue
            arrivals.extend(result)

        if failures == len(group_ids):
            raise FeedUnavailableError(f"No arrival data available for {stop_id}")
        return dedupe_arrivals(sort_arrivals(arrivals))

    def get_station_arrivals(self, station_id: str, use_cache: bool = True) -> ArrivalBoard:
        """
        Get arrivals for both directions (N/S) of a station from all feed groups.

        Args:
            station_id: Parent station ID (e.g., "127").
            use_cache: If False, bypass the feed and board caches.

        Returns:
            ArrivalBoard merging both platforms, sorted by time and
            deduplicated by trip_id + stop_id.
        """
        index = self.topology.load()
        with ThreadPoolExecutor(max_workers=len(DIRECTION_SUFFIXES)) as pool:
            per_direction = list(
                pool.map(
                    lambda suffix: self.get_arrivals_for_stop(f"{station_id}{suffix}", use_cache),
                    DIRECTION_SUFFIXES,
                )
            )
        return merge_station_arrivals(
            station_id, per_direction, index, window=self.settings.arrival_window
        )

    def search_stops(
        self, query: Optional[str] = None, route: Optional[str] = None
    ) -> List[Stop]:
        """Find stops by partial name/ID and served route."""
        return self.topology.load().search_stops(query, route)

    def get_stop(self, stop_id: str) -> Optional[Stop]:
        """Get a stop by ID, or None if unknown."""
        return self.topology.load().get_stop(stop_id)

    def feed_status(self) -> Dict[str, Dict[str, Any]]:
        """
        Freshness of every feed group.

        Returns:
            {group_id: {"last_updated", "staleness_seconds", "fetch_count",
                        "error_count", "last_error"}}
        """
        statuses = self.cache.feed_statuses()
        now = time.time()
        report: Dict[str, Dict[str, Any]] = {}
        for gid in list_groups():
            status = statuses.get(gid)
            report[gid] = {
                "last_updated": status.last_updated if status else None,
                "staleness_seconds": self.cache.staleness_seconds(gid, now),
                "fetch_count": status.fetch_count if status else 0,
                "error_count": status.error_count if status else 0,
                "last_error": status.last_error if status else None,
            }
        return report

    def cleanup(self, reload_topology: bool = False) -> None:
        """
        Release cached feeds, boards and positions to bound memory.

        Args:
            reload_topology: Also drop the static topology so the next query
                reloads it.
        """
        self.cache.clear()
        self.positions.clear()
        if reload_topology:
            self.topology.clear()
            with self._resolver_lock:
                self._resolver = None
        logger.info("Cleaned up tracker caches")

    def close(self) -> None:
        self.client.close()

    def _resolver_for(self, index: TopologyIndex) -> HeadsignResolver:
        with self._resolver_lock:
            if self._resolver is None or self._resolver.index is not index:
                self._resolver = HeadsignResolver(index)
            return self._resolver

    def _group_entities(
        self, group_id: str, index: TopologyIndex, use_cache: bool = True
    ) -> List[FeedEntity]:
        def fetch() -> List[FeedEntity]:
            try:
                entities = self.client.fetch_feed(group_id, index)
            except FeedFetchError as e:
                self.cache.record_feed_error(group_id, str(e))
                raise
            self.cache.set_feed_timestamp(group_id, format_timestamp(int(time.time())))
            return entities

        if not use_cache:
            return fetch()
        return self.cache.get_or_compute(
            f"feed:{group_id}",
            self.settings.feed_ttl,
            fetch,
            timeout=self.settings.request_timeout,
        )

    def _group_boards(
        self, group_id: str, index: TopologyIndex, use_cache: bool
    ) -> Dict[str, ArrivalBoard]:
        def build() -> Dict[str, ArrivalBoard]:
            entities = self._group_entities(group_id, index, use_cache)
            return build_arrival_map(entities, index, window=self.settings.arrival_window)

        if not use_cache:
            return build()

        key = f"board:{group_id}"
        try:
            return self.cache.get_or_compute(
                key, self.settings.board_ttl, build, timeout=self.settings.request_timeout
            )
        except (FeedFetchError, FuturesTimeoutError) as e:
            stale = self.cache.peek(key)
            if stale is None:
                if isinstance(e, FeedFetchError):
                    raise
                raise FeedFetchError(group_id, "timed out waiting for in-flight fetch") from e
            logger.warning(f"Serving stale arrivals for {group_id}: {e!r}")
            return stale

    def _fan_out(self, group_ids: List[str], func: Callable[[str], T]) -> Dict[str, Any]:
        """
        Run func per group in parallel.

        A FeedFetchError, or a timeout while waiting on another caller's
        in-flight fetch, is returned as that group's FeedFetchError instead
        of being raised.
        """
        results: Dict[str, Any] = {}
        if not group_ids:
            return results
        workers = min(self.settings.max_workers, len(group_ids))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {gid: pool.submit(func, gid) for gid in group_ids}
            for gid, future in futures.items():
                try:
                    results[gid] = future.result()
                except FeedFetchError as e:
                    results[gid] = e
                except FuturesTimeoutError:
                    logger.warning(f"Timed out waiting for in-flight fetch of {gid}")
                    results[gid] = FeedFetchError(gid, "timed out waiting for in-flight fetch")
        return results
