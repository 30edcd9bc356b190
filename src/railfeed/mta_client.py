"""MTA GTFS-Realtime feed fetcher and parser."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .exceptions import FeedFetchError, UnknownFeedGroupError
from .models import FeedEntity, FeedGroup, StopUpdate

if TYPE_CHECKING:
    from .gtfs_loader import TopologyIndex

logger = logging.getLogger(__name__)

_FEED_BASE = "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2F"

# MTA GTFS-Realtime feed groups (subway only)
FEED_GROUPS: Dict[str, FeedGroup] = {
    group.group_id: group
    for group in (
        FeedGroup("ACE", _FEED_BASE + "gtfs-ace", ("A", "C", "E")),
        FeedGroup("BDFM", _FEED_BASE + "gtfs-bdfm", ("B", "D", "F", "M")),
        FeedGroup("G", _FEED_BASE + "gtfs-g", ("G",)),
        FeedGroup("JZ", _FEED_BASE + "gtfs-jz", ("J", "Z")),
        FeedGroup("NQRW", _FEED_BASE + "gtfs-nqrw", ("N", "Q", "R", "W")),
        FeedGroup("L", _FEED_BASE + "gtfs-l", ("L",)),
        FeedGroup("SI", _FEED_BASE + "gtfs-si", ("SI", "SIR")),
        FeedGroup("1234567", _FEED_BASE + "gtfs", ("1", "2", "3", "4", "5", "6", "7", "S")),
    )
}

_STOP_RELATIONSHIP = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.ScheduleRelationship


def get_group(group_id: str) -> Optional[FeedGroup]:
    """Look up a feed group by ID (case-insensitive)."""
    if not group_id:
        return None
    group = FEED_GROUPS.get(group_id)
    if group is not None:
        return group
    lowered = group_id.lower()
    return next((g for g in FEED_GROUPS.values() if g.group_id.lower() == lowered), None)


def get_group_url(group_id: str) -> Optional[str]:
    group = get_group(group_id)
    return group.url if group else None


def get_feed_group_for_route(route_id: str) -> Optional[str]:
    """Return the ID of the feed group carrying a route, e.g. "N" -> "NQRW"."""
    route_lower = route_id.lower()
    for group in FEED_GROUPS.values():
        if any(route.lower() == route_lower for route in group.routes):
            return group.group_id
    return None


def list_groups() -> List[str]:
    return list(FEED_GROUPS.keys())


def resolve_group_id(group_id: str) -> str:
    """Canonical group ID, or UnknownFeedGroupError."""
    group = get_group(group_id)
    if group is None:
        raise UnknownFeedGroupError(group_id)
    return group.group_id


class MTAClient:
    """Fetches and parses MTA GTFS-Realtime feeds."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 15,
        max_workers: int = 8,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the MTA client.

        Args:
            api_key: Optional MTA API key sent as the x-api-key header.
            timeout: Per-request timeout in seconds.
            max_workers: Thread pool size for fetch_all_feeds().
            session: Optional requests session to reuse connections.
        """
        self.api_key = api_key
        self.timeout = timeout
        self.max_workers = max_workers
        self._session = session or requests.Session()

    def fetch_feed(
        self, group_id: str, index: Optional["TopologyIndex"] = None
    ) -> List[FeedEntity]:
        """
        Fetch and decode one feed group.

        Args:
            group_id: Feed group ID (e.g., "ACE").
            index: Optional topology used to attach stop names.

        Returns:
            List of FeedEntity, one per trip update.

        Raises:
            UnknownFeedGroupError: If group_id is not a known feed group.
            FeedFetchError: On network or decode failure.
        """
        group = get_group(group_id)
        if group is None:
            raise UnknownFeedGroupError(group_id)

        content = self._download(group)
        entities = parse_feed(content, group.group_id, index)
        logger.debug(f"Fetched {len(entities)} trip updates from {group.group_id}")
        return entities

    def fetch_all_feeds(
        self,
        group_ids: Optional[Iterable[str]] = None,
        index: Optional["TopologyIndex"] = None,
    ) -> Dict[str, List[FeedEntity]]:
        """
        Fetch several feed groups in parallel.

        A group that fails is logged and left out of the result; the other
        groups are unaffected.

        Returns:
            {group_id: entities} for every group that succeeded.
        """
        ids = [resolve_group_id(g) for g in group_ids] if group_ids is not None else list_groups()
        results: Dict[str, List[FeedEntity]] = {}
        if not ids:
            return results

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ids))) as pool:
            futures = {group_id: pool.submit(self.fetch_feed, group_id, index) for group_id in ids}
            for group_id, future in futures.items():
                try:
                    results[group_id] = future.result()
                except FeedFetchError as e:
                    logger.warning(f"Failed to fetch feed {group_id}: {e}")
        return results

    def _download(self, group: FeedGroup) -> bytes:
        headers = {"x-api-key": self.api_key} if self.api_key else None
        try:
            response = self._session.get(group.url, headers=headers, timeout=self.timeout)
            if response.status_code in (401, 403):
                logger.error(
                    f"MTA feed request unauthorized for {group.group_id} "
                    f"(HTTP {response.status_code})"
                )
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedFetchError(group.group_id, str(e)) from e
        return response.content

    def close(self) -> None:
        self._session.close()


def parse_feed(
    content: bytes,
    group_id: str = "",
    index: Optional["TopologyIndex"] = None,
) -> List[FeedEntity]:
    """
    Decode a GTFS-Realtime FeedMessage into FeedEntity objects.

    Only trip_update entities are kept. Zero times are treated as missing.
    """
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(content)
    except DecodeError as e:
        raise FeedFetchError(group_id, f"invalid protobuf: {e}") from e

    header_time = feed.header.timestamp if feed.header.HasField("timestamp") else None

    entities: List[FeedEntity] = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue

        trip_update = entity.trip_update
        trip = trip_update.trip
        vehicle_id = None
        if entity.HasField("vehicle") and entity.vehicle.vehicle.id:
            vehicle_id = entity.vehicle.vehicle.id
        elif trip_update.HasField("vehicle") and trip_update.vehicle.id:
            vehicle_id = trip_update.vehicle.id

        stop_updates = tuple(
            _parse_stop_time_update(stop_time_update, index)
            for stop_time_update in trip_update.stop_time_update
        )

        entities.append(
            FeedEntity(
                trip_id=trip.trip_id or None,
                route_id=trip.route_id or None,
                stop_updates=stop_updates,
                entity_id=entity.id or None,
                start_date=trip.start_date or None,
                vehicle_id=vehicle_id,
                timestamp=header_time or None,
            )
        )
    return entities


def _parse_stop_time_update(stop_time_update, index: Optional["TopologyIndex"]) -> StopUpdate:
    stop_id = stop_time_update.stop_id or None
    stop_name = None
    if stop_id and index is not None:
        stop = index.get_stop(stop_id)
        stop_name = stop.name if stop else None

    relationship = None
    if stop_time_update.HasField("schedule_relationship"):
        relationship = _STOP_RELATIONSHIP.Name(stop_time_update.schedule_relationship)

    return StopUpdate(
        stop_id=stop_id,
        arrival_time=_event_field(stop_time_update, "arrival", "time"),
        arrival_delay=_event_field(stop_time_update, "arrival", "delay"),
        departure_time=_event_field(stop_time_update, "departure", "time"),
        departure_delay=_event_field(stop_time_update, "departure", "delay"),
        stop_name=stop_name,
        schedule_relationship=relationship,
    )


def _event_field(stop_time_update, event: str, name: str) -> Optional[int]:
    if not stop_time_update.HasField(event):
        return None
    stop_time_event = getattr(stop_time_update, event)
    if not stop_time_event.HasField(name):
        return None
    value = getattr(stop_time_event, name)
    if name == "time" and not value:
        return None
    return value
