"""Arrival board construction from GTFS-Realtime stop predictions."""

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional

from .models import ArrivalBoard, ArrivalItem, FeedEntity, format_timestamp

if TYPE_CHECKING:
    from .gtfs_loader import TopologyIndex

DIRECTION_SUFFIXES = ("N", "S")


@dataclass(frozen=True)
class ArrivalWindow:
    """Limits applied to live boards: how far ahead/behind, and how many."""
    lookahead_seconds: int = 20 * 60
    grace_seconds: int = 60
    max_arrivals: Optional[int] = 8

    def accepts(self, when: int, now: float) -> bool:
        return now - self.grace_seconds <= when <= now + self.lookahead_seconds


def build_board(
    stop_id: str,
    entities: Iterable[FeedEntity],
    index: Optional["TopologyIndex"] = None,
    now: Optional[float] = None,
    window: Optional[ArrivalWindow] = None,
) -> ArrivalBoard:
    """
    Build the arrival board for a single stop.

    Args:
        stop_id: Stop to collect predictions for (e.g., "127N").
        entities: Feed entities to scan.
        index: Optional topology used for stop names.
        now: Unix time used for the window and updated_at.
        window: Optional time window / cap. No filtering when None.

    Returns:
        ArrivalBoard sorted by time with one item per (trip_id, stop_id).
    """
    now = time.time() if now is None else now
    items = _collect(entities, lambda sid: sid == stop_id, now, window)
    return _make_board(stop_id, dedupe_arrivals(sort_arrivals(items)), index, now, window)


def build_station_board(
    station_id: str,
    entities_by_group: Mapping[str, Iterable[FeedEntity]],
    index: Optional["TopologyIndex"] = None,
    now: Optional[float] = None,
    window: Optional[ArrivalWindow] = None,
) -> ArrivalBoard:
    """
    Build a combined board for both directional platforms of a station.

    North arrivals from every group come first, then south; the list is then
    stably sorted by time and deduplicated so the earliest item per
    (trip_id, stop_id) survives.
    """
    now = time.time() if now is None else now
    entities = [entity for group in entities_by_group.values() for entity in group]

    combined: List[ArrivalItem] = []
    for suffix in DIRECTION_SUFFIXES:
        child_id = f"{station_id}{suffix}"
        combined.extend(_collect(entities, lambda sid: sid == child_id, now, window))

    return merge_station_arrivals(station_id, [combined], index, now, window)


def merge_station_arrivals(
    station_id: str,
    arrival_lists: Iterable[Iterable[ArrivalItem]],
    index: Optional["TopologyIndex"] = None,
    now: Optional[float] = None,
    window: Optional[ArrivalWindow] = None,
) -> ArrivalBoard:
    """
    Concatenate per-direction lists, sort, dedupe and package as a board.

    The window's max_arrivals caps the merged list; its time filter is
    expected to have been applied when the lists were collected.
    """
    now = time.time() if now is None else now
    combined = [item for arrivals in arrival_lists for item in arrivals]
    arrivals = dedupe_arrivals(sort_arrivals(combined))
    if window is not None and window.max_arrivals is not None:
        arrivals = arrivals[: window.max_arrivals]
    stop = index.get_stop(station_id) if index is not None else None
    return ArrivalBoard(
        stop_id=station_id,
        stop_name=stop.name if stop else station_id,
        updated_at=format_timestamp(int(now)),
        arrivals=arrivals,
    )


def build_arrival_map(
    entities: Iterable[FeedEntity],
    index: Optional["TopologyIndex"] = None,
    now: Optional[float] = None,
    window: Optional[ArrivalWindow] = None,
) -> Dict[str, ArrivalBoard]:
    """Build a board for every stop referenced by the entities."""
    now = time.time() if now is None else now
    by_stop: Dict[str, List[ArrivalItem]] = {}
    for item in _collect(entities, lambda sid: True, now, window):
        by_stop.setdefault(item.stop_id, []).append(item)

    return {
        stop_id: _make_board(stop_id, dedupe_arrivals(sort_arrivals(items)), index, now, window)
        for stop_id, items in by_stop.items()
    }


def sort_arrivals(items: Iterable[ArrivalItem]) -> List[ArrivalItem]:
    """Stable sort by arrival time; ties keep their input order."""
    return sorted(items, key=lambda item: item.arrival_time)


def dedupe_arrivals(items: Iterable[ArrivalItem]) -> List[ArrivalItem]:
    """Keep the first item for each trip_id-stop_id key."""
    seen = set()
    kept: List[ArrivalItem] = []
    for item in items:
        if item.dedupe_key in seen:
            continue
        seen.add(item.dedupe_key)
        kept.append(item)
    return kept


def humanize_eta(when: Optional[int], now: Optional[float] = None) -> str:
    """Short relative label: "now", "1m", "7m" or "3m ago"."""
    if when is None:
        return "-"
    now = time.time() if now is None else now
    seconds = round(when - now)
    if seconds < -30:
        return f"{abs(round(seconds / 60))}m ago"
    if seconds <= 30:
        return "now"
    minutes = seconds // 60
    return "1m" if minutes <= 1 else f"{minutes}m"


def _collect(
    entities: Iterable[FeedEntity],
    matches: Callable[[str], bool],
    now: float,
    window: Optional[ArrivalWindow],
) -> List[ArrivalItem]:
    items: List[ArrivalItem] = []
    for entity in entities:
        for update in entity.stop_updates:
            if not update.stop_id or not matches(update.stop_id):
                continue
            when = update.arrival_time if update.arrival_time is not None else update.departure_time
            if when is None:
                continue
            if window is not None and not window.accepts(when, now):
                continue
            items.append(
                ArrivalItem(
                    stop_id=update.stop_id,
                    stop_name=update.stop_name,
                    when_iso=format_timestamp(when),
                    arrival_time=when,
                    route_id=entity.route_id,
                    trip_id=entity.trip_id,
                    schedule_relationship=update.schedule_relationship,
                    arrival_delay=update.arrival_delay,
                    departure_delay=update.departure_delay,
                )
            )
    return items


def _make_board(
    stop_id: str,
    arrivals: List[ArrivalItem],
    index: Optional["TopologyIndex"],
    now: float,
    window: Optional[ArrivalWindow],
) -> ArrivalBoard:
    if window is not None and window.max_arrivals is not None:
        arrivals = arrivals[: window.max_arrivals]

    stop_name = next((item.stop_name for item in arrivals if item.stop_name), None)
    if stop_name is None and index is not None:
        stop = index.get_stop(stop_id)
        stop_name = stop.name if stop else None

    return ArrivalBoard(
        stop_id=stop_id,
        stop_name=stop_name or stop_id,
        updated_at=format_timestamp(int(now)),
        arrivals=arrivals,
    )
