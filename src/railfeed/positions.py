"""Train position interpolation from GTFS-Realtime stop predictions."""

import logging
import math
import time
from typing import Iterable, List, Optional, Tuple

from .gtfs_loader import TopologyIndex
from .headsign import HeadsignResolver
from .models import FeedEntity, StopUpdate, TrainPosition, format_timestamp

logger = logging.getLogger(__name__)


def compute_positions(
    entities: Iterable[FeedEntity],
    index: TopologyIndex,
    resolver: Optional[HeadsignResolver] = None,
    now: Optional[float] = None,
) -> List[TrainPosition]:
    """
    Calculate train positions by interpolating between stops.

    GTFS-Realtime only gives stop-level predictions, so each train is placed
    on the straight line between the stop it last left and the next stop it
    will arrive at, in proportion to elapsed time.

    Args:
        entities: Feed entities from one or more feed groups.
        index: Static topology used to resolve stop coordinates.
        resolver: Headsign resolver; defaults to one over the same index.
        now: Unix time to interpolate at. Defaults to the current time.

    Returns:
        One TrainPosition per entity that is between two known stops.
    """
    if now is None:
        now = time.time()
    if resolver is None:
        resolver = HeadsignResolver(index)

    positions: List[TrainPosition] = []
    for entity in entities:
        position = _position_for_entity(entity, index, resolver, now)
        if position is not None:
            positions.append(position)
    return positions


def find_bounding_updates(
    stop_updates: Tuple[StopUpdate, ...], now: float
) -> Optional[Tuple[StopUpdate, StopUpdate]]:
    """Return (prev, next) where next is the first update arriving after now."""
    for i, update in enumerate(stop_updates):
        if update.arrival_time is not None and update.arrival_time > now:
            if i == 0:
                return None
            return stop_updates[i - 1], update
    return None


def _position_for_entity(
    entity: FeedEntity,
    index: TopologyIndex,
    resolver: HeadsignResolver,
    now: float,
) -> Optional[TrainPosition]:
    trip_id, route_id = entity.trip_id, entity.route_id
    if not trip_id or not route_id or len(entity.stop_updates) < 2:
        return None

    bounds = find_bounding_updates(entity.stop_updates, now)
    if bounds is None:
        return None
    prev_update, next_update = bounds
    if not prev_update.stop_id or not next_update.stop_id:
        return None

    prev_stop = index.get_stop(prev_update.stop_id)
    next_stop = index.get_stop(next_update.stop_id)
    if prev_stop is None or next_stop is None:
        logger.debug(
            f"Skipping trip {trip_id}: unknown stop "
            f"{prev_update.stop_id if prev_stop is None else next_update.stop_id}"
        )
        return None

    prev_time = prev_update.departure_time or prev_update.arrival_time
    next_time = next_update.arrival_time
    if not prev_time or not next_time or next_time <= prev_time:
        logger.debug(f"Skipping trip {trip_id}: degenerate segment {prev_time} -> {next_time}")
        return None

    progress = interpolation_progress(prev_time, next_time, now)
    latitude = prev_stop.latitude + (next_stop.latitude - prev_stop.latitude) * progress
    longitude = prev_stop.longitude + (next_stop.longitude - prev_stop.longitude) * progress
    heading = calculate_heading(
        prev_stop.latitude, prev_stop.longitude, next_stop.latitude, next_stop.longitude
    )

    next_stop_name = next_stop.name or next_update.stop_name or next_stop.stop_id
    headsign = resolver.resolve(trip_id, route_id) or next_stop_name

    return TrainPosition(
        trip_id=trip_id,
        route_id=route_id,
        latitude=latitude,
        longitude=longitude,
        heading=heading,
        next_stop_id=next_stop.stop_id,
        next_stop_name=next_stop_name,
        eta_iso=format_timestamp(next_time),
        headsign=headsign,
        eta=next_time,
    )


def interpolation_progress(prev_time: float, next_time: float, now: float) -> float:
    """Fraction of the segment covered at now, clamped to [0, 1]."""
    total = next_time - prev_time
    if total <= 0:
        return 0.0
    return max(0.0, min(1.0, (now - prev_time) / total))


def calculate_heading(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing in degrees from north, in [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)

    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)

    heading = (math.degrees(math.atan2(y, x)) + 360) % 360
    # (-tiny + 360) % 360 can round to exactly 360.0
    return 0.0 if heading >= 360 else heading


def filter_by_route(positions: Iterable[TrainPosition], route_id: str) -> List[TrainPosition]:
    """Trains running on a route (case-insensitive)."""
    route_upper = route_id.upper()
    return [p for p in positions if p.route_id.upper() == route_upper]


def trains_near_station(positions: Iterable[TrainPosition], stop_id: str) -> List[TrainPosition]:
    """Trains whose next stop is stop_id."""
    return [p for p in positions if p.next_stop_id == stop_id]
