"""Destination (headsign) lookup for live trip IDs."""

import logging
from typing import Callable, List, Optional

from .gtfs_loader import TopologyIndex
from .trip_ids import extract_direction_from_shape, extract_shape_from_trip_id

logger = logging.getLogger(__name__)

Strategy = Callable[[str, Optional[str]], Optional[str]]


class HeadsignResolver:
    """
    Resolves a realtime trip ID to its rider-facing destination.

    Strategies are tried in order and the first non-empty answer wins:
    1. Exact match on the full static trip ID, then on its realtime suffix
    2. Route + shape token parsed from the trip ID (e.g. "N" + "N..N31R")
    3. Route + direction letter of that shape token (e.g. "7" + "N")
    """

    def __init__(self, index: TopologyIndex):
        self.index = index
        self.strategies: List[Strategy] = [
            self._by_trip_id,
            self._by_shape,
            self._by_direction,
        ]

    def resolve(self, trip_id: str, route_id: Optional[str]) -> Optional[str]:
        """
        Get the headsign for a trip.

        Args:
            trip_id: Realtime trip ID (e.g., "114450_N..N31R")
            route_id: Route ID used by the shape and direction fallbacks

        Returns:
            The headsign, or None if every strategy fails.
        """
        if not trip_id:
            return None
        for strategy in self.strategies:
            headsign = strategy(trip_id, route_id)
            if headsign:
                return headsign
        logger.debug(f"No headsign for trip {trip_id} on route {route_id}")
        return None

    def _by_trip_id(self, trip_id: str, route_id: Optional[str]) -> Optional[str]:
        for trips in (self.index.trips_by_full_id, self.index.trips_by_suffix):
            trip = trips.get(trip_id)
            if trip and trip.headsign:
                return trip.headsign
        return None

    def _by_shape(self, trip_id: str, route_id: Optional[str]) -> Optional[str]:
        shape = extract_shape_from_trip_id(trip_id)
        if not shape or not route_id:
            return None
        return self.index.shape_index.get((route_id, shape))

    def _by_direction(self, trip_id: str, route_id: Optional[str]) -> Optional[str]:
        shape = extract_shape_from_trip_id(trip_id)
        if not shape or not route_id:
            return None
        direction = extract_direction_from_shape(shape)
        if not direction:
            return None
        return self.index.direction_index.get((route_id, direction))
