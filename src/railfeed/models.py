"""Data models for the railfeed reconciliation engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple


def format_timestamp(timestamp: Optional[int]) -> Optional[str]:
    """Render a unix timestamp as an ISO-8601 UTC string."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Stop:
    """A platform or parent station from stops.txt."""
    stop_id: str
    name: str
    latitude: float
    longitude: float
    routes: Tuple[str, ...] = ()  # Route IDs served at this stop
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class TripInfo:
    """One scheduled run from trips.txt."""
    trip_id: str
    route_id: str
    headsign: str
    direction_id: Optional[int] = None
    shape_id: Optional[str] = None


@dataclass(frozen=True)
class FeedGroup:
    """A bundle of routes served by one GTFS-Realtime endpoint."""
    group_id: str
    url: str
    routes: Tuple[str, ...]


@dataclass(frozen=True)
class StopUpdate:
    """Live prediction for a single stop of a trip."""
    stop_id: Optional[str]
    arrival_time: Optional[int] = None  # Unix timestamp
    arrival_delay: Optional[int] = None
    departure_time: Optional[int] = None  # Unix timestamp
    departure_delay: Optional[int] = None
    stop_name: Optional[str] = None
    schedule_relationship: Optional[str] = None


@dataclass(frozen=True)
class FeedEntity:
    """One trip's live state from a single feed poll."""
    trip_id: Optional[str]
    route_id: Optional[str]
    stop_updates: Tuple[StopUpdate, ...] = ()
    entity_id: Optional[str] = None
    start_date: Optional[str] = None
    vehicle_id: Optional[str] = None
    timestamp: Optional[int] = None  # Feed header timestamp


@dataclass(frozen=True)
class TrainPosition:
    """Interpolated location of a train between two stops."""
    trip_id: str
    route_id: str
    latitude: float
    longitude: float
    heading: float  # Degrees clockwise from north, [0, 360)
    next_stop_id: str
    next_stop_name: str
    eta_iso: str
    headsign: str
    eta: int = 0  # Unix timestamp of eta_iso


@dataclass(frozen=True)
class ArrivalItem:
    """A single predicted stop visit."""
    stop_id: str
    stop_name: Optional[str]
    when_iso: str
    arrival_time: int  # Unix timestamp of when_iso
    route_id: Optional[str]
    trip_id: Optional[str]
    schedule_relationship: Optional[str] = None
    arrival_delay: Optional[int] = None
    departure_delay: Optional[int] = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.trip_id}-{self.stop_id}"


@dataclass(frozen=True)
class ArrivalBoard:
    """Time-ordered arrivals for a stop or station."""
    stop_id: str
    stop_name: Optional[str]
    updated_at: Optional[str]
    arrivals: List[ArrivalItem] = field(default_factory=list)
