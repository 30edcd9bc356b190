"""railfeed - Live MTA subway positions and arrival boards from GTFS-Realtime feeds."""

__version__ = "0.1.0"

from .models import (
    ArrivalBoard,
    ArrivalItem,
    FeedEntity,
    FeedGroup,
    Stop,
    StopUpdate,
    TrainPosition,
    TripInfo,
)
from .exceptions import (
    DataLoadError,
    FeedFetchError,
    FeedUnavailableError,
    RailfeedError,
    UnknownFeedGroupError,
)
from .config import TrackerSettings
from .gtfs_loader import GTFSLoader, TopologyIndex, TopologyStore
from .headsign import HeadsignResolver
from .positions import compute_positions
from .arrivals import ArrivalWindow, build_board, build_station_board
from .cache import PositionMap, ReconciliationCache
from .mta_client import MTAClient
from .feed_tracker import FeedTracker

__all__ = [
    "FeedTracker",
    "GTFSLoader",
    "TopologyIndex",
    "TopologyStore",
    "HeadsignResolver",
    "MTAClient",
    "ReconciliationCache",
    "PositionMap",
    "TrackerSettings",
    "ArrivalWindow",
    "compute_positions",
    "build_board",
    "build_station_board",
    "Stop",
    "TripInfo",
    "FeedGroup",
    "StopUpdate",
    "FeedEntity",
    "TrainPosition",
    "ArrivalItem",
    "ArrivalBoard",
    "RailfeedError",
    "DataLoadError",
    "FeedFetchError",
    "FeedUnavailableError",
    "UnknownFeedGroupError",
]
