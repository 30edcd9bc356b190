"""GTFS static data loader and topology index for MTA subway data."""

import io
import logging
import threading
import time
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
import requests

from .exceptions import DataLoadError
from .models import Stop, TripInfo
from .trip_ids import (
    direction_from_stop_id,
    extract_direction_from_shape,
    extract_shape_from_trip_id,
    extract_trip_suffix,
)

logger = logging.getLogger(__name__)

# MTA GTFS static data URL
MTA_GTFS_URL = "https://rrgtfsfeeds.s3.amazonaws.com/gtfs_subway.zip"

STOPS_COLUMNS = ("stop_id", "stop_name", "stop_lat", "stop_lon")
TRIPS_COLUMNS = ("route_id", "trip_id")
STOP_TIMES_COLUMNS = ("trip_id", "stop_id")

DOWNLOAD_TIMEOUT = 60


class TopologyIndex:
    """Read-only lookups over stops and trips, built once per load."""

    def __init__(self, stops: Iterable[Stop], trips: Iterable[TripInfo] = ()):
        self.stops: Dict[str, Stop] = {}
        self.stop_list: List[Stop] = []
        self.parent_to_children: Dict[str, List[str]] = {}

        # trip_id -> TripInfo, and the realtime suffix -> TripInfo
        self.trips_by_full_id: Dict[str, TripInfo] = {}
        self.trips_by_suffix: Dict[str, TripInfo] = {}
        # (route_id, shape) -> headsign and (route_id, "N"/"S") -> headsign
        self.shape_index: Dict[Tuple[str, str], str] = {}
        self.direction_index: Dict[Tuple[str, str], str] = {}

        for stop in stops:
            self.stops[stop.stop_id] = stop
            self.stop_list.append(stop)
            if stop.parent_id:
                self.parent_to_children.setdefault(stop.parent_id, []).append(stop.stop_id)

        for trip in trips:
            self._index_trip(trip)

    def _index_trip(self, trip: TripInfo) -> None:
        # Primary indexes: later rows overwrite earlier ones
        self.trips_by_full_id[trip.trip_id] = trip
        suffix = extract_trip_suffix(trip.trip_id)
        if suffix:
            self.trips_by_suffix[suffix] = trip

        if not trip.route_id or not trip.headsign:
            return

        # Fallback indexes: first row per key is kept
        shape = trip.shape_id or extract_shape_from_trip_id(trip.trip_id)
        if not shape:
            return
        self.shape_index.setdefault((trip.route_id, shape), trip.headsign)

        direction = extract_direction_from_shape(shape)
        if direction:
            self.direction_index.setdefault((trip.route_id, direction), trip.headsign)

    def get_stop(self, stop_id: str) -> Optional[Stop]:
        """Get a stop by stop_id, or None if unknown."""
        return self.stops.get(stop_id)

    def get_trip_info(self, trip_id: str) -> Optional[TripInfo]:
        """Look up a trip by full static ID, then by realtime suffix."""
        return self.trips_by_full_id.get(trip_id) or self.trips_by_suffix.get(trip_id)

    def children_of(self, stop_id: str) -> List[str]:
        """Return child platform IDs for a parent station."""
        return list(self.parent_to_children.get(stop_id, []))

    def get_parent_stations(self) -> List[Stop]:
        """Stops that are stations rather than directional platforms."""
        return [
            stop
            for stop in self.stop_list
            if not stop.parent_id and direction_from_stop_id(stop.stop_id) is None
        ]

    def search_stops(
        self,
        query: Optional[str] = None,
        route: Optional[str] = None,
        limit: int = 2000,
    ) -> List[Stop]:
        """
        Find stops by partial name/ID and served route.

        Args:
            query: Case-insensitive substring of the stop name or stop_id.
            route: Route ID the stop must serve (case-insensitive exact match).
            limit: Maximum number of results.

        Returns:
            Matching stops in file order.
        """
        results = self.stop_list

        if query:
            query_lower = query.lower()
            results = [
                stop
                for stop in results
                if query_lower in stop.name.lower() or query_lower in stop.stop_id.lower()
            ]

        if route:
            route_upper = route.upper()
            results = [
                stop for stop in results if route_upper in (r.upper() for r in stop.routes)
            ]

        return list(results[:limit])

    def summary(self) -> str:
        return (
            f"{len(self.stops)} stops, {len(self.trips_by_full_id)} trips, "
            f"{len(self.shape_index)} shape and {len(self.direction_index)} direction entries"
        )


class GTFSLoader:
    """Loads MTA GTFS static files into a TopologyIndex."""

    def __init__(self, data_dir: Optional[str] = None, gtfs_url: str = MTA_GTFS_URL):
        """
        Args:
            data_dir: Directory holding stops.txt and trips.txt. If None, the
                GTFS zip is downloaded from gtfs_url.
            gtfs_url: URL of the GTFS static zip.
        """
        self.data_dir = data_dir
        self.gtfs_url = gtfs_url

    def load(self) -> TopologyIndex:
        """Load from the configured source, raising DataLoadError on failure."""
        if self.data_dir:
            return self.load_from_directory(self.data_dir)
        return self.load_from_url(self.gtfs_url)

    def load_from_directory(self, data_dir: str) -> TopologyIndex:
        """Load stops.txt, trips.txt and (optionally) stop_times.txt from a directory."""
        logger.info(f"Loading GTFS data from {data_dir}")
        base = Path(data_dir)

        def opener(name: str) -> Optional[io.BytesIO]:
            path = base / name
            if not path.exists():
                return None
            return io.BytesIO(path.read_bytes())

        return self._load(opener, source=str(base))

    def load_from_url(self, url: str) -> TopologyIndex:
        """Download the GTFS zip and load it."""
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to download GTFS data: {e}")
            raise DataLoadError(f"Failed to download GTFS data from {url}: {e}") from e
        return self.load_from_zip(response.content, source=url)

    def load_from_zip(self, content: bytes, source: str = "<zip>") -> TopologyIndex:
        """Load GTFS tables from the bytes of a zip archive."""
        try:
            archive = zipfile.ZipFile(io.BytesIO(content))
        except zipfile.BadZipFile as e:
            raise DataLoadError(f"Invalid GTFS archive from {source}: {e}") from e

        with archive:
            names = set(archive.namelist())

            def opener(name: str) -> Optional[io.BytesIO]:
                if name not in names:
                    return None
                return io.BytesIO(archive.read(name))

            return self._load(opener, source=source)

    def _load(self, opener: Callable[[str], Optional[io.BytesIO]], source: str) -> TopologyIndex:
        start = time.monotonic()
        try:
            stops_df = self._read_table(opener, "stops.txt", STOPS_COLUMNS)
            trips_df = self._read_table(opener, "trips.txt", TRIPS_COLUMNS)
            stop_times_df = None
            if "routes" not in stops_df.columns:
                stop_times_df = self._read_table(
                    opener, "stop_times.txt", STOP_TIMES_COLUMNS, required=False
                )

            routes_by_stop = self._routes_by_stop(stops_df, trips_df, stop_times_df)
            stops = self._build_stops(stops_df, routes_by_stop)
            trips = self._build_trips(trips_df)
        except DataLoadError:
            raise
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load GTFS data from {source}: {e}")
            raise DataLoadError(f"Malformed GTFS data in {source}: {e}") from e

        index = TopologyIndex(stops, trips)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(f"Loaded {index.summary()} in {elapsed_ms:.0f}ms")
        return index

    @staticmethod
    def _read_table(
        opener: Callable[[str], Optional[io.BytesIO]],
        name: str,
        required_columns: Sequence[str],
        required: bool = True,
    ) -> Optional[pd.DataFrame]:
        """Read a GTFS CSV as strings, checking that required columns exist."""
        handle = opener(name)
        if handle is None:
            if required:
                raise DataLoadError(f"{name} not found")
            return None

        df = pd.read_csv(
            handle,
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
            encoding="utf-8-sig",
        )
        df.columns = [column.strip() for column in df.columns]
        missing = [column for column in required_columns if column not in df.columns]
        if missing:
            raise DataLoadError(f"{name} is missing columns: {', '.join(missing)}")
        return df

    @staticmethod
    def _routes_by_stop(
        stops_df: pd.DataFrame,
        trips_df: pd.DataFrame,
        stop_times_df: Optional[pd.DataFrame],
    ) -> Dict[str, List[str]]:
        """Map stop_id -> route IDs, from a routes column or from stop_times."""
        routes_by_stop: Dict[str, List[str]] = {}

        if "routes" in stops_df.columns:
            for stop_id, raw in zip(stops_df["stop_id"], stops_df["routes"]):
                tokens = [token for token in raw.replace(",", " ").split() if token]
                if tokens:
                    routes_by_stop[stop_id] = tokens
        elif stop_times_df is not None and not stop_times_df.empty:
            # stop_times references child platforms (F23N, F23S), not parents
            visits = stop_times_df[["trip_id", "stop_id"]].drop_duplicates()
            joined = visits.merge(trips_df[["trip_id", "route_id"]], on="trip_id", how="inner")
            for stop_id, group in joined.groupby("stop_id")["route_id"]:
                routes_by_stop[stop_id] = sorted(set(group))

        # Parent stations serve every route of their platforms
        if "parent_station" in stops_df.columns:
            for stop_id, parent_id in zip(stops_df["stop_id"], stops_df["parent_station"]):
                if not parent_id:
                    continue
                parent_routes = routes_by_stop.setdefault(parent_id, [])
                for route_id in routes_by_stop.get(stop_id, []):
                    if route_id not in parent_routes:
                        parent_routes.append(route_id)

        return routes_by_stop

    @staticmethod
    def _build_stops(stops_df: pd.DataFrame, routes_by_stop: Dict[str, List[str]]) -> List[Stop]:
        stops_df = stops_df[stops_df["stop_id"].str.strip() != ""]
        latitudes = pd.to_numeric(stops_df["stop_lat"], errors="raise")
        longitudes = pd.to_numeric(stops_df["stop_lon"], errors="raise")
        if "parent_station" in stops_df.columns:
            parents = stops_df["parent_station"]
        else:
            parents = [""] * len(stops_df)

        stops: List[Stop] = []
        for stop_id, name, lat, lon, parent in zip(
            stops_df["stop_id"], stops_df["stop_name"], latitudes, longitudes, parents
        ):
            stop_id = stop_id.strip()
            stops.append(
                Stop(
                    stop_id=stop_id,
                    name=name.strip(),
                    latitude=float(lat),
                    longitude=float(lon),
                    routes=tuple(routes_by_stop.get(stop_id, ())),
                    parent_id=parent.strip() or None,
                )
            )
        return stops

    @staticmethod
    def _build_trips(trips_df: pd.DataFrame) -> List[TripInfo]:
        def column(name: str) -> Sequence[str]:
            if name in trips_df.columns:
                return trips_df[name]
            return [""] * len(trips_df)

        trips: List[TripInfo] = []
        for trip_id, route_id, headsign, direction, shape_id in zip(
            trips_df["trip_id"],
            trips_df["route_id"],
            column("trip_headsign"),
            column("direction_id"),
            column("shape_id"),
        ):
            trip_id = trip_id.strip()
            if not trip_id:
                continue
            direction = direction.strip()
            trips.append(
                TripInfo(
                    trip_id=trip_id,
                    route_id=route_id.strip(),
                    headsign=headsign.strip(),
                    direction_id=int(direction) if direction in ("0", "1") else None,
                    shape_id=shape_id.strip() or None,
                )
            )
        return trips


class TopologyStore:
    """
    Memoize-once holder for the TopologyIndex.

    The first caller of load() runs the loader while holding the lock; callers
    arriving meanwhile block on the lock and then get the cached index. A
    DataLoadError is remembered and re-raised on every load() until clear().
    """

    def __init__(self, loader: Callable[[], TopologyIndex]):
        self._loader = loader
        self._lock = threading.Lock()
        self._index: Optional[TopologyIndex] = None
        self._error: Optional[DataLoadError] = None

    @classmethod
    def from_index(cls, index: TopologyIndex) -> "TopologyStore":
        """Wrap an already-built index."""
        store = cls(lambda: index)
        store._index = index
        return store

    @property
    def loaded(self) -> bool:
        return self._index is not None

    def load(self) -> TopologyIndex:
        index = self._index
        if index is not None:
            return index

        with self._lock:
            if self._index is not None:
                return self._index
            if self._error is not None:
                raise self._error
            try:
                index = self._loader()
            except DataLoadError as e:
                logger.error(f"Topology load failed: {e}")
                self._error = e
                raise
            self._index = index
            return index

    def clear(self) -> None:
        """Drop the loaded index (and any remembered failure) to free memory."""
        with self._lock:
            self._index = None
            self._error = None
        logger.info("Cleared GTFS topology from memory")
