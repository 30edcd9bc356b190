"""Tests for GTFS static loading and the topology index."""

import io
import tempfile
import threading
import time
import unittest
import zipfile
from unittest.mock import patch
import sys
from pathlib import Path

import requests

# Add src to path so we can import railfeed
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from railfeed.exceptions import DataLoadError
from railfeed.gtfs_loader import GTFSLoader, TopologyIndex, TopologyStore
from railfeed.models import Stop

STOPS_CSV = """stop_id,stop_name,stop_lat,stop_lon,location_type,parent_station
127,Times Sq-42 St,40.75529,-73.987495,1,
127N,Times Sq-42 St,40.75529,-73.987495,,127
127S,Times Sq-42 St,40.75529,-73.987495,,127
R16,Times Sq-42 St,40.754672,-73.986754,1,
R16N,Times Sq-42 St,40.754672,-73.986754,,R16
R01,Astoria-Ditmars Blvd,40.775036,-73.912034,1,
"""

TRIPS_CSV = """route_id,trip_id,service_id,trip_headsign,direction_id,shape_id
1,AFA25GEN-1038-Weekday-00_020600_1..S03R,Weekday,South Ferry,1,1..S03R
1,AFA25GEN-1038-Saturday-00_020600_1..S03R,Saturday,South Ferry (Sat),1,1..S03R
1,AFA25GEN-1038-Weekday-00_021100_1..N03R,Weekday,Van Cortlandt Park-242 St,0,
N,BFA25GEN-N093-Weekday-00_113950_N..N31R,Weekday,Astoria-Ditmars Blvd,0,N..N31R
N,BFA25GEN-N093-Weekday-00_114450_N..N31R,Weekday,Astoria (later),0,N..N31R
"""

STOP_TIMES_CSV = """trip_id,arrival_time,departure_time,stop_id,stop_sequence
AFA25GEN-1038-Weekday-00_020600_1..S03R,03:26:00,03:26:00,127S,1
AFA25GEN-1038-Weekday-00_021100_1..N03R,03:31:00,03:31:00,127N,1
BFA25GEN-N093-Weekday-00_113950_N..N31R,18:59:30,18:59:30,R16N,1
BFA25GEN-N093-Weekday-00_113950_N..N31R,19:20:00,19:20:00,R01,2
"""


def write_gtfs(directory: str, files: dict) -> None:
    for name, content in files.items():
        (Path(directory) / name).write_text(content, encoding="utf-8")


class TestGTFSLoader(unittest.TestCase):
    """Test GTFS static data loading."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def load(self, files: dict) -> TopologyIndex:
        write_gtfs(self.tmp.name, files)
        return GTFSLoader(data_dir=self.tmp.name).load()

    def test_load_stops(self):
        """Test parsing of stops.txt into Stop objects."""
        index = self.load({"stops.txt": STOPS_CSV, "trips.txt": TRIPS_CSV})

        stop = index.get_stop("127N")
        self.assertEqual(stop.name, "Times Sq-42 St")
        self.assertEqual(stop.parent_id, "127")
        self.assertAlmostEqual(stop.latitude, 40.755, places=2)
        self.assertIsNone(index.get_stop("127").parent_id)
        self.assertEqual(sorted(index.children_of("127")), ["127N", "127S"])

    def test_routes_from_stop_times(self):
        """Routes served are derived from stop_times when stops.txt has none."""
        index = self.load(
            {"stops.txt": STOPS_CSV, "trips.txt": TRIPS_CSV, "stop_times.txt": STOP_TIMES_CSV}
        )
        self.assertEqual(index.get_stop("127S").routes, ("1",))
        self.assertEqual(index.get_stop("127").routes, ("1",))
        self.assertEqual(index.get_stop("R16").routes, ("N",))
        self.assertEqual(index.get_stop("R01").routes, ("N",))

    def test_routes_column(self):
        """An explicit routes column takes precedence."""
        stops = """stop_id,stop_name,stop_lat,stop_lon,parent_station,routes
R16,Times Sq-42 St,40.754672,-73.986754,,"N, Q,R W"
"""
        index = self.load({"stops.txt": stops, "trips.txt": TRIPS_CSV})
        self.assertEqual(index.get_stop("R16").routes, ("N", "Q", "R", "W"))

    def test_trip_indexes(self):
        """Primary indexes keep the last row, fallback indexes the first."""
        index = self.load({"stops.txt": STOPS_CSV, "trips.txt": TRIPS_CSV})

        full = index.trips_by_full_id["AFA25GEN-1038-Weekday-00_020600_1..S03R"]
        self.assertEqual(full.headsign, "South Ferry")
        self.assertEqual(full.direction_id, 1)
        self.assertEqual(index.trips_by_suffix["020600_1..S03R"].headsign, "South Ferry (Sat)")

        self.assertEqual(index.shape_index[("N", "N..N31R")], "Astoria-Ditmars Blvd")
        self.assertEqual(index.direction_index[("N", "N")], "Astoria-Ditmars Blvd")
        # Empty shape_id falls back to the shape parsed from the trip ID
        self.assertEqual(index.shape_index[("1", "1..N03R")], "Van Cortlandt Park-242 St")
        self.assertEqual(index.direction_index[("1", "S")], "South Ferry")

    def test_get_trip_info(self):
        index = self.load({"stops.txt": STOPS_CSV, "trips.txt": TRIPS_CSV})
        self.assertEqual(index.get_trip_info("113950_N..N31R").route_id, "N")
        self.assertIsNone(index.get_trip_info("nope"))

    def test_missing_file(self):
        """Test that missing reference data is a DataLoadError."""
        with self.assertRaises(DataLoadError):
            self.load({"stops.txt": STOPS_CSV})

    def test_missing_directory(self):
        with self.assertRaises(DataLoadError):
            GTFSLoader(data_dir=str(Path(self.tmp.name) / "absent")).load()

    def test_missing_column(self):
        stops = "stop_id,stop_name,stop_lat\n127,Times Sq-42 St,40.75\n"
        with self.assertRaises(DataLoadError):
            self.load({"stops.txt": stops, "trips.txt": TRIPS_CSV})

    def test_bad_coordinates(self):
        stops = "stop_id,stop_name,stop_lat,stop_lon\n127,Times Sq-42 St,north,-73.98\n"
        with self.assertRaises(DataLoadError):
            self.load({"stops.txt": stops, "trips.txt": TRIPS_CSV})

    def test_load_from_zip(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("stops.txt", STOPS_CSV)
            archive.writestr("trips.txt", TRIPS_CSV)
        index = GTFSLoader().load_from_zip(buffer.getvalue())
        self.assertEqual(len(index.stops), 6)

    def test_load_from_bad_zip(self):
        with self.assertRaises(DataLoadError):
            GTFSLoader().load_from_zip(b"not a zip")

    @patch("railfeed.gtfs_loader.requests.get")
    def test_download_failure(self, mock_get):
        """Test that network errors during download become DataLoadError."""
        mock_get.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(DataLoadError):
            GTFSLoader().load()


class TestTopologyIndex(unittest.TestCase):
    """Test stop lookups and search."""

    def setUp(self):
        self.index = TopologyIndex(
            [
                Stop("127", "Times Sq-42 St", 40.755, -73.987, ("1", "2", "3")),
                Stop("127N", "Times Sq-42 St", 40.755, -73.987, ("1", "2", "3"), "127"),
                Stop("R16", "Times Sq-42 St", 40.754, -73.986, ("N", "Q", "R", "W")),
                Stop("R01", "Astoria-Ditmars Blvd", 40.775, -73.912, ("N", "W")),
                Stop("A27", "42 St-Port Authority Bus Terminal", 40.757, -73.989, ("A", "C", "E")),
            ]
        )

    def test_get_stop_not_found(self):
        self.assertIsNone(self.index.get_stop("NONEXISTENT"))

    def test_search_by_name(self):
        """Test partial, case-insensitive name matching."""
        results = self.index.search_stops("times")
        self.assertEqual([s.stop_id for s in results], ["127", "127N", "R16"])

    def test_search_by_id(self):
        results = self.index.search_stops("r0")
        self.assertEqual([s.stop_id for s in results], ["R01"])

    def test_search_by_route(self):
        """Route filter is an exact, case-insensitive token match."""
        results = self.index.search_stops(route="w")
        self.assertEqual([s.stop_id for s in results], ["R16", "R01"])
        self.assertEqual(self.index.search_stops(route="1 2"), [])

    def test_search_by_name_and_route(self):
        results = self.index.search_stops("Times", "N")
        self.assertEqual([s.stop_id for s in results], ["R16"])

    def test_search_limit(self):
        self.assertEqual(len(self.index.search_stops(limit=2)), 2)

    def test_parent_stations(self):
        ids = [s.stop_id for s in self.index.get_parent_stations()]
        self.assertNotIn("127N", ids)
        self.assertIn("127", ids)


class TestTopologyStore(unittest.TestCase):
    """Test memoize-once loading."""

    def test_concurrent_load_runs_once(self):
        calls = []
        index = TopologyIndex([])

        def loader():
            calls.append(1)
            time.sleep(0.05)
            return index

        store = TopologyStore(loader)
        results = []
        threads = [threading.Thread(target=lambda: results.append(store.load())) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 10)
        self.assertTrue(all(result is index for result in results))

    def test_failure_is_remembered(self):
        """A failed load keeps failing until clear()."""
        calls = []

        def loader():
            calls.append(1)
            raise DataLoadError("stops.txt not found")

        store = TopologyStore(loader)
        with self.assertRaises(DataLoadError):
            store.load()
        with self.assertRaises(DataLoadError):
            store.load()
        self.assertEqual(len(calls), 1)

        store.clear()
        with self.assertRaises(DataLoadError):
            store.load()
        self.assertEqual(len(calls), 2)

    def test_clear_reloads(self):
        calls = []
        store = TopologyStore(lambda: calls.append(1) or TopologyIndex([]))
        store.load()
        store.load()
        store.clear()
        self.assertFalse(store.loaded)
        store.load()
        self.assertEqual(len(calls), 2)


if __name__ == "__main__":
    unittest.main()
