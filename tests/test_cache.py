"""Tests for the single-flight cache and the position map."""

import concurrent.futures
import threading
import time
import unittest
import sys
from pathlib import Path

# Add src to path so we can import railfeed
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from railfeed.cache import PositionMap, ReconciliationCache
from railfeed.models import TrainPosition, format_timestamp


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def train(trip_id: str, eta: int, route_id: str = "A") -> TrainPosition:
    return TrainPosition(
        trip_id=trip_id,
        route_id=route_id,
        latitude=40.7,
        longitude=-73.9,
        heading=0.0,
        next_stop_id="A27N",
        next_stop_name="42 St-Port Authority",
        eta_iso=format_timestamp(eta),
        headsign="Inwood-207 St",
        eta=eta,
    )


class TestReconciliationCache(unittest.TestCase):
    """Test ReconciliationCache TTL behaviour."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ReconciliationCache(clock=self.clock)
        self.calls = []

    def compute(self, value="fresh"):
        def fn():
            self.calls.append(value)
            return value
        return fn

    def test_hit_within_ttl(self):
        self.assertEqual(self.cache.get_or_compute("feed:ACE", 15, self.compute()), "fresh")
        self.clock.now += 10
        self.assertEqual(self.cache.get_or_compute("feed:ACE", 15, self.compute("new")), "fresh")
        self.assertEqual(self.calls, ["fresh"])

    def test_recompute_after_expiry(self):
        self.cache.get_or_compute("feed:ACE", 15, self.compute())
        self.clock.now += 15
        self.assertEqual(self.cache.get_or_compute("feed:ACE", 15, self.compute("new")), "new")
        self.assertEqual(self.calls, ["fresh", "new"])

    def test_failure_is_not_stored(self):
        """A failed compute leaves the previous value in place."""
        self.cache.set("board:ACE", "old", ttl=10)
        self.clock.now += 11

        def fail():
            raise RuntimeError("feed down")

        with self.assertRaises(RuntimeError):
            self.cache.get_or_compute("board:ACE", 10, fail)

        self.assertIsNone(self.cache.get("board:ACE"))
        self.assertEqual(self.cache.peek("board:ACE"), "old")
        self.assertEqual(self.cache.get_or_compute("board:ACE", 10, self.compute()), "fresh")

    def test_clear(self):
        self.cache.set("a", 1, ttl=60)
        self.cache.set("b", 2, ttl=60)
        self.cache.clear("a")
        self.assertIsNone(self.cache.get("a"))
        self.assertEqual(self.cache.get("b"), 2)
        self.cache.clear()
        self.assertEqual(self.cache.keys(), [])

    def test_evict_expired(self):
        self.cache.set("short", 1, ttl=5)
        self.cache.set("long", 2, ttl=60)
        self.clock.now += 10
        self.assertEqual(self.cache.evict_expired(), 1)
        self.assertEqual(self.cache.keys(), ["long"])


class TestSingleFlight(unittest.TestCase):
    """Test that concurrent misses share one computation."""

    def test_concurrent_callers_share_result(self):
        cache = ReconciliationCache()
        calls = []
        started = threading.Event()
        release = threading.Event()

        def compute():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return object()

        results = []

        def worker():
            results.append(cache.get_or_compute("positions:ACE", 60, compute))

        owner = threading.Thread(target=worker)
        owner.start()
        self.assertTrue(started.wait(timeout=5))

        waiters = [threading.Thread(target=worker) for _ in range(9)]
        for thread in waiters:
            thread.start()
        time.sleep(0.1)
        release.set()

        for thread in [owner] + waiters:
            thread.join(timeout=5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 10)
        self.assertTrue(all(result is results[0] for result in results))

    def test_waiters_receive_exception(self):
        cache = ReconciliationCache()
        started = threading.Event()
        release = threading.Event()

        def compute():
            started.set()
            release.wait(timeout=5)
            raise ValueError("decode failed")

        errors = []

        def worker():
            try:
                cache.get_or_compute("feed:L", 60, compute)
            except ValueError as e:
                errors.append(e)

        owner = threading.Thread(target=worker)
        owner.start()
        self.assertTrue(started.wait(timeout=5))
        waiter = threading.Thread(target=worker)
        waiter.start()
        time.sleep(0.1)
        release.set()
        owner.join(timeout=5)
        waiter.join(timeout=5)

        self.assertEqual(len(errors), 2)
        self.assertIsNone(cache.peek("feed:L"))

    def test_waiter_timeout(self):
        cache = ReconciliationCache()
        started = threading.Event()
        release = threading.Event()

        def compute():
            started.set()
            release.wait(timeout=5)
            return "done"

        owner = threading.Thread(target=lambda: cache.get_or_compute("feed:G", 60, compute))
        owner.start()
        self.assertTrue(started.wait(timeout=5))

        with self.assertRaises(concurrent.futures.TimeoutError):
            cache.get_or_compute("feed:G", 60, compute, timeout=0.05)

        release.set()
        owner.join(timeout=5)
        self.assertEqual(cache.get("feed:G"), "done")


class TestFeedTimestamps(unittest.TestCase):
    """Test per-group freshness metadata."""

    def test_timestamps_and_staleness(self):
        cache = ReconciliationCache()
        self.assertIsNone(cache.get_feed_timestamp("ACE"))
        self.assertIsNone(cache.staleness_seconds("ACE"))

        cache.set_feed_timestamp("ACE", "2024-01-01T12:00:00Z")
        noon = 1704110400
        self.assertEqual(cache.get_feed_timestamp("ACE"), "2024-01-01T12:00:00Z")
        self.assertEqual(cache.staleness_seconds("ACE", now=noon + 45), 45)
        self.assertEqual(cache.staleness_seconds("ACE", now=noon - 5), 0)
        self.assertEqual(cache.feed_timestamps(), {"ACE": "2024-01-01T12:00:00Z"})

    def test_record_error(self):
        cache = ReconciliationCache()
        cache.set_feed_timestamp("G", "2024-01-01T12:00:00Z")
        cache.record_feed_error("G", "timeout")
        cache.record_feed_error("L", "HTTP 503")

        statuses = cache.feed_statuses()
        self.assertEqual(statuses["G"].fetch_count, 1)
        self.assertEqual(statuses["G"].error_count, 1)
        self.assertEqual(statuses["G"].last_error, "timeout")
        self.assertIsNone(statuses["L"].last_updated)
        self.assertEqual(cache.feed_timestamps(), {"G": "2024-01-01T12:00:00Z"})

    def test_clear_keeps_feed_metadata(self):
        cache = ReconciliationCache()
        cache.set_feed_timestamp("G", "2024-01-01T12:00:00Z")
        cache.clear()
        self.assertEqual(cache.get_feed_timestamp("G"), "2024-01-01T12:00:00Z")


class TestPositionMap(unittest.TestCase):
    """Test PositionMap."""

    def test_merge_replaces_by_trip(self):
        positions = PositionMap()
        positions.merge("ACE", [train("A1", 100), train("C1", 100, "C")])
        positions.merge("ACE", [train("A1", 200)])

        self.assertEqual(len(positions), 2)
        a1 = next(p for p in positions.snapshot() if p.trip_id == "A1")
        self.assertEqual(a1.eta, 200)

    def test_replace_group_drops_missing_trips(self):
        positions = PositionMap()
        positions.merge("ACE", [train("A1", 100), train("C1", 100, "C")])
        positions.merge("G", [train("G1", 100, "G")])

        self.assertEqual(positions.replace_group("ACE", [train("A1", 200)]), 1)
        self.assertEqual(sorted(p.trip_id for p in positions.snapshot()), ["A1", "G1"])
        self.assertEqual(positions.snapshot(["ACE"])[0].eta, 200)

        self.assertEqual(positions.replace_group("ACE", []), 0)
        self.assertFalse(positions.has_group("ACE"))
        self.assertTrue(positions.has_group("G"))

    def test_snapshot_by_group(self):
        positions = PositionMap()
        positions.merge("ACE", [train("A1", 100)])
        positions.merge("G", [train("G1", 100, "G")])

        self.assertEqual([p.trip_id for p in positions.snapshot(["G"])], ["G1"])
        self.assertTrue(positions.has_group("ACE"))
        self.assertFalse(positions.has_group("L"))

    def test_prune(self):
        positions = PositionMap()
        positions.merge("ACE", [train("old", 100), train("new", 500)])
        self.assertEqual(positions.prune(cutoff=300), 1)
        self.assertEqual([p.trip_id for p in positions.snapshot()], ["new"])
        positions.clear()
        self.assertEqual(len(positions), 0)


if __name__ == "__main__":
    unittest.main()
