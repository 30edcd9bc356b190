"""Example usage of FeedTracker."""

import logging
import sys
from pathlib import Path

# Add src to path so we can import railfeed
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from railfeed import FeedTracker, RailfeedError, TrackerSettings
from railfeed.arrivals import humanize_eta
from railfeed.mta_client import get_feed_group_for_route
from railfeed.positions import filter_by_route

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def find_station(tracker: FeedTracker, station_input: str):
    """Resolve a station name or parent stop ID to a parent station."""
    stop = tracker.get_stop(station_input)
    if stop is not None:
        return tracker.get_stop(stop.parent_id) if stop.parent_id else stop

    matches = [s for s in tracker.search_stops(station_input) if not s.parent_id]
    return matches[0] if matches else None


def print_station_arrivals(tracker: FeedTracker, station_input: str):
    """
    Fetch and display upcoming arrivals for both platforms of a station.

    Args:
        tracker: Feed tracker to query.
        station_input: Station name or stop ID (e.g., "Times Sq" or "127")
    """
    station = find_station(tracker, station_input)
    if station is None:
        print(f"No station matches '{station_input}'")
        return

    board = tracker.get_station_arrivals(station.stop_id)

    print(f"\n{'='*70}")
    print(f"Station: {board.stop_name} ({board.stop_id})")
    print(f"Lines serving this station: {', '.join(station.routes) or 'unknown'}")
    print(f"Updated: {board.updated_at}")
    print(f"{'='*70}")

    if not board.arrivals:
        print("  No arrivals found")
    for arrival in board.arrivals:
        direction = "Uptown" if arrival.stop_id.endswith("N") else "Downtown"
        print(
            f"  {arrival.route_id:>3}  {direction:<9} {humanize_eta(arrival.arrival_time):>7}"
            f"  {arrival.when_iso}"
        )
    print()


def print_route_positions(tracker: FeedTracker, route_id: str):
    """Display every live train on a route."""
    group_id = get_feed_group_for_route(route_id)
    if group_id is None:
        print(f"Unknown route '{route_id}'")
        return

    trains = filter_by_route(tracker.get_train_positions(group_id), route_id)
    print(f"\n{len(trains)} {route_id} trains running")
    for train in trains:
        print(
            f"  {train.trip_id:<20} to {train.headsign:<30} "
            f"next {train.next_stop_name} {humanize_eta(train.eta)} "
            f"({train.latitude:.4f}, {train.longitude:.4f}) heading {train.heading:.0f}"
        )
    print()


def interactive_mode(tracker: FeedTracker):
    """
    Run in interactive mode, allowing user to query multiple stations.
    """
    print("Railfeed - Interactive Mode")
    print("Enter a station name or stop ID to see arrivals,")
    print("'route <ID>' to see trains on a line, or 'status' for feed freshness")
    print("(Type 'quit' to exit)\n")

    while True:
        try:
            user_input = input("> ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if user_input.lower() in ["quit", "q", "exit"]:
            print("Goodbye!")
            break
        if not user_input:
            continue

        try:
            if user_input.lower().startswith("route "):
                print_route_positions(tracker, user_input.split(maxsplit=1)[1])
            elif user_input.lower() == "status":
                for group_id, status in tracker.feed_status().items():
                    print(
                        f"  {group_id:<8} updated {status['last_updated'] or 'never'}"
                        f" errors {status['error_count']}"
                    )
            else:
                print_station_arrivals(tracker, user_input)
        except RailfeedError as e:
            logger.error(f"Query failed: {e}")
            print(f"Error: {e}")


if __name__ == "__main__":
    tracker = FeedTracker(TrackerSettings.from_env())
    try:
        if len(sys.argv) > 1:
            # Command line mode: pass station name as argument
            print_station_arrivals(tracker, " ".join(sys.argv[1:]))
        else:
            interactive_mode(tracker)
    except RailfeedError as e:
        logger.error(f"Failed to fetch data: {e}")
        sys.exit(1)
    finally:
        tracker.close()
