"""Runtime settings for the feed tracker."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .arrivals import ArrivalWindow
from .gtfs_loader import MTA_GTFS_URL

logger = logging.getLogger(__name__)


@dataclass
class TrackerSettings:
    """Settings shared by the tracker, its caches and the feed client."""
    api_key: Optional[str] = None
    data_dir: Optional[str] = None  # Local GTFS directory; download from gtfs_url if unset
    gtfs_url: str = MTA_GTFS_URL
    request_timeout: float = 15.0
    feed_ttl: float = 15.0
    board_ttl: float = 60.0
    positions_ttl: float = 15.0
    position_retention: int = 300  # Drop trains whose ETA is older than this
    arrival_window: Optional[ArrivalWindow] = ArrivalWindow()
    max_workers: int = 8

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackerSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            TrackerSettings with defaults for anything unset or invalid.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            api_key=env.get("MTA_API_KEY") or None,
            data_dir=env.get("RAILFEED_DATA_DIR") or None,
            gtfs_url=env.get("RAILFEED_GTFS_URL") or defaults.gtfs_url,
            request_timeout=_number(env, "RAILFEED_REQUEST_TIMEOUT", defaults.request_timeout),
            feed_ttl=_number(env, "RAILFEED_FEED_TTL", defaults.feed_ttl),
            board_ttl=_number(env, "RAILFEED_BOARD_TTL", defaults.board_ttl),
            positions_ttl=_number(env, "RAILFEED_POSITIONS_TTL", defaults.positions_ttl),
            position_retention=int(
                _number(env, "RAILFEED_POSITION_RETENTION", defaults.position_retention)
            ),
            max_workers=max(1, int(_number(env, "RAILFEED_MAX_WORKERS", defaults.max_workers))),
        )


def _number(env: Mapping[str, str], name: str, fallback: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return fallback
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using {fallback}")
        return fallback
    if value < 0:
        logger.warning(f"Ignoring negative {name}={raw!r}; using {fallback}")
        return fallback
    return value
