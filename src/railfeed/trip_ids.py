"""
Parsers for MTA trip, shape and stop identifier conventions.

Static trip IDs look like "BFA25GEN-M093-Weekday-00_113950_M..N20R", while the
realtime feed reports only the suffix "113950_M..N20R". The trailing
"M..N20R" is the shape token: route, "..", direction letter, path variant.
Some feeds truncate it to "7..N". None of this is documented by the MTA, so
every function here returns None rather than raising on unexpected input.
"""

import re
from typing import Optional

_TRIP_SUFFIX_RE = re.compile(r"-00_(.+)$")
_SHAPE_RE = re.compile(r"_([A-Z0-9]+\.\.[NS][A-Z0-9]*)$", re.IGNORECASE)
_DIRECTION_RE = re.compile(r"\.\.([NS])", re.IGNORECASE)
_CHILD_STOP_RE = re.compile(r"^[A-Z]?\d+[NS]$", re.IGNORECASE)


def extract_trip_suffix(trip_id: str) -> Optional[str]:
    """
    Return the part of a static trip ID that the realtime feed reports.

    "BFA25GEN-M093-Weekday-00_113950_M..N20R" -> "113950_M..N20R"
    """
    if not trip_id:
        return None
    match = _TRIP_SUFFIX_RE.search(trip_id)
    return match.group(1) if match else None


def extract_shape_from_trip_id(trip_id: str) -> Optional[str]:
    """
    Return the shape token at the end of a trip ID.

    "114450_N..N31R" -> "N..N31R", "119650_7..N" -> "7..N"
    """
    if not trip_id:
        return None
    match = _SHAPE_RE.search(trip_id)
    return match.group(1) if match else None


def extract_direction_from_shape(shape: str) -> Optional[str]:
    """Return "N" or "S" from a shape token such as "N..S31R"."""
    if not shape:
        return None
    match = _DIRECTION_RE.search(shape)
    return match.group(1).upper() if match else None


def direction_from_stop_id(stop_id: str) -> Optional[str]:
    """Child platforms end in N or S, e.g. "101N" -> "N"."""
    if not stop_id:
        return None
    suffix = stop_id[-1].upper()
    return suffix if suffix in ("N", "S") else None


def parent_station_id(stop_id: str) -> Optional[str]:
    """Strip a trailing N/S platform suffix: "A41S" -> "A41"."""
    if not stop_id:
        return None
    return re.sub(r"[NS]$", "", stop_id)


def is_child_stop_id(stop_id: str) -> bool:
    """True for platform-style IDs such as "101N" or "A41S"."""
    return bool(stop_id) and bool(_CHILD_STOP_RE.match(stop_id))
