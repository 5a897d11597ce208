"""Normalization helpers.

Centralizes defensive parsing of row values and coordinate validation.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from outagesync.exceptions import MalformedRecordError

LONGITUDE_RANGE = (-180.0, 180.0)
LATITUDE_RANGE = (-90.0, 90.0)


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if math.isnan(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value)
    return text if text else None


def is_valid_coordinate(longitude: float, latitude: float) -> bool:
    """Return True when both values are finite and inside WGS84 bounds (inclusive)."""
    if not (math.isfinite(longitude) and math.isfinite(latitude)):
        return False
    lng_min, lng_max = LONGITUDE_RANGE
    lat_min, lat_max = LATITUDE_RANGE
    return lng_min <= longitude <= lng_max and lat_min <= latitude <= lat_max


def parse_coordinates(
    row: Mapping[str, Any],
    *,
    longitude_column: str,
    latitude_column: str,
) -> tuple[float, float]:
    """Read a ``(longitude, latitude)`` pair from a row.

    Raises
    ------
    MalformedRecordError
        When either value is missing, non-numeric, non-finite or out of range.
    """
    lng = safe_float(row.get(longitude_column))
    lat = safe_float(row.get(latitude_column))
    if lng is None or lat is None:
        raise MalformedRecordError(
            f"Unparseable coordinates: [{row.get(longitude_column)!r}, {row.get(latitude_column)!r}]",
            record=row,
        )
    if not is_valid_coordinate(lng, lat):
        raise MalformedRecordError(f"Invalid coordinates: [{lng}, {lat}]", record=row)
    return lng, lat


def coordinate_key(longitude: float, latitude: float, precision: int = 7) -> tuple[float, float]:
    """Canonical identity of a coordinate pair.

    Rounds both values so representation drift between the bulk query and
    the change feed (e.g. ``34.1`` vs ``34.100000000000001``) still matches.
    ``-0.0`` folds into ``0.0``.
    """
    return round(longitude, precision) + 0.0, round(latitude, precision) + 0.0
