"""Renderer-facing helpers for snapshots."""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable
from typing import Any

from outagesync.models.feature import FeatureRecord


def to_feature_collection(records: Iterable[FeatureRecord]) -> dict[str, Any]:
    """GeoJSON ``FeatureCollection`` ready for a point source."""
    return {"type": "FeatureCollection", "features": [record.to_feature() for record in records]}


def calculate_bounds(records: Iterable[FeatureRecord]) -> tuple[float, float, float, float] | None:
    """Return ``(min_lng, min_lat, max_lng, max_lat)`` or None for an empty set."""
    min_lng = min_lat = float("inf")
    max_lng = max_lat = float("-inf")
    seen = False
    for record in records:
        seen = True
        lng, lat = record.coordinates
        min_lng = min(min_lng, lng)
        min_lat = min(min_lat, lat)
        max_lng = max(max_lng, lng)
        max_lat = max(max_lat, lat)
    if not seen:
        return None
    return min_lng, min_lat, max_lng, max_lat


def to_csv(records: Iterable[FeatureRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["longitude", "latitude", "status", "updated_at"])
    for record in records:
        writer.writerow([record.longitude, record.latitude, record.status, record.updated_at or ""])
    return buffer.getvalue()
