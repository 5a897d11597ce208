"""Synthetic demo dataset.

Used when a tenant has no reachable data source so the map always has
something to show. The points are clearly fake: uniformly scattered in a
0.2 degree square around the tenant's map center.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime

from outagesync.ingestion.normalize import LATITUDE_RANGE, LONGITUDE_RANGE
from outagesync.models.feature import FeatureRecord

DEMO_SPREAD_DEGREES = 0.2


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    return min(max(value, bounds[0]), bounds[1])


def generate_demo_records(
    center: tuple[float, float],
    *,
    count: int = 25,
    status: str = "Offline",
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> list[FeatureRecord]:
    """Scatter *count* active points around *center* (``(longitude, latitude)``)."""
    rand = rng or random.Random()
    timestamp = (now or datetime.now(UTC)).isoformat()
    lng0, lat0 = center
    records: list[FeatureRecord] = []
    for _ in range(count):
        lng = _clamp(lng0 + (rand.random() - 0.5) * DEMO_SPREAD_DEGREES, LONGITUDE_RANGE)
        lat = _clamp(lat0 + (rand.random() - 0.5) * DEMO_SPREAD_DEGREES, LATITUDE_RANGE)
        records.append(FeatureRecord(coordinates=(lng, lat), status=status, updated_at=timestamp))
    return records
