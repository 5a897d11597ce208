"""Tracked outage point model."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from outagesync.config import ColumnMapping
from outagesync.ingestion.normalize import is_valid_coordinate, parse_coordinates, safe_str


class FeatureRecord(BaseModel):
    """One active point as shown on the map.

    Identity is the coordinate pair; no row id is carried.

    Parameters
    ----------
    coordinates : tuple of float
        ``(longitude, latitude)`` in degrees.
    status : str
        Status classification (e.g. ``"Offline"``).
    updated_at : str or None
        Timestamp from the source row, for display only.
    """

    model_config = ConfigDict(frozen=True)

    coordinates: tuple[float, float]
    status: str
    updated_at: str | None = Field(default=None)

    @field_validator("coordinates")
    @classmethod
    def _check_range(cls, value: tuple[float, float]) -> tuple[float, float]:
        lng, lat = value
        if not is_valid_coordinate(lng, lat):
            raise ValueError(f"invalid coordinates [{lng}, {lat}]")
        return value

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]

    @classmethod
    def from_row(cls, row: Mapping[str, Any], columns: ColumnMapping) -> FeatureRecord:
        """Build a record from a source row.

        Raises
        ------
        MalformedRecordError
            When the coordinates do not parse or are out of range.
        """
        coordinates = parse_coordinates(
            row,
            longitude_column=columns.longitude,
            latitude_column=columns.latitude,
        )
        return cls(
            coordinates=coordinates,
            status=safe_str(row.get(columns.status)) or "",
            updated_at=safe_str(row.get(columns.updated_at)),
        )

    def to_feature(self) -> dict[str, Any]:
        """GeoJSON ``Feature`` with only non-personal properties."""
        return {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [self.longitude, self.latitude]},
            "properties": {"status": self.status, "updated_at": self.updated_at},
        }
