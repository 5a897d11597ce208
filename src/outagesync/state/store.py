"""In-memory store of currently active points.

This is the only mutable state a sync session shares with its renderer,
and the renderer only ever sees immutable snapshots of it.
"""

from __future__ import annotations

from collections.abc import Iterable

from outagesync.ingestion.normalize import coordinate_key
from outagesync.models.feature import FeatureRecord

CoordinateKey = tuple[float, float]


class FeatureStore:
    """Ordered set of :class:`FeatureRecord` keyed by canonical coordinates.

    Duplicates by coordinate are kept on insert. Lookups return the first
    position holding a key; removals drop every position holding it.
    """

    def __init__(self, *, precision: int = 7) -> None:
        self._precision = precision
        self._records: list[FeatureRecord] = []
        self._index: dict[CoordinateKey, list[int]] = {}

    def _key(self, longitude: float, latitude: float) -> CoordinateKey:
        return coordinate_key(longitude, latitude, self._precision)

    def _rebuild_index(self) -> None:
        index: dict[CoordinateKey, list[int]] = {}
        for position, record in enumerate(self._records):
            index.setdefault(self._key(record.longitude, record.latitude), []).append(position)
        self._index = index

    def replace_all(self, records: Iterable[FeatureRecord]) -> None:
        """Discard current contents and install *records*."""
        self._records = list(records)
        self._rebuild_index()

    def insert(self, record: FeatureRecord) -> None:
        self._records.append(record)
        self._index.setdefault(self._key(record.longitude, record.latitude), []).append(len(self._records) - 1)

    def find_index_by_coordinates(self, longitude: float, latitude: float) -> int | None:
        positions = self._index.get(self._key(longitude, latitude))
        if not positions:
            return None
        return positions[0]

    def remove_by_coordinates(self, longitude: float, latitude: float) -> int:
        """Remove every entry at the given coordinates; return how many were removed."""
        positions = self._index.get(self._key(longitude, latitude))
        if not positions:
            return 0
        doomed = set(positions)
        self._records = [record for position, record in enumerate(self._records) if position not in doomed]
        self._rebuild_index()
        return len(doomed)

    def replace_at(self, index: int, record: FeatureRecord) -> None:
        if not 0 <= index < len(self._records):
            raise IndexError(f"store index out of range: {index}")
        previous = self._records[index]
        self._records[index] = record
        if previous.coordinates != record.coordinates:
            self._rebuild_index()

    def clear(self) -> None:
        self._records = []
        self._index = {}

    def size(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> tuple[FeatureRecord, ...]:
        """Immutable view in insertion order."""
        return tuple(self._records)
