"""Bulk snapshot ingestion.

This module owns the "fetch everything active and convert it" step used
at startup and on every polling tick. It never touches a store; callers
install the result with :meth:`FeatureStore.replace_all`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from outagesync._redact import redact_for_log
from outagesync.config import ColumnMapping, StatusFilter
from outagesync.exceptions import FetchError, MalformedRecordError
from outagesync.models.feature import FeatureRecord
from outagesync.sources.base import SnapshotSource

_logger = logging.getLogger(__name__)


class SnapshotLoader:
    """Fetch and convert all active rows of one table.

    Parameters
    ----------
    table : str
        Source table.
    columns : ColumnMapping
        Row column names.
    extra_filters : mapping, optional
        Additional equality filters (e.g. tenant isolation in shared databases).
    """

    def __init__(
        self,
        table: str,
        columns: ColumnMapping,
        *,
        extra_filters: Mapping[str, Any] | None = None,
    ) -> None:
        self._table = table
        self._columns = columns
        self._extra_filters = dict(extra_filters or {})
        self.last_discarded = 0
        self.total_discarded = 0

    def _query(self, status_filter: StatusFilter) -> tuple[dict[str, Any], list[str]]:
        equality: dict[str, Any] = {status_filter.status_field: status_filter.active_value}
        equality.update(self._extra_filters)
        non_null: list[str] = []
        if status_filter.require_coordinates:
            non_null = [self._columns.latitude, self._columns.longitude]
        return equality, non_null

    async def load(self, source: SnapshotSource, status_filter: StatusFilter) -> list[FeatureRecord]:
        """Run one bulk query and convert the rows.

        Rows with unparseable or out-of-range coordinates, or whose status is
        not the active value, are dropped and counted; they never fail the load.

        Raises
        ------
        FetchError
            When the query itself fails.
        """
        equality, non_null = self._query(status_filter)
        try:
            rows = await source.fetch(self._table, equality, non_null)
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(f"Bulk query on {self._table} failed: {exc}", table=self._table) from exc

        records: list[FeatureRecord] = []
        discarded = 0
        for position, row in enumerate(rows):
            if not isinstance(row, Mapping):
                discarded += 1
                _logger.warning("Skipping non-object row at index %d", position)
                continue
            if row.get(status_filter.status_field) != status_filter.active_value:
                discarded += 1
                _logger.warning("Skipping inactive row at index %d", position)
                continue
            try:
                records.append(FeatureRecord.from_row(row, self._columns))
            except MalformedRecordError as exc:
                discarded += 1
                _logger.warning("Skipping row at index %d: %s row=%s", position, exc, redact_for_log(row))

        self.last_discarded = discarded
        self.total_discarded += discarded
        _logger.info(
            "Loaded %d active records from %s (%d discarded)",
            len(records),
            self._table,
            discarded,
        )
        return records
