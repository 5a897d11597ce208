"""Apply change-feed events to a :class:`FeatureStore`.

Records are matched by coordinates only. Two subscribers sharing exact
coordinates are one logical entry, and an UPDATE that moves a point while
changing its status is looked up at the new position.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from outagesync._redact import redact_for_log
from outagesync.config import ColumnMapping
from outagesync.exceptions import MalformedRecordError
from outagesync.ingestion.normalize import parse_coordinates
from outagesync.models.feature import FeatureRecord
from outagesync.state.events import ChangeEvent, ChangeEventType
from outagesync.state.policy import ReconcileAction, decide_action
from outagesync.state.store import FeatureStore

_logger = logging.getLogger(__name__)


class ChangeEventReconciler:
    """Applies single change events against a store.

    Parameters
    ----------
    store : FeatureStore
        Store to mutate.
    columns : ColumnMapping
        Row column names.
    active_value : str
        Status value that marks a row as active (shown on the map).
    status_field : str or None
        Column compared against *active_value*. Defaults to ``columns.status``.
    """

    def __init__(
        self,
        store: FeatureStore,
        *,
        columns: ColumnMapping,
        active_value: str,
        status_field: str | None = None,
    ) -> None:
        self._store = store
        self._columns = columns
        self._active_value = active_value
        self._status_field = status_field or columns.status

    def _coordinates(self, record: Mapping[str, Any]) -> tuple[float, float]:
        return parse_coordinates(
            record,
            longitude_column=self._columns.longitude,
            latitude_column=self._columns.latitude,
        )

    def _is_active(self, record: Mapping[str, Any]) -> bool:
        return record.get(self._status_field) == self._active_value

    def apply(self, event: ChangeEvent) -> ReconcileAction:
        """Apply *event* and return the action actually performed.

        ``IGNORE`` means the store is unchanged.
        """
        if event.event_type == ChangeEventType.DELETE:
            return self._apply_delete(event)

        new_record = event.new_record or {}
        is_active = self._is_active(new_record)

        coordinates: tuple[float, float] | None
        try:
            coordinates = self._coordinates(new_record)
        except MalformedRecordError as exc:
            coordinates = None
            if is_active:
                _logger.warning("Dropping %s event: %s record=%s", event.event_type, exc, redact_for_log(new_record))
                return ReconcileAction.IGNORE

        existed = False
        index: int | None = None
        if coordinates is not None and event.event_type == ChangeEventType.UPDATE:
            index = self._store.find_index_by_coordinates(*coordinates)
            existed = index is not None

        action = decide_action(event.event_type, existed=existed, is_active=is_active)
        _logger.debug(
            "%s existed=%s active=%s -> %s",
            event.event_type,
            existed,
            is_active,
            action,
        )

        if action == ReconcileAction.IGNORE or coordinates is None:
            return ReconcileAction.IGNORE

        if action == ReconcileAction.REMOVE:
            removed = self._store.remove_by_coordinates(*coordinates)
            return ReconcileAction.REMOVE if removed else ReconcileAction.IGNORE

        record = FeatureRecord.from_row(new_record, self._columns)
        if action == ReconcileAction.REPLACE and index is not None:
            self._store.replace_at(index, record)
        else:
            self._store.insert(record)
        return action

    def _apply_delete(self, event: ChangeEvent) -> ReconcileAction:
        old_record = event.old_record or {}
        try:
            coordinates = self._coordinates(old_record)
        except MalformedRecordError as exc:
            _logger.warning("Dropping DELETE event: %s record=%s", exc, redact_for_log(old_record))
            return ReconcileAction.IGNORE
        removed = self._store.remove_by_coordinates(*coordinates)
        _logger.debug("DELETE removed=%d", removed)
        return ReconcileAction.REMOVE if removed else ReconcileAction.IGNORE
