"""Deterministic reconciliation policy.

This module intentionally contains *no* payload parsing or coordinate
validation; it only maps an event's before/after shape to an action.
"""

from __future__ import annotations

from enum import StrEnum

from outagesync.state.events import ChangeEventType


class ReconcileAction(StrEnum):
    INSERT = "insert"
    REPLACE = "replace"
    REMOVE = "remove"
    IGNORE = "ignore"


def decide_action(event_type: ChangeEventType, *, existed: bool, is_active: bool) -> ReconcileAction:
    """Decide what a change event does to the store.

    Policy:
    - INSERT: add when the new row is active, else ignore.
    - UPDATE: ``existed`` is whether the store already holds the new row's
      coordinates. inactive->active adds, active->inactive removes,
      active->active refreshes in place, inactive->inactive ignores.
    - DELETE: always remove by the old row's coordinates.
    """
    if event_type == ChangeEventType.DELETE:
        return ReconcileAction.REMOVE

    if event_type == ChangeEventType.INSERT:
        return ReconcileAction.INSERT if is_active else ReconcileAction.IGNORE

    if is_active:
        return ReconcileAction.REPLACE if existed else ReconcileAction.INSERT
    return ReconcileAction.REMOVE if existed else ReconcileAction.IGNORE
