"""Controller operating modes and the renderer-facing sync state."""

from __future__ import annotations

from enum import StrEnum


class SyncState(StrEnum):
    """Coarse state shown to the renderer (status indicator)."""

    LOADING = "loading"
    LIVE = "live"
    POLLING = "polling"
    ERROR = "error"


class SyncMode(StrEnum):
    """Authoritative operating mode of a :class:`~outagesync.controller.SyncController`."""

    INIT = "init"
    SNAPSHOT_LOADING = "snapshot_loading"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    POLLING = "polling"
    STOPPED = "stopped"

    @property
    def public_state(self) -> SyncState | None:
        """Outward state for this mode, or None when nothing is shown."""
        mapping: dict[SyncMode, SyncState] = {
            SyncMode.SNAPSHOT_LOADING: SyncState.LOADING,
            SyncMode.SUBSCRIBING: SyncState.LOADING,
            SyncMode.LIVE: SyncState.LIVE,
            SyncMode.POLLING: SyncState.POLLING,
        }
        return mapping.get(self)
