"""Custom exception hierarchy for outagesync."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class OutageSyncError(Exception):
    """Base exception for all outagesync errors."""


class ConfigurationError(OutageSyncError):
    """Invalid, missing or unreachable tenant configuration."""


class FetchError(OutageSyncError):
    """A bulk query failed (network, auth, non-2xx, invalid body)."""

    def __init__(
        self,
        message: str,
        *,
        table: str = "",
        status_code: int | None = None,
    ) -> None:
        self.table = table
        self.status_code = status_code
        super().__init__(message)


class SubscriptionError(OutageSyncError):
    """The change-feed channel could not be opened or reported a failure."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        self.status = status
        super().__init__(message)


class MalformedRecordError(OutageSyncError):
    """A row or event record carries unparseable or out-of-range coordinates.

    The offending record is dropped; the rest of the batch or event
    stream keeps flowing.
    """

    def __init__(self, message: str, *, record: Mapping[str, Any] | None = None) -> None:
        self.record = record
        super().__init__(message)


class MalformedEventError(OutageSyncError):
    """A change-feed payload is missing the fields its event type needs."""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        self.payload = payload
        super().__init__(message)
