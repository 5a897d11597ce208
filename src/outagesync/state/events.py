"""Normalized change-feed events.

Every change-feed transport (Supabase Realtime, MQTT) hands its payloads
to :meth:`ChangeEvent.from_payload`. Only the reconciler is allowed to
apply them to a store.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from outagesync.exceptions import MalformedEventError


class ChangeEventType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChannelStatus(StrEnum):
    """Subscription acknowledgment states reported by a change feed."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEvent(BaseModel):
    """One row change delivered by the feed."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    event_type: ChangeEventType = Field(validation_alias=AliasChoices("eventType", "event_type", "type"))
    new_record: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("new", "newRecord", "new_record", "record"),
    )
    old_record: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("old", "oldRecord", "old_record"),
    )
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("new_record", "old_record", mode="before")
    @classmethod
    def _empty_is_absent(cls, value: Any) -> Any:
        # Feeds send {} for the side of the change that does not exist.
        if value is None or value == {}:
            return None
        return value

    @model_validator(mode="after")
    def _require_records(self) -> ChangeEvent:
        if self.event_type in (ChangeEventType.INSERT, ChangeEventType.UPDATE) and self.new_record is None:
            raise ValueError(f"{self.event_type} event without new record")
        if self.event_type == ChangeEventType.DELETE and self.old_record is None:
            raise ValueError("DELETE event without old record")
        return self

    @classmethod
    def from_payload(cls, payload: Any) -> ChangeEvent:
        """Parse a raw feed payload.

        Raises
        ------
        MalformedEventError
            When the payload is not a mapping, has an unknown event type, or
            lacks the record its event type requires.
        """
        if isinstance(payload, ChangeEvent):
            return payload
        if not isinstance(payload, Mapping):
            raise MalformedEventError(f"Change payload is not an object: {type(payload).__name__}", payload=payload)
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            raise MalformedEventError(f"Malformed change payload: {exc.errors()[0]['msg']}", payload=payload) from exc
