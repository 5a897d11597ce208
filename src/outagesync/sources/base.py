"""Structural interfaces for data sources and change feeds.

Having protocols here makes it easy to pass test doubles while keeping
the production adapters (:mod:`outagesync.sources.supabase`,
:mod:`outagesync.sources.mqtt`) concrete.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

from outagesync.state.events import ChannelStatus

EventCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[ChannelStatus], None]


class SnapshotSource(Protocol):
    """Bulk query interface."""

    async def fetch(
        self,
        table: str,
        equality_filters: Mapping[str, Any],
        require_non_null: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        """Return rows matching every equality filter with the given columns non-null.

        Raises :class:`~outagesync.exceptions.FetchError` on failure.
        """
        ...


class ChannelHandle(Protocol):
    """An open change-feed channel."""

    @property
    def is_open(self) -> bool: ...


class ChangeFeed(Protocol):
    """Push subscription interface.

    ``on_event`` and ``on_status`` must be invoked on the event loop that
    called :meth:`subscribe`.
    """

    async def subscribe(
        self,
        table: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle: ...

    async def unsubscribe(self, handle: ChannelHandle) -> None: ...
