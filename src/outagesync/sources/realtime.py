"""Supabase Realtime client (Phoenix channel protocol, JSON serializer v1).

Only the ``postgres_changes`` extension is used: one channel per table,
all events, optionally filtered to one tenant.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from outagesync.exceptions import SubscriptionError
from outagesync.sources.base import EventCallback, StatusCallback
from outagesync.state.events import ChannelStatus

_logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_S = 25.0
_PHOENIX_TOPIC = "phoenix"


def realtime_url(base_url: str, api_key: str, *, vsn: str = "1.0.0") -> str:
    """Websocket endpoint for a project URL (``https://x.supabase.co`` -> ``wss://...``)."""
    parts = urlsplit(base_url.rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": api_key, "vsn": vsn})
    return urlunsplit((scheme, parts.netloc, f"{parts.path}/realtime/v1/websocket", query, ""))


def build_join_message(
    *,
    topic: str,
    table: str,
    schema: str,
    row_filter: str | None,
    access_token: str,
    ref: str,
) -> dict[str, Any]:
    change: dict[str, Any] = {"event": "*", "schema": schema, "table": table}
    if row_filter:
        change["filter"] = row_filter
    return {
        "topic": topic,
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
                "private": False,
            },
            "access_token": access_token,
        },
        "ref": ref,
        "join_ref": ref,
    }


def parse_postgres_change(payload: Any) -> dict[str, Any] | None:
    """Flatten a ``postgres_changes`` payload into ``{eventType, new, old, commit_timestamp}``."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    event_type = data.get("type") or data.get("eventType")
    if not isinstance(event_type, str):
        return None
    new = data.get("record", data.get("new"))
    old = data.get("old_record", data.get("old"))
    return {
        "eventType": event_type,
        "new": new if isinstance(new, dict) else {},
        "old": old if isinstance(old, dict) else {},
        "commit_timestamp": data.get("commit_timestamp"),
    }


class RealtimeChannel:
    """One joined ``postgres_changes`` channel over its own websocket.

    Callbacks run on the event loop that called :meth:`open`.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        url: str,
        access_token: str,
        channel: str,
        table: str,
        on_event: EventCallback,
        on_status: StatusCallback,
        schema: str = "public",
        row_filter: str | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_S,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._url = url
        self._access_token = access_token
        self._topic = f"realtime:{channel}"
        self._table = table
        self._schema = schema
        self._row_filter = row_filter
        self._on_event = on_event
        self._on_status = on_status
        self._heartbeat_interval = heartbeat_interval
        self._logger = logger or _logger
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._ref = 0
        self._join_ref: str | None = None
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def topic(self) -> str:
        return self._topic

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def open(self) -> None:
        """Connect and send the join; acknowledgment arrives through ``on_status``."""
        self._logger.debug("Realtime join requested topic=%s table=%s", self._topic, self._table)
        try:
            self._ws = await self._session.ws_connect(self._url, heartbeat=None)
            self._join_ref = self._next_ref()
            await self._ws.send_json(
                build_join_message(
                    topic=self._topic,
                    table=self._table,
                    schema=self._schema,
                    row_filter=self._row_filter,
                    access_token=self._access_token,
                    ref=self._join_ref,
                )
            )
        except (aiohttp.ClientError, OSError, TimeoutError) as exc:
            if self._ws is not None:
                await self._ws.close()
                self._ws = None
            raise SubscriptionError(f"Realtime connect failed: {exc!r}", status=ChannelStatus.CHANNEL_ERROR) from exc

        self._open = True
        self._reader = asyncio.create_task(self._read_loop())
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def close(self) -> None:
        """Leave the channel and close the socket. Safe to call repeatedly."""
        if self._closing:
            return
        self._closing = True
        self._open = False
        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(aiohttp.ClientError, ConnectionError, RuntimeError):
                await ws.send_json(
                    {"topic": self._topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}
                )

        tasks = [task for task in (self._heartbeat, self._reader) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat = None
        self._reader = None

        if ws is not None:
            await ws.close()
        self._ws = None
        self._logger.debug("Realtime channel closed topic=%s", self._topic)

    def _emit_status(self, status: ChannelStatus) -> None:
        try:
            self._on_status(status)
        except Exception:
            self._logger.debug("on_status callback failed", exc_info=True)

    def _emit_event(self, change: dict[str, Any]) -> None:
        try:
            self._on_event(change)
        except Exception:
            self._logger.debug("on_event callback failed", exc_info=True)

    def _dispatch(self, message: dict[str, Any]) -> None:
        topic = message.get("topic")
        event = message.get("event")
        payload = message.get("payload")

        if topic == _PHOENIX_TOPIC or topic != self._topic:
            return

        if event == "phx_reply":
            if message.get("ref") != self._join_ref:
                return
            status = payload.get("status") if isinstance(payload, dict) else None
            if status == "ok":
                self._logger.debug("Realtime subscription acknowledged topic=%s", self._topic)
                self._emit_status(ChannelStatus.SUBSCRIBED)
            else:
                self._logger.warning("Realtime join rejected topic=%s payload=%s", self._topic, payload)
                self._emit_status(ChannelStatus.CHANNEL_ERROR)
            return

        if event == "postgres_changes":
            change = parse_postgres_change(payload)
            if change is None:
                self._logger.debug("Ignoring unparseable postgres_changes payload")
                return
            self._emit_event(change)
            return

        if event == "system":
            if isinstance(payload, dict) and payload.get("status") == "error":
                self._logger.warning("Realtime system error topic=%s message=%s", self._topic, payload.get("message"))
                self._emit_status(ChannelStatus.CHANNEL_ERROR)
            return

        if event == "phx_error":
            self._emit_status(ChannelStatus.CHANNEL_ERROR)
            return

        if event == "phx_close":
            self._open = False
            self._emit_status(ChannelStatus.CLOSED)

    async def _read_loop(self) -> None:
        ws = self._ws
        assert ws is not None  # noqa: S101
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except json.JSONDecodeError:
                        self._logger.debug("Realtime frame is not JSON: %s", str(msg.data)[:200])
                        continue
                    if isinstance(message, dict):
                        self._dispatch(message)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._logger.debug("Realtime socket error: %s", ws.exception())
                    break
        finally:
            if not self._closing:
                self._open = False
                self._logger.warning("Realtime socket closed unexpectedly topic=%s", self._topic)
                self._emit_status(ChannelStatus.CHANNEL_ERROR)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            ws = self._ws
            if ws is None or ws.closed:
                return
            try:
                await ws.send_json({"topic": _PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": self._next_ref()})
            except (aiohttp.ClientError, ConnectionError, RuntimeError):
                self._logger.debug("Realtime heartbeat failed", exc_info=True)
                return
