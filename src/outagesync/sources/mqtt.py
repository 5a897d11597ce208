"""MQTT change feed.

For tenants whose database publishes row changes to a broker instead of
Supabase Realtime. Each message on ``<topic_prefix>/<table>`` is a JSON
change event (``{"eventType": ..., "new": {...}, "old": {...}}``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, cast

import paho.mqtt.client as mqtt

from outagesync.config import MqttFeedConfig
from outagesync.exceptions import ConfigurationError, MalformedEventError, SubscriptionError
from outagesync.sources.base import EventCallback, StatusCallback
from outagesync.state.events import ChannelStatus

_logger = logging.getLogger(__name__)


def decode_change_message(payload: bytes) -> dict[str, Any]:
    """Parse MQTT payload bytes into a change-event object."""
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEventError(f"MQTT payload is not JSON: {exc}", payload=payload) from exc
    if not isinstance(parsed, dict):
        raise MalformedEventError("MQTT payload decoded to non-object JSON", payload=parsed)
    return parsed


def topic_for_table(prefix: str, table: str) -> str:
    return f"{prefix.rstrip('/')}/{table}"


class MqttChannel:
    """Threaded paho-mqtt client that emits change events onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: MqttFeedConfig,
        topic: str,
        on_event: EventCallback,
        on_status: StatusCallback,
        client_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._topic = topic
        self._on_event = on_event
        self._on_status = on_status
        self._client_id = client_id or f"outagesync_{secrets.token_hex(6)}"
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_open(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    @property
    def topic(self) -> str:
        return self._topic

    def _post(self, callback: Any, *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            self._logger.debug("Event loop closed; dropping MQTT callback")

    def start(self) -> None:
        """Connect and subscribe. Blocks on the TCP connect; run in an executor."""
        host = self._config.host
        if not host:
            raise ConfigurationError("MQTT feed requires a broker host")
        self._logger.debug(
            "MQTT channel start requested host=%s port=%s topic=%s client_id=%s",
            host,
            self._config.port,
            self._topic,
            self._client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._config.username:
            client.username_pw_set(self._config.username, self._config.password)
        if self._config.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._post(self._on_status, ChannelStatus.CHANNEL_ERROR)
                return
            self._logger.debug("MQTT connected reason=%s; subscribing topic=%s", reason_code, self._topic)
            c.subscribe(self._topic, qos=1)

        def on_subscribe(
            _c: mqtt.Client,
            _userdata: Any,
            _mid: int,
            reason_codes: list[Any],
            _properties: Any,
        ) -> None:
            if any(getattr(code, "is_failure", False) for code in reason_codes):
                self._logger.warning("MQTT subscribe rejected topic=%s codes=%s", self._topic, reason_codes)
                self._post(self._on_status, ChannelStatus.CHANNEL_ERROR)
                return
            self._post(self._on_status, ChannelStatus.SUBSCRIBED)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                change = decode_change_message(msg.payload)
            except MalformedEventError:
                self._logger.warning("Dropping undecodable MQTT message on %s", msg.topic, exc_info=True)
                return
            self._post(self._on_event, change)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected unexpectedly: %s", reason_code)
                self._post(self._on_status, ChannelStatus.CHANNEL_ERROR)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(host, self._config.port, keepalive=self._config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")


class MqttChangeFeed:
    """:class:`~outagesync.sources.base.ChangeFeed` backed by an MQTT broker."""

    def __init__(self, config: MqttFeedConfig, *, client_id: str | None = None) -> None:
        self._config = config
        self._client_id = client_id

    async def subscribe(self, table: str, on_event: EventCallback, on_status: StatusCallback) -> MqttChannel:
        loop = asyncio.get_running_loop()
        channel = MqttChannel(
            loop=loop,
            config=self._config,
            topic=topic_for_table(self._config.topic_prefix, table),
            on_event=on_event,
            on_status=on_status,
            client_id=self._client_id,
        )
        try:
            await loop.run_in_executor(None, channel.start)
        except (OSError, ValueError) as exc:
            await loop.run_in_executor(None, channel.stop)
            raise SubscriptionError(f"MQTT connect failed: {exc!r}", status=ChannelStatus.CHANNEL_ERROR) from exc
        return channel

    async def unsubscribe(self, handle: MqttChannel) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, handle.stop)
