"""Session-scoped synchronization controller.

One :class:`SyncController` owns one tenant's :class:`FeatureStore` for
the lifetime of a session. It loads a snapshot, prefers a push
subscription, and falls back to interval polling once the subscription
errors or times out.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import aiohttp

from outagesync._redact import redact_for_log
from outagesync.config import TenantConfig
from outagesync.exceptions import ConfigurationError, FetchError, MalformedEventError, OutageSyncError
from outagesync.ingestion.demo import generate_demo_records
from outagesync.ingestion.snapshot import SnapshotLoader
from outagesync.models.feature import FeatureRecord
from outagesync.models.sync import SyncMode, SyncState
from outagesync.sources.base import ChangeFeed, ChannelHandle, SnapshotSource
from outagesync.sources.mqtt import MqttChangeFeed
from outagesync.sources.supabase import SupabaseClient
from outagesync.state.events import ChangeEvent, ChannelStatus
from outagesync.state.policy import ReconcileAction
from outagesync.state.reconcile import ChangeEventReconciler
from outagesync.state.store import FeatureStore

_logger = logging.getLogger(__name__)

FeaturesCallback = Callable[[tuple[FeatureRecord, ...]], None]
CountCallback = Callable[[int], None]
StateCallback = Callable[[SyncState], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True, frozen=True)
class _FeedMessage:
    """Something the change feed delivered, queued for the consumer task."""

    kind: str
    value: Any


class SyncController:
    """Keeps one tenant's active-point set in sync with its data source.

    Usage::

        config = TenantConfig.from_env("freedomfiber")
        async with SyncController.for_tenant(config, on_features_changed=render) as controller:
            await asyncio.Event().wait()

    Parameters
    ----------
    config : TenantConfig
        Tenant configuration.
    source : SnapshotSource or None
        Bulk query adapter. ``None`` means the tenant has no reachable data
        source; demo data is shown instead.
    feed : ChangeFeed or None
        Push subscription adapter. ``None`` goes straight to polling.
    store : FeatureStore or None
        Store to own. A fresh one is created by default.
    clock : callable
        Returns the current UTC time; used for ``last_updated``.
    rng : random.Random or None
        Randomness for demo data.
    on_features_changed, on_count_changed, on_sync_state_changed : callable or None
        Renderer callbacks. Exceptions raised by them are logged and ignored.
    """

    def __init__(
        self,
        config: TenantConfig,
        *,
        source: SnapshotSource | None = None,
        feed: ChangeFeed | None = None,
        store: FeatureStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        rng: random.Random | None = None,
        on_features_changed: FeaturesCallback | None = None,
        on_count_changed: CountCallback | None = None,
        on_sync_state_changed: StateCallback | None = None,
    ) -> None:
        self._config = config
        self._source = source
        self._feed = feed
        self._store = store if store is not None else FeatureStore(precision=config.coordinate_precision)
        self._loader = SnapshotLoader(config.table, config.columns, extra_filters=config.tenant_filters)
        self._reconciler = ChangeEventReconciler(
            self._store,
            columns=config.columns,
            active_value=config.filters.active_value,
            status_field=config.filters.status_field,
        )
        self._clock = clock
        self._rng = rng
        self._on_features_changed = on_features_changed
        self._on_count_changed = on_count_changed
        self._on_sync_state_changed = on_sync_state_changed

        self._mode = SyncMode.INIT
        self._state: SyncState | None = None
        self._alive = False
        self._inbox: asyncio.Queue[_FeedMessage] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._ack_timer: asyncio.TimerHandle | None = None
        self._channel: ChannelHandle | None = None
        self._last_updated: datetime | None = None
        self._owned_closers: list[Callable[[], Awaitable[None]]] = []

    @classmethod
    def for_tenant(
        cls,
        config: TenantConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        **kwargs: Any,
    ) -> SyncController:
        """Build a controller with the adapters *config* asks for.

        The controller closes the adapters it creates on :meth:`stop`.
        """
        source: SnapshotSource | None = None
        feed: ChangeFeed | None = None
        closers: list[Callable[[], Awaitable[None]]] = []
        if config.is_configured:
            client = SupabaseClient.from_config(config, session=session)
            source = client
            closers.append(client.close)
            if config.feed == "mqtt":
                feed = MqttChangeFeed(config.mqtt) if config.mqtt.host else None
            else:
                feed = client
        else:
            _logger.warning("Tenant %s has no data source configured", config.tenant_id)

        controller = cls(config, source=source, feed=feed, **kwargs)
        controller._owned_closers = closers
        return controller

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncController:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> TenantConfig:
        return self._config

    @property
    def mode(self) -> SyncMode:
        return self._mode

    @property
    def state(self) -> SyncState | None:
        """Last state reported to the renderer."""
        return self._state

    @property
    def count(self) -> int:
        return self._store.size()

    @property
    def last_updated(self) -> datetime | None:
        """Time of the last store mutation."""
        return self._last_updated

    def snapshot(self) -> tuple[FeatureRecord, ...]:
        return self._store.snapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the initial snapshot, then subscribe or start polling.

        Raises
        ------
        ConfigurationError
            When no data source is configured and demo fallback is disabled.
        OutageSyncError
            When called twice.
        """
        if self._mode is not SyncMode.INIT:
            raise OutageSyncError(f"Controller already started (mode={self._mode})")

        self._alive = True
        self._inbox = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        self._set_mode(SyncMode.SNAPSHOT_LOADING)

        try:
            await self._initial_load()
        except ConfigurationError:
            await self.stop()
            raise
        if not self._alive:
            return

        if self._feed is None or not self._config.realtime_enabled:
            _logger.info("No change feed for tenant %s; using polling", self._config.tenant_id)
            self._enter_polling()
            return

        await self._subscribe(self._feed)

    async def stop(self) -> None:
        """Tear down timers, tasks and the channel. Safe to call repeatedly.

        No store mutation happens after this returns.
        """
        if self._mode is SyncMode.STOPPED:
            return
        self._mode = SyncMode.STOPPED
        self._alive = False
        self._cancel_ack_timer()

        current = asyncio.current_task()
        tasks = [task for task in (self._poll_task, self._consumer) if task is not None and task is not current]
        self._poll_task = None
        self._consumer = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        channel = self._channel
        self._channel = None
        if channel is not None:
            await self._close_channel(channel)

        closers = self._owned_closers
        self._owned_closers = []
        for close in closers:
            try:
                await close()
            except Exception:
                _logger.debug("Adapter close failed", exc_info=True)

        self._store.clear()
        _logger.info("Sync stopped for tenant %s", self._config.tenant_id)

    async def wait_idle(self) -> None:
        """Wait until every queued feed message has been processed."""
        if self._inbox is not None and self._alive:
            await self._inbox.join()

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    def apply_event(self, payload: Any) -> ReconcileAction:
        """Apply one change event and notify the renderer if the store changed.

        Malformed payloads are logged and ignored.
        """
        if not self._alive:
            return ReconcileAction.IGNORE
        try:
            event = ChangeEvent.from_payload(payload)
        except MalformedEventError as exc:
            _logger.warning("Ignoring malformed change event: %s payload=%s", exc, redact_for_log(payload))
            return ReconcileAction.IGNORE

        action = self._reconciler.apply(event)
        if action != ReconcileAction.IGNORE:
            self._notify()
        return action

    def _on_feed_event(self, payload: Any) -> None:
        if self._alive and self._inbox is not None:
            self._inbox.put_nowait(_FeedMessage("event", payload))

    def _on_feed_status(self, status: Any) -> None:
        if self._alive and self._inbox is not None:
            self._inbox.put_nowait(_FeedMessage("status", status))

    async def _consume(self) -> None:
        assert self._inbox is not None  # noqa: S101
        inbox = self._inbox
        while True:
            message = await inbox.get()
            try:
                if message.kind == "status":
                    await self._handle_status(message.value)
                elif self._mode in (SyncMode.SUBSCRIBING, SyncMode.LIVE):
                    self.apply_event(message.value)
                else:
                    _logger.debug("Dropping change event received in mode %s", self._mode)
            except Exception:
                _logger.warning("Failed to process feed message kind=%s", message.kind, exc_info=True)
            finally:
                inbox.task_done()

    async def _handle_status(self, raw_status: Any) -> None:
        try:
            status = ChannelStatus(raw_status)
        except ValueError:
            _logger.debug("Ignoring unknown channel status %r", raw_status)
            return

        if status == ChannelStatus.SUBSCRIBED:
            if self._mode is SyncMode.SUBSCRIBING:
                self._cancel_ack_timer()
                self._set_mode(SyncMode.LIVE)
                _logger.info("Realtime subscription active for %s", self._config.table)
            return

        if status == ChannelStatus.CLOSED and self._mode is SyncMode.SUBSCRIBING:
            return

        if self._mode in (SyncMode.SUBSCRIBING, SyncMode.LIVE):
            _logger.warning("Realtime subscription %s for %s; falling back to polling", status, self._config.table)
            await self._fall_back_to_polling()
        else:
            _logger.debug("Ignoring channel status %s in mode %s", status, self._mode)

    # ------------------------------------------------------------------
    # Mode transitions
    # ------------------------------------------------------------------

    async def _subscribe(self, feed: ChangeFeed) -> None:
        self._set_mode(SyncMode.SUBSCRIBING)
        loop = asyncio.get_running_loop()
        self._ack_timer = loop.call_later(
            self._config.subscribe_timeout,
            self._on_feed_status,
            ChannelStatus.TIMED_OUT,
        )
        try:
            channel = await feed.subscribe(self._config.table, self._on_feed_event, self._on_feed_status)
        except Exception as exc:
            _logger.warning("Subscription to %s failed: %s; falling back to polling", self._config.table, exc)
            if self._alive:
                await self._fall_back_to_polling()
            return

        if not self._alive or self._mode not in (SyncMode.SUBSCRIBING, SyncMode.LIVE):
            # Stopped, or fell back while the handshake was in flight.
            await self._close_channel(channel)
            return
        self._channel = channel

    async def _fall_back_to_polling(self) -> None:
        if self._mode not in (SyncMode.SUBSCRIBING, SyncMode.LIVE):
            return
        self._cancel_ack_timer()
        channel = self._channel
        self._channel = None
        self._enter_polling()
        if channel is not None:
            await self._close_channel(channel)

    def _enter_polling(self) -> None:
        self._set_mode(SyncMode.POLLING)
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        interval = self._config.refresh_interval
        _logger.info("Starting polling fallback (%.1fs interval)", interval)
        while self._alive:
            await asyncio.sleep(interval)
            if not self._alive:
                return
            try:
                await self._refresh()
            except Exception:
                _logger.warning("Polling refresh of %s failed; retrying next tick", self._config.table, exc_info=True)

    async def _close_channel(self, channel: ChannelHandle) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.unsubscribe(channel)
        except Exception:
            _logger.debug("Unsubscribe failed", exc_info=True)

    def _cancel_ack_timer(self) -> None:
        timer = self._ack_timer
        self._ack_timer = None
        if timer is not None:
            timer.cancel()

    def _set_mode(self, mode: SyncMode) -> None:
        if mode is not self._mode:
            _logger.debug("Sync mode %s -> %s tenant=%s", self._mode, mode, self._config.tenant_id)
        self._mode = mode
        public = mode.public_state
        if public is not None:
            self._emit_state(public)

    def _emit_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        self._state = state
        self._invoke(self._on_sync_state_changed, state, "on_sync_state_changed")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def _initial_load(self) -> None:
        if self._source is None:
            self._fall_back_to_demo(ConfigurationError(f"No data source configured for tenant {self._config.tenant_id!r}"))
            return
        try:
            records = await self._loader.load(self._source, self._config.filters)
        except FetchError as exc:
            if self._alive:
                self._fall_back_to_demo(exc)
            return
        if not self._alive:
            _logger.debug("Discarding snapshot that completed after stop")
            return
        self._install(records)

    async def _refresh(self) -> None:
        if self._source is None:
            self._install(self._demo_records())
            return
        try:
            records = await self._loader.load(self._source, self._config.filters)
        except FetchError as exc:
            _logger.warning("Polling refresh of %s failed: %s; retrying next tick", self._config.table, exc)
            return
        if not self._alive:
            _logger.debug("Discarding snapshot that completed after stop")
            return
        self._install(records)

    def _fall_back_to_demo(self, cause: Exception) -> None:
        if not self._config.demo_fallback:
            _logger.error("Initial load failed for tenant %s: %s", self._config.tenant_id, cause)
            self._emit_state(SyncState.ERROR)
            if isinstance(cause, ConfigurationError):
                raise cause
            return
        _logger.warning("Initial load failed for tenant %s (%s); showing demo data", self._config.tenant_id, cause)
        self._install(self._demo_records())

    def _demo_records(self) -> list[FeatureRecord]:
        return generate_demo_records(
            self._config.map_center,
            count=self._config.demo_count,
            status=self._config.filters.active_value,
            rng=self._rng,
            now=self._clock(),
        )

    def _install(self, records: list[FeatureRecord]) -> None:
        self._store.replace_all(records)
        self._notify()

    def _notify(self) -> None:
        self._last_updated = self._clock()
        snapshot = self._store.snapshot()
        self._invoke(self._on_features_changed, snapshot, "on_features_changed")
        self._invoke(self._on_count_changed, len(snapshot), "on_count_changed")

    @staticmethod
    def _invoke(callback: Callable[[Any], None] | None, value: Any, name: str) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            _logger.debug("%s callback failed", name, exc_info=True)
