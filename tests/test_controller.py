from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest

from outagesync.config import MqttFeedConfig, TenantConfig
from outagesync.controller import SyncController
from outagesync.exceptions import ConfigurationError, FetchError, SubscriptionError
from outagesync.models.feature import FeatureRecord
from outagesync.models.sync import SyncMode, SyncState
from outagesync.sources.mqtt import MqttChangeFeed
from outagesync.sources.supabase import SupabaseClient
from outagesync.state.events import ChannelStatus


def _row(lng: float, lat: float, status: str = "Offline") -> dict[str, Any]:
    return {"longitude": lng, "latitude": lat, "status": status, "updated_at": "2026-01-01T00:00:00Z"}


def _config(**overrides: Any) -> TenantConfig:
    values: dict[str, Any] = {
        "tenant_id": "t1",
        "supabase_url": "https://example.supabase.co",
        "supabase_key": "anon-key",
        "refresh_interval_ms": 60_000,
        "subscribe_timeout": 5.0,
    }
    values.update(overrides)
    return TenantConfig(**values)


@dataclass
class FakeSource:
    responses: list[Any] = field(default_factory=lambda: [[]])
    calls: int = 0
    gate: asyncio.Event | None = None

    async def fetch(
        self,
        table: str,
        equality_filters: Mapping[str, Any],
        require_non_null: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


@dataclass
class FakeChannel:
    is_open: bool = True


@dataclass
class FakeFeed:
    fail: Exception | None = None
    subscribe_calls: int = 0
    unsubscribed: list[FakeChannel] = field(default_factory=list)
    on_event: Callable[[dict[str, Any]], None] | None = None
    on_status: Callable[[ChannelStatus], None] | None = None

    async def subscribe(
        self,
        table: str,
        on_event: Callable[[dict[str, Any]], None],
        on_status: Callable[[ChannelStatus], None],
    ) -> FakeChannel:
        self.subscribe_calls += 1
        if self.fail is not None:
            raise self.fail
        self.on_event = on_event
        self.on_status = on_status
        return FakeChannel()

    async def unsubscribe(self, handle: FakeChannel) -> None:
        handle.is_open = False
        self.unsubscribed.append(handle)

    def status(self, status: ChannelStatus) -> None:
        assert self.on_status is not None
        self.on_status(status)

    def event(self, payload: dict[str, Any]) -> None:
        assert self.on_event is not None
        self.on_event(payload)


@dataclass
class Renderer:
    features: list[tuple[FeatureRecord, ...]] = field(default_factory=list)
    counts: list[int] = field(default_factory=list)
    states: list[SyncState] = field(default_factory=list)

    def callbacks(self) -> dict[str, Any]:
        return {
            "on_features_changed": self.features.append,
            "on_count_changed": self.counts.append,
            "on_sync_state_changed": self.states.append,
        }


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_live_session_loads_snapshot_and_applies_events() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)]])
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(), source=source, feed=feed, **renderer.callbacks())

    await controller.start()
    assert controller.mode == SyncMode.SUBSCRIBING
    assert controller.count == 1

    feed.status(ChannelStatus.SUBSCRIBED)
    await controller.wait_idle()
    assert controller.mode == SyncMode.LIVE
    assert controller._ack_timer is None

    feed.event({"eventType": "INSERT", "new": _row(2.0, 2.0), "old": {}})
    feed.event({"eventType": "UPDATE", "new": _row(1.0, 1.0, status="Online"), "old": _row(1.0, 1.0)})
    await controller.wait_idle()

    assert [r.coordinates for r in controller.snapshot()] == [(2.0, 2.0)]
    assert renderer.states == [SyncState.LOADING, SyncState.LIVE]
    assert renderer.counts == [1, 2, 1]
    assert len(renderer.features) == 3
    assert feed.subscribe_calls == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_channel_errors_fall_back_to_polling_exactly_once() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)]])
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(), source=source, feed=feed, **renderer.callbacks())

    await controller.start()
    feed.status(ChannelStatus.SUBSCRIBED)
    feed.status(ChannelStatus.CHANNEL_ERROR)
    await controller.wait_idle()

    assert controller.mode == SyncMode.POLLING
    poll_task = controller._poll_task
    assert poll_task is not None

    feed.status(ChannelStatus.TIMED_OUT)
    feed.status(ChannelStatus.CHANNEL_ERROR)
    feed.status(ChannelStatus.SUBSCRIBED)
    await controller.wait_idle()

    assert controller.mode == SyncMode.POLLING
    assert controller._poll_task is poll_task
    assert feed.subscribe_calls == 1
    assert len(feed.unsubscribed) == 1
    assert renderer.states == [SyncState.LOADING, SyncState.LIVE, SyncState.POLLING]

    await controller.stop()


@pytest.mark.asyncio
async def test_missing_acknowledgment_times_out_into_polling() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)]])
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(subscribe_timeout=0.01), source=source, feed=feed, **renderer.callbacks())

    await controller.start()
    await _eventually(lambda: controller.mode == SyncMode.POLLING)

    assert renderer.states == [SyncState.LOADING, SyncState.POLLING]
    assert controller.count == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_subscribe_failure_falls_back_to_polling() -> None:
    feed = FakeFeed(fail=SubscriptionError("refused", status=ChannelStatus.CHANNEL_ERROR))
    controller = SyncController(_config(), source=FakeSource(), feed=feed)

    await controller.start()

    assert controller.mode == SyncMode.POLLING
    assert controller.state == SyncState.POLLING
    assert controller._ack_timer is None

    await controller.stop()


@pytest.mark.asyncio
async def test_polling_refreshes_on_interval() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)], [_row(1.0, 1.0), _row(2.0, 2.0)]])
    controller = SyncController(_config(refresh_interval_ms=10, realtime_enabled=False), source=source)

    await controller.start()
    assert controller.mode == SyncMode.POLLING

    await _eventually(lambda: source.calls >= 3)
    assert controller.count == 2

    await controller.stop()


@pytest.mark.asyncio
async def test_poll_failure_keeps_previous_set_and_next_tick_recovers() -> None:
    source = FakeSource(
        responses=[
            [_row(1.0, 1.0)],
            FetchError("HTTP 503", table="mfs", status_code=503),
            [_row(3.0, 3.0), _row(4.0, 4.0)],
        ]
    )
    renderer = Renderer()
    controller = SyncController(_config(), source=source, feed=None, **renderer.callbacks())

    await controller.start()
    await controller._refresh()

    assert [r.coordinates for r in controller.snapshot()] == [(1.0, 1.0)]
    assert controller.state == SyncState.POLLING

    await controller._refresh()

    assert [r.coordinates for r in controller.snapshot()] == [(3.0, 3.0), (4.0, 4.0)]
    assert SyncState.ERROR not in renderer.states

    await controller.stop()


@pytest.mark.asyncio
async def test_stop_cancels_pending_ack_timer_and_tasks() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)]])
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(subscribe_timeout=0.02, refresh_interval_ms=10), source=source, feed=feed, **renderer.callbacks())

    await controller.start()
    await controller.stop()
    await asyncio.sleep(0.1)

    assert controller.mode == SyncMode.STOPPED
    assert controller._ack_timer is None
    assert controller._poll_task is None
    assert source.calls == 1
    assert len(feed.unsubscribed) == 1
    assert controller.count == 0
    assert renderer.states == [SyncState.LOADING]


@pytest.mark.asyncio
async def test_stop_is_idempotent() -> None:
    feed = FakeFeed()
    controller = SyncController(_config(), source=FakeSource(), feed=feed)

    await controller.start()
    feed.status(ChannelStatus.SUBSCRIBED)
    await controller.wait_idle()

    await controller.stop()
    await controller.stop()

    assert len(feed.unsubscribed) == 1
    assert controller.mode == SyncMode.STOPPED


@pytest.mark.asyncio
async def test_snapshot_completing_after_stop_is_discarded() -> None:
    gate = asyncio.Event()
    source = FakeSource(responses=[[_row(1.0, 1.0)]], gate=gate)
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(), source=source, feed=feed, **renderer.callbacks())

    start_task = asyncio.create_task(controller.start())
    await _eventually(lambda: source.calls == 1)

    await controller.stop()
    gate.set()
    await start_task

    assert controller.count == 0
    assert renderer.features == []
    assert feed.subscribe_calls == 0
    assert controller.mode == SyncMode.STOPPED


@pytest.mark.asyncio
async def test_events_after_stop_are_ignored() -> None:
    feed = FakeFeed()
    renderer = Renderer()
    controller = SyncController(_config(), source=FakeSource(), feed=feed, **renderer.callbacks())

    await controller.start()
    await controller.stop()
    feed.event({"eventType": "INSERT", "new": _row(1.0, 1.0)})
    await asyncio.sleep(0)

    assert controller.count == 0
    assert renderer.counts == [0]


@pytest.mark.asyncio
async def test_initial_fetch_failure_installs_demo_data() -> None:
    source = FakeSource(responses=[FetchError("HTTP 401", table="mfs", status_code=401)])
    controller = SyncController(_config(realtime_enabled=False), source=source)

    await controller.start()

    records = controller.snapshot()
    assert len(records) == 25
    center_lng, center_lat = controller.config.map_center
    for record in records:
        assert abs(record.longitude - center_lng) <= 0.1
        assert abs(record.latitude - center_lat) <= 0.1
        assert record.status == "Offline"
    assert controller.mode == SyncMode.POLLING

    await controller.stop()


@pytest.mark.asyncio
async def test_unconfigured_tenant_shows_demo_data_and_polls() -> None:
    controller = SyncController(_config(supabase_url=None, supabase_key=None, demo_count=5))

    await controller.start()

    assert controller.count == 5
    assert controller.mode == SyncMode.POLLING

    await controller._refresh()
    assert controller.count == 5

    await controller.stop()


@pytest.mark.asyncio
async def test_unconfigured_tenant_without_demo_fallback_raises() -> None:
    renderer = Renderer()
    controller = SyncController(_config(supabase_url=None, supabase_key=None, demo_fallback=False), **renderer.callbacks())

    with pytest.raises(ConfigurationError):
        await controller.start()

    assert renderer.states == [SyncState.LOADING, SyncState.ERROR]
    assert controller.mode == SyncMode.STOPPED


@pytest.mark.asyncio
async def test_fetch_failure_without_demo_fallback_reports_error_and_continues() -> None:
    source = FakeSource(responses=[FetchError("timeout", table="mfs"), [_row(1.0, 1.0)]])
    renderer = Renderer()
    controller = SyncController(_config(demo_fallback=False), source=source, **renderer.callbacks())

    await controller.start()

    assert controller.count == 0
    assert renderer.states == [SyncState.LOADING, SyncState.ERROR, SyncState.POLLING]

    await controller._refresh()
    assert controller.count == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_malformed_live_event_does_not_stop_stream() -> None:
    feed = FakeFeed()
    controller = SyncController(_config(), source=FakeSource(), feed=feed)

    await controller.start()
    feed.status(ChannelStatus.SUBSCRIBED)
    feed.event({"eventType": "TRUNCATE"})
    feed.event({"eventType": "INSERT", "new": {}})
    feed.event({"eventType": "INSERT", "new": _row(5.0, 5.0)})
    await controller.wait_idle()

    assert controller.mode == SyncMode.LIVE
    assert [r.coordinates for r in controller.snapshot()] == [(5.0, 5.0)]

    await controller.stop()


@pytest.mark.asyncio
async def test_failing_renderer_callback_does_not_break_sync() -> None:
    def broken(_records: tuple[FeatureRecord, ...]) -> None:
        raise RuntimeError("renderer exploded")

    feed = FakeFeed()
    controller = SyncController(_config(), source=FakeSource(), feed=feed, on_features_changed=broken)

    await controller.start()
    feed.status(ChannelStatus.SUBSCRIBED)
    feed.event({"eventType": "INSERT", "new": _row(5.0, 5.0)})
    await controller.wait_idle()

    assert controller.count == 1

    await controller.stop()


@pytest.mark.asyncio
async def test_last_updated_tracks_mutations() -> None:
    now = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
    controller = SyncController(_config(realtime_enabled=False), source=FakeSource(), clock=lambda: now)

    assert controller.last_updated is None
    await controller.start()
    assert controller.last_updated == now

    await controller.stop()


@pytest.mark.asyncio
async def test_start_twice_raises() -> None:
    controller = SyncController(_config(realtime_enabled=False), source=FakeSource())

    await controller.start()
    with pytest.raises(Exception, match="already started"):
        await controller.start()

    await controller.stop()


@pytest.mark.asyncio
async def test_context_manager_starts_and_stops() -> None:
    feed = FakeFeed()
    async with SyncController(_config(), source=FakeSource(), feed=feed) as controller:
        assert controller.mode == SyncMode.SUBSCRIBING

    assert controller.mode == SyncMode.STOPPED
    assert len(feed.unsubscribed) == 1


def test_for_tenant_wires_supabase_adapters() -> None:
    controller = SyncController.for_tenant(_config())

    assert isinstance(controller._source, SupabaseClient)
    assert controller._feed is controller._source


def test_for_tenant_uses_mqtt_feed_when_configured() -> None:
    controller = SyncController.for_tenant(_config(feed="mqtt", mqtt=MqttFeedConfig(host="broker.example")))

    assert isinstance(controller._source, SupabaseClient)
    assert isinstance(controller._feed, MqttChangeFeed)


def test_for_tenant_without_source_has_no_adapters() -> None:
    controller = SyncController.for_tenant(_config(supabase_url=None))

    assert controller._source is None
    assert controller._feed is None


@pytest.mark.asyncio
async def test_stop_while_polling_halts_further_ticks() -> None:
    source = FakeSource(responses=[[_row(1.0, 1.0)]])
    feed = FakeFeed()
    controller = SyncController(_config(refresh_interval_ms=10), source=source, feed=feed)

    await controller.start()
    feed.status(ChannelStatus.CHANNEL_ERROR)
    await controller.wait_idle()
    assert controller.mode == SyncMode.POLLING

    await _eventually(lambda: source.calls >= 2)
    await controller.stop()
    calls_at_stop = source.calls
    await asyncio.sleep(0.1)

    assert source.calls == calls_at_stop
    assert controller._poll_task is None
    assert controller.count == 0


@pytest.mark.asyncio
async def test_polling_loop_survives_failed_ticks() -> None:
    source = FakeSource(
        responses=[
            [_row(1.0, 1.0)],
            FetchError("HTTP 503", table="mfs", status_code=503),
            None,
            [_row(1.0, 1.0), {"longitude": 10**400, "latitude": 1.0, "status": "Offline"}, _row(2.0, 2.0)],
        ]
    )
    renderer = Renderer()
    controller = SyncController(_config(refresh_interval_ms=10, realtime_enabled=False), source=source, **renderer.callbacks())

    await controller.start()
    await _eventually(lambda: controller.count == 2)

    assert source.calls >= 4
    assert [r.coordinates for r in controller.snapshot()] == [(1.0, 1.0), (2.0, 2.0)]
    assert controller._poll_task is not None and not controller._poll_task.done()
    assert SyncState.ERROR not in renderer.states

    await controller.stop()
