from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

from outagesync.sources.realtime import (
    RealtimeChannel,
    build_join_message,
    parse_postgres_change,
    realtime_url,
)
from outagesync.state.events import ChangeEvent, ChangeEventType, ChannelStatus


def _channel() -> tuple[RealtimeChannel, list[dict[str, Any]], list[ChannelStatus]]:
    events: list[dict[str, Any]] = []
    statuses: list[ChannelStatus] = []
    channel = RealtimeChannel(
        session=MagicMock(),
        url="wss://x.supabase.co/realtime/v1/websocket",
        access_token="anon",
        channel="isp1-mfs-changes",
        table="mfs",
        on_event=events.append,
        on_status=statuses.append,
    )
    channel._join_ref = "1"
    return channel, events, statuses


def test_realtime_url_switches_scheme_and_carries_key() -> None:
    assert (
        realtime_url("https://abc.supabase.co/", "anon")
        == "wss://abc.supabase.co/realtime/v1/websocket?apikey=anon&vsn=1.0.0"
    )
    assert realtime_url("http://localhost:54321", "k").startswith("ws://localhost:54321/realtime/v1/websocket?")


def test_join_message_requests_all_events_for_table() -> None:
    message = build_join_message(
        topic="realtime:isp1-mfs-changes",
        table="mfs",
        schema="public",
        row_filter="tenant_id=eq.isp1",
        access_token="anon",
        ref="1",
    )

    assert message["event"] == "phx_join"
    assert message["payload"]["config"]["postgres_changes"] == [
        {"event": "*", "schema": "public", "table": "mfs", "filter": "tenant_id=eq.isp1"}
    ]
    assert message["join_ref"] == "1"


def test_parse_postgres_change_feeds_change_event() -> None:
    change = parse_postgres_change(
        {
            "ids": [1],
            "data": {
                "type": "DELETE",
                "record": None,
                "old_record": {"latitude": 1.0, "longitude": 2.0},
                "commit_timestamp": "2026-01-01T00:00:00Z",
            },
        }
    )

    assert change is not None
    event = ChangeEvent.from_payload(change)
    assert event.event_type == ChangeEventType.DELETE
    assert event.new_record is None
    assert event.old_record == {"latitude": 1.0, "longitude": 2.0}


def test_parse_postgres_change_rejects_garbage() -> None:
    assert parse_postgres_change(None) is None
    assert parse_postgres_change({"data": "x"}) is None
    assert parse_postgres_change({"data": {"record": {}}}) is None


def test_join_reply_reports_subscription_status() -> None:
    channel, _events, statuses = _channel()

    channel._dispatch({"topic": "realtime:isp1-mfs-changes", "event": "phx_reply", "ref": "7", "payload": {"status": "ok"}})
    channel._dispatch({"topic": "realtime:isp1-mfs-changes", "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}})
    channel._dispatch({"topic": "realtime:isp1-mfs-changes", "event": "phx_reply", "ref": "1", "payload": {"status": "error"}})

    assert statuses == [ChannelStatus.SUBSCRIBED, ChannelStatus.CHANNEL_ERROR]


def test_dispatch_forwards_changes_and_errors() -> None:
    channel, events, statuses = _channel()
    topic = "realtime:isp1-mfs-changes"

    channel._dispatch(
        {
            "topic": topic,
            "event": "postgres_changes",
            "payload": {"data": {"type": "INSERT", "record": {"latitude": 1.0, "longitude": 2.0}}},
        }
    )
    channel._dispatch({"topic": "realtime:other", "event": "postgres_changes", "payload": {}})
    channel._dispatch({"topic": "phoenix", "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}})
    channel._dispatch({"topic": topic, "event": "system", "payload": {"status": "ok"}})
    channel._dispatch({"topic": topic, "event": "system", "payload": {"status": "error", "message": "boom"}})
    channel._dispatch({"topic": topic, "event": "phx_error", "payload": {}})
    channel._dispatch({"topic": topic, "event": "phx_close", "payload": {}})

    assert [e["eventType"] for e in events] == ["INSERT"]
    assert statuses == [ChannelStatus.CHANNEL_ERROR, ChannelStatus.CHANNEL_ERROR, ChannelStatus.CLOSED]
    assert not channel.is_open


def test_failing_callback_does_not_escape_dispatch() -> None:
    def broken(_change: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    channel = RealtimeChannel(
        session=MagicMock(),
        url="wss://x",
        access_token="anon",
        channel="c",
        table="mfs",
        on_event=broken,
        on_status=lambda _status: None,
    )

    channel._dispatch(
        {"topic": "realtime:c", "event": "postgres_changes", "payload": {"data": {"type": "INSERT", "record": {}}}}
    )
