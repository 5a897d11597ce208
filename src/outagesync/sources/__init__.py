"""Data-source adapters.

Bulk queries (PostgREST) and change feeds (Supabase Realtime, MQTT) that
plug into :class:`~outagesync.controller.SyncController`.
"""

from outagesync.sources.base import ChangeFeed, ChannelHandle, SnapshotSource
from outagesync.sources.mqtt import MqttChangeFeed
from outagesync.sources.supabase import SupabaseClient

__all__ = [
    "ChangeFeed",
    "ChannelHandle",
    "MqttChangeFeed",
    "SnapshotSource",
    "SupabaseClient",
]
