"""outagesync - keep a live map of offline subscribers in sync with Supabase."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("outagesync")
except PackageNotFoundError:
    __version__ = "0+local"
from outagesync.config import ColumnMapping, MqttFeedConfig, StatusFilter, TenantConfig
from outagesync.controller import SyncController
from outagesync.exceptions import (
    ConfigurationError,
    FetchError,
    MalformedEventError,
    MalformedRecordError,
    OutageSyncError,
    SubscriptionError,
)
from outagesync.models import FeatureRecord, SyncMode, SyncState
from outagesync.render import calculate_bounds, to_csv, to_feature_collection
from outagesync.sources import MqttChangeFeed, SupabaseClient
from outagesync.state.events import ChangeEvent, ChangeEventType, ChannelStatus
from outagesync.state.policy import ReconcileAction
from outagesync.state.reconcile import ChangeEventReconciler
from outagesync.state.store import FeatureStore

__all__ = [
    "__version__",
    "ChangeEvent",
    "ChangeEventReconciler",
    "ChangeEventType",
    "ChannelStatus",
    "ColumnMapping",
    "ConfigurationError",
    "FeatureRecord",
    "FeatureStore",
    "FetchError",
    "MalformedEventError",
    "MalformedRecordError",
    "MqttChangeFeed",
    "MqttFeedConfig",
    "OutageSyncError",
    "ReconcileAction",
    "StatusFilter",
    "SubscriptionError",
    "SupabaseClient",
    "SyncController",
    "SyncMode",
    "SyncState",
    "TenantConfig",
    "calculate_bounds",
    "to_csv",
    "to_feature_collection",
]
