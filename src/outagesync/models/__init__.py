"""Data models."""

from outagesync.models.feature import FeatureRecord
from outagesync.models.sync import SyncMode, SyncState

__all__ = [
    "FeatureRecord",
    "SyncMode",
    "SyncState",
]
