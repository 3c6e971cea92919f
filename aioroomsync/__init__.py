"""aioroomsync: synchronized playback of one queue across the devices in a room."""

from __future__ import annotations

# Re-export client library for easy import
from aioroomsync.client import (
    BlobStore,
    CacheManager,
    ClockSyncEstimator,
    NoticeCallback,
    PlaybackConvergenceController,
    PlaybackTarget,
    RoomSyncClient,
    SnapshotCallback,
    TrackPlayer,
)

__all__ = [
    "BlobStore",
    "CacheManager",
    "ClockSyncEstimator",
    "NoticeCallback",
    "PlaybackConvergenceController",
    "PlaybackTarget",
    "RoomSyncClient",
    "SnapshotCallback",
    "TrackPlayer",
]
