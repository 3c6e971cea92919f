"""Public interface for the room client package."""

from .cache import BlobStore, CacheManager
from .client import NoticeCallback, RoomSyncClient, SnapshotCallback, TrackPlayer
from .clock import ClockSample, ClockSyncEstimator, combine_samples
from .convergence import ConvergenceAction, PlaybackConvergenceController, PlaybackTarget

__all__ = [
    "BlobStore",
    "CacheManager",
    "ClockSample",
    "ClockSyncEstimator",
    "ConvergenceAction",
    "NoticeCallback",
    "PlaybackConvergenceController",
    "PlaybackTarget",
    "RoomSyncClient",
    "SnapshotCallback",
    "TrackPlayer",
    "combine_samples",
]
