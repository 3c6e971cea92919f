"""Models for the room synchronization protocol."""

from __future__ import annotations

__all__ = [
    "Armed",
    "ClientPresence",
    "ErrorResponse",
    "HeartbeatRequest",
    "NudgeRequest",
    "OnBarrier",
    "Paused",
    "PlayState",
    "Playing",
    "PossessionReport",
    "RoomSnapshot",
    "RoomState",
    "SeekRequest",
    "ServerMessage",
    "SnapshotServerMessage",
    "TimeResponse",
    "TrackInfo",
    "VERSION_HEADER",
    "VERSION_MODULO",
    "is_newer_version",
    "messages",
    "new_room_state",
    "state",
    "types",
]

from . import messages, state, types
from .messages import (
    VERSION_HEADER,
    HeartbeatRequest,
    NudgeRequest,
    PossessionReport,
    RoomSnapshot,
    SeekRequest,
    SnapshotServerMessage,
    TimeResponse,
    TrackInfo,
)
from .state import (
    VERSION_MODULO,
    Armed,
    ClientPresence,
    OnBarrier,
    Paused,
    PlayState,
    Playing,
    RoomState,
    is_newer_version,
    new_room_state,
)
from .types import ErrorResponse, ServerMessage
