"""
Room synchronization server.

RoomSyncServer keeps the authoritative state of every room, responsible for:
- Accepting or rejecting versioned mutations
- Holding playback on the rendezvous barrier until participants hold the head track
- Pushing full snapshots to every connected participant
"""

__all__ = [
    "ARM_LEAD_S",
    "HEARTBEAT_WINDOW_S",
    "VERSION_MODULO",
    "EventBroadcaster",
    "PushConnection",
    "RoomStateStore",
    "RoomSyncServer",
    "StatePersistence",
    "barrier_satisfied",
    "build_track_index",
    "realign_rooms",
]

from .barrier import ARM_LEAD_S, HEARTBEAT_WINDOW_S, barrier_satisfied
from .broadcaster import EventBroadcaster, PushConnection
from .persistence import StatePersistence, realign_rooms
from .server import RoomSyncServer
from .store import VERSION_MODULO, RoomStateStore
from .tracks import build_track_index
