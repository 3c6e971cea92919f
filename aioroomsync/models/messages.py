"""HTTP request/response bodies and push messages of the room protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .state import RoomState
from .types import ServerMessage

VERSION_HEADER = "If-Match-Version"
"""Request header carrying the room version a mutation was derived from."""


@dataclass
class TrackInfo(DataClassORJSONMixin):
    """An entry of the reference track index."""

    track_id: str
    file_name: str
    size: int
    mime: str
    duration: float = 0.0
    """Duration in seconds, 0 when unknown."""
    title: str = ""
    artist: str = "Unknown"
    album: str = ""


@dataclass
class RoomSnapshot(DataClassORJSONMixin):
    """Full state of a room together with the reference index."""

    room: str
    state: RoomState
    index: list[TrackInfo]
    server_now: float
    """Server wall time when the snapshot was serialized."""

    def find_track(self, track_id: str | None) -> TrackInfo | None:
        """Look up a track of the index."""
        if track_id is None:
            return None
        for track in self.index:
            if track.track_id == track_id:
                return track
        return None


# Server -> Client: room/snapshot
@dataclass
class SnapshotServerMessage(ServerMessage):
    """Pushed to every subscriber whenever the room version advances."""

    payload: RoomSnapshot
    type: Literal["room/snapshot"] = "room/snapshot"


@dataclass
class TimeResponse(DataClassORJSONMixin):
    """Reply of the time endpoint."""

    now: float
    """Server wall time in seconds."""


@dataclass
class SeekRequest(DataClassORJSONMixin):
    """Body of the seek mutation."""

    position: float


@dataclass
class NudgeRequest(DataClassORJSONMixin):
    """Body of the nudge mutation."""

    track_id: str


@dataclass
class PossessionReport(DataClassORJSONMixin):
    """A participant holds the bytes of a track locally."""

    participant: str
    track_id: str


@dataclass
class HeartbeatRequest(DataClassORJSONMixin):
    """Liveness signal of a participant."""

    participant: str
