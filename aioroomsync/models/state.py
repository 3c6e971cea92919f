"""
Room state models.

The play state is a tagged variant discriminated by ``mode``. Each variant only
carries the fields meaningful to it:

- ``Paused``: the position the track was paused at.
- ``OnBarrier``: the position playback resumes from once every present
  participant holds the head track.
- ``Armed``: the server wall time at which position zero of the head track
  occurs, still in the future when the state was entered.
- ``Playing``: the same anchor, once it has been reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator

VERSION_MODULO = 16384
"""Room versions wrap around at this value."""


@dataclass
class PlayState(DataClassORJSONMixin):
    """Base class for the play state variants."""

    class Config(BaseConfig):
        """Config for parsing the play state variants."""

        discriminator = Discriminator(field="mode", include_subtypes=True)


@dataclass
class Paused(PlayState):
    """Playback is paused."""

    position: float = 0.0
    """Position in seconds where playback was paused."""
    mode: Literal["paused"] = "paused"


@dataclass
class OnBarrier(PlayState):
    """Waiting for every present participant to hold the head track."""

    position: float = 0.0
    """Position in seconds playback starts from once the barrier is satisfied."""
    mode: Literal["onBarrier"] = "onBarrier"


@dataclass
class Armed(PlayState):
    """A synchronized start was scheduled."""

    wall_time_at_song_start: float
    """Server wall time (seconds) of position zero of the head track."""
    mode: Literal["armed"] = "armed"


@dataclass
class Playing(PlayState):
    """The head track is playing."""

    wall_time_at_song_start: float
    """Server wall time (seconds) of position zero of the head track."""
    mode: Literal["playing"] = "playing"


@dataclass
class ClientPresence(DataClassORJSONMixin):
    """What the server knows about one participant of a room."""

    last_heartbeat: float
    """Server wall time of the last heartbeat."""
    connected: bool = False
    """True while the participant has a live push connection."""
    acknowledged_head: str | None = None
    """Track id the participant reported to hold, only ever the current head."""


@dataclass
class RoomState(DataClassORJSONMixin):
    """Authoritative state of one room."""

    version: int
    queue: list[str]
    play_state: PlayState
    clients: dict[str, ClientPresence] = field(default_factory=dict)

    @property
    def head(self) -> str | None:
        """The track at queue position zero."""
        return self.queue[0] if self.queue else None

    @property
    def next_up(self) -> str | None:
        """The track after the head."""
        return self.queue[1] if len(self.queue) > 1 else None


def new_room_state(queue: list[str]) -> RoomState:
    """Create the state of a freshly created room."""
    return RoomState(version=0, queue=list(queue), play_state=Paused(position=0.0))


def is_newer_version(candidate: int, current: int) -> bool:
    """Return True if ``candidate`` follows ``current``, across the wrap-around."""
    return 0 < (candidate - current) % VERSION_MODULO < VERSION_MODULO // 2
