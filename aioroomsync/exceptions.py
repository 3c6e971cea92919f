"""Exceptions raised by the room synchronization server and client."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aioroomsync.models.state import RoomState


class RoomSyncError(Exception):
    """Base class for all room synchronization errors."""


class VersionConflictError(RoomSyncError):
    """A mutation was attempted against an outdated room version.

    Carries the current authoritative state so the caller can re-derive its
    intent from it. No merge is ever attempted.
    """

    def __init__(self, room_id: str, expected_version: int | None, state: RoomState) -> None:
        """Initialize the conflict with the state that won."""
        super().__init__(
            f"Room {room_id} is at version {state.version}, caller expected {expected_version}"
        )
        self.room_id = room_id
        self.expected_version = expected_version
        self.state = state

    @property
    def version(self) -> int:
        """The current authoritative version."""
        return self.state.version


class NotFoundError(RoomSyncError):
    """A room, track or participant does not exist."""


class RoomNotFoundError(NotFoundError):
    """The room code is unknown."""


class TrackNotFoundError(NotFoundError):
    """The track id is not part of the room's queue or the track index."""


class ParticipantNotFoundError(NotFoundError):
    """The participant has not joined the room."""


class NotHeadError(RoomSyncError):
    """Possession was reported for a track that is not the current queue head."""


class StateFileError(RoomSyncError):
    """The persisted room state can not be read."""


class ConflictError(RoomSyncError):
    """The server rejected a client request because the client was out of date.

    Raised by the client after it already resynchronized from the snapshot the
    server sent along with the rejection.
    """


class TrackFetchError(RoomSyncError):
    """Track bytes could not be downloaded."""


class CacheStorageError(RoomSyncError):
    """The local blob store is unusable; caching is disabled."""
