"""
Authoritative in-memory room state with optimistic concurrency.

The store owns every room. Mutations for one room are applied one at a time:
each runs on a private copy of the state which replaces the stored state only
once it was fully applied, so readers never observe a partial mutation.
Accepted mutations bump the version, are written through to durable storage
and are then announced to the registered listeners, in acceptance order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from aioroomsync.exceptions import RoomNotFoundError, VersionConflictError
from aioroomsync.models.state import VERSION_MODULO, RoomState

if TYPE_CHECKING:
    from .persistence import StatePersistence

logger = logging.getLogger(__name__)

MutationFn = Callable[[RoomState], bool | None]
"""Mutates the working copy; returning False marks the change as liveness bookkeeping."""
StateListener = Callable[[str, RoomState], None]


class RoomStateStore:
    """Owns all rooms and serializes their mutations."""

    _rooms: dict[str, RoomState]
    _locks: dict[str, asyncio.Lock]
    _listeners: list[StateListener]

    def __init__(
        self,
        persistence: StatePersistence | None = None,
        rooms: dict[str, RoomState] | None = None,
    ) -> None:
        """Initialize the store with already loaded rooms."""
        self._persistence = persistence
        self._rooms = dict(rooms or {})
        self._locks = {room_id: asyncio.Lock() for room_id in self._rooms}
        self._persist_lock = asyncio.Lock()
        self._listeners = []

    @property
    def room_ids(self) -> list[str]:
        """Codes of all rooms."""
        return list(self._rooms)

    async def create_room(self, room_id: str, state: RoomState) -> None:
        """Add a new room and persist it."""
        if room_id in self._rooms:
            raise ValueError(f"Room {room_id} already exists")
        self._rooms[room_id] = state
        self._locks[room_id] = asyncio.Lock()
        await self._persist()
        logger.info("Created room %s", room_id)

    def read(self, room_id: str) -> tuple[RoomState, int]:
        """
        Return the current state of a room and its version.

        The returned state is replaced, never modified, by later mutations and
        must be treated as read-only.
        """
        state = self._rooms.get(room_id)
        if state is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        return state, state.version

    async def mutate(
        self, room_id: str, expected_version: int | None, fn: MutationFn
    ) -> tuple[RoomState, int]:
        """
        Apply a client mutation if the caller saw the current version.

        Raises:
            RoomNotFoundError: If the room does not exist.
            VersionConflictError: If ``expected_version`` is not the stored
                version at the instant of application. Carries the current state.
        """
        return await self._commit(room_id, fn, expected_version=expected_version, guarded=True)

    async def apply(self, room_id: str, fn: MutationFn) -> tuple[RoomState, int]:
        """
        Apply a server-originated mutation without a version guard.

        Used for possession reports, connection changes, heartbeats and armed
        start promotion. When ``fn`` returns False the change is only liveness
        bookkeeping: it is swapped in but not versioned, persisted or announced.
        """
        return await self._commit(room_id, fn, expected_version=None, guarded=False)

    def add_listener(self, callback: StateListener) -> Callable[[], None]:
        """
        Register a callback invoked after every accepted mutation.

        Returns a function to remove the listener.
        """
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    async def _commit(
        self,
        room_id: str,
        fn: MutationFn,
        *,
        expected_version: int | None,
        guarded: bool,
    ) -> tuple[RoomState, int]:
        lock = self._locks.get(room_id)
        if lock is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        async with lock:
            current = self._rooms[room_id]
            if guarded and expected_version != current.version:
                logger.debug(
                    "Rejecting mutation of room %s: version is %d, caller expected %s",
                    room_id,
                    current.version,
                    expected_version,
                )
                raise VersionConflictError(room_id, expected_version, current)

            working = copy.deepcopy(current)
            # Any exception raised by fn discards the working copy
            if fn(working) is False:
                self._rooms[room_id] = working
                return working, working.version

            working.version = (current.version + 1) % VERSION_MODULO
            self._rooms[room_id] = working
            try:
                await self._persist()
            except Exception:
                # Not accepted unless durable
                self._rooms[room_id] = current
                logger.exception("Persisting room %s failed, mutation rolled back", room_id)
                raise
            logger.debug("Room %s advanced to version %d", room_id, working.version)
            for callback in list(self._listeners):
                try:
                    callback(room_id, working)
                except Exception:
                    logger.exception("Error in state listener %s", callback)
            return working, working.version

    async def _persist(self) -> None:
        if self._persistence is None:
            return
        async with self._persist_lock:
            # Snapshot taken under the lock so the newest states always land last
            rooms = dict(self._rooms)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._persistence.save, rooms)
