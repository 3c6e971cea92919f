"""Durable storage of all rooms in a single JSON file."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import orjson
from mashumaro.exceptions import InvalidFieldValue, MissingField, SuitableVariantNotFoundError
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aioroomsync.exceptions import StateFileError
from aioroomsync.models.state import Paused, RoomState

from .room import realigned_queue
from .store import VERSION_MODULO

logger = logging.getLogger(__name__)


@dataclass
class PersistedRooms(DataClassORJSONMixin):
    """Layout of the state file."""

    rooms: dict[str, RoomState] = field(default_factory=dict)


class StatePersistence:
    """Reads and atomically replaces the state file."""

    def __init__(self, path: Path) -> None:
        """Initialize persistence for the given state file."""
        self._path = path

    @property
    def path(self) -> Path:
        """Location of the state file."""
        return self._path

    def load(self) -> dict[str, RoomState]:
        """
        Load all rooms as they were last written.

        Returns an empty mapping if no state was persisted yet.

        Raises:
            StateFileError: If the file exists but can not be parsed.
        """
        if not self._path.exists():
            logger.info("No state file at %s, starting fresh", self._path)
            return {}
        try:
            persisted = PersistedRooms.from_json(self._path.read_bytes())
        except (
            OSError,
            ValueError,
            TypeError,
            MissingField,
            InvalidFieldValue,
            SuitableVariantNotFoundError,
        ) as err:
            raise StateFileError(f"Corrupted state file {self._path}: {err}") from err
        logger.info("Loaded %d room(s) from %s", len(persisted.rooms), self._path)
        return persisted.rooms

    def save(self, rooms: Mapping[str, RoomState]) -> None:
        """Write all rooms, replacing the previous file only once the new one is on disk."""
        data = PersistedRooms(rooms=dict(rooms)).to_jsonb(orjson_options=orjson.OPT_INDENT_2)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("wb") as tmp_file:
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, self._path)
        logger.debug("Persisted %d room(s) to %s", len(rooms), self._path)


def realign_rooms(rooms: Mapping[str, RoomState], index_ids: Sequence[str]) -> None:
    """
    Prepare loaded rooms for a new server run.

    Each queue is realigned to the current index, keeping the previous head in
    front where it still exists and falling back to the natural index order
    otherwise. Possession markers and connection flags are cleared so clients
    have to re-assert them, and the version is bumped once to force every
    client to resynchronize.
    """
    for room_id, state in rooms.items():
        old_head = state.head
        state.queue = realigned_queue(old_head, index_ids)
        if state.head != old_head:
            logger.warning(
                "Head %s of room %s is gone from the index, falling back to index order",
                old_head,
                room_id,
            )
            state.play_state = Paused(position=0.0)
        for presence in state.clients.values():
            presence.acknowledged_head = None
            presence.connected = False
        state.version = (state.version + 1) % VERSION_MODULO
