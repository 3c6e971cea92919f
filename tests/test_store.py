"""Tests for the versioned room state store."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from aioroomsync.exceptions import RoomNotFoundError, TrackNotFoundError, VersionConflictError
from aioroomsync.models.state import RoomState, is_newer_version
from aioroomsync.server import room
from aioroomsync.server.persistence import StatePersistence
from aioroomsync.server.store import VERSION_MODULO, RoomStateStore

ROOM = "abc123"


@pytest.fixture
async def store(room_state: RoomState) -> RoomStateStore:
    store = RoomStateStore()
    await store.create_room(ROOM, room_state)
    return store


class TestVersioning:
    """The version moves exactly once per accepted mutation."""

    async def test_accepted_mutation_bumps_version(self, store: RoomStateStore, track_ids):
        state, version = await store.mutate(ROOM, 0, room.next_track)

        assert version == 1
        assert state.head == track_ids[1]
        assert store.read(ROOM) == (state, 1)

    async def test_stale_version_rejected_with_current_state(self, store: RoomStateStore):
        await store.mutate(ROOM, 0, room.next_track)

        with pytest.raises(VersionConflictError) as exc_info:
            await store.mutate(ROOM, 0, room.shuffle)

        assert exc_info.value.version == 1
        assert exc_info.value.state is store.read(ROOM)[0]
        assert store.read(ROOM)[1] == 1

    async def test_missing_version_rejected(self, store: RoomStateStore):
        with pytest.raises(VersionConflictError):
            await store.mutate(ROOM, None, room.next_track)

    async def test_version_wraps(self, room_state: RoomState):
        room_state.version = VERSION_MODULO - 1
        store = RoomStateStore(rooms={ROOM: room_state})

        _, version = await store.mutate(ROOM, VERSION_MODULO - 1, room.next_track)

        assert version == 0

    async def test_failed_mutation_discards_changes(self, store: RoomStateStore, track_ids):
        def broken(state: RoomState) -> None:
            state.queue.reverse()
            room.nudge(state, "tnope")

        with pytest.raises(TrackNotFoundError):
            await store.mutate(ROOM, 0, broken)

        state, version = store.read(ROOM)
        assert version == 0
        assert state.queue == track_ids

    async def test_readers_keep_their_snapshot(self, store: RoomStateStore, track_ids):
        before, _ = store.read(ROOM)

        await store.mutate(ROOM, 0, room.next_track)

        assert before.version == 0
        assert before.head == track_ids[0]

    async def test_concurrent_mutations_one_wins(self, store: RoomStateStore):
        results = await asyncio.gather(
            store.mutate(ROOM, 0, room.next_track),
            store.mutate(ROOM, 0, room.previous_track),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, VersionConflictError)]
        assert len(conflicts) == 1
        assert store.read(ROOM)[1] == 1

    async def test_unknown_room(self, store: RoomStateStore):
        with pytest.raises(RoomNotFoundError):
            store.read("nope")
        with pytest.raises(RoomNotFoundError):
            await store.mutate("nope", 0, room.next_track)


class TestApply:
    """Server-originated mutations."""

    async def test_apply_is_versioned(self, store: RoomStateStore):
        _, version = await store.apply(ROOM, lambda s: room.connect(s, "alice", 1.0))
        assert version == 1

    async def test_bookkeeping_is_not_versioned(self, store: RoomStateStore):
        await store.apply(ROOM, lambda s: room.heartbeat(s, "alice", 1.0))
        announced = []
        store.add_listener(lambda room_id, state: announced.append(state.version))

        state, version = await store.apply(ROOM, lambda s: room.heartbeat(s, "alice", 4.0))

        assert version == 1
        assert state.clients["alice"].last_heartbeat == 4.0
        assert announced == []


class TestListenersAndPersistence:
    """Accepted states are persisted and announced in order."""

    async def test_listeners_see_every_version_in_order(self, store: RoomStateStore):
        seen: list[tuple[str, int]] = []
        remove = store.add_listener(lambda room_id, state: seen.append((room_id, state.version)))

        await store.mutate(ROOM, 0, room.next_track)
        await store.mutate(ROOM, 1, room.next_track)
        remove()
        await store.mutate(ROOM, 2, room.next_track)

        assert seen == [(ROOM, 1), (ROOM, 2)]

    async def test_failing_listener_does_not_break_mutation(self, store: RoomStateStore):
        def broken(_room_id: str, _state: RoomState) -> None:
            raise RuntimeError("boom")

        store.add_listener(broken)

        _, version = await store.mutate(ROOM, 0, room.next_track)

        assert version == 1

    async def test_accepted_mutation_is_written_through(self, tmp_path: Path, room_state):
        persistence = StatePersistence(tmp_path / "state.json")
        store = RoomStateStore(persistence)
        await store.create_room(ROOM, room_state)

        state, _ = await store.mutate(ROOM, 0, room.next_track)

        assert persistence.load() == {ROOM: state}

    async def test_failed_write_rolls_back(self, tmp_path: Path, room_state, track_ids):
        class ReadOnlyPersistence(StatePersistence):
            def save(self, rooms) -> None:
                raise OSError("disk full")

        store = RoomStateStore(ReadOnlyPersistence(tmp_path / "state.json"), {ROOM: room_state})
        announced = []
        store.add_listener(lambda room_id, state: announced.append(state.version))

        with pytest.raises(OSError):
            await store.mutate(ROOM, 0, room.next_track)

        state, version = store.read(ROOM)
        assert version == 0
        assert state.head == track_ids[0]
        assert announced == []


@pytest.mark.parametrize(
    ("candidate", "current", "newer"),
    [
        (5, 4, True),
        (4, 4, False),
        (3, 4, False),
        (0, VERSION_MODULO - 1, True),
        (VERSION_MODULO - 1, 0, False),
    ],
)
def test_version_order_across_wrap(candidate: int, current: int, newer: bool):
    assert is_newer_version(candidate, current) is newer
