"""Tests for the push connection registry."""

from __future__ import annotations

import asyncio

from aioroomsync.models.messages import RoomSnapshot, SnapshotServerMessage
from aioroomsync.server.broadcaster import MAX_PENDING_MSG, EventBroadcaster, PushConnection


class FakeSocket:
    """Stands in for a prepared websocket that never drains."""

    def __init__(self) -> None:
        self.closed = False
        self.sent: list[str] = []

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> bool:
        self.closed = True
        return True


def _connection(participant: str) -> tuple[PushConnection, FakeSocket]:
    wsock = FakeSocket()
    loop = asyncio.get_running_loop()
    connection = PushConnection(loop, participant, wsock)  # type: ignore[arg-type]
    return connection, wsock


class TestPushConnection:
    """Queueing towards one participant."""

    async def test_full_queue_closes_connection(self):
        connection, wsock = _connection("alice")
        for _ in range(MAX_PENDING_MSG):
            assert connection.send("{}")

        assert not connection.send("{}")

        for _ in range(5):
            await asyncio.sleep(0)
        assert wsock.closed
        assert connection.closed


class TestEventBroadcaster:
    """Registry keyed by room and participant."""

    async def test_newer_connection_replaces_older(self):
        broadcaster = EventBroadcaster()
        first, _ = _connection("alice")
        second, _ = _connection("alice")

        assert broadcaster.add("r", first) is None
        assert broadcaster.add("r", second) is first
        assert not broadcaster.remove("r", first)
        assert broadcaster.connections("r") == [second]

    async def test_broadcast_skips_dead_connections(self, room_state):
        broadcaster = EventBroadcaster()
        alive, _ = _connection("alice")
        dead, dead_socket = _connection("bob")
        dead_socket.closed = True
        broadcaster.add("r", alive)
        broadcaster.add("r", dead)

        snapshot_message = SnapshotServerMessage(
            payload=RoomSnapshot(room="r", state=room_state, index=[], server_now=0.0)
        )

        assert broadcaster.broadcast("r", snapshot_message) == 1
