"""Fan-out of room snapshots to the open push connections of each room."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from aiohttp import WSMessage, WSMsgType, web

from aioroomsync.models.types import ServerMessage

MAX_PENDING_MSG = 512

logger = logging.getLogger(__name__)


class PushConnection:
    """
    A participant's live push connection.

    Outgoing messages are queued and written by a dedicated writer task, so a
    slow or broken connection never blocks the broadcast and messages reach the
    participant in the order they were queued.
    """

    participant: str
    wsock: web.WebSocketResponse
    _to_write: asyncio.Queue[str]
    _writer_task: asyncio.Task[None] | None = None
    _closing: bool = False

    def __init__(
        self, loop: asyncio.AbstractEventLoop, participant: str, wsock: web.WebSocketResponse
    ) -> None:
        """Wrap an already prepared websocket."""
        self._loop = loop
        self.participant = participant
        self.wsock = wsock
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._close_tasks: set[asyncio.Task[None]] = set()
        self._logger = logger.getChild(participant)

    @property
    def closed(self) -> bool:
        """True once the connection is closing or closed."""
        return self._closing or self.wsock.closed

    def send(self, payload: str) -> bool:
        """Queue a serialized message. Returns False if the connection is dead."""
        if self.closed:
            return False
        try:
            self._to_write.put_nowait(payload)
        except asyncio.QueueFull:
            self._logger.warning("Push queue full, dropping connection")
            task = self._loop.create_task(self.close())
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
            return False
        return True

    async def run(self) -> None:
        """Serve the connection until either side closes it."""
        self._writer_task = self._loop.create_task(self._writer())
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not self.wsock.closed:
                receive_task = self._loop.create_task(self.wsock.receive())
                done, _ = await asyncio.wait(
                    [receive_task, self._writer_task], return_when=asyncio.FIRST_COMPLETED
                )
                if self._writer_task in done:
                    self._logger.debug("Writer task ended, closing connection")
                    break
                msg = receive_task.result()
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
                if msg.type is WSMsgType.ERROR:
                    self._logger.debug("Websocket error: %s", self.wsock.exception())
                    break
                # Subscribers only listen, anything they send is ignored
        except (ConnectionError, TimeoutError) as err:
            self._logger.debug("Push connection lost: %s", err)
        finally:
            if receive_task is not None and not receive_task.done():
                receive_task.cancel()
            await self.close()

    async def close(self) -> None:
        """Stop the writer and close the websocket."""
        self._closing = True
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
        if not self.wsock.closed:
            with suppress(ConnectionError, RuntimeError):
                await self.wsock.close()

    async def _writer(self) -> None:
        """Write queued messages until the connection breaks."""
        while not self.wsock.closed:
            payload = await self._to_write.get()
            try:
                await self.wsock.send_str(payload)
            except (ConnectionError, RuntimeError) as err:
                # Liveness belongs to the transport, a failed write just ends this connection
                self._logger.debug("Write failed, ending writer task: %s", err)
                break


class EventBroadcaster:
    """Per-room registry of push connections keyed by participant."""

    _connections: dict[str, dict[str, PushConnection]]

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._connections = {}

    def add(self, room_id: str, connection: PushConnection) -> PushConnection | None:
        """
        Register a connection.

        A participant has at most one connection per room; the connection it
        replaces is returned so the caller can close it.
        """
        room = self._connections.setdefault(room_id, {})
        previous = room.get(connection.participant)
        room[connection.participant] = connection
        logger.debug(
            "Push connection of %s added to room %s (%d open)",
            connection.participant,
            room_id,
            len(room),
        )
        return previous if previous is not connection else None

    def remove(self, room_id: str, connection: PushConnection) -> bool:
        """
        Unregister a connection.

        Returns True if it was the participant's current connection, False if
        it was unknown or already replaced by a newer one.
        """
        room = self._connections.get(room_id)
        if room is None or room.get(connection.participant) is not connection:
            return False
        del room[connection.participant]
        if not room:
            del self._connections[room_id]
        logger.debug("Push connection of %s removed from room %s", connection.participant, room_id)
        return True

    def get(self, room_id: str, participant: str) -> PushConnection | None:
        """Return the current connection of a participant."""
        return self._connections.get(room_id, {}).get(participant)

    def connections(self, room_id: str) -> list[PushConnection]:
        """Return the open connections of a room."""
        return list(self._connections.get(room_id, {}).values())

    def broadcast(self, room_id: str, message: ServerMessage) -> int:
        """
        Serialize a message once and queue it to every connection of the room.

        Returns the number of connections it was queued to. Broken connections
        are skipped, they are cleaned up when their handler ends.
        """
        payload = message.to_json()
        delivered = 0
        # Iterate over a copy, connections may be removed while broadcasting
        for connection in self.connections(room_id):
            if connection.send(payload):
                delivered += 1
        logger.debug("Broadcast to %d connection(s) of room %s", delivered, room_id)
        return delivered

    async def close_all(self) -> None:
        """Close every connection of every room."""
        for room in list(self._connections.values()):
            for connection in list(room.values()):
                await connection.close()
