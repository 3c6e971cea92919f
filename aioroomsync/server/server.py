"""Room synchronization server exposing the room store over HTTP and websockets."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from functools import partial
from pathlib import Path
from typing import Any

from aiohttp import web
from mashumaro.exceptions import InvalidFieldValue, MissingField

from aioroomsync.exceptions import NotFoundError, NotHeadError, VersionConflictError
from aioroomsync.models.messages import (
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
from aioroomsync.models.state import Armed, RoomState
from aioroomsync.models.types import ErrorResponse

from . import room
from .broadcaster import EventBroadcaster, PushConnection
from .store import MutationFn, RoomStateStore

logger = logging.getLogger(__name__)


def _json_response(body: str, status: int = 200) -> web.Response:
    return web.Response(text=body, status=status, content_type="application/json")


def _error(status: int, message: str) -> web.Response:
    return _json_response(ErrorResponse(error=message).to_json(), status=status)


class RoomSyncServer:
    """
    Serves rooms to participants.

    Wires the RoomStateStore to the HTTP endpoints, fans accepted states out
    through the EventBroadcaster and promotes armed starts to playing once
    their anchor is reached.
    """

    _store: RoomStateStore
    _broadcaster: EventBroadcaster
    _index: list[TrackInfo]
    _promotion_handles: dict[str, asyncio.TimerHandle]
    loop: asyncio.AbstractEventLoop

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        store: RoomStateStore,
        index: list[TrackInfo],
        *,
        audio_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the server around an already loaded store."""
        self.loop = loop
        self._store = store
        self._index = list(index)
        self._audio_dir = audio_dir
        self._clock = clock
        self._broadcaster = EventBroadcaster()
        self._promotion_handles = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._runner: web.AppRunner | None = None
        self._remove_listener = store.add_listener(self._on_state_changed)
        for room_id in store.room_ids:
            self._schedule_promotion(room_id, store.read(room_id)[0])
        logger.debug("RoomSyncServer initialized with %d room(s)", len(store.room_ids))

    @property
    def store(self) -> RoomStateStore:
        """The room store."""
        return self._store

    @property
    def broadcaster(self) -> EventBroadcaster:
        """The push connection registry."""
        return self._broadcaster

    @property
    def index(self) -> list[TrackInfo]:
        """The reference track index."""
        return self._index

    def create_app(self) -> web.Application:
        """Create the aiohttp application serving all endpoints."""
        app = web.Application()
        app.router.add_get("/time", self._handle_time)
        app.router.add_get("/index", self._handle_index)
        app.router.add_get("/tracks/{track_id}", self._handle_track_file)
        app.router.add_get("/rooms/{room}/snapshot", self._handle_snapshot)
        app.router.add_get("/rooms/{room}/events", self._handle_events)
        app.router.add_post("/rooms/{room}/possession", self._handle_possession)
        app.router.add_post("/rooms/{room}/heartbeat", self._handle_heartbeat)
        app.router.add_post("/rooms/{room}/{action}", self._handle_mutation)
        return app

    async def start(self, host: str | None, port: int) -> None:
        """Start listening for participants."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Server listening on %s:%d", host or "*", port)

    async def stop(self) -> None:
        """Close every push connection and stop listening."""
        self._remove_listener()
        for handle in self._promotion_handles.values():
            handle.cancel()
        self._promotion_handles.clear()
        await self._broadcaster.close_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def snapshot(self, room_id: str) -> RoomSnapshot:
        """Build the full snapshot of a room."""
        state, _ = self._store.read(room_id)
        return self._build_snapshot(room_id, state)

    def _build_snapshot(self, room_id: str, state: RoomState) -> RoomSnapshot:
        return RoomSnapshot(room=room_id, state=state, index=self._index, server_now=self._clock())

    # ------------------------------------------------------------------
    # State change fan-out
    # ------------------------------------------------------------------
    def _on_state_changed(self, room_id: str, state: RoomState) -> None:
        logger.debug("Pushing snapshot of room %s at version %d", room_id, state.version)
        self._broadcaster.broadcast(
            room_id, SnapshotServerMessage(payload=self._build_snapshot(room_id, state))
        )
        self._schedule_promotion(room_id, state)

    def _schedule_promotion(self, room_id: str, state: RoomState) -> None:
        """Replace any pending promotion of the room by one matching its state."""
        if (handle := self._promotion_handles.pop(room_id, None)) is not None:
            handle.cancel()
        if not isinstance(state.play_state, Armed):
            return
        anchor = state.play_state.wall_time_at_song_start
        delay = max(0.0, anchor - self._clock())
        self._promotion_handles[room_id] = self.loop.call_later(
            delay, self._promote, room_id, anchor
        )

    def _promote(self, room_id: str, anchor: float) -> None:
        self._promotion_handles.pop(room_id, None)
        self._spawn(self._store.apply(room_id, partial(room.promote_armed, anchor=anchor)))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = self.loop.create_task(self._run_logged(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_logged(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background room mutation failed")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_time(self, _request: web.Request) -> web.Response:
        return _json_response(TimeResponse(now=self._clock()).to_json())

    async def _handle_index(self, _request: web.Request) -> web.Response:
        return _json_response("[" + ",".join(track.to_json() for track in self._index) + "]")

    async def _handle_track_file(self, request: web.Request) -> web.StreamResponse:
        track_id = request.match_info["track_id"]
        track = next((t for t in self._index if t.track_id == track_id), None)
        if track is None or self._audio_dir is None:
            return _error(404, f"Track {track_id} not found")
        return web.FileResponse(
            self._audio_dir / track.file_name, headers={"Content-Type": track.mime}
        )

    async def _handle_snapshot(self, request: web.Request) -> web.Response:
        try:
            snapshot = self.snapshot(request.match_info["room"])
        except NotFoundError as err:
            return _error(404, str(err))
        return _json_response(snapshot.to_json())

    async def _handle_mutation(self, request: web.Request) -> web.Response:
        room_id = request.match_info["room"]
        action = request.match_info["action"]
        try:
            fn = await self._mutation_for(action, request)
        except NotFoundError as err:
            return _error(404, str(err))
        except (ValueError, MissingField, InvalidFieldValue) as err:
            return _error(400, f"Invalid request body: {err}")

        raw_version = request.headers.get(VERSION_HEADER)
        try:
            expected_version = int(raw_version) if raw_version is not None else None
        except ValueError:
            expected_version = None

        try:
            await self._store.mutate(room_id, expected_version, fn)
        except VersionConflictError as err:
            logger.info(
                "Conflict on %s in room %s: version is %d but client thinks %s",
                action,
                room_id,
                err.version,
                raw_version,
            )
            return _json_response(self._build_snapshot(room_id, err.state).to_json(), status=409)
        except NotFoundError as err:
            return _error(404, str(err))
        logger.debug("Accepted %s in room %s", action, room_id)
        return _json_response('{"ok":true}')

    async def _mutation_for(self, action: str, request: web.Request) -> MutationFn:
        """Translate an action name and its body into a mutation function."""
        now = self._clock()
        match action:
            case "play":
                return partial(room.play, now=now)
            case "pause":
                return partial(room.pause, now=now)
            case "seek":
                body = SeekRequest.from_json(await request.read())
                return partial(room.seek, now=now, position=body.position)
            case "next":
                return room.next_track
            case "prev":
                return room.previous_track
            case "nudge":
                body = NudgeRequest.from_json(await request.read())
                return partial(room.nudge, track_id=body.track_id)
            case "shuffle":
                return room.shuffle
            case "reset":
                return partial(room.reset_queue, index_ids=[t.track_id for t in self._index])
        raise NotFoundError(f"Unknown action {action}")

    async def _handle_possession(self, request: web.Request) -> web.Response:
        room_id = request.match_info["room"]
        try:
            report = PossessionReport.from_json(await request.read())
        except (ValueError, MissingField, InvalidFieldValue) as err:
            return _error(400, f"Invalid request body: {err}")
        now = self._clock()
        try:
            await self._store.apply(
                room_id,
                partial(
                    room.report_possession,
                    participant=report.participant,
                    track_id=report.track_id,
                    now=now,
                ),
            )
        except NotHeadError as err:
            return _error(400, str(err))
        except NotFoundError as err:
            return _error(404, str(err))
        logger.debug("%s holds %s in room %s", report.participant, report.track_id, room_id)
        return _json_response('{"ok":true}')

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        room_id = request.match_info["room"]
        try:
            body = HeartbeatRequest.from_json(await request.read())
        except (ValueError, MissingField, InvalidFieldValue) as err:
            return _error(400, f"Invalid request body: {err}")
        now = self._clock()
        try:
            state, _ = await self._store.apply(
                room_id, partial(room.heartbeat, participant=body.participant, now=now)
            )
        except NotFoundError as err:
            return _error(404, str(err))
        # Evicted participants lose their push connection as well
        for connection in self._broadcaster.connections(room_id):
            if connection.participant not in state.clients:
                logger.debug("Closing push connection of evicted %s", connection.participant)
                self._spawn(connection.close())
        return _json_response('{"ok":true}')

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        """Serve a long-lived push subscription of one participant."""
        room_id = request.match_info["room"]
        participant = request.query.get("participant", "")
        if not participant:
            return _error(400, "participant is required")
        try:
            self._store.read(room_id)
        except NotFoundError as err:
            return _error(404, str(err))

        wsock = web.WebSocketResponse(heartbeat=55)
        try:
            async with asyncio.timeout(10):
                await wsock.prepare(request)
        except TimeoutError:
            logger.warning("Timeout preparing push connection of %s", participant)
            return wsock

        connection = PushConnection(self.loop, participant, wsock)
        if (replaced := self._broadcaster.add(room_id, connection)) is not None:
            logger.debug("Replacing previous push connection of %s", participant)
            await replaced.close()
        logger.info("Push connection of %s to room %s opened", participant, room_id)
        try:
            # The resulting broadcast also delivers the first snapshot to this connection
            await self._store.apply(
                room_id, partial(room.connect, participant=participant, now=self._clock())
            )
            await connection.run()
        finally:
            if self._broadcaster.remove(room_id, connection):
                logger.info("Push connection of %s to room %s closed", participant, room_id)
                # Closing may shrink the present set to satisfaction
                try:
                    await self._store.apply(
                        room_id,
                        partial(room.disconnect, participant=participant, now=self._clock()),
                    )
                except NotFoundError:
                    logger.debug("Room %s vanished before %s disconnected", room_id, participant)
        return wsock
