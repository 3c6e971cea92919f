"""Room client connecting a participant to a room synchronization server."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from contextlib import suppress
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol, Self

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aioroomsync.exceptions import (
    CacheStorageError,
    ConflictError,
    NotFoundError,
    NotHeadError,
    RoomSyncError,
    TrackFetchError,
)
from aioroomsync.models.messages import (
    VERSION_HEADER,
    HeartbeatRequest,
    NudgeRequest,
    PossessionReport,
    RoomSnapshot,
    SeekRequest,
    SnapshotServerMessage,
    TimeResponse,
)
from aioroomsync.models.state import OnBarrier, RoomState, is_newer_version
from aioroomsync.models.types import ServerMessage

from .cache import BlobStore, CacheManager
from .clock import ClockSyncEstimator
from .convergence import PlaybackConvergenceController, PlaybackTarget

HEARTBEAT_INTERVAL_S = 3.0
"""Seconds between heartbeats, well inside the server's presence window."""
RECONNECT_DELAY_S = 1.0

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[RoomSnapshot], None]
NoticeCallback = Callable[[str], None]


class TrackPlayer(PlaybackTarget, Protocol):
    """A local player that can also load track files."""

    async def load(self, path: Path) -> None:
        """Replace the loaded track."""


class RoomSyncClient:
    """
    Async client of one participant in one room.

    Keeps the latest room snapshot, pushed by the server, and reacts to it:
    a new head track is cached and reported, and local playback is steered
    to the room's play state using the estimated server clock.
    """

    def __init__(
        self,
        participant: str,
        room: str,
        *,
        session: ClientSession | None = None,
        player: PlaybackTarget | None = None,
        cache_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Create a new room client.

        Args:
            participant: Name identifying this participant in the room.
            room: Code of the room to join.
            session: aiohttp session to use, a private one is created otherwise.
            player: Local player steered to the room's play state.
            cache_dir: Directory tracks are cached in. Without it nothing is
                downloaded and possession is never reported.
            clock: Local wall clock.
        """
        self._participant = participant
        self._room = room
        self._session = session
        self._owns_session = session is None
        self._player = player
        self._cache_dir = cache_dir
        self._clock = clock
        self._base_url: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._events_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._cache_task: asyncio.Task[None] | None = None
        self._connected = False
        self._snapshot: RoomSnapshot | None = None
        self._estimator = ClockSyncEstimator(self.fetch_server_time, clock=clock)
        self._controller: PlaybackConvergenceController | None = None
        self._cache: CacheManager | None = None
        self._snapshot_callbacks: list[SnapshotCallback] = []
        self._notice_callbacks: list[NoticeCallback] = []

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def participant(self) -> str:
        """Name of this participant."""
        return self._participant

    @property
    def room(self) -> str:
        """Code of the joined room."""
        return self._room

    @property
    def connected(self) -> bool:
        """Return True while the client is connected."""
        return self._connected

    @property
    def snapshot(self) -> RoomSnapshot | None:
        """The latest room snapshot."""
        return self._snapshot

    @property
    def state(self) -> RoomState | None:
        """The latest room state."""
        return self._snapshot.state if self._snapshot is not None else None

    @property
    def clock(self) -> ClockSyncEstimator:
        """The server clock estimator."""
        return self._estimator

    @property
    def cache(self) -> CacheManager | None:
        """The track cache, None without a cache directory."""
        return self._cache

    @property
    def controller(self) -> PlaybackConvergenceController | None:
        """The playback controller, None without a player."""
        return self._controller

    async def connect(self, url: str) -> None:
        """
        Join the room on the server at ``url`` (for example ``http://host:3000``).

        Fetches the current snapshot, subscribes to pushed snapshots and starts
        the heartbeat and clock synchronization.
        """
        if self._connected:
            logger.debug("Already connected")
            return

        self._loop = asyncio.get_running_loop()
        self._base_url = url.rstrip("/")
        if self._session is None:
            self._session = ClientSession()

        if self._player is not None:
            self._controller = PlaybackConvergenceController(
                self._loop, self._player, self._estimator.server_wall_time_estimate
            )
        if self._cache_dir is not None:
            self._cache = CacheManager(
                BlobStore(self._cache_dir),
                self.fetch_track,
                self.report_possession,
                load=self._load_track,
                on_notice=self._notice,
            )
            try:
                await self._cache.open()
            except CacheStorageError:
                logger.warning("Continuing without track cache")

        logger.info("Joining room %s at %s as %s", self._room, self._base_url, self._participant)
        self._connected = True
        try:
            await self.heartbeat()
            await self.refresh()
            self._ws = await self._open_events()
        except Exception:
            await self.disconnect()
            raise

        self._events_task = self._loop.create_task(self._events_loop())
        self._heartbeat_task = self._loop.create_task(self._heartbeat_loop())
        self._estimator.start()

    async def disconnect(self) -> None:
        """Leave the room and release resources."""
        self._connected = False
        current_task = asyncio.current_task()
        for task in (self._events_task, self._heartbeat_task, self._cache_task):
            if task is not None and task is not current_task:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._events_task = None
        self._heartbeat_task = None
        self._cache_task = None
        await self._estimator.stop()
        self._estimator.reset()
        if self._controller is not None:
            self._controller.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def play(self) -> None:
        """Start playback once everybody holds the head track."""
        await self._mutate("play")

    async def pause(self) -> None:
        """Pause playback."""
        await self._mutate("pause")

    async def seek(self, position: float) -> None:
        """Move the playback position of the head track."""
        await self._mutate("seek", SeekRequest(position=position))

    async def next_track(self) -> None:
        """Skip to the next track."""
        await self._mutate("next")

    async def previous_track(self) -> None:
        """Go back to the previous track."""
        await self._mutate("prev")

    async def nudge(self, track_id: str) -> None:
        """Play a queued track next."""
        await self._mutate("nudge", NudgeRequest(track_id=track_id))

    async def shuffle(self) -> None:
        """Shuffle everything behind the head track."""
        await self._mutate("shuffle")

    async def reset_queue(self) -> None:
        """Restore the natural track order, keeping the head track."""
        await self._mutate("reset")

    async def report_possession(self, track_id: str) -> None:
        """
        Tell the server the bytes of the head track are held locally.

        Raises:
            NotHeadError: If the track is no longer the head.
            NotFoundError: If the room or this participant is unknown.
        """
        async with self._request(
            "post",
            self._room_url("possession"),
            data=PossessionReport(participant=self._participant, track_id=track_id).to_jsonb(),
        ) as resp:
            text = await resp.text()
            if resp.status == 400:
                raise NotHeadError(text)
            if resp.status == 404:
                raise NotFoundError(text)
            if resp.status >= 400:
                raise RoomSyncError(f"Possession report failed with {resp.status}: {text}")

    async def heartbeat(self) -> None:
        """Signal liveness to the server."""
        async with self._request(
            "post",
            self._room_url("heartbeat"),
            data=HeartbeatRequest(participant=self._participant).to_jsonb(),
        ) as resp:
            if resp.status == 404:
                raise NotFoundError(await resp.text())
            resp.raise_for_status()

    async def refresh(self) -> RoomSnapshot:
        """Fetch and apply the current room snapshot."""
        async with self._request("get", self._room_url("snapshot")) as resp:
            if resp.status == 404:
                raise NotFoundError(await resp.text())
            resp.raise_for_status()
            snapshot = RoomSnapshot.from_json(await resp.read())
        self._apply_snapshot(snapshot)
        return snapshot

    async def fetch_server_time(self) -> float:
        """Return the server's wall clock reading."""
        async with self._request("get", f"{self._require_url()}/time") as resp:
            resp.raise_for_status()
            return TimeResponse.from_json(await resp.read()).now

    async def fetch_track(self, track_id: str) -> bytes:
        """
        Download the bytes of a track.

        Raises:
            TrackFetchError: If the download failed.
        """
        try:
            async with self._request("get", f"{self._require_url()}/tracks/{track_id}") as resp:
                if resp.status != 200:
                    raise TrackFetchError(f"Fetching {track_id} failed with {resp.status}")
                return await resp.read()
        except (ClientError, TimeoutError) as err:
            raise TrackFetchError(f"Fetching {track_id} failed: {err}") from err

    def add_snapshot_listener(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a callback invoked after every applied snapshot."""
        self._snapshot_callbacks.append(callback)
        return lambda: self._snapshot_callbacks.remove(callback)

    def add_notice_listener(self, callback: NoticeCallback) -> Callable[[], None]:
        """Register a callback receiving short user-facing notices."""
        self._notice_callbacks.append(callback)
        return lambda: self._notice_callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_url(self) -> str:
        if self._base_url is None or self._session is None:
            raise RuntimeError("Client is not connected")
        return self._base_url

    def _room_url(self, path: str) -> str:
        return f"{self._require_url()}/rooms/{self._room}/{path}"

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        assert self._session is not None
        if "data" in kwargs:
            kwargs.setdefault("headers", {})["Content-Type"] = "application/json"
        return self._session.request(method, url, **kwargs)

    async def _mutate(self, action: str, body: DataClassORJSONMixin | None = None) -> None:
        """
        Send a versioned mutation derived from the latest snapshot.

        Raises:
            ConflictError: If the server moved on. The snapshot sent along with
                the rejection was already applied.
            NotFoundError: If the room or a referenced track is unknown.
        """
        if self._snapshot is None:
            raise RuntimeError("No room snapshot yet")
        version = self._snapshot.state.version
        async with self._request(
            "post",
            self._room_url(action),
            data=body.to_jsonb() if body is not None else b"{}",
            headers={VERSION_HEADER: str(version)},
        ) as resp:
            if resp.status == 409:
                latest = RoomSnapshot.from_json(await resp.read())
                # A push may have delivered a newer state while the request was in flight
                if is_newer_version(latest.state.version, self._snapshot.state.version):
                    self._apply_snapshot(latest)
                self._notice("Out of sync, refreshed")
                raise ConflictError(f"{action} rejected, room moved on from version {version}")
            if resp.status == 404:
                raise NotFoundError(await resp.text())
            if resp.status >= 400:
                raise RoomSyncError(f"{action} failed with {resp.status}: {await resp.text()}")
        logger.debug("%s accepted at version %d", action, version)

    def _apply_snapshot(self, snapshot: RoomSnapshot) -> None:
        """Replace the snapshot and react to it. The only writer of the snapshot."""
        previous = self._snapshot
        self._snapshot = snapshot
        state = snapshot.state
        head_changed = previous is None or previous.state.head != state.head
        logger.debug("Applied snapshot version %d (%s)", state.version, state.play_state.mode)

        if self._cache is not None and not self._cache.disabled:
            if head_changed:
                self._start_cache_task(self._cache.on_head_changed(state.head, state.next_up))
            elif self._head_unreported(state) and state.head is not None:
                if self._cache.holds(state.head):
                    self._start_cache_task(self._cache.reassert(state.head))
                else:
                    # An earlier attempt failed, retry while the room waits on us
                    self._start_cache_task(
                        self._cache.on_head_changed(state.head, state.next_up)
                    )

        if self._controller is not None:
            self._controller.update(state.play_state)

        for callback in self._snapshot_callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Error in snapshot callback %s", callback)

    def _head_unreported(self, state: RoomState) -> bool:
        """Return True if the room waits on a head this client has not reported."""
        if not isinstance(state.play_state, OnBarrier):
            return False
        if self._cache_task is not None and not self._cache_task.done():
            return False
        presence = state.clients.get(self._participant)
        acknowledged = presence.acknowledged_head if presence is not None else None
        return acknowledged != state.head

    def _start_cache_task(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run cache work for the current head, cancelling work for an older head."""
        if self._cache_task is not None and not self._cache_task.done():
            self._cache_task.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._cache_task = loop.create_task(self._run_cache(coro))

    async def _run_cache(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except TrackFetchError as err:
            logger.warning("Could not fetch track: %s", err)
        except CacheStorageError:
            # Already logged by the cache manager
            pass
        except NotHeadError:
            logger.debug("Head moved on before possession was reported")
        except (RoomSyncError, ClientError) as err:
            logger.warning("Caching the head track failed: %s", err)

    async def _load_track(self, track_id: str, path: Path) -> None:
        load = getattr(self._player, "load", None)
        if load is None:
            return
        logger.debug("Loading %s into the player", track_id)
        await load(path)
        if self._controller is not None:
            self._controller.check()

    async def _open_events(self) -> ClientWebSocketResponse:
        assert self._session is not None
        return await self._session.ws_connect(
            self._room_url("events"), params={"participant": self._participant}, heartbeat=30
        )

    async def _events_loop(self) -> None:
        """Apply pushed snapshots, reconnecting while the client is connected."""
        while self._connected:
            if self._ws is None or self._ws.closed:
                try:
                    self._ws = await self._open_events()
                    await self.refresh()
                except (ClientError, TimeoutError, RoomSyncError) as err:
                    logger.warning(
                        "Reconnecting push subscription failed: %s, retrying in %.1fs",
                        err,
                        RECONNECT_DELAY_S,
                    )
                    await asyncio.sleep(RECONNECT_DELAY_S)
                    continue
                logger.info("Push subscription re-established")
            try:
                async for msg in self._ws:
                    if msg.type is WSMsgType.TEXT:
                        self._handle_push(msg.data)
                    elif msg.type is WSMsgType.ERROR:
                        logger.error("WebSocket error: %s", self._ws.exception())
                        break
            except (ClientError, ConnectionError) as err:
                logger.warning("Push subscription lost: %s", err)
            if self._connected:
                logger.info("Push subscription closed, reconnecting in %.1fs", RECONNECT_DELAY_S)
                await self._ws.close()
                await asyncio.sleep(RECONNECT_DELAY_S)

    def _handle_push(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        match message:
            case SnapshotServerMessage(payload=payload):
                self._apply_snapshot(payload)
            case _:
                logger.debug("Unhandled server message type: %s", type(message).__name__)

    async def _heartbeat_loop(self) -> None:
        while self._connected:
            await asyncio.sleep(HEARTBEAT_INTERVAL_S)
            try:
                await self.heartbeat()
            except (ClientError, TimeoutError, RoomSyncError) as err:
                logger.warning("Heartbeat failed: %s", err)

    def _notice(self, message: str) -> None:
        for callback in self._notice_callbacks:
            try:
                callback(message)
            except Exception:
                logger.exception("Error in notice callback %s", callback)

    async def __aenter__(self) -> Self:
        """Enter the async context manager returning this instance."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Disconnect when leaving the async context manager."""
        await self.disconnect()
