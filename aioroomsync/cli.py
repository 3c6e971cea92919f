"""Command-line interface for joining a room as a participant."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

if TYPE_CHECKING:
    from zeroconf import ServiceListener

import aioconsole
from aiohttp import ClientError
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

from aioroomsync.cli_audio import AudioPlayer
from aioroomsync.client import RoomSyncClient
from aioroomsync.exceptions import ConflictError, RoomSyncError
from aioroomsync.models.messages import RoomSnapshot
from aioroomsync.models.state import Armed, OnBarrier, Paused, Playing
from aioroomsync.server.barrier import waiting_participants

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_roomsync._tcp.local."
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "aioroomsync"


@dataclass
class DiscoveredServer:
    """A room server found via mDNS."""

    url: str
    room: str | None


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the room client."""
    parser = argparse.ArgumentParser(description="Join a synchronized playback room")
    parser.add_argument(
        "--url",
        default=None,
        help="URL of the room server, e.g. http://host:3000. If omitted, discover via mDNS.",
    )
    parser.add_argument(
        "--room",
        default=None,
        help="Room code to join (default: the room advertised by the discovered server)",
    )
    parser.add_argument(
        "--name",
        default=socket.gethostname(),
        help="Participant name shown to the other members of the room",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=Path(os.environ.get("AIOROOMSYNC_CACHE_DIR", DEFAULT_CACHE_DIR)),
        help="Directory downloaded tracks are cached in",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def _build_service_url(host: str, port: int) -> str:
    """Construct the HTTP URL from mDNS service info."""
    host_fmt = f"[{host}]" if ":" in host else host
    return f"http://{host_fmt}:{port}"


class _ServiceDiscoveryListener:
    """Listens for room server advertisements via mDNS."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._first_result: asyncio.Future[DiscoveredServer] = loop.create_future()
        self.tasks: set[asyncio.Task[None]] = set()

    async def wait_for_first(self) -> DiscoveredServer:
        """Wait for the first server to be discovered."""
        return await self._first_result

    async def _process_service_info(
        self, zeroconf: AsyncZeroconf, service_type: str, name: str
    ) -> None:
        info = await zeroconf.async_get_service_info(service_type, name)
        if info is None or info.port is None:
            return
        addresses = info.parsed_addresses()
        if not addresses:
            return
        room_raw = info.properties.get(b"room")
        room = room_raw.decode("utf-8", "ignore") if isinstance(room_raw, bytes) else None
        server = DiscoveredServer(url=_build_service_url(addresses[0], info.port), room=room)
        if not self._first_result.done():
            self._first_result.set_result(server)

    def _schedule(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        task = self._loop.create_task(self._process_service_info(zeroconf, service_type, name))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def add_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def update_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def remove_service(self, _zeroconf: AsyncZeroconf, _service_type: str, _name: str) -> None:
        """Servers going away are handled by the client's reconnect."""


class ServiceDiscovery:
    """Finds room servers via mDNS."""

    def __init__(self) -> None:
        """Initialize the service discovery manager."""
        self._listener: _ServiceDiscoveryListener | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._zeroconf: AsyncZeroconf | None = None

    async def start(self) -> None:
        """Start browsing for servers."""
        loop = asyncio.get_running_loop()
        self._listener = _ServiceDiscoveryListener(loop)
        self._zeroconf = AsyncZeroconf()
        await self._zeroconf.__aenter__()

        try:
            self._browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf, SERVICE_TYPE, cast("ServiceListener", self._listener)
            )
        except Exception:
            await self.stop()
            raise

    async def wait_for_first_server(self) -> DiscoveredServer:
        """Wait indefinitely for the first server to be discovered."""
        if self._listener is None:
            raise RuntimeError("Discovery not started. Call start() first.")
        return await self._listener.wait_for_first()

    async def stop(self) -> None:
        """Stop discovery and clean up resources."""
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._zeroconf:
            await self._zeroconf.__aexit__(None, None, None)
            self._zeroconf = None
        self._listener = None


def describe_snapshot(snapshot: RoomSnapshot, participant: str) -> str:
    """Return a human-friendly description of a room snapshot."""
    state = snapshot.state
    head = snapshot.find_track(state.head)
    lines = [f"Room {snapshot.room}"]
    if head is not None:
        lines.append(f"Now: {head.title} - {head.artist}")
    upcoming = snapshot.find_track(state.next_up)
    if upcoming is not None:
        lines.append(f"Next: {upcoming.title} - {upcoming.artist}")
    match state.play_state:
        case Paused(position=position):
            lines.append(f"State: paused at {position:.1f}s")
        case OnBarrier(position=position):
            waiting = waiting_participants(state, snapshot.server_now)
            lines.append(
                f"State: waiting for {len(waiting)} member(s) to load, "
                f"starting at {position:.1f}s"
            )
        case Armed():
            lines.append("State: starting")
        case Playing():
            lines.append("State: playing")
    others = sorted(pid for pid in state.clients if pid != participant)
    if others:
        lines.append(f"With: {', '.join(others)}")
    return "\n".join(lines)


def _describe_queue(snapshot: RoomSnapshot) -> str:
    lines = []
    for pos, track_id in enumerate(snapshot.state.queue):
        track = snapshot.find_track(track_id)
        title = track.title if track is not None else track_id
        marker = ">" if pos == 0 else " "
        lines.append(f"{marker} {pos:>3} {track_id:<10} {title}")
    return "\n".join(lines)


def _describe_members(snapshot: RoomSnapshot) -> str:
    head = snapshot.state.head
    lines = []
    for pid, presence in sorted(snapshot.state.clients.items()):
        online = "online" if presence.connected else "offline"
        ready = "ready" if presence.acknowledged_head == head else "loading"
        lines.append(f"  {pid}: {online}, {ready}")
    return "\n".join(lines) or "  nobody"


class _SnapshotPrinter:
    """Prints a snapshot summary whenever what it describes changes."""

    def __init__(self, participant: str) -> None:
        self._participant = participant
        self._last: str | None = None

    def __call__(self, snapshot: RoomSnapshot) -> None:
        description = describe_snapshot(snapshot, self._participant)
        if description != self._last:
            _print_event(description)
        self._last = description


async def _connect_with_backoff(
    client: RoomSyncClient, url: str, keyboard_task: asyncio.Task[None]
) -> bool:
    """Connect, retrying with exponential backoff. Return False if interrupted."""
    backoff = 1.0
    max_backoff = 60.0
    while not keyboard_task.done():
        try:
            await client.connect(url)
        except (TimeoutError, OSError, ClientError, RoomSyncError) as err:
            logger.debug("Connection error (%s), retrying in %.0fs", type(err).__name__, backoff)
            _print_event(f"Connection error, retrying in {backoff:.0f}s...")
            await asyncio.wait([keyboard_task], timeout=backoff)
            backoff = min(backoff * 2, max_backoff)
            continue
        _print_event(f"Joined room {client.room} at {url}")
        return True
    return False


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    url = args.url
    room = args.room
    if url is None:
        discovery = ServiceDiscovery()
        await discovery.start()
        try:
            logger.info("Waiting for mDNS discovery of a room server...")
            _print_event("Searching for room server...")
            server = await discovery.wait_for_first_server()
        finally:
            await discovery.stop()
        url = server.url
        room = room or server.room
        _print_event(f"Found server at {url}")
    if not room:
        _print_event("No room given and none advertised, use --room")
        return 1

    loop = asyncio.get_running_loop()
    player_tasks: set[asyncio.Task[None]] = set()

    def on_track_end() -> None:
        # Every member reaches the end at once, only the first next is accepted
        task = loop.create_task(_run_command(client.next_track()))
        player_tasks.add(task)
        task.add_done_callback(player_tasks.discard)

    player = AudioPlayer(loop, on_end=on_track_end)
    client = RoomSyncClient(args.name, room, player=player, cache_dir=args.cache_dir)
    client.add_snapshot_listener(_SnapshotPrinter(args.name))
    client.add_notice_listener(_print_event)

    _print_instructions()
    keyboard_task = asyncio.create_task(_keyboard_loop(client))

    def signal_handler() -> None:
        logger.debug("Received interrupt signal, shutting down...")
        keyboard_task.cancel()

    loop.add_signal_handler(signal.SIGINT, signal_handler)
    try:
        if await _connect_with_backoff(client, url, keyboard_task):
            await asyncio.wait([keyboard_task])
    except asyncio.CancelledError:  # pragma: no cover - cancellation path
        logger.debug("CLI cancelled")
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if not keyboard_task.done():
            keyboard_task.cancel()
        await client.disconnect()
        await player.stop()
    return 0


async def _run_command(coro: Coroutine[Any, Any, None]) -> None:
    try:
        await coro
    except ConflictError:
        logger.debug("Command lost against a concurrent change")
    except (RoomSyncError, ClientError, RuntimeError) as err:
        _print_event(f"Command failed: {err}")


async def _keyboard_loop(client: RoomSyncClient) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            raw_line = line.strip()
            if not raw_line:
                continue
            parts = raw_line.split()
            keyword = parts[0].lower()
            snapshot = client.snapshot
            if keyword in {"quit", "exit", "q"}:
                break
            if keyword in {"play", "p"}:
                await _run_command(client.play())
            elif keyword in {"pause", "space"}:
                await _run_command(client.pause())
            elif keyword in {"next", "n"}:
                await _run_command(client.next_track())
            elif keyword in {"previous", "prev", "b"}:
                await _run_command(client.previous_track())
            elif keyword == "seek" and len(parts) == 2:
                try:
                    position = float(parts[1])
                except ValueError:
                    _print_event("Invalid position")
                    continue
                await _run_command(client.seek(position))
            elif keyword == "nudge" and len(parts) == 2:
                await _run_command(client.nudge(parts[1]))
            elif keyword == "shuffle":
                await _run_command(client.shuffle())
            elif keyword == "reset":
                await _run_command(client.reset_queue())
            elif keyword == "queue" and snapshot is not None:
                _print_event(_describe_queue(snapshot))
            elif keyword == "members" and snapshot is not None:
                _print_event(_describe_members(snapshot))
            elif keyword == "rtl":
                _print_event(f"Round trip: {client.clock.diagnose()}")
            else:
                _print_event("Unknown command")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions() -> None:
    print(  # noqa: T201
        (
            "Commands: play(p), pause, next(n), prev(b), seek <s>, nudge <track>, shuffle, "
            "reset, queue, members, rtl, quit(q)"
        ),
        flush=True,
    )


def main() -> int:
    """Run the CLI client."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
