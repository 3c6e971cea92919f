"""Command-line interface for running a room synchronization server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from collections.abc import Sequence
from pathlib import Path

from aioroomsync.exceptions import StateFileError
from aioroomsync.models.state import new_room_state
from aioroomsync.server import (
    RoomStateStore,
    RoomSyncServer,
    StatePersistence,
    build_track_index,
    realign_rooms,
)
from aioroomsync.server.advertisement import ServiceAdvertisement
from aioroomsync.server.room import generate_room_code

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the room server; environment variables provide defaults."""
    parser = argparse.ArgumentParser(description="Run a room synchronization server")
    parser.add_argument(
        "--host",
        default=os.environ.get("HOST"),
        help="Interface to listen on (default: all)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", DEFAULT_PORT)),
        help="Port to listen on",
    )
    parser.add_argument(
        "--audio-dir",
        type=Path,
        default=Path(os.environ.get("AUDIO_DIR", ".")),
        help="Directory with the audio files to serve",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=Path(os.environ.get("STATE_FILE", "state.json")),
        help="File the room state is persisted to",
    )
    parser.add_argument(
        "--name",
        default=None,
        help="Name advertised via mDNS (default: hostname)",
    )
    parser.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not advertise the server via mDNS",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


async def load_store(state_file: Path, index_ids: list[str]) -> RoomStateStore:
    """Load persisted rooms, realign them to the index and create a room if there is none."""
    persistence = StatePersistence(state_file)
    loop = asyncio.get_running_loop()
    rooms = await loop.run_in_executor(None, persistence.load)
    realign_rooms(rooms, index_ids)
    store = RoomStateStore(persistence, rooms)
    if not store.room_ids:
        await store.create_room(generate_room_code(), new_room_state(index_ids))
    return store


def _print_room_urls(room_id: str, port: int) -> None:
    addresses = {"localhost"}
    try:
        addresses.update(
            info[4][0]
            for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        )
    except OSError:
        logger.debug("Could not resolve local addresses")
    print("Room URLs:", flush=True)  # noqa: T201
    for address in sorted(addresses):
        print(f"  http://{address}:{port}  room {room_id}", flush=True)  # noqa: T201


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous server workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    loop = asyncio.get_running_loop()
    index = await loop.run_in_executor(None, build_track_index, args.audio_dir)
    try:
        store = await load_store(args.state_file, [track.track_id for track in index])
    except StateFileError:
        logger.exception("Refusing to start with a corrupted state file")
        return 1

    server = RoomSyncServer(loop, store, index, audio_dir=args.audio_dir)
    await server.start(args.host, args.port)
    room_id = store.room_ids[0]
    _print_room_urls(room_id, args.port)

    advertisement: ServiceAdvertisement | None = None
    if not args.no_advertise:
        advertisement = ServiceAdvertisement(args.port, room_id, args.name)
        try:
            await advertisement.start()
        except Exception:
            logger.exception("mDNS advertisement failed, continuing without it")
            advertisement = None

    stop_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
        logger.info("Shutting down")
        if advertisement is not None:
            await advertisement.stop()
        await server.stop()
    return 0


def main() -> int:
    """Run the room server."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
