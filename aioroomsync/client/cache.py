"""Local track cache and prefetching driven by the room's queue head."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import TypeVar

from aioroomsync.exceptions import CacheStorageError, TrackFetchError

RECENT_SIZE = 3
"""Number of most recently played tracks kept besides head and next-up."""
_TMP_SUFFIX = ".part"

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

FetchFn = Callable[[str], Awaitable[bytes]]
ReportFn = Callable[[str], Awaitable[None]]
LoadFn = Callable[[str, Path], Awaitable[None]]
NoticeFn = Callable[[str], None]


class BlobStore:
    """
    A directory holding one file per track.

    Files are written to a temporary name and renamed into place, so a track
    file is either complete or absent. All methods block and raise
    CacheStorageError when the directory is unusable.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize the store on a directory, created by open()."""
        self._directory = directory

    @property
    def directory(self) -> Path:
        """Directory the tracks are stored in."""
        return self._directory

    def open(self) -> None:
        """Create the directory and drop leftovers of interrupted writes."""
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            for leftover in self._directory.glob(f"*{_TMP_SUFFIX}"):
                leftover.unlink()
        except OSError as err:
            msg = f"Can not open cache directory {self._directory}: {err}"
            raise CacheStorageError(msg) from err

    def path_for(self, track_id: str) -> Path:
        """Return where a track is stored."""
        return self._directory / track_id

    def get_path(self, track_id: str) -> Path | None:
        """Return the path of a stored track, None if it is not stored."""
        path = self.path_for(track_id)
        return path if path.is_file() else None

    def put(self, track_id: str, data: bytes) -> Path:
        """Store the bytes of a track."""
        path = self.path_for(track_id)
        tmp_path = path.with_name(path.name + _TMP_SUFFIX)
        try:
            with tmp_path.open("wb") as tmp_file:
                tmp_file.write(data)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_path, path)
        except OSError as err:
            raise CacheStorageError(f"Can not store track {track_id}: {err}") from err
        return path

    def delete(self, track_id: str) -> None:
        """Remove a track, doing nothing if it is not stored."""
        try:
            self.path_for(track_id).unlink(missing_ok=True)
        except OSError as err:
            raise CacheStorageError(f"Can not delete track {track_id}: {err}") from err

    def keys(self) -> list[str]:
        """Return the ids of all stored tracks."""
        try:
            return sorted(
                p.name
                for p in self._directory.iterdir()
                if p.is_file() and not p.name.endswith(_TMP_SUFFIX)
            )
        except OSError as err:
            msg = f"Can not list cache directory {self._directory}: {err}"
            raise CacheStorageError(msg) from err


class CacheManager:
    """
    Keeps the head and next-up tracks of a room available locally.

    On every head change the cache is trimmed to the head, the next-up track
    and the most recently played tracks. The head is then made available and
    handed to the player, and only after that is possession reported to the
    server. Finally the next-up track is prefetched without reporting.

    A failing store disables caching for the rest of the session.
    """

    def __init__(
        self,
        store: BlobStore,
        fetch: FetchFn,
        report: ReportFn,
        *,
        load: LoadFn | None = None,
        on_notice: NoticeFn | None = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            store: Where track bytes are persisted.
            fetch: Downloads the bytes of a track, raising TrackFetchError.
            report: Reports possession of the head track to the server.
            load: Hands a stored track to the local player.
            on_notice: Receives short user-facing notices.
        """
        self._store = store
        self._fetch = fetch
        self._report = report
        self._load = load
        self._on_notice = on_notice
        self._recent: deque[str] = deque(maxlen=RECENT_SIZE)
        self._held: dict[str, Path] = {}
        self._disabled = False

    @property
    def disabled(self) -> bool:
        """True once the store failed."""
        return self._disabled

    @property
    def recent(self) -> list[str]:
        """Most recently played track ids, oldest first."""
        return list(self._recent)

    async def open(self) -> None:
        """Open the store and pick up the tracks stored by earlier sessions."""
        loop = asyncio.get_running_loop()
        await self._run_store(loop, self._store.open)
        for track_id in await self._run_store(loop, self._store.keys):
            self._held[track_id] = self._store.path_for(track_id)
        logger.debug("Track cache holds %d track(s)", len(self._held))

    def holds(self, track_id: str | None) -> bool:
        """Return True if the track is known to be stored locally."""
        return track_id is not None and track_id in self._held

    async def on_head_changed(self, head: str | None, next_up: str | None) -> None:
        """
        React to a new queue head.

        Raises:
            TrackFetchError: If a track could not be downloaded.
            CacheStorageError: If the store is unusable.
        """
        if head is None:
            return
        await self.evict([head, next_up, *self._recent])
        path = await self.ensure(head)
        if head not in self._recent:
            self._recent.append(head)
        if self._load is not None:
            await self._load(head, path)
        await self._report(head)
        logger.debug("Reported possession of %s", head)
        if next_up is not None and next_up != head:
            await self.ensure(next_up)
            logger.debug("Prefetched %s", next_up)

    async def reassert(self, head: str) -> None:
        """Report possession of a head that is already stored locally."""
        if not self.holds(head):
            return
        logger.debug("Re-asserting possession of %s", head)
        await self._report(head)

    async def ensure(self, track_id: str) -> Path:
        """Return the local path of a track, downloading and storing it when missing."""
        self._check_enabled()
        loop = asyncio.get_running_loop()
        path = await self._run_store(loop, self._store.get_path, track_id)
        if path is None:
            try:
                data = await self._fetch(track_id)
            except TrackFetchError:
                self._notice("Network error while fetching audio")
                raise
            path = await self._run_store(loop, self._store.put, track_id, data)
            logger.info("Cached track %s (%d bytes)", track_id, len(data))
        self._held[track_id] = path
        return path

    async def evict(self, keep: Iterable[str | None]) -> list[str]:
        """Delete every stored track not in ``keep``, returning the ids."""
        self._check_enabled()
        protected = {track_id for track_id in keep if track_id is not None}
        loop = asyncio.get_running_loop()
        evicted = []
        for track_id in await self._run_store(loop, self._store.keys):
            if track_id in protected:
                continue
            await self._run_store(loop, self._store.delete, track_id)
            self._held.pop(track_id, None)
            evicted.append(track_id)
        if evicted:
            logger.debug("Evicted %s", ", ".join(evicted))
        return evicted

    def _check_enabled(self) -> None:
        if self._disabled:
            raise CacheStorageError("Caching is disabled after a storage failure")

    async def _run_store(
        self, loop: asyncio.AbstractEventLoop, func: Callable[..., _T], *args: object
    ) -> _T:
        try:
            return await loop.run_in_executor(None, func, *args)
        except CacheStorageError:
            logger.exception("Track cache failed, caching disabled")
            self._disabled = True
            self._notice("Local storage failed, caching disabled")
            raise

    def _notice(self, message: str) -> None:
        if self._on_notice is None:
            return
        try:
            self._on_notice(message)
        except Exception:
            logger.exception("Error in notice callback %s", self._on_notice)
