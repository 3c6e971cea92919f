"""Tests for the track cache and prefetch manager."""

from __future__ import annotations

from pathlib import Path

import pytest

from aioroomsync.client.cache import BlobStore, CacheManager
from aioroomsync.exceptions import CacheStorageError, TrackFetchError


class Recorder:
    """Fake network and player recording every step in one timeline."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.notices: list[str] = []
        self.unreachable: set[str] = set()

    async def fetch(self, track_id: str) -> bytes:
        self.events.append(("fetch", track_id))
        if track_id in self.unreachable:
            raise TrackFetchError(f"{track_id} unreachable")
        return f"bytes of {track_id}".encode()

    async def report(self, track_id: str) -> None:
        self.events.append(("report", track_id))

    async def load(self, track_id: str, path: Path) -> None:
        assert path.read_bytes() == f"bytes of {track_id}".encode()
        self.events.append(("load", track_id))


class BrokenBlobStore(BlobStore):
    """A store whose disk is full."""

    def put(self, track_id: str, data: bytes) -> Path:
        raise CacheStorageError("No space left on device")


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def store(tmp_path: Path) -> BlobStore:
    store = BlobStore(tmp_path / "cache")
    store.open()
    return store


@pytest.fixture
def manager(store: BlobStore, recorder: Recorder) -> CacheManager:
    return CacheManager(
        store,
        recorder.fetch,
        recorder.report,
        load=recorder.load,
        on_notice=recorder.notices.append,
    )


class TestBlobStore:
    """One file per track, written atomically."""

    def test_put_get_delete(self, store: BlobStore):
        path = store.put("t1", b"data")

        assert store.get_path("t1") == path
        assert path.read_bytes() == b"data"
        assert store.keys() == ["t1"]

        store.delete("t1")
        store.delete("t1")

        assert store.get_path("t1") is None
        assert store.keys() == []

    def test_open_drops_interrupted_writes(self, store: BlobStore):
        (store.directory / "t1.part").write_bytes(b"half")

        store.open()

        assert list(store.directory.iterdir()) == []

    def test_unusable_directory(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")

        with pytest.raises(CacheStorageError):
            BlobStore(blocker / "cache").open()


class TestHeadChange:
    """Ordering of fetch, load, report and prefetch."""

    async def test_head_is_loaded_before_report_then_next_prefetched(self, manager, recorder):
        await manager.on_head_changed("t1", "t2")

        assert recorder.events == [
            ("fetch", "t1"),
            ("load", "t1"),
            ("report", "t1"),
            ("fetch", "t2"),
        ]
        assert manager.holds("t1")
        assert manager.holds("t2")
        assert manager.recent == ["t1"]

    async def test_cached_head_is_not_fetched_again(self, manager, recorder):
        await manager.on_head_changed("t1", "t2")
        recorder.events.clear()

        await manager.on_head_changed("t2", "t3")

        assert recorder.events == [("load", "t2"), ("report", "t2"), ("fetch", "t3")]

    async def test_eviction_keeps_head_next_and_recent(self, manager, store):
        for head, next_up in [("t1", "t2"), ("t2", "t3"), ("t3", "t4"), ("t4", "t5")]:
            await manager.on_head_changed(head, next_up)
        assert manager.recent == ["t2", "t3", "t4"]

        await manager.on_head_changed("t5", "t6")

        assert store.keys() == ["t2", "t3", "t4", "t5", "t6"]
        assert not manager.holds("t1")

    async def test_no_head(self, manager, recorder):
        await manager.on_head_changed(None, None)
        assert recorder.events == []

    async def test_open_picks_up_earlier_sessions(self, store, recorder):
        store.put("t9", b"bytes of t9")
        manager = CacheManager(store, recorder.fetch, recorder.report)

        await manager.open()

        assert manager.holds("t9")


class TestFailures:
    """Network and storage failures."""

    async def test_fetch_failure_raises_and_notifies(self, manager, recorder, store):
        await manager.on_head_changed("t1", None)
        recorder.unreachable.add("t2")
        recorder.events.clear()

        with pytest.raises(TrackFetchError):
            await manager.on_head_changed("t2", "t1")

        assert ("report", "t2") not in recorder.events
        assert recorder.notices == ["Network error while fetching audio"]
        assert store.keys() == ["t1"]
        assert not manager.disabled

    async def test_storage_failure_disables_caching(self, tmp_path: Path, recorder):
        store = BrokenBlobStore(tmp_path / "cache")
        store.open()
        manager = CacheManager(store, recorder.fetch, recorder.report)

        with pytest.raises(CacheStorageError):
            await manager.on_head_changed("t1", "t2")

        assert manager.disabled
        assert ("report", "t1") not in recorder.events
        recorder.events.clear()

        with pytest.raises(CacheStorageError):
            await manager.ensure("t3")
        assert recorder.events == []


class TestReassert:
    """Re-reporting a head the server forgot."""

    async def test_reassert_held_head(self, manager, recorder):
        await manager.on_head_changed("t1", None)
        recorder.events.clear()

        await manager.reassert("t1")

        assert recorder.events == [("report", "t1")]

    async def test_reassert_ignores_missing_head(self, manager, recorder):
        await manager.reassert("t1")
        assert recorder.events == []
