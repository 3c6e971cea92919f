"""Shared fixtures for the room synchronization tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from aioroomsync.models.messages import TrackInfo
from aioroomsync.models.state import RoomState, new_room_state
from aioroomsync.server.tracks import track_id_for

from helpers import FakeClock

TRACK_NAMES = ["01 intro.mp3", "02 song.mp3", "03 ballad.mp3", "04 outro.mp3", "05 bonus.mp3"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audio_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "audio"
    directory.mkdir()
    for pos, name in enumerate(TRACK_NAMES):
        (directory / name).write_bytes(f"audio-{pos}".encode() * 100)
    return directory


@pytest.fixture
def index(audio_dir: Path) -> list[TrackInfo]:
    return [
        TrackInfo(
            track_id=track_id_for(name),
            file_name=name,
            size=(audio_dir / name).stat().st_size,
            mime="audio/mpeg",
            title=name[3:-4],
        )
        for name in TRACK_NAMES
    ]


@pytest.fixture
def track_ids(index: list[TrackInfo]) -> list[str]:
    return [track.track_id for track in index]


@pytest.fixture
def room_state(track_ids: list[str]) -> RoomState:
    return new_room_state(track_ids)
