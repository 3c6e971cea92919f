"""Tests of the reference track index."""

from __future__ import annotations

from pathlib import Path

from aioroomsync.server.tracks import build_track_index, track_id_for


def test_track_id_depends_only_on_file_name():
    assert track_id_for("a") == "t2p"
    assert track_id_for("01 intro.mp3") == track_id_for("01 intro.mp3")
    assert track_id_for("01 intro.mp3") != track_id_for("02 intro.mp3")


def test_index_in_natural_order(tmp_path: Path):
    for name in ("10 last.mp3", "2 second.mp3", "1 first.mp3", "notes.txt"):
        (tmp_path / name).write_bytes(b"not really audio")

    index = build_track_index(tmp_path)

    assert [track.file_name for track in index] == ["1 first.mp3", "2 second.mp3", "10 last.mp3"]
    first = index[0]
    assert first.track_id == track_id_for("1 first.mp3")
    assert first.size == len(b"not really audio")
    assert first.mime == "audio/mpeg"
    # Unreadable files fall back to their file name
    assert first.title == "1 first"
    assert first.duration == 0.0


def test_missing_directory_gives_empty_index(tmp_path: Path):
    assert build_track_index(tmp_path / "missing") == []
