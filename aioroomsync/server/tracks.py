"""Reference track index built from an audio directory."""

from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path

import av
from av.error import FFmpegError

from aioroomsync.models.messages import TrackInfo

SUPPORTED_EXTENSIONS = frozenset(
    {".mp3", ".m4a", ".aac", ".flac", ".ogg", ".wav", ".opus", ".mp4", ".m4b"}
)

logger = logging.getLogger(__name__)


def track_id_for(file_name: str) -> str:
    """Return a stable id derived from the file name only."""
    h = 0
    for char in file_name:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return "t" + _to_base36(h)


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def _natural_key(name: str) -> list[int | str]:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def _probe(path: Path) -> tuple[float, dict[str, str]]:
    """Read duration and tags from the container header."""
    try:
        with av.open(str(path)) as container:
            duration = container.duration / av.time_base if container.duration else 0.0
            return round(duration, 3), dict(container.metadata)
    except (FFmpegError, OSError) as err:
        logger.debug("Could not probe %s: %s", path, err)
        return 0.0, {}


def build_track_index(audio_dir: Path) -> list[TrackInfo]:
    """Scan a directory for supported audio files, in natural file name order."""
    if not audio_dir.is_dir():
        logger.warning("Audio directory %s does not exist, track index is empty", audio_dir)
        return []
    files = sorted(
        (
            p
            for p in audio_dir.iterdir()
            if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
        ),
        key=lambda p: _natural_key(p.name),
    )
    index = []
    for path in files:
        duration, tags = _probe(path)
        index.append(
            TrackInfo(
                track_id=track_id_for(path.name),
                file_name=path.name,
                size=path.stat().st_size,
                mime=mimetypes.guess_type(path.name)[0] or "application/octet-stream",
                duration=duration,
                title=tags.get("title") or path.stem,
                artist=tags.get("artist") or "Unknown",
                album=tags.get("album") or "",
            )
        )
    logger.info("Indexed %d track(s) in %s", len(index), audio_dir)
    return index
