"""
Room operations.

Every function here operates on the working copy handed out by the
RoomStateStore and must only be called from inside a mutation. Functions
returning ``False`` signal that nothing but liveness bookkeeping changed.
"""

from __future__ import annotations

import logging
import random
import secrets
import string
from collections.abc import Sequence

from aioroomsync.exceptions import NotHeadError, ParticipantNotFoundError, TrackNotFoundError
from aioroomsync.models.state import (
    Armed,
    ClientPresence,
    OnBarrier,
    Paused,
    Playing,
    RoomState,
)

from .barrier import ARM_LEAD_S, HEARTBEAT_WINDOW_S, arm_if_ready

ROOM_CODE_LENGTH = 6
EVICT_AFTER_S = 2 * HEARTBEAT_WINDOW_S
"""Participants without heartbeat for this long are removed from the room."""

logger = logging.getLogger(__name__)


def generate_room_code() -> str:
    """Return a short human-shareable room code."""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(ROOM_CODE_LENGTH))


def _set_queue(state: RoomState, queue: list[str]) -> None:
    """Replace the queue, restarting the rendezvous if the head changed."""
    old_head = state.head
    state.queue = queue
    if state.head != old_head:
        # An acknowledgement of the old head must never satisfy the new barrier
        for presence in state.clients.values():
            presence.acknowledged_head = None
        state.play_state = OnBarrier(position=0.0)
        logger.debug("Head changed from %s to %s", old_head, state.head)


# Playback control


def play(state: RoomState, now: float) -> None:
    """Resume from pause by waiting on the barrier."""
    if isinstance(state.play_state, Paused):
        state.play_state = OnBarrier(position=state.play_state.position)
        # Acknowledgements of an unchanged head may already satisfy the barrier
        arm_if_ready(state, now)


def pause(state: RoomState, now: float) -> None:
    """Pause, remembering the current position."""
    match state.play_state:
        case Armed(wall_time_at_song_start=anchor) | Playing(wall_time_at_song_start=anchor):
            state.play_state = Paused(position=max(0.0, now - anchor))
        case OnBarrier(position=position):
            state.play_state = Paused(position=position)


def seek(state: RoomState, now: float, position: float) -> None:
    """Move the playback position of the head track."""
    position = max(0.0, position)
    match state.play_state:
        case Paused():
            state.play_state = Paused(position=position)
        case OnBarrier():
            state.play_state = OnBarrier(position=position)
        case Armed() | Playing():
            state.play_state = Armed(wall_time_at_song_start=now + ARM_LEAD_S - position)


def promote_armed(state: RoomState, anchor: float) -> bool:
    """Switch an armed start to playing once its anchor was reached."""
    play_state = state.play_state
    if not isinstance(play_state, Armed) or play_state.wall_time_at_song_start != anchor:
        return False
    state.play_state = Playing(wall_time_at_song_start=anchor)
    return True


# Queue


def next_track(state: RoomState) -> None:
    """Rotate the queue forward."""
    if state.queue:
        _set_queue(state, state.queue[1:] + state.queue[:1])


def previous_track(state: RoomState) -> None:
    """Rotate the queue backward."""
    if state.queue:
        _set_queue(state, state.queue[-1:] + state.queue[:-1])


def nudge(state: RoomState, track_id: str) -> None:
    """Move a queued track to the next-up position."""
    if track_id not in state.queue:
        raise TrackNotFoundError(f"Track {track_id} is not queued")
    idx = state.queue.index(track_id)
    if idx == 0:
        return
    queue = list(state.queue)
    del queue[idx]
    queue.insert(1, track_id)
    _set_queue(state, queue)


def shuffle(state: RoomState, rng: random.Random | None = None) -> None:
    """Randomly reorder everything behind the head."""
    rest = state.queue[1:]
    (rng or random).shuffle(rest)
    _set_queue(state, state.queue[:1] + rest)


def reset_queue(state: RoomState, index_ids: Sequence[str]) -> None:
    """Restore the natural index order, keeping the current head in front."""
    _set_queue(state, realigned_queue(state.head, index_ids))


def realigned_queue(head: str | None, index_ids: Sequence[str]) -> list[str]:
    """Return the index order rotated so ``head`` stays in front if it still exists."""
    ids = list(index_ids)
    if head is not None and head in ids:
        idx = ids.index(head)
        return ids[idx:] + ids[:idx]
    return ids


# Participants


def report_possession(state: RoomState, participant: str, track_id: str, now: float) -> None:
    """Record that a participant holds the head track and re-evaluate the barrier."""
    presence = state.clients.get(participant)
    if presence is None:
        raise ParticipantNotFoundError(f"Participant {participant} has not joined")
    if track_id != state.head:
        raise NotHeadError(f"Track {track_id} is not the current head")
    presence.acknowledged_head = track_id
    arm_if_ready(state, now)


def heartbeat(state: RoomState, participant: str, now: float) -> bool:
    """
    Refresh a participant's heartbeat and evict stale participants.

    Returns False when only the heartbeat timestamp changed.
    """
    changed = False
    presence = state.clients.get(participant)
    if presence is None:
        state.clients[participant] = ClientPresence(last_heartbeat=now)
        logger.info("Participant %s joined", participant)
        changed = True
    else:
        presence.last_heartbeat = now
    for pid in evict_stale(state, now):
        logger.info("Evicting stale participant %s", pid)
        changed = True
    return changed


def evict_stale(state: RoomState, now: float) -> list[str]:
    """Remove participants without heartbeat for EVICT_AFTER_S, returning their ids."""
    stale = [
        pid
        for pid, presence in state.clients.items()
        if now - presence.last_heartbeat > EVICT_AFTER_S
    ]
    for pid in stale:
        del state.clients[pid]
    return stale


def connect(state: RoomState, participant: str, now: float) -> None:
    """
    Mark a participant as live-connected.

    Opening the push connection counts as a heartbeat, so a participant that
    connected but never pinged is present until its heartbeat goes stale.
    """
    presence = state.clients.get(participant)
    if presence is None:
        state.clients[participant] = ClientPresence(last_heartbeat=now, connected=True)
        logger.info("Participant %s joined", participant)
    else:
        presence.connected = True
        presence.last_heartbeat = now


def disconnect(state: RoomState, participant: str, now: float) -> bool:
    """Clear a participant's live-connection flag and re-evaluate the barrier."""
    presence = state.clients.get(participant)
    if presence is None or not presence.connected:
        return False
    presence.connected = False
    arm_if_ready(state, now)
    return True
