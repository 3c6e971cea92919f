"""Rendezvous barrier deciding when a room may start playing its head track."""

from __future__ import annotations

import logging

from aioroomsync.models.state import Armed, ClientPresence, OnBarrier, RoomState

HEARTBEAT_WINDOW_S = 6.0
"""Maximum heartbeat age of a present participant."""
ARM_LEAD_S = 1.2
"""Lead time between arming and the synchronized start."""

logger = logging.getLogger(__name__)


def is_present(presence: ClientPresence, now: float) -> bool:
    """Return True if the participant has a live push connection and a recent heartbeat."""
    return presence.connected and now - presence.last_heartbeat <= HEARTBEAT_WINDOW_S


def present_participants(state: RoomState, now: float) -> list[str]:
    """Return the ids of all present participants, sorted."""
    return sorted(pid for pid, presence in state.clients.items() if is_present(presence, now))


def barrier_satisfied(state: RoomState, now: float) -> bool:
    """
    Return True when every present participant acknowledged the head track.

    Vacuously True when nobody is present, whatever stale acknowledgements are
    still recorded.
    """
    return not waiting_participants(state, now)


def waiting_participants(state: RoomState, now: float) -> list[str]:
    """Return the present participants that have not acknowledged the head track, sorted."""
    return [
        pid
        for pid in present_participants(state, now)
        if state.clients[pid].acknowledged_head != state.head
    ]


def arm_if_ready(state: RoomState, now: float) -> bool:
    """
    Arm a synchronized start if the room waits on a satisfied barrier.

    The anchor lies ARM_LEAD_S in the future so every connected client receives
    the new state before the first frame is due. Operates on the mutation's
    working copy and returns True if the play state changed.
    """
    play_state = state.play_state
    if not isinstance(play_state, OnBarrier) or not barrier_satisfied(state, now):
        return False
    anchor = now + ARM_LEAD_S - play_state.position
    state.play_state = Armed(wall_time_at_song_start=anchor)
    logger.debug(
        "Barrier satisfied, armed start at %.3f (position %.3f)", anchor, play_state.position
    )
    return True
