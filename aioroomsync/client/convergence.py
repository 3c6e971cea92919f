"""Steering of local playback towards the room's agreed position."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from aioroomsync.models.state import Armed, OnBarrier, Paused, Playing, PlayState

CLOSE_ENOUGH_S = 0.005
"""Deviations up to this are left alone."""
JUMP_THRESHOLD_S = 0.030
"""Deviations above this are corrected by seeking instead of rate adjustment."""
RATE_ADJUST = 0.01
"""Playback rate deviation used to drift towards the target."""
STEADY_RECHECK_S = 10.0
CLOCK_RETRY_S = 0.5
JUMP_SETTLE_S = 1.0
"""Re-check delay after a seek, giving the player time to resume output."""

logger = logging.getLogger(__name__)


class PlaybackTarget(Protocol):
    """The local player steered by the controller."""

    @property
    def position(self) -> float:
        """Current playback position of the loaded track in seconds."""

    def play(self) -> None:
        """Start or continue playback."""

    def pause(self) -> None:
        """Pause playback, keeping the position."""

    def seek(self, position: float) -> None:
        """Jump to a position in seconds."""

    def set_rate(self, rate: float) -> None:
        """Set the playback rate, 1.0 being normal speed."""


class ConvergenceAction(Enum):
    """The correction taken by one check."""

    HOLD = "hold"
    """Waiting on the barrier, paused with no position change."""
    PAUSE = "pause"
    """Paused at the stored position."""
    WAIT_FOR_CLOCK = "wait_for_clock"
    """No server clock estimate yet."""
    WAIT_FOR_START = "wait_for_start"
    """The synchronized start is still in the future."""
    JUMP = "jump"
    """Seeked to the target."""
    IN_SYNC = "in_sync"
    """Playing at normal rate."""
    NUDGE = "nudge"
    """Playing slightly faster or slower to drift onto the target."""


class PlaybackConvergenceController:
    """
    Keeps local playback aligned with the room's play state.

    Every check cancels the pending re-check before deciding, so there is at
    most one scheduled check at any time. A new play state triggers an
    immediate check.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        player: PlaybackTarget,
        server_time: Callable[[], float | None],
    ) -> None:
        """
        Initialize the controller.

        Args:
            loop: Loop the re-checks are scheduled on.
            player: The local player to steer.
            server_time: Returns the estimated server wall time, None while unknown.
        """
        self._loop = loop
        self._player = player
        self._server_time = server_time
        self._play_state: PlayState | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._delay: float | None = None

    @property
    def play_state(self) -> PlayState | None:
        """The play state the player is steered towards."""
        return self._play_state

    @property
    def pending(self) -> bool:
        """True while a re-check is scheduled."""
        return self._handle is not None and not self._handle.cancelled()

    @property
    def scheduled_delay(self) -> float | None:
        """Delay of the pending re-check in seconds, None if nothing is scheduled."""
        return self._delay if self.pending else None

    def update(self, play_state: PlayState) -> ConvergenceAction | None:
        """Steer towards a new play state."""
        self._play_state = play_state
        return self.check()

    def cancel(self) -> None:
        """Drop the pending re-check."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._delay = None

    def check(self) -> ConvergenceAction | None:
        """Compare local playback with the target and correct it."""
        self.cancel()
        if self._play_state is None:
            return None
        try:
            return self._converge(self._play_state)
        except Exception:
            logger.exception("Playback correction failed, retrying in %.1fs", CLOCK_RETRY_S)
            self._schedule(CLOCK_RETRY_S)
            return None

    def _converge(self, play_state: PlayState) -> ConvergenceAction:
        player = self._player
        match play_state:
            case OnBarrier():
                player.pause()
                return ConvergenceAction.HOLD
            case Paused(position=position):
                player.pause()
                player.seek(position)
                return ConvergenceAction.PAUSE
            case Armed(wall_time_at_song_start=anchor) | Playing(wall_time_at_song_start=anchor):
                pass
            case _:
                raise ValueError(f"Unknown play state {play_state!r}")

        estimate = self._server_time()
        if estimate is None:
            self._schedule(CLOCK_RETRY_S)
            return ConvergenceAction.WAIT_FOR_CLOCK

        target = estimate - anchor
        if target < 0:
            player.pause()
            player.seek(0.0)
            self._schedule(-target)
            return ConvergenceAction.WAIT_FOR_START

        delta = target - player.position
        if abs(delta) > JUMP_THRESHOLD_S:
            logger.debug("Off by %.1f ms, seeking to %.3f", delta * 1000, target)
            player.seek(target)
            player.set_rate(1.0)
            player.play()
            self._schedule(JUMP_SETTLE_S)
            return ConvergenceAction.JUMP
        if abs(delta) <= CLOSE_ENOUGH_S:
            player.set_rate(1.0)
            player.play()
            self._schedule(STEADY_RECHECK_S)
            return ConvergenceAction.IN_SYNC

        rate = 1.0 + RATE_ADJUST if delta > 0 else 1.0 - RATE_ADJUST
        logger.debug("Off by %.1f ms, playing at rate %.2f", delta * 1000, rate)
        player.set_rate(rate)
        player.play()
        self._schedule(abs(delta) / RATE_ADJUST)
        return ConvergenceAction.NUDGE

    def _schedule(self, delay: float) -> None:
        self._delay = delay
        self._handle = self._loop.call_later(delay, self.check)
