"""Test doubles shared by the test modules."""

from __future__ import annotations

from aioroomsync.models.state import ClientPresence, RoomState


class FakeClock:
    """A wall clock that only moves when told to."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePlayer:
    """Records the commands of the convergence controller."""

    def __init__(self, position: float = 0.0) -> None:
        self.position = position
        self.rate = 1.0
        self.playing = False
        self.calls: list[tuple[str, float | None]] = []

    def play(self) -> None:
        self.playing = True
        self.calls.append(("play", None))

    def pause(self) -> None:
        self.playing = False
        self.calls.append(("pause", None))

    def seek(self, position: float) -> None:
        self.position = position
        self.calls.append(("seek", position))

    def set_rate(self, rate: float) -> None:
        self.rate = rate
        self.calls.append(("set_rate", rate))


def join(state: RoomState, participant: str, now: float, *, ack: str | None = None) -> None:
    """Add a connected participant with a fresh heartbeat."""
    state.clients[participant] = ClientPresence(
        last_heartbeat=now, connected=True, acknowledged_head=ack
    )
