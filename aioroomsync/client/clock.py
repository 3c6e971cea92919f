"""Estimation of the server wall clock from round-trip measurements."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass

WINDOW_SIZE = 20
FILL_INTERVAL_S = 0.001
STEADY_INTERVAL_S = 5.0

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClockSample:
    """One measurement of the clock offset."""

    offset: float
    """Estimated ``server - local`` wall clock difference in seconds."""
    rtl: float
    """Round-trip latency of the measurement in seconds."""


def combine_samples(samples: Sequence[ClockSample]) -> tuple[ClockSample, list[float]]:
    """
    Reduce a window of samples to a single best-effort sample.

    Latency variance dominates the error of a sample, so samples are combined
    pairwise with weights inversely proportional to their round-trip latency.
    They are folded from the highest to the lowest latency, which makes the
    most trustworthy sample the last one folded in, with a weight of at least
    one half.

    Returns the combined sample and the effective weight of each input sample,
    in input order.
    """
    if not samples:
        raise ValueError("Need at least one sample")
    order = sorted(range(len(samples)), key=lambda i: samples[i].rtl, reverse=True)
    weights = [0.0] * len(samples)
    first = order[0]
    weights[first] = 1.0
    acc = ClockSample(offset=samples[first].offset, rtl=samples[first].rtl)
    for i in order[1:]:
        current = samples[i]
        total = acc.rtl + current.rtl
        weight_acc = current.rtl / total if total > 0 else 0.5
        weight_current = 1.0 - weight_acc
        for j in order:
            if j == i:
                break
            weights[j] *= weight_acc
        weights[i] = weight_current
        acc = ClockSample(
            offset=weight_acc * acc.offset + weight_current * current.offset,
            rtl=weight_acc * acc.rtl + weight_current * current.rtl,
        )
    return acc, weights


class ClockSyncEstimator:
    """
    Keeps a rolling estimate of the server wall clock.

    The server only echoes its own clock; the delay is assumed to be symmetric
    so the server time at reception is the reported time plus half the round
    trip. Until the window is full samples are taken back to back to converge
    quickly, afterwards on a steady period to follow drift cheaply.
    """

    def __init__(
        self,
        measure: Callable[[], Awaitable[float]],
        *,
        window_size: int = WINDOW_SIZE,
        steady_interval: float = STEADY_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the estimator.

        Args:
            measure: Coroutine function returning the server's wall clock reading.
            window_size: Number of samples the estimate is based on.
            steady_interval: Seconds between samples once the window is full.
            clock: Local wall clock.
        """
        if window_size < 1:
            raise ValueError("window_size must be positive")
        self._measure = measure
        self._window_size = window_size
        self._steady_interval = steady_interval
        self._clock = clock
        self._samples: deque[ClockSample] = deque(maxlen=window_size)
        self._task: asyncio.Task[None] | None = None

    @property
    def ready(self) -> bool:
        """Return True once the window is full."""
        return len(self._samples) >= self._window_size

    @property
    def samples(self) -> list[ClockSample]:
        """The samples currently in the window, oldest first."""
        return list(self._samples)

    def reset(self) -> None:
        """Forget every sample."""
        self._samples.clear()

    def add_sample(
        self, send_time: float, reported_server_time: float, receive_time: float
    ) -> ClockSample:
        """Record one round trip to the time endpoint."""
        rtl = max(0.0, receive_time - send_time)
        server_time_now = reported_server_time + rtl / 2
        sample = ClockSample(offset=server_time_now - receive_time, rtl=rtl)
        self._samples.append(sample)
        return sample

    def best_sample(self) -> ClockSample | None:
        """Return the combined sample, or None until the window is full."""
        if not self.ready:
            return None
        return combine_samples(self._samples)[0]

    def server_wall_time_estimate(self) -> float | None:
        """Return the estimated current server wall time, or None while unavailable."""
        best = self.best_sample()
        if best is None:
            return None
        return self._clock() + best.offset

    def diagnose(self) -> str:
        """Return a human readable summary of the observed latency."""
        if not self.ready:
            return f"measuring {len(self._samples)} / {self._window_size}"
        rtls = [sample.rtl for sample in self._samples]
        return f"{round(min(rtls) * 1000)} ~ {round(max(rtls) * 1000)} ms"

    async def sample_once(self) -> ClockSample:
        """Measure one round trip."""
        send_time = self._clock()
        reported = await self._measure()
        receive_time = self._clock()
        return self.add_sample(send_time, reported, receive_time)

    def start(self) -> None:
        """Start sampling in the background. Does nothing if already running."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop sampling."""
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _sync_loop(self) -> None:
        while True:
            try:
                await self.sample_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Clock sample failed, retrying in %.1fs", self._steady_interval, exc_info=True
                )
                await asyncio.sleep(self._steady_interval)
                continue
            if not self.ready:
                await asyncio.sleep(FILL_INTERVAL_S)
            else:
                logger.debug("Clock sync RTL: %s", self.diagnose())
                await asyncio.sleep(self._steady_interval)
