"""
Backoff Scheduler

Pool-wide pacing of worker spawns. Consecutive spawns are separated by at
least the current interval; when a backoff cap is configured the interval
doubles on every spawn (up to the cap) and halves again after each quiet
period of cap length, never dropping below the floor.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BackoffScheduler:
    """
    Computes the delay before the next permitted spawn.

    :param respawn: Floor interval in seconds
    :param backoff: Optional cap in seconds; enables growth and decay
    :param loop: Event loop used for the decay timer
    :param clock: Monotonic clock, loop.time() by default
    """

    def __init__(
        self,
        respawn: float,
        backoff: Optional[float] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.floor = respawn
        self.cap = backoff
        self._loop = loop
        self._clock = clock or (loop.time if loop is not None else time.monotonic)
        self._interval = respawn
        self._last_spawn = self._clock()
        self._decay_timer: Optional[asyncio.TimerHandle] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def last_spawn(self) -> float:
        return self._last_spawn

    @property
    def decay_pending(self) -> bool:
        return self._decay_timer is not None

    def next_delay(self, now: Optional[float] = None) -> float:
        """
        Reserve the next spawn slot.

        :param now: Current clock value, read from the clock if omitted
        :returns: Seconds to wait before spawning
        """
        if now is None:
            now = self._clock()

        if self.cap:
            self._interval = min(self._interval, self.cap)

        next_allowed = max(now, self._last_spawn + self._interval)
        delay = next_allowed - now
        self._last_spawn = next_allowed

        # Exponential backoff.
        if self.cap:
            self._interval *= 2
            self._arm_decay()

        return delay

    def _arm_decay(self) -> None:
        if self._loop is None:
            return
        if self._decay_timer is not None:
            self._decay_timer.cancel()
        self._decay_timer = self._loop.call_later(self.cap, self._decay)

    def _decay(self) -> None:
        self._decay_timer = None
        self._interval /= 2
        if self._interval <= self.floor:
            self._interval = self.floor
        else:
            self._arm_decay()
        logger.debug(f"Respawn interval decayed to {self._interval:.3f}s")

    def close(self) -> None:
        """Cancel the pending decay timer, if any."""
        if self._decay_timer is not None:
            self._decay_timer.cancel()
            self._decay_timer = None
