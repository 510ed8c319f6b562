"""
Timer Set

A cancelable group of one-shot deferred actions backed by asyncio timer
handles.
"""

import asyncio
import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class TimerSet:
    """Tracks pending asyncio timer handles so they can be cancelled together."""

    def __init__(self) -> None:
        self._handles: List[asyncio.TimerHandle] = []

    def add(self, handle: asyncio.TimerHandle) -> None:
        self._handles.append(handle)

    def done(self, handle: asyncio.TimerHandle) -> None:
        """Forget a handle without cancelling it (it fired normally)."""
        try:
            self._handles.remove(handle)
        except ValueError:
            pass

    def cancel_all(self) -> None:
        """Cancel and forget every pending handle."""
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
        if handles:
            logger.debug(f"Cancelled {len(handles)} pending timer(s)")

    def call_later(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
    ) -> asyncio.TimerHandle:
        """
        Schedule `callback(*args)` after `delay` seconds and track it.

        The handle removes itself from the set right before the callback runs.
        """
        handle: asyncio.TimerHandle

        def fire() -> None:
            self.done(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self.add(handle)
        return handle

    def __len__(self) -> int:
        return len(self._handles)
