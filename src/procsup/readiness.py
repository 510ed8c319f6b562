"""
Readiness Tracker

Normalizes the configured liveness signal (process started, endpoint bound,
or an explicit {"cmd": "ready"} message) into a single ready notification.
"""

import logging
from typing import Any, Callable, Optional, TYPE_CHECKING

from procsup.data import CMD_READY, ReadyMode, WorkerState

if TYPE_CHECKING:
    from procsup.worker import Worker

logger = logging.getLogger(__name__)

ReadyCallback = Callable[["Worker", Any], None]


class ReadinessTracker:
    """Maps exactly one underlying signal to `on_ready(worker, payload)`."""

    def __init__(self, mode: ReadyMode, on_ready: ReadyCallback):
        self.mode = mode
        self._on_ready = on_ready

    def online(self, worker: "Worker") -> None:
        if self.mode is ReadyMode.STARTED:
            self._mark(worker, None)
        elif worker.state in (WorkerState.SPAWNING, WorkerState.ONLINE):
            worker.state = WorkerState.AWAITING_READINESS

    def listening(self, worker: "Worker", address: Any) -> None:
        if self.mode is ReadyMode.LISTENING:
            self._mark(worker, address)

    def message(self, worker: "Worker", payload: Any) -> None:
        if self.mode is not ReadyMode.READY:
            return
        if isinstance(payload, dict) and payload.get("cmd") == CMD_READY:
            self._mark(worker, payload)

    def _mark(self, worker: "Worker", payload: Optional[Any]) -> None:
        # Late or duplicate signals must not resurrect a retiring worker.
        if worker.state not in (WorkerState.SPAWNING, WorkerState.ONLINE, WorkerState.AWAITING_READINESS):
            logger.debug(f"Ignoring readiness of worker {worker.id} in state {worker.state.value}")
            return
        worker.state = WorkerState.READY
        logger.debug(f"Worker {worker.id} (slot {worker.slot}) is ready via {self.mode.value}")
        self._on_ready(worker, payload)
