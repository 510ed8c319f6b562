# tests/test_helpers/process_utils.py
"""
Process test utilities.

Helpers to locate the worker programs under tests/workers and to wait for
asynchronous pool state without sprinkling fixed sleeps over the tests.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

from procsup import Supervisor, WorkerState

WORKERS_DIR = Path(__file__).resolve().parent.parent / "workers"


def worker_path(name: str) -> str:
    """Absolute path of a test worker program."""
    return str(WORKERS_DIR / name)


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
    """
    Poll `predicate` until it holds.

    Example:
        await wait_for(lambda: len(sup.workers()) == 2)
    """
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def wait_ready(sup: Supervisor, count: int, timeout: float = 5.0) -> None:
    await wait_for(lambda: len(sup.active_workers()) >= count, timeout=timeout)


async def wait_states(sup: Supervisor, state: WorkerState, count: int, timeout: float = 5.0) -> None:
    await wait_for(lambda: sum(1 for w in sup.workers() if w.state is state) >= count, timeout=timeout)


class EventRecorder:
    """Records every public event of a supervisor in arrival order."""

    EVENTS = ("online", "listening", "ready", "message", "disconnect", "exit", "respawn", "stopped", "no-ready", "error")

    def __init__(self, sup: Supervisor):
        self.log: List[Tuple[str, Tuple[Any, ...], float]] = []
        for event in self.EVENTS:
            sup.on(event, self._recorder(event))

    def _recorder(self, event: str) -> Callable[..., None]:
        def record(*args: Any) -> None:
            self.log.append((event, args, time.monotonic()))
        return record

    def of(self, event: str) -> List[Tuple[Any, ...]]:
        return [args for name, args, _ in self.log if name == event]

    def count(self, event: str) -> int:
        return len(self.of(event))

    def payloads(self, cmd: str) -> List[Dict[str, Any]]:
        return [args[1] for args in self.of("message") if args[1].get("cmd") == cmd]
