"""
Worker

An owned handle on one supervised child process plus its observed state.
Only the Supervisor mutates a Worker.
"""

import asyncio
from typing import Any, Optional

from procsup.channel import ControlChannel
from procsup.data import ControlMessage, WorkerState
from procsup.platform import TERMINATOR


class Worker:
    """
    One supervised OS process.

    Attributes:
        id: Unique id within the owning supervisor
        slot: Logical position 0..N-1, reused by replacements
        generation: Generation the worker belongs to
        state: Observed lifecycle state
        replaced: Set once the worker is being retired or replaced
        address: Endpoint reported by the listening signal
        exit_code: Process return code once exited
    """

    def __init__(self, id: int, slot: int, generation: int, channel: ControlChannel):
        self.id = id
        self.slot = slot
        self.generation = generation
        self.channel = channel
        self.process: Optional[asyncio.subprocess.Process] = None
        self.state = WorkerState.SPAWNING
        self.replaced = False
        self.disconnected = False
        self.address: Any = None
        self.exit_code: Optional[int] = None
        self.kill_timer: Optional[asyncio.Handle] = None
        self.reader: Optional[asyncio.Task] = None
        self.waiter: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def is_alive(self) -> bool:
        return self.state is not WorkerState.EXITED

    def mark_replaced(self) -> bool:
        """Set `replaced`; returns True only on the first call."""
        if self.replaced:
            return False
        self.replaced = True
        return True

    def send(self, payload: ControlMessage) -> None:
        self.channel.send(payload)

    def kill(self) -> bool:
        if self.process is None:
            return False
        return TERMINATOR.force(self.process)

    def stop_reading(self) -> None:
        """Stop forwarding control messages; the exit waiter keeps running."""
        if self.reader is not None and not self.reader.done():
            self.reader.cancel()

    def cancel_kill_timer(self) -> None:
        if self.kill_timer is not None:
            self.kill_timer.cancel()
            self.kill_timer = None

    def __repr__(self) -> str:
        return (
            f"<Worker id={self.id} slot={self.slot} gen={self.generation} "
            f"pid={self.pid} state={self.state.value} replaced={self.replaced}>"
        )
