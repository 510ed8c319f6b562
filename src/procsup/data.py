"""
Pool Data Types

Common data structures, enums and the error taxonomy shared by the
supervisor and its components.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RunMode(Enum):
    """Run mode of a supervisor."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class WorkerState(Enum):
    """Observed state of a supervised worker process."""
    SPAWNING = "spawning"                      # Process is being created
    ONLINE = "online"                          # Process is up
    AWAITING_READINESS = "awaiting_readiness"  # Waiting for the configured readiness signal
    READY = "ready"                            # Fit to serve
    DRAINING = "draining"                      # Asked to exit, force-kill pending
    EXITED = "exited"                          # Process exit observed


class ReadyMode(Enum):
    """Which underlying signal counts as readiness."""
    STARTED = "started"
    LISTENING = "listening"
    READY = "ready"


class ControlEvent(Enum):
    """Internal control events, never exposed to event subscribers."""
    READY = "ready"


@dataclass(frozen=True)
class PoolConfig:
    """
    Immutable configuration of one supervisor instance.

    Attributes:
        workers: Number of worker processes per generation
        timeout: Seconds to wait before force-killing a draining worker (0 = immediately)
        respawn: Minimum seconds between spawns (backoff floor)
        backoff: Optional backoff cap in seconds; enables exponential growth and decay
        ready_when: Readiness signal
        args: Arguments passed to every worker after the target path
        log: Whether respawns are logged
        loose: If True, invalid state transitions are ignored instead of raised
        executable: Interpreter used to run the target
        env: Extra environment variables for every worker
    """
    workers: int
    timeout: float
    respawn: float
    backoff: Optional[float] = None
    ready_when: ReadyMode = ReadyMode.LISTENING
    args: Tuple[str, ...] = ()
    log: bool = True
    loose: bool = False
    executable: str = ""
    env: Dict[str, str] = field(default_factory=dict)


class ProcsupError(Exception):
    """Base exception for supervisor errors."""
    pass


class ConfigurationError(ProcsupError):
    """Raised when a supervisor is constructed with invalid configuration."""
    pass


class InvalidStateTransition(ProcsupError):
    """Raised in strict mode when an operation is not allowed in the current run mode."""

    def __init__(self, operation: str, mode: RunMode):
        self.operation = operation
        self.mode = mode
        super().__init__(f"Cannot {operation} while supervisor is {mode.value}")


class SpawnFailure(ProcsupError):
    """Raised when the OS fails to create a worker process."""

    def __init__(self, slot: int, cause: Optional[BaseException] = None):
        self.slot = slot
        self.cause = cause
        super().__init__(f"Failed to spawn worker for slot {slot}: {cause}")


class ControlSendFailure(ProcsupError):
    """Raised when writing to a closed control channel."""
    pass


# Control-channel command names
CMD_READY = "ready"
CMD_DISCONNECT = "disconnect"
CMD_LISTENING = "listening"

# Environment variables handed to every worker
ENV_WORKER_ID = "WORKER_ID"
ENV_CONTROL_FD = "PROCSUP_CONTROL_FD"

ControlMessage = Dict[str, Any]
