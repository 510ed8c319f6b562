"""
procsup

A worker-pool supervisor for long-running network services: keeps N
worker processes alive with paced, exponentially backed-off respawns and
rolls the pool over to new code without downtime.
"""

from .data import (
    PoolConfig,
    RunMode,
    WorkerState,
    ReadyMode,
    ProcsupError,
    ConfigurationError,
    InvalidStateTransition,
    SpawnFailure,
    ControlSendFailure,
)
from .config import build_config
from .timers import TimerSet
from .backoff import BackoffScheduler
from .readiness import ReadinessTracker
from .worker import Worker
from .supervisor import Supervisor

__all__ = [
    # Control plane
    'Supervisor',
    'Worker',

    # Components
    'TimerSet',
    'BackoffScheduler',
    'ReadinessTracker',

    # Configuration
    'PoolConfig',
    'build_config',
    'RunMode',
    'WorkerState',
    'ReadyMode',

    # Errors
    'ProcsupError',
    'ConfigurationError',
    'InvalidStateTransition',
    'SpawnFailure',
    'ControlSendFailure',
]
