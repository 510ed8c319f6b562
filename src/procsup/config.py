"""
Pool Configuration

Builds a validated PoolConfig from keyword options and environment
defaults.
"""

import os
import sys
from typing import Any, Dict, Mapping, Optional

from procsup.data import ConfigurationError, PoolConfig, ReadyMode

# Environment variable selecting production defaults
ENV_MODE = "PROCSUP_ENV"

PRODUCTION_TIMEOUT = 3600.0
DEVELOPMENT_TIMEOUT = 1.0
DEFAULT_RESPAWN = 1.0

_KNOWN_OPTIONS = frozenset({
    "workers", "timeout", "respawn", "backoff", "ready_when", "readyWhen",
    "args", "log", "loose", "executable", "env",
})


def is_production(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(ENV_MODE, "").lower() == "production"


def default_timeout(environ: Optional[Mapping[str, str]] = None) -> float:
    return PRODUCTION_TIMEOUT if is_production(environ) else DEVELOPMENT_TIMEOUT


def _number(name: str, value: Any, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"Option '{name}' must be a number, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"Option '{name}' must be >= {minimum}, got {value!r}")
    return float(value)


def _ready_mode(value: Any) -> ReadyMode:
    if isinstance(value, ReadyMode):
        return value
    try:
        return ReadyMode(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in ReadyMode)
        raise ConfigurationError(f"Option 'ready_when' must be one of {choices}, got {value!r}") from None


def build_config(
    options: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PoolConfig:
    """
    Build a PoolConfig from user options.

    :param options: Keyword options (workers, timeout, respawn, backoff,
        ready_when/readyWhen, args, log, loose, executable, env)
    :param environ: Environment used for defaults, os.environ if omitted
    :returns: Frozen, validated PoolConfig
    :raises ConfigurationError: On unknown options or invalid values
    """
    options = dict(options or {})

    unknown = set(options) - _KNOWN_OPTIONS
    if unknown:
        raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    workers = options.get("workers") or os.cpu_count() or 1
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        raise ConfigurationError(f"Option 'workers' must be a positive integer, got {workers!r}")

    timeout = options.get("timeout")
    timeout = default_timeout(environ) if timeout is None else _number("timeout", timeout)

    respawn = options.get("respawn")
    respawn = DEFAULT_RESPAWN if not respawn else _number("respawn", respawn)

    backoff = options.get("backoff")
    if backoff is not None:
        backoff = _number("backoff", backoff) or None

    ready_when = options.get("ready_when", options.get("readyWhen", ReadyMode.LISTENING))

    args = options.get("args") or ()
    if isinstance(args, str):
        raise ConfigurationError("Option 'args' must be a sequence of strings, not a string")

    env = options.get("env") or {}
    if not isinstance(env, Mapping):
        raise ConfigurationError(f"Option 'env' must be a mapping, got {env!r}")

    return PoolConfig(
        workers=workers,
        timeout=timeout,
        respawn=respawn,
        backoff=backoff,
        ready_when=_ready_mode(ready_when),
        args=tuple(str(a) for a in args),
        log=bool(options.get("log", True)),
        loose=bool(options.get("loose", False)),
        executable=options.get("executable") or sys.executable,
        env={str(k): str(v) for k, v in env.items()},
    )
