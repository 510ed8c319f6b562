"""
Worker-side Control Client

Helpers for programs running under a procsup Supervisor. Works under any
AnyIO backend (asyncio or trio).

Example:
    from procsup import child

    async def main():
        async with child.connect() as control:
            server = await start_my_server()
            await control.listening(server.address)
            await control.wait_disconnect()
            await server.close()

    anyio.run(main)
"""

import json
import os
import socket
from typing import Any, Mapping, Optional

import anyio

from procsup.data import (
    CMD_DISCONNECT, CMD_LISTENING, CMD_READY, ENV_CONTROL_FD, ENV_WORKER_ID,
    ConfigurationError, ControlMessage, ControlSendFailure,
)


def worker_id(environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    """Slot index of this worker, or None when not running under a supervisor."""
    environ = os.environ if environ is None else environ
    raw = environ.get(ENV_WORKER_ID)
    return int(raw) if raw is not None else None


class ControlClient:
    """Worker end of the control channel."""

    def __init__(self, sock: socket.socket):
        sock.setblocking(True)
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._closed = False
        self._send_lock = anyio.Lock()
        self.disconnect_requested = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ControlClient":
        environ = os.environ if environ is None else environ
        raw = environ.get(ENV_CONTROL_FD)
        if raw is None:
            raise ConfigurationError(f"{ENV_CONTROL_FD} is not set; not running under a supervisor")
        return cls(socket.socket(fileno=int(raw)))

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, payload: ControlMessage) -> None:
        """
        Send one message to the supervisor.

        :raises ControlSendFailure: If the channel is closed
        """
        if self._closed:
            raise ControlSendFailure("Control channel is closed")
        data = json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"
        async with self._send_lock:
            try:
                await anyio.to_thread.run_sync(self._sock.sendall, data)
            except OSError as e:
                raise ControlSendFailure(str(e)) from e

    async def ready(self) -> None:
        await self.send({"cmd": CMD_READY})

    async def listening(self, address: Any) -> None:
        if isinstance(address, tuple):
            address = list(address)
        await self.send({"cmd": CMD_LISTENING, "address": address})

    async def disconnect(self) -> None:
        """Report this worker as unusable; the supervisor replaces and drains it."""
        await self.send({"cmd": CMD_DISCONNECT})

    async def receive(self) -> Optional[ControlMessage]:
        """Next message from the supervisor, or None once the channel closed."""
        while not self._closed:
            try:
                line = await anyio.to_thread.run_sync(self._reader.readline, abandon_on_cancel=True)
            except (OSError, ValueError):
                return None
            if not line:
                return None
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            if isinstance(payload, dict):
                return payload
        return None

    async def wait_disconnect(self) -> None:
        """Block until the supervisor asks this worker to exit or the channel closes."""
        while True:
            payload = await self.receive()
            if payload is None or payload.get("cmd") == CMD_DISCONNECT:
                self.disconnect_requested = True
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # shutdown() wakes a reader thread still blocked in recv.
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._reader.close()
        self._sock.close()

    async def __aenter__(self) -> "ControlClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


def connect(environ: Optional[Mapping[str, str]] = None) -> ControlClient:
    """Open the control channel inherited from the supervisor."""
    return ControlClient.from_env(environ)
