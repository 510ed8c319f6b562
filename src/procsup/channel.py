"""
Control Channel

Supervisor side of a worker's private bidirectional control channel:
newline-delimited JSON objects over one end of a socketpair. The other end
is inherited by the worker process and announced through
PROCSUP_CONTROL_FD.
"""

import asyncio
import json
import logging
import socket
from typing import AsyncIterator, Optional

from procsup.data import ControlMessage, ControlSendFailure

logger = logging.getLogger(__name__)

# Largest single control message accepted from a worker
MAX_MESSAGE_SIZE = 1024 * 1024


def encode(payload: ControlMessage) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"


def decode(line: bytes) -> Optional[ControlMessage]:
    """Decode one line; returns None for blank or malformed lines."""
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except ValueError:
        logger.warning(f"Dropping malformed control message: {line[:80]!r}")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"Dropping non-object control message: {payload!r}")
        return None
    return payload


class ControlChannel:
    """
    Owns the supervisor end of a socketpair.

    Lifecycle: create() before spawning, open() once the child has been
    started, release_child() after the child inherited its end, close() on
    drain or exit.
    """

    def __init__(self, parent: socket.socket, child: socket.socket):
        self._parent = parent
        self._child: Optional[socket.socket] = child
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._closed = False

    @classmethod
    def create(cls) -> "ControlChannel":
        parent, child = socket.socketpair()
        child.set_inheritable(True)
        return cls(parent, child)

    @property
    def child_fd(self) -> int:
        if self._child is None:
            raise ControlSendFailure("Child end of the control channel was already released")
        return self._child.fileno()

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(
            sock=self._parent, limit=MAX_MESSAGE_SIZE
        )

    def release_child(self) -> None:
        """Close the parent's copy of the child end."""
        if self._child is not None:
            self._child.close()
            self._child = None

    def send(self, payload: ControlMessage) -> None:
        """
        Write one message to the worker.

        :raises ControlSendFailure: If the channel is closed
        """
        if self._closed or self._writer is None or self._writer.is_closing():
            raise ControlSendFailure(f"Control channel closed, cannot send {payload!r}")
        try:
            self._writer.write(encode(payload))
        except (OSError, RuntimeError) as e:
            raise ControlSendFailure(str(e)) from e

    async def messages(self) -> AsyncIterator[ControlMessage]:
        """Yield messages from the worker until the channel closes."""
        if self._reader is None:
            return
        while True:
            try:
                line = await self._reader.readline()
            except (ConnectionError, asyncio.LimitOverrunError, ValueError) as e:
                logger.warning(f"Control channel read failed: {e}")
                return
            if not line:
                return
            payload = decode(line)
            if payload is not None:
                yield payload

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.release_child()
        if self._writer is not None:
            self._writer.close()
        else:
            self._parent.close()
