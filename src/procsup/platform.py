"""
Process Termination

A single abstraction over OS process termination exposing a graceful
signal and a forceful kill. The implementation is chosen once, at import
time, from the platform.
"""

import logging
import signal
import sys
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class ProcessTerminator(ABC):
    """Graceful and forceful termination of a child process."""

    @abstractmethod
    def graceful(self, process: Any) -> bool:
        """
        Ask the process to exit.

        :param process: asyncio.subprocess.Process (or compatible) handle
        :returns: True if the signal was delivered, False if the process is gone
        """
        pass

    @abstractmethod
    def force(self, process: Any) -> bool:
        """
        Kill the process with the strongest available mechanism.

        :param process: asyncio.subprocess.Process (or compatible) handle
        :returns: True if the kill was delivered, False if the process is gone
        """
        pass

    @staticmethod
    def _deliver(process: Any, action: str, *args: Any) -> bool:
        if process.returncode is not None:
            return False
        try:
            getattr(process, action)(*args)
            return True
        except ProcessLookupError:
            logger.debug(f"Process {process.pid} already gone, {action} skipped")
            return False


class PosixTerminator(ProcessTerminator):
    """SIGTERM for graceful exit, SIGKILL to force."""

    def graceful(self, process: Any) -> bool:
        return self._deliver(process, "send_signal", signal.SIGTERM)

    def force(self, process: Any) -> bool:
        return self._deliver(process, "send_signal", signal.SIGKILL)


class WindowsTerminator(ProcessTerminator):
    """CTRL_BREAK_EVENT for graceful exit, TerminateProcess to force."""

    def graceful(self, process: Any) -> bool:
        return self._deliver(process, "send_signal", signal.CTRL_BREAK_EVENT)

    def force(self, process: Any) -> bool:
        return self._deliver(process, "kill")


if sys.platform == "win32":
    TERMINATOR: ProcessTerminator = WindowsTerminator()
else:
    TERMINATOR = PosixTerminator()
