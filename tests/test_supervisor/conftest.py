"""
Conftest for supervisor tests.
"""
import asyncio

import pytest_asyncio

from procsup import RunMode, Supervisor
from tests.test_helpers.process_utils import wait_for, worker_path


@pytest_asyncio.fixture
async def make_supervisor():
    """
    Factory for supervisors running a program from tests/workers.

    Defaults keep the tests fast: two workers, short respawn floor and drain
    timeout, respawn logging off. Every supervisor still running at teardown
    is terminated.
    """
    created = []

    def factory(worker: str = "server.py", **options) -> Supervisor:
        options.setdefault("workers", 2)
        options.setdefault("respawn", 0.1)
        options.setdefault("timeout", 1)
        options.setdefault("log", False)
        sup = Supervisor(worker_path(worker), **options)
        created.append(sup)
        return sup

    yield factory

    for sup in created:
        if sup.is_running:
            await asyncio.wait_for(sup.terminate(), 5)
        elif sup.is_stopping:
            await wait_for(lambda: sup.mode is RunMode.STOPPED, timeout=5)
