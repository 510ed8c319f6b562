import logging

import pytest


# Configure anyio-marked tests to run with the asyncio backend only
@pytest.fixture
def anyio_backend():
    return 'asyncio'


@pytest.fixture(autouse=True)
def supervisor_debug_logging(caplog):
    """Capture supervisor lifecycle tracing for failing tests."""
    caplog.set_level(logging.DEBUG, logger="procsup")
    yield
