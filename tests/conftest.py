"""
Pytest configuration for smppeer tests.

Async code is driven with asyncio.run() inside plain test functions.
"""
import logging

import pytest

from doubles import MockPeerLink


@pytest.fixture(autouse=True)
def reset_mock_peers():
    """Each test starts with an empty in-memory peer server."""
    MockPeerLink.reset()
    yield
    MockPeerLink.reset()


@pytest.fixture(autouse=True)
def quiet_smppeer_logger():
    """SMPPeer may raise the library log level; put it back afterwards."""
    logger = logging.getLogger("smppeer")
    level = logger.level
    yield
    logger.setLevel(level)
