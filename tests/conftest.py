"""Shared fixtures for clifana tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from clifana.logsink import LogRing, RingHandler


@pytest.fixture(autouse=True)
def _restore_clifana_logger() -> Iterator[None]:
    """Undo any handler/level changes a test makes to the ``clifana`` logger."""
    logger = logging.getLogger("clifana")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def ring() -> Iterator[LogRing]:
    """A ring receiving INFO+ from every ``clifana.*`` logger."""
    ring = LogRing(capacity=64)
    handler = RingHandler(ring, level=logging.INFO)
    logger = logging.getLogger("clifana")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield ring
    logger.removeHandler(handler)
