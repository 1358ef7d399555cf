"""Shared fixtures for the Cadence test-suite."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest


@pytest.fixture(autouse=True)
def _reset_cadence_logger() -> Iterator[None]:
    """Undo CLI logging setup so later tests can use caplog."""
    yield
    logger = logging.getLogger("cadence")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
