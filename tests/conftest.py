"""Pytest fixtures for evoloop tests."""

from __future__ import annotations

import logging
import random
from collections.abc import Generator, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import structlog

from evoloop.core.types import EntitySnapshot

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


class FakeClock:
    """Manually advanced clock, callable like utc_now()."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class StaticProvider:
    """Snapshot provider whose output the test sets directly."""

    def __init__(self) -> None:
        self.snapshots: list[EntitySnapshot] = []
        self.state: dict[str, Any] = {}
        self.fail_with: Exception | None = None
        self.calls = 0

    def set(self, entity_id: str, **metrics: float) -> None:
        """Replace the snapshot for one entity, keeping the others."""
        self.snapshots = [s for s in self.snapshots if s.entity_id != entity_id]
        self.snapshots.append(EntitySnapshot(entity_id=entity_id, metrics=dict(metrics)))

    def current_patterns(self) -> Sequence[EntitySnapshot]:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.snapshots)

    def current_state(self) -> Mapping[str, Any]:
        return dict(self.state)


class CapturingHandler(logging.Handler):
    """Collects formatted log messages from the root logger."""

    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> StaticProvider:
    return StaticProvider()


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source so stochastic components are reproducible."""
    return random.Random(42)


@pytest.fixture
def log_capture() -> CapturingHandler:
    """Unattached capture handler; add it to the root logger after configuring."""
    return CapturingHandler()
