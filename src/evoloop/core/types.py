"""Shared contracts between evoloop components and their collaborators.

Holds the narrow capability protocols implemented by the domain types
(mutations, patterns, strategies, knowledge units), the inbound snapshot
contract with the monitored system, and the aggregate SystemState that
objective evaluators read.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from evoloop.utils.time import utc_now

# ─── Capability protocols ──────────────────────────────────────────


@runtime_checkable
class Identifiable(Protocol):
    """Anything addressable by a stable string id."""

    @property
    def id(self) -> str: ...


@runtime_checkable
class Scored(Protocol):
    """Anything carrying a single comparable score in [0, 1] or above."""

    @property
    def score(self) -> float: ...


@runtime_checkable
class Timestamped(Protocol):
    """Anything with a reference point in time."""

    @property
    def timestamp(self) -> datetime: ...


class Ranked(Identifiable, Scored, Protocol):
    """Scored items with a stable id to break ties."""


R = TypeVar("R", bound=Ranked)
T = TypeVar("T", bound=Timestamped)


def by_score(items: Iterable[R]) -> list[R]:
    """Highest score first; equal scores ordered by id."""
    return sorted(items, key=lambda item: (-item.score, item.id))


def oldest_first(items: Iterable[T]) -> list[T]:
    return sorted(items, key=lambda item: item.timestamp)


# ─── Inbound contract ──────────────────────────────────────────────


@dataclass
class EntitySnapshot:
    """One recognized entity as reported by the monitored system."""

    entity_id: str
    """Stable identity of the entity across snapshots."""

    metrics: dict[str, float] = field(default_factory=dict)
    """Numeric behavioral metrics (e.g. energy, stability, strength)."""

    context: dict[str, Any] = field(default_factory=dict)
    """Free-form descriptive attributes (location, kind, tags)."""


class SnapshotProvider(Protocol):
    """Source of live data about the monitored system.

    Implementations are expected to bound their own fetch latency. The
    detector wraps any exception they raise in an OperationError.
    """

    def current_patterns(self) -> Sequence[EntitySnapshot]: ...

    def current_state(self) -> Mapping[str, Any]: ...


# ─── Aggregate state ───────────────────────────────────────────────


class SystemPhase(str, Enum):
    """Coarse health classification of the adaptation loop."""

    THRIVING = "thriving"
    """Both harmony and balance are high."""

    NEUTRAL = "neutral"
    """Neither thriving nor degraded."""

    DEGRADED = "degraded"
    """Harmony or balance has collapsed."""


@dataclass
class SystemState:
    """Aggregate state derived by the handler for objective evaluators."""

    energy: float
    entropy: float
    harmony: float
    balance: float
    phase: SystemPhase
    timestamp: datetime = field(default_factory=utc_now)
    properties: dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        """Flat mapping suitable as evaluator input."""
        return {
            **self.properties,
            "energy": self.energy,
            "entropy": self.entropy,
            "harmony": self.harmony,
            "balance": self.balance,
            "phase": self.phase.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.as_dict(), "timestamp": self.timestamp.isoformat()}


def derive_phase(harmony: float, balance: float) -> SystemPhase:
    """Classify harmony/balance into a SystemPhase."""
    if harmony >= 0.8 and balance >= 0.8:
        return SystemPhase.THRIVING
    if harmony <= 0.2 or balance <= 0.2:
        return SystemPhase.DEGRADED
    return SystemPhase.NEUTRAL
