"""Data models for mutation detection and analysis.

This module contains the dataclasses and enums shared by the detector and
the analyzer: baselines and observations, the Mutation itself, and the
derived analysis records (causes, effects, correlations, risk, patterns and
predictions).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from evoloop.utils.stats import mean


def new_id(prefix: str) -> str:
    """Short random identifier with a readable prefix (e.g. ``mut-1a2b3c4d``)."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ─── Detection ─────────────────────────────────────────────────────


class MutationType(str, Enum):
    """Classification of a mutation by which metrics changed."""

    ENERGETIC = "energetic"
    """Only energy-like metrics changed."""

    STRUCTURAL = "structural"
    """Only structural metrics changed."""

    COMPOUND = "compound"
    """Both energy-like and structural metrics changed."""

    BEHAVIORAL = "behavioral"
    """Only metrics outside both families changed."""


class MutationStatus(str, Enum):
    """Lifecycle status of a stored mutation."""

    DETECTED = "detected"
    """Currently tracked and eligible for a response."""

    RESOLVED = "resolved"
    """A response completed against it; kept until it ages out."""


@dataclass
class BaselineMetric:
    """Rolling statistical profile of one metric."""

    mean: float
    std_dev: float
    lower_bound: float
    upper_bound: float
    history: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean": self.mean,
            "std_dev": self.std_dev,
            "bounds": [self.lower_bound, self.upper_bound],
            "samples": len(self.history),
        }


@dataclass
class MutationBaseline:
    """Baseline profiles for every tracked metric of one entity."""

    entity_id: str
    metrics: dict[str, BaselineMetric]
    confidence: float
    sample_count: int
    last_update: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
            "confidence": self.confidence,
            "sample_count": self.sample_count,
            "last_update": self.last_update.isoformat(),
        }


@dataclass
class MutationObservation:
    """One snapshot of an entity's metrics."""

    timestamp: datetime
    entity_id: str
    metrics: dict[str, float]
    anomalies: list[str] = field(default_factory=list)


@dataclass
class MutationSource:
    """Where a mutation originated."""

    entity_id: str
    location: str = ""
    energy: float = 0.0
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class PropertyChange:
    """A single metric that moved away from its baseline."""

    property: str
    old_value: float
    new_value: float
    timestamp: datetime

    @property
    def delta(self) -> float:
        return self.new_value - self.old_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "property": self.property,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "delta": self.delta,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Mutation:
    """A detected, currently tracked deviation of one entity.

    A mutation always carries at least one property change; constructing
    one without changes raises ValueError.
    """

    id: str
    type: MutationType
    source: MutationSource
    changes: list[PropertyChange]
    severity: float
    probability: float
    detected_at: datetime
    last_update: datetime
    status: MutationStatus = MutationStatus.DETECTED

    def __post_init__(self) -> None:
        if not self.changes:
            raise ValueError("a mutation requires at least one property change")
        if self.severity < 0:
            raise ValueError(f"severity must be non-negative, got {self.severity}")
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError(f"probability must be in [0, 1], got {self.probability}")

    @property
    def score(self) -> float:
        return self.probability

    @property
    def timestamp(self) -> datetime:
        return self.detected_at

    @property
    def changed_properties(self) -> list[str]:
        return [c.property for c in self.changes]

    @property
    def trend(self) -> float:
        """Mean signed delta across the changed properties."""
        return mean(c.delta for c in self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity_id": self.source.entity_id,
            "changes": [c.to_dict() for c in self.changes],
            "severity": self.severity,
            "probability": self.probability,
            "detected_at": self.detected_at.isoformat(),
            "last_update": self.last_update.isoformat(),
            "status": self.status.value,
        }


# ─── Analysis ──────────────────────────────────────────────────────


class RiskLevel(str, Enum):
    """Risk bucket of a mutation, derived from its severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def urgency(self) -> int:
        return {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}[self]


@dataclass
class CausalFactor:
    type: str
    source: str
    weight: float
    confidence: float
    evidence: list[str] = field(default_factory=list)


@dataclass
class Effect:
    target: str
    type: str
    magnitude: float
    reversible: bool = True
    duration: timedelta | None = None


@dataclass
class Correlation:
    """Relationship between two mutations."""

    source_id: str
    target_id: str
    strength: float
    direction: int
    """+1 when both trend the same way, -1 when opposed, 0 when either is flat."""

    time_offset: timedelta
    type: str = "temporal"


@dataclass
class RiskFactor:
    type: str
    probability: float
    impact: float
    urgency: int


@dataclass
class RiskAssessment:
    level: RiskLevel
    score: float
    factors: list[RiskFactor] = field(default_factory=list)
    mitigations: list[str] = field(default_factory=list)


@dataclass
class MutationAnalysis:
    """Derived explanation of one mutation for one analysis cycle."""

    id: str
    mutation_id: str
    created: datetime
    causes: list[CausalFactor]
    effects: list[Effect]
    correlations: list[Correlation]
    risk: RiskAssessment

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mutation_id": self.mutation_id,
            "created": self.created.isoformat(),
            "causes": len(self.causes),
            "effects": len(self.effects),
            "correlations": [
                {"target_id": c.target_id, "strength": c.strength, "direction": c.direction}
                for c in self.correlations
            ],
            "risk": {
                "level": self.risk.level.value,
                "score": self.risk.score,
                "mitigations": list(self.risk.mitigations),
            },
        }


@dataclass
class PatternFeature:
    """One mutation type's contribution to a pattern signature."""

    type: MutationType
    value: float
    """Share of the group's mutations with this type."""

    importance: float
    """Mean severity of those mutations."""


@dataclass
class PatternEvent:
    """One occurrence of a pattern."""

    time: datetime
    size: int
    mutation_ids: list[str] = field(default_factory=list)


@dataclass
class MutationPattern:
    """A recurring grouping of mutations that share a type signature."""

    id: str
    signature: tuple[str, ...]
    features: list[PatternFeature]
    frequency: float
    conditions: dict[str, float] = field(default_factory=dict)
    timeline: list[PatternEvent] = field(default_factory=list)

    @property
    def score(self) -> float:
        return self.frequency

    @property
    def timestamp(self) -> datetime | None:
        return self.timeline[-1].time if self.timeline else None


class ConditionKind(str, Enum):
    """How a prediction condition is checked at evaluation time."""

    THRESHOLD = "threshold"
    """A numeric observation must be within tolerance of the expected value."""

    STATE = "state"
    """A state value must equal the expected value."""

    TREND = "trend"
    """A numeric observation must keep the expected sign."""


@dataclass
class PredictionCondition:
    kind: ConditionKind
    target: str
    expected: Any
    tolerance: float = 0.0


@dataclass
class MutationPrediction:
    """A forecast that a pattern will recur within a time frame."""

    id: str
    pattern_id: str
    probability: float
    time_frame: timedelta
    created: datetime
    conditions: list[PredictionCondition] = field(default_factory=list)
    evaluated: bool = False
    accurate: bool | None = None
    evaluated_at: datetime | None = None

    def matures_at(self) -> datetime:
        return self.created + self.time_frame

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "probability": self.probability,
            "time_frame_seconds": self.time_frame.total_seconds(),
            "created": self.created.isoformat(),
            "evaluated": self.evaluated,
            "accurate": self.accurate,
        }
