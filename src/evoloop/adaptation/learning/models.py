"""Data models for the adaptive learning subsystem.

Experiences are the raw material: one record per observed strategy
execution or optimization run. Mining turns groups of experiences into
ExperiencePatterns, the knowledge store wraps valid patterns in
KnowledgeUnits, and a LearningModel per experience type learns to predict
outcomes from context.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from evoloop.utils.stats import clamp, mean


class ExperienceStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PatternKind(str, Enum):
    """What an experience pattern describes."""

    SUCCESS = "success"
    """Context that tends to precede success."""

    FAILURE = "failure"
    """Context that tends to precede failure."""

    ADAPTATION = "adaptation"
    """Context in which adaptive (re-tuned) actions succeed."""


ADAPTIVE_ACTION_TYPE = "adaptation"


# ─── Experiences ───────────────────────────────────────────────────


@dataclass
class LearningAction:
    type: str
    target: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class LearningResult:
    status: ExperienceStatus
    metrics: dict[str, float] = field(default_factory=dict)
    duration_seconds: float = 0.0


@dataclass
class LearningExperience:
    """One observed action and its outcome."""

    id: str
    type: str
    """Outcome family, e.g. "strategy_execution" or "optimization"."""

    action: LearningAction
    result: LearningResult
    timestamp: datetime
    context: dict[str, Any] = field(default_factory=dict)
    feedback: float | None = None

    @property
    def success(self) -> bool:
        return self.result.status == ExperienceStatus.SUCCESS

    @property
    def adaptive(self) -> bool:
        return self.action.type == ADAPTIVE_ACTION_TYPE

    def matches(self, kind: PatternKind) -> bool:
        """Whether this experience exemplifies a pattern kind."""
        if kind == PatternKind.SUCCESS:
            return self.success
        if kind == PatternKind.FAILURE:
            return not self.success
        return self.adaptive and self.success


# ─── Patterns ──────────────────────────────────────────────────────


@dataclass
class PatternCondition:
    """A context key=value that predicts the pattern's outcome."""

    key: str
    value: Any
    weight: float


@dataclass
class PatternOutcome:
    """A metric whose value stands out when the pattern's outcome occurs."""

    metric: str
    value: float
    weight: float


@dataclass
class ExperiencePattern:
    kind: PatternKind
    experience_type: str
    frequency: float
    confidence: float
    conditions: list[PatternCondition] = field(default_factory=list)
    outcomes: list[PatternOutcome] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    """Context values shared by every exemplifying experience."""

    support: int = 0
    last_seen: datetime | None = None

    @property
    def signature(self) -> str:
        keys = ",".join(sorted(f"{c.key}={c.value}" for c in self.conditions))
        return f"{self.kind.value}:{self.experience_type}:{keys}"

    def is_valid(self, min_confidence: float) -> bool:
        return self.confidence >= min_confidence and bool(self.conditions) and bool(self.outcomes)


def merge_patterns(base: ExperiencePattern, other: ExperiencePattern) -> ExperiencePattern:
    """Combine two patterns with the same signature.

    Scalar scores are averaged, conditions and outcomes are merged per key
    (weights averaged, the heavier side's value kept for conditions), and
    context keeps only keys whose values agree, averaging numeric ones.
    Merging a pattern with an identical copy of itself changes nothing.
    """
    conditions: dict[str, PatternCondition] = {c.key: c for c in base.conditions}
    for cond in other.conditions:
        mine = conditions.get(cond.key)
        if mine is None:
            conditions[cond.key] = cond
        else:
            value = mine.value if mine.weight >= cond.weight else cond.value
            conditions[cond.key] = PatternCondition(
                key=cond.key, value=value, weight=(mine.weight + cond.weight) / 2
            )

    outcomes: dict[str, PatternOutcome] = {o.metric: o for o in base.outcomes}
    for out in other.outcomes:
        mine_out = outcomes.get(out.metric)
        if mine_out is None:
            outcomes[out.metric] = out
        else:
            outcomes[out.metric] = PatternOutcome(
                metric=out.metric,
                value=(mine_out.value + out.value) / 2,
                weight=(mine_out.weight + out.weight) / 2,
            )

    context: dict[str, Any] = {}
    for key, value in base.context.items():
        if key not in other.context:
            continue
        theirs = other.context[key]
        numeric = isinstance(value, (int, float)) and isinstance(theirs, (int, float))
        if numeric and not isinstance(value, bool) and not isinstance(theirs, bool):
            context[key] = (value + theirs) / 2
        elif value == theirs:
            context[key] = value

    seen = [t for t in (base.last_seen, other.last_seen) if t is not None]
    return ExperiencePattern(
        kind=base.kind,
        experience_type=base.experience_type,
        frequency=(base.frequency + other.frequency) / 2,
        confidence=(base.confidence + other.confidence) / 2,
        conditions=sorted(conditions.values(), key=lambda c: c.key),
        outcomes=sorted(outcomes.values(), key=lambda o: o.metric),
        context=context,
        support=max(base.support, other.support),
        last_seen=max(seen) if seen else None,
    )


# ─── Knowledge ─────────────────────────────────────────────────────


@dataclass
class KnowledgeLink:
    target_id: str
    type: str
    strength: float


Validator = Callable[["KnowledgeUnit", Sequence[LearningExperience]], bool]


class KnowledgeUnit:
    """A distilled insight with decaying confidence.

    Confidence is read-only from the outside. It only changes through
    `merge()` (running weighted average) and `decay()`.
    """

    def __init__(
        self,
        id: str,
        content: ExperiencePattern,
        confidence: float,
        created: datetime,
        *,
        tags: Sequence[str] = (),
        links: Sequence[KnowledgeLink] = (),
        validator: Validator | None = None,
        source: str = "mined",
    ) -> None:
        self.id = id
        self.content = content
        self.created = created
        self.last_access = created
        self.tags = list(dict.fromkeys(tags))
        self.links = list(links)
        self.validator = validator
        self.source = source
        self.usage = 0
        self.observations = 1
        self._confidence = clamp(confidence)

    def __repr__(self) -> str:
        return (
            f"KnowledgeUnit(id={self.id!r}, type={self.type.value!r}, "
            f"confidence={self._confidence:.3f}, usage={self.usage})"
        )

    @property
    def type(self) -> PatternKind:
        return self.content.kind

    @property
    def signature(self) -> str:
        return self.content.signature

    @property
    def confidence(self) -> float:
        return self._confidence

    @property
    def score(self) -> float:
        return self._confidence

    @property
    def timestamp(self) -> datetime:
        return self.created

    def merge(self, other: KnowledgeUnit) -> None:
        """Fold another unit describing the same insight into this one."""
        total = self.observations + other.observations
        self._confidence = clamp(
            (self._confidence * self.observations + other.confidence * other.observations) / total
        )
        self.observations = total
        self.tags = list(dict.fromkeys(self.tags + other.tags))
        self.links = merge_links(self.links, other.links)
        self.content = merge_patterns(self.content, other.content)
        self.last_access = max(self.last_access, other.last_access)

    def decay(self, factor: float) -> None:
        self._confidence = clamp(self._confidence * factor)

    def touch(self, now: datetime) -> None:
        self.usage += 1
        self.last_access = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "signature": self.signature,
            "confidence": self._confidence,
            "usage": self.usage,
            "tags": list(self.tags),
            "links": [
                {"target_id": link.target_id, "type": link.type, "strength": link.strength}
                for link in self.links
            ],
            "created": self.created.isoformat(),
        }


def merge_links(
    left: Sequence[KnowledgeLink], right: Sequence[KnowledgeLink]
) -> list[KnowledgeLink]:
    """Union of links by target, averaging the strength of shared targets."""
    merged: dict[str, KnowledgeLink] = {link.target_id: link for link in left}
    for link in right:
        mine = merged.get(link.target_id)
        if mine is None:
            merged[link.target_id] = link
        else:
            merged[link.target_id] = KnowledgeLink(
                target_id=link.target_id,
                type=mine.type,
                strength=(mine.strength + link.strength) / 2,
            )
    return list(merged.values())


# ─── Model & statistics ────────────────────────────────────────────


@dataclass
class TrainingItem:
    features: dict[str, float]
    expected: float
    weight: float = 1.0


@dataclass
class ModelPoint:
    timestamp: datetime
    accuracy: float
    loss: float


@dataclass
class LearningModel:
    """Per-outcome-type logistic predictor, trained online."""

    id: str
    outcome_type: str
    weights: dict[str, float] = field(default_factory=dict)
    velocity: dict[str, float] = field(default_factory=dict)
    gradients: dict[str, float] = field(default_factory=dict)
    training_data: list[TrainingItem] = field(default_factory=list)
    last_loss: float = 0.0
    accuracy: float = 0.0
    version: int = 0
    history: deque[ModelPoint] = field(default_factory=lambda: deque(maxlen=100))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "outcome_type": self.outcome_type,
            "features": len(self.weights),
            "samples": len(self.training_data),
            "last_loss": self.last_loss,
            "accuracy": self.accuracy,
            "version": self.version,
        }


@dataclass
class LearningStatistics:
    cycles: int = 0
    total_experiences: int = 0
    success_rate: float = 0.0
    knowledge_units: int = 0
    knowledge_growth_rate: float = 0.0
    model_accuracy: float = 0.0
    learning_rate: float = 0.0
    patterns_mined: int = 0
    rules_synthesized: int = 0
    parameters_updated: int = 0
    failures: int = 0
    last_cycle_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "total_experiences": self.total_experiences,
            "success_rate": self.success_rate,
            "knowledge_units": self.knowledge_units,
            "knowledge_growth_rate": self.knowledge_growth_rate,
            "model_accuracy": self.model_accuracy,
            "learning_rate": self.learning_rate,
            "patterns_mined": self.patterns_mined,
            "rules_synthesized": self.rules_synthesized,
            "parameters_updated": self.parameters_updated,
            "failures": self.failures,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


def mean_accuracy(models: Sequence[LearningModel]) -> float:
    trained = [m.accuracy for m in models if m.version > 0]
    return mean(trained)
