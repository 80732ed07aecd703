"""Mutation analysis: causes, effects, correlations, risk, and prediction.

Each analysis cycle works on the detector's recent mutations (a copy, so it
tolerates mutations that are resolved or purged mid-cycle):

- Mutations are grouped by temporal proximity. Groups sharing a type
  signature form a MutationPattern whose frequency is the share of groups
  carrying that signature.
- Every mutation gets a fresh MutationAnalysis. Analyses from the previous
  cycle are superseded, not accumulated.
- Each pattern gets at most one outstanding prediction. Predictions are
  judged once their time frame has elapsed, feeding the running accuracy.

Correlation strength blends three terms:

    0.3 × time proximity + 0.4 × feature overlap + 0.3 × causal overlap

where feature overlap compares the changed property names and causal
overlap is 1.0 for the same source entity, otherwise the shared fraction of
source context keys.
"""

from __future__ import annotations

import copy
import math
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from evoloop.core.config import AnalysisConfig
from evoloop.core.errors import ConfigurationError, NotFoundError
from evoloop.core.logging import get_logger
from evoloop.core.types import by_score
from evoloop.mutation.detector import MutationDetector
from evoloop.mutation.models import (
    CausalFactor,
    ConditionKind,
    Correlation,
    Effect,
    Mutation,
    MutationAnalysis,
    MutationPattern,
    MutationPrediction,
    MutationType,
    PatternEvent,
    PatternFeature,
    PredictionCondition,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    new_id,
)
from evoloop.utils.stats import clamp, mean
from evoloop.utils.time import utc_now

_logger = get_logger("analyzer")

CORRELATION_WEIGHTS = {"time": 0.3, "features": 0.4, "causal": 0.3}
COMPOSITE_ACCURACY_WEIGHTS = {"time": 0.3, "conditions": 0.4, "stability": 0.3}

SOURCE_FACTOR_CONFIDENCE = 0.8
MAX_TIMELINE_EVENTS = 50

MITIGATIONS_BY_LEVEL: dict[RiskLevel, list[str]] = {
    RiskLevel.HIGH: [
        "immediate intervention required",
        "activate emergency response plan",
        "notify system administrators",
    ],
    RiskLevel.MEDIUM: [
        "increase monitoring frequency",
        "prepare contingency measures",
        "analyze root causes",
    ],
    RiskLevel.LOW: [
        "monitor regularly",
        "document changes",
        "update baseline metrics",
    ],
}

MITIGATIONS_BY_TYPE: dict[MutationType, list[str]] = {
    MutationType.ENERGETIC: [
        "balance energy distribution",
        "optimize resource allocation",
    ],
    MutationType.STRUCTURAL: [
        "verify system integrity",
        "strengthen weak components",
    ],
    MutationType.BEHAVIORAL: [
        "adjust behavior parameters",
        "review pattern recognition rules",
    ],
}
MITIGATIONS_BY_TYPE[MutationType.COMPOUND] = (
    MITIGATIONS_BY_TYPE[MutationType.ENERGETIC] + MITIGATIONS_BY_TYPE[MutationType.STRUCTURAL]
)

HIGH_PROBABILITY_MITIGATIONS = [
    "implement preventive measures",
    "enhance early warning system",
]


def risk_level_for(severity: float) -> RiskLevel:
    if severity >= 0.8:
        return RiskLevel.HIGH
    if severity >= 0.5:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _overlap(left: set[str], right: set[str]) -> float:
    largest = max(len(left), len(right))
    if largest == 0:
        return 0.0
    return len(left & right) / largest


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


@dataclass
class PerformancePoint:
    timestamp: datetime
    accuracy: float
    coverage: float


@dataclass
class AnalysisMetrics:
    """Running analyzer telemetry.

    ``accuracy`` is 0.0 until a prediction has been evaluated. ``coverage``
    is 1.0 when there was nothing to analyze.
    """

    cycles: int = 0
    analyses: int = 0
    failures: int = 0
    patterns: int = 0
    predictions: int = 0
    evaluated_predictions: int = 0
    accurate_predictions: int = 0
    accuracy: float = 0.0
    coverage: float = 1.0
    last_cycle_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "analyses": self.analyses,
            "failures": self.failures,
            "patterns": self.patterns,
            "predictions": self.predictions,
            "evaluated_predictions": self.evaluated_predictions,
            "accurate_predictions": self.accurate_predictions,
            "accuracy": self.accuracy,
            "coverage": self.coverage,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class MutationAnalyzer:
    """Explains detected mutations and forecasts their recurrence.

    Thread-safe: `analyze()` holds the analyzer's lock for the whole cycle.
    The detector is only read through its public snapshot methods.
    """

    def __init__(
        self,
        detector: MutationDetector,
        config: AnalysisConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if detector is None:
            raise ConfigurationError("MutationAnalyzer requires a detector")
        self._detector = detector
        self._config = config or AnalysisConfig()
        self._clock = clock or utc_now

        self._analyses: dict[str, MutationAnalysis] = {}
        self._patterns: dict[str, MutationPattern] = {}
        self._pending: dict[str, MutationPrediction] = {}
        self._evaluated: deque[MutationPrediction] = deque(maxlen=self._config.max_history)
        self._performance: deque[PerformancePoint] = deque(maxlen=self._config.max_history)
        self._metrics = AnalysisMetrics()
        self._lock = RLock()

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    def analyze(self) -> list[MutationAnalysis]:
        """Run one analysis cycle over the detector's recent mutations."""
        with self._lock:
            now = self._clock()
            window = timedelta(seconds=self._config.pattern_window_seconds)
            mutations = self._detector.get_recent_mutations(window)

            self._patterns = self._extract_patterns(mutations, now)

            analyses: dict[str, MutationAnalysis] = {}
            for mutation in mutations:
                try:
                    analyses[mutation.id] = self._analyze_mutation(mutation, mutations, now)
                except Exception as exc:
                    self._metrics.failures += 1
                    _logger.warning(
                        "analyzer.mutation_failed", mutation_id=mutation.id, error=str(exc)
                    )
            self._analyses = analyses

            evaluated = self._evaluate_predictions(now)
            created = self._generate_predictions(now)

            m = self._metrics
            m.cycles += 1
            m.analyses += len(analyses)
            m.patterns = len(self._patterns)
            m.coverage = len(analyses) / len(mutations) if mutations else 1.0
            if m.evaluated_predictions:
                m.accuracy = m.accurate_predictions / m.evaluated_predictions
            m.last_cycle_at = now
            self._performance.append(
                PerformancePoint(timestamp=now, accuracy=m.accuracy, coverage=m.coverage)
            )

            _logger.info(
                "analyzer.cycle_complete",
                mutations=len(mutations),
                analyses=len(analyses),
                patterns=len(self._patterns),
                predictions_created=created,
                predictions_evaluated=evaluated,
            )
            return copy.deepcopy(list(analyses.values()))

    # ─── Per-mutation analysis ─────────────────────────────────────

    def _analyze_mutation(
        self, mutation: Mutation, others: Sequence[Mutation], now: datetime
    ) -> MutationAnalysis:
        correlations = []
        for other in others:
            if other.id == mutation.id:
                continue
            correlation = self.correlate(mutation, other)
            if correlation.strength >= self._config.correlation_threshold:
                correlations.append(correlation)
        correlations.sort(key=lambda c: c.strength, reverse=True)

        return MutationAnalysis(
            id=new_id("ana"),
            mutation_id=mutation.id,
            created=now,
            causes=self.identify_causes(mutation),
            effects=self.predict_effects(mutation),
            correlations=correlations,
            risk=self.assess_risk(mutation),
        )

    def identify_causes(self, mutation: Mutation) -> list[CausalFactor]:
        source = mutation.source
        causes = [
            CausalFactor(
                type="source",
                source=source.entity_id,
                weight=source.energy,
                confidence=SOURCE_FACTOR_CONFIDENCE,
                evidence=[source.location] if source.location else [],
            )
        ]
        total = sum(abs(c.delta) for c in mutation.changes)
        for change in mutation.changes:
            causes.append(CausalFactor(
                type="metric",
                source=change.property,
                weight=abs(change.delta) / total if total else 0.0,
                confidence=mutation.probability,
                evidence=[f"{change.property}: {change.old_value:.4g} -> {change.new_value:.4g}"],
            ))
        return causes

    def predict_effects(self, mutation: Mutation) -> list[Effect]:
        return [
            Effect(
                target=change.property,
                type="property_change",
                magnitude=change.delta,
                reversible=True,
            )
            for change in mutation.changes
        ]

    def correlate(self, mutation: Mutation, other: Mutation) -> Correlation:
        """Score the relationship between two mutations (no threshold applied)."""
        offset = other.detected_at - mutation.detected_at
        horizon = self._config.correlation_horizon_seconds
        time_score = max(0.0, 1.0 - abs(offset.total_seconds()) / horizon)

        feature_score = _overlap(
            set(mutation.changed_properties), set(other.changed_properties)
        )
        if mutation.source.entity_id == other.source.entity_id:
            causal_score = 1.0
        else:
            causal_score = _overlap(
                set(mutation.source.context), set(other.source.context)
            )

        strength = (
            CORRELATION_WEIGHTS["time"] * time_score
            + CORRELATION_WEIGHTS["features"] * feature_score
            + CORRELATION_WEIGHTS["causal"] * causal_score
        )
        return Correlation(
            source_id=mutation.id,
            target_id=other.id,
            strength=clamp(strength),
            direction=_sign(mutation.trend * other.trend),
            time_offset=offset,
        )

    def assess_risk(self, mutation: Mutation) -> RiskAssessment:
        level = risk_level_for(mutation.severity)
        mitigations = list(MITIGATIONS_BY_LEVEL[level])
        mitigations += MITIGATIONS_BY_TYPE[mutation.type]
        if mutation.probability > 0.7:
            mitigations += HIGH_PROBABILITY_MITIGATIONS
        return RiskAssessment(
            level=level,
            score=mutation.severity * mutation.probability,
            factors=[
                RiskFactor(
                    type=mutation.type.value,
                    probability=mutation.probability,
                    impact=mutation.severity,
                    urgency=level.urgency,
                )
            ],
            mitigations=list(dict.fromkeys(mitigations)),
        )

    # ─── Patterns ──────────────────────────────────────────────────

    def _group_by_time(self, mutations: Sequence[Mutation]) -> list[list[Mutation]]:
        span = timedelta(seconds=self._config.grouping_window_seconds)
        groups: list[list[Mutation]] = []
        for mutation in sorted(mutations, key=lambda m: m.detected_at):
            if groups and mutation.detected_at - groups[-1][0].detected_at <= span:
                groups[-1].append(mutation)
            else:
                groups.append([mutation])
        return groups

    def _extract_patterns(
        self, mutations: Sequence[Mutation], now: datetime
    ) -> dict[str, MutationPattern]:
        groups = self._group_by_time(mutations)
        if not groups:
            return {}

        by_signature: dict[tuple[str, ...], list[list[Mutation]]] = {}
        for group in groups:
            signature = tuple(sorted({m.type.value for m in group}))
            by_signature.setdefault(signature, []).append(group)

        patterns: dict[str, MutationPattern] = {}
        for signature, occurrences in by_signature.items():
            members = [m for group in occurrences for m in group]
            features = []
            for type_value in signature:
                typed = [m for m in members if m.type.value == type_value]
                features.append(PatternFeature(
                    type=MutationType(type_value),
                    value=len(typed) / len(members),
                    importance=mean(m.severity for m in typed),
                ))

            pattern_id = "pat-" + "+".join(signature)
            timeline = self._merge_timeline(
                self._patterns.get(pattern_id),
                [
                    PatternEvent(
                        time=group[0].detected_at,
                        size=len(group),
                        mutation_ids=[m.id for m in group],
                    )
                    for group in occurrences
                ],
            )
            patterns[pattern_id] = MutationPattern(
                id=pattern_id,
                signature=signature,
                features=features,
                frequency=len(occurrences) / len(groups),
                conditions={
                    "mean_severity": mean(m.severity for m in members),
                    "mean_probability": mean(m.probability for m in members),
                    "mean_group_size": mean(len(g) for g in occurrences),
                },
                timeline=timeline,
            )
        return patterns

    @staticmethod
    def _merge_timeline(
        previous: MutationPattern | None, current: list[PatternEvent]
    ) -> list[PatternEvent]:
        events = {event.time: event for event in (previous.timeline if previous else [])}
        for event in current:
            events[event.time] = event
        ordered = sorted(events.values(), key=lambda e: e.time)
        return ordered[-MAX_TIMELINE_EVENTS:]

    def pattern_trend(self, pattern: MutationPattern, now: datetime) -> float:
        """Short-term trend in [-1, 1] from occurrence density.

        Compares occurrences in the newer half of the pattern window with
        the older half. Positive means the pattern is accelerating.
        """
        window = timedelta(seconds=self._config.pattern_window_seconds)
        midpoint = now - window / 2
        start = now - window
        recent = sum(1 for e in pattern.timeline if e.time >= midpoint)
        earlier = sum(1 for e in pattern.timeline if start <= e.time < midpoint)
        total = recent + earlier
        if total == 0:
            return 0.0
        return (recent - earlier) / total

    # ─── Predictions ───────────────────────────────────────────────

    def _generate_predictions(self, now: datetime) -> int:
        outstanding = {p.pattern_id for p in self._pending.values()}
        created = 0
        for pattern in self._patterns.values():
            if pattern.id in outstanding:
                continue
            trend = self.pattern_trend(pattern, now)
            probability = clamp(pattern.frequency * (1.0 + trend))
            if probability <= 0.0:
                continue
            conditions = [
                PredictionCondition(
                    kind=ConditionKind.THRESHOLD,
                    target="frequency",
                    expected=pattern.frequency,
                    tolerance=self._config.prediction_tolerance,
                )
            ]
            if trend != 0.0:
                conditions.append(PredictionCondition(
                    kind=ConditionKind.TREND, target="trend", expected=trend
                ))
            prediction = MutationPrediction(
                id=new_id("pred"),
                pattern_id=pattern.id,
                probability=probability,
                time_frame=timedelta(seconds=self._config.prediction_horizon_seconds),
                created=now,
                conditions=conditions,
            )
            self._pending[prediction.id] = prediction
            created += 1
        self._metrics.predictions += created
        return created

    def _observations_for(self, pattern_id: str, now: datetime) -> dict[str, Any]:
        observed: dict[str, Any] = dict(self._detector.get_current_state())
        pattern = self._patterns.get(pattern_id)
        observed["frequency"] = pattern.frequency if pattern else 0.0
        observed["trend"] = self.pattern_trend(pattern, now) if pattern else 0.0
        return observed

    def _evaluate_predictions(self, now: datetime) -> int:
        matured = [p for p in self._pending.values() if p.matures_at() <= now]
        for prediction in matured:
            accurate = self.judge_prediction(
                prediction, self._observations_for(prediction.pattern_id, now), now
            )
            prediction.evaluated = True
            prediction.accurate = accurate
            prediction.evaluated_at = now
            del self._pending[prediction.id]
            self._evaluated.append(prediction)
            self._metrics.evaluated_predictions += 1
            if accurate:
                self._metrics.accurate_predictions += 1
            _logger.debug(
                "analyzer.prediction_evaluated",
                prediction_id=prediction.id,
                pattern_id=prediction.pattern_id,
                accurate=accurate,
            )
        return len(matured)

    @staticmethod
    def condition_met(condition: PredictionCondition, observed: Mapping[str, Any]) -> bool:
        if condition.target not in observed:
            return False
        value = observed[condition.target]
        if condition.kind == ConditionKind.STATE:
            return bool(value == condition.expected)
        if condition.kind == ConditionKind.TREND:
            if condition.expected == 0:
                return abs(value) <= condition.tolerance
            return _sign(value) == _sign(condition.expected)
        allowed = condition.tolerance * max(abs(condition.expected), 1.0)
        return abs(value - condition.expected) <= allowed

    def judge_prediction(
        self,
        prediction: MutationPrediction,
        observed: Mapping[str, Any],
        now: datetime,
    ) -> bool:
        """Decide whether a matured prediction turned out accurate.

        Low-probability predictions are accurate by default, evaluations
        more than twice the time frame late are inaccurate. High-probability
        predictions need a composite of timeliness, condition satisfaction
        and residual confidence at or above the configured bar. Everything
        else needs all of its conditions met.
        """
        cfg = self._config
        if prediction.probability < cfg.low_probability_floor:
            return True

        elapsed = (now - prediction.created).total_seconds()
        frame = prediction.time_frame.total_seconds()
        if elapsed > 2 * frame:
            return False

        met = [self.condition_met(c, observed) for c in prediction.conditions]
        condition_score = sum(met) / len(met) if met else 1.0

        if prediction.probability > cfg.high_probability_threshold:
            overdue = max(0.0, elapsed - frame)
            time_score = max(0.0, 1.0 - overdue / frame)
            stability_score = prediction.probability * math.exp(-overdue / frame)
            composite = (
                COMPOSITE_ACCURACY_WEIGHTS["time"] * time_score
                + COMPOSITE_ACCURACY_WEIGHTS["conditions"] * condition_score
                + COMPOSITE_ACCURACY_WEIGHTS["stability"] * stability_score
            )
            return composite >= cfg.high_probability_accuracy
        return all(met)

    # ─── Queries ───────────────────────────────────────────────────

    def get_analysis(self, mutation_id: str) -> MutationAnalysis:
        with self._lock:
            analysis = self._analyses.get(mutation_id)
            if analysis is None:
                raise NotFoundError("analysis", mutation_id)
            return copy.deepcopy(analysis)

    def get_analyses(self) -> list[MutationAnalysis]:
        with self._lock:
            return copy.deepcopy(list(self._analyses.values()))

    def get_patterns(self) -> list[MutationPattern]:
        with self._lock:
            return copy.deepcopy(by_score(self._patterns.values()))

    def get_predictions(self, include_evaluated: bool = False) -> list[MutationPrediction]:
        with self._lock:
            predictions = list(self._pending.values())
            if include_evaluated:
                predictions += list(self._evaluated)
            return copy.deepcopy(sorted(predictions, key=lambda p: p.created))

    def get_performance_history(self) -> list[PerformancePoint]:
        with self._lock:
            return list(self._performance)

    def get_metrics(self) -> AnalysisMetrics:
        with self._lock:
            return copy.copy(self._metrics)
