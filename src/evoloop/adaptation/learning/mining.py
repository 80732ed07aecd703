"""Pattern mining over learning experiences.

Experiences are grouped by type. For each group and each PatternKind that
has at least one exemplifying experience, a candidate pattern is built
from:

- confidence: share of the group (or, for ADAPTATION, of the adaptive
  experiences) that exemplifies the kind
- conditions: context key=value pairs whose holders exemplify the kind at
  least ``significance_ratio`` of the time
- outcomes: result metrics of exemplifying experiences deviating more than
  one standard deviation from the group mean, recency weighted

Only candidates with enough confidence and at least one condition and one
outcome are kept. Everything here is pure; the engine owns state.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from evoloop.adaptation.learning.models import (
    ExperiencePattern,
    LearningExperience,
    PatternCondition,
    PatternKind,
    PatternOutcome,
)
from evoloop.adaptation.models import RuleAction, RuleCondition, RuleFunction, StrategyRule
from evoloop.adaptation.strategy import optimal_threshold
from evoloop.utils.stats import clamp, mean, median, population_std

# Age at which an experience's outcome weight falls to 1/e
RECENCY_SCALE_SECONDS = 86400.0

DEFAULT_RULE_STEP = 10.0


def group_by_type(experiences: Iterable[LearningExperience]) -> dict[str, list[LearningExperience]]:
    groups: dict[str, list[LearningExperience]] = defaultdict(list)
    for experience in experiences:
        groups[experience.type].append(experience)
    return dict(groups)


def recency_weight(timestamp: datetime, now: datetime) -> float:
    age = max(0.0, (now - timestamp).total_seconds())
    return math.exp(-age / RECENCY_SCALE_SECONDS)


def pattern_confidence(kind: PatternKind, group: Sequence[LearningExperience]) -> float:
    if not group:
        return 0.0
    if kind == PatternKind.ADAPTATION:
        adaptive = [e for e in group if e.adaptive]
        if not adaptive:
            return 0.0
        return sum(1 for e in adaptive if e.success) / len(adaptive)
    return sum(1 for e in group if e.matches(kind)) / len(group)


def _hashable_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool)) and not (
        isinstance(value, float) and not math.isfinite(value)
    )


def common_context(experiences: Sequence[LearningExperience]) -> dict[str, Any]:
    """Context entries with the same value in every experience."""
    if not experiences:
        return {}
    shared = {k: v for k, v in experiences[0].context.items() if _hashable_scalar(v)}
    for experience in experiences[1:]:
        shared = {k: v for k, v in shared.items() if experience.context.get(k) == v}
    return shared


def significant_conditions(
    kind: PatternKind,
    group: Sequence[LearningExperience],
    targets: Sequence[LearningExperience],
    significance_ratio: float,
) -> list[PatternCondition]:
    candidates: dict[tuple[str, Any], None] = {}
    for experience in targets:
        for key, value in experience.context.items():
            if _hashable_scalar(value):
                candidates[(key, value)] = None

    conditions: list[PatternCondition] = []
    for key, value in candidates:
        holders = [e for e in group if key in e.context and e.context[key] == value]
        if not holders:
            continue
        if kind == PatternKind.ADAPTATION:
            holders = [e for e in holders if e.adaptive]
            if not holders:
                continue
        ratio = sum(1 for e in holders if e.matches(kind)) / len(holders)
        if ratio >= significance_ratio:
            conditions.append(PatternCondition(key=key, value=value, weight=ratio))
    conditions.sort(key=lambda c: c.key)
    return conditions


def significant_outcomes(
    group: Sequence[LearningExperience],
    targets: Sequence[LearningExperience],
    now: datetime,
) -> list[PatternOutcome]:
    metric_names = sorted({name for e in group for name in e.result.metrics})
    outcomes: list[PatternOutcome] = []
    for name in metric_names:
        values = [e.result.metrics[name] for e in group if name in e.result.metrics]
        center = mean(values)
        sigma = population_std(values, center)
        if sigma == 0:
            continue

        weighted_sum = 0.0
        weight_total = 0.0
        weights: list[float] = []
        for experience in targets:
            value = experience.result.metrics.get(name)
            if value is None:
                continue
            z = abs(value - center) / sigma
            if z <= 1.0:
                continue
            weight = recency_weight(experience.timestamp, now) * (z / (z + 1))
            weighted_sum += value * weight
            weight_total += weight
            weights.append(weight)
        if weight_total > 0:
            outcomes.append(
                PatternOutcome(metric=name, value=weighted_sum / weight_total, weight=mean(weights))
            )
    return outcomes


def build_pattern(
    kind: PatternKind,
    experience_type: str,
    group: Sequence[LearningExperience],
    now: datetime,
    significance_ratio: float,
) -> ExperiencePattern | None:
    targets = [e for e in group if e.matches(kind)]
    if not targets:
        return None
    return ExperiencePattern(
        kind=kind,
        experience_type=experience_type,
        frequency=len(targets) / len(group),
        confidence=pattern_confidence(kind, group),
        conditions=significant_conditions(kind, group, targets, significance_ratio),
        outcomes=significant_outcomes(group, targets, now),
        context=common_context(targets),
        support=len(targets),
        last_seen=max(e.timestamp for e in targets),
    )


def mine_patterns(
    experiences: Iterable[LearningExperience],
    now: datetime,
    *,
    significance_ratio: float = 0.7,
    min_confidence: float = 0.3,
) -> list[ExperiencePattern]:
    """Valid patterns across all experience types and kinds."""
    patterns: list[ExperiencePattern] = []
    for experience_type, group in sorted(group_by_type(experiences).items()):
        for kind in PatternKind:
            pattern = build_pattern(kind, experience_type, group, now, significance_ratio)
            if pattern is not None and pattern.is_valid(min_confidence):
                patterns.append(pattern)
    return patterns


# ─── Rule synthesis ────────────────────────────────────────────────

# kind -> (expression, threshold, function, direction, weight multiplier)
RULE_TEMPLATES: dict[PatternKind, tuple[str, float, RuleFunction, int, float]] = {
    PatternKind.SUCCESS: ("success_rate > threshold", 0.7, RuleFunction.ADJUST_STRATEGY, 1, 1.2),
    PatternKind.FAILURE: ("success_rate < threshold", 0.5, RuleFunction.ADJUST_STRATEGY, -1, 0.8),
    PatternKind.ADAPTATION: (
        "effectiveness < threshold", 0.6, RuleFunction.OPTIMIZE_STRATEGY, 1, 1.1,
    ),
}


def rule_target(pattern: ExperiencePattern) -> str:
    """Most specific strategy selector the pattern supports."""
    for key in ("strategy_id", "strategy_type"):
        value = pattern.context.get(key)
        if isinstance(value, str) and value:
            return value
    for condition in pattern.conditions:
        if condition.key in ("strategy_id", "strategy_type") and isinstance(condition.value, str):
            return condition.value
    return "*"


def rule_id_for(pattern: ExperiencePattern) -> str:
    return f"rule-{pattern.kind.value}-{pattern.experience_type}-{rule_target(pattern)}"


def synthesize_rule(pattern: ExperiencePattern) -> StrategyRule:
    """Turn a mined pattern into a strategy rule.

    Rule ids are deterministic per (kind, experience type, target) so that
    re-mining the same pattern replaces rather than duplicates its rule.
    """
    expression, threshold, function, direction, multiplier = RULE_TEMPLATES[pattern.kind]
    target = rule_target(pattern)
    parameters: dict[str, Any] = {}
    if function == RuleFunction.ADJUST_STRATEGY:
        parameters = {
            "direction": direction,
            "step": round(DEFAULT_RULE_STEP * (0.5 + pattern.confidence), 4),
        }
    return StrategyRule(
        id=rule_id_for(pattern),
        name=f"{pattern.kind.value} rule for {target}",
        type=pattern.kind.value,
        target=target,
        condition=RuleCondition(expression=expression, threshold=threshold),
        action=RuleAction(function=function, parameters=parameters),
        weight=clamp(pattern.confidence * pattern.frequency * multiplier),
        confidence=clamp(pattern.confidence),
    )


def optimal_action_value(values: Sequence[float]) -> float:
    return 0.7 * mean(values) + 0.3 * median(values)


def optimize_rule(rule: StrategyRule, parameter_history: Mapping[str, Sequence[float]]) -> bool:
    """Re-derive a rule's threshold and numeric action parameters in place.

    Returns whether anything changed.
    """
    changed = False
    if rule.observed_values:
        threshold = optimal_threshold(rule.observed_values)
        if threshold != rule.condition.threshold:
            rule.condition.threshold = threshold
            changed = True
    for name, values in parameter_history.items():
        if name not in rule.action.parameters or not values:
            continue
        value = optimal_action_value(values)
        if value != rule.action.parameters[name]:
            rule.action.parameters[name] = value
            changed = True
    return changed
