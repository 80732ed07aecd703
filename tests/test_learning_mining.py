"""Tests for evoloop.adaptation.learning.mining module."""

from __future__ import annotations

import copy
import math
from datetime import UTC, datetime, timedelta

import pytest

from evoloop.adaptation.learning.mining import (
    common_context,
    mine_patterns,
    optimize_rule,
    pattern_confidence,
    recency_weight,
    rule_target,
    significant_conditions,
    synthesize_rule,
)
from evoloop.adaptation.learning.models import (
    ExperiencePattern,
    ExperienceStatus,
    LearningAction,
    LearningExperience,
    LearningResult,
    PatternCondition,
    PatternKind,
    PatternOutcome,
    merge_patterns,
)
from evoloop.adaptation.models import RuleFunction

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def experience(
    index: int,
    *,
    success: bool,
    context: dict | None = None,
    metrics: dict | None = None,
    action_type: str = "strategy",
    type: str = "strategy_execution",
    at: datetime = NOW,
) -> LearningExperience:
    return LearningExperience(
        id=f"exp-{index}",
        type=type,
        action=LearningAction(type=action_type),
        result=LearningResult(
            status=ExperienceStatus.SUCCESS if success else ExperienceStatus.FAILURE,
            metrics=metrics or {},
        ),
        timestamp=at,
        context=context or {},
    )


@pytest.fixture
def zoned_experiences() -> list[LearningExperience]:
    """Zone a mostly succeeds, zone b always fails; successes score high."""
    result = []
    for i in range(5):
        result.append(experience(
            i, success=True, context={"zone": "a", "tier": 1}, metrics={"gain": 1.0}
        ))
    result.append(experience(5, success=False, context={"zone": "a"}, metrics={"gain": 0.0}))
    for i in range(6, 12):
        result.append(experience(i, success=False, context={"zone": "b"}, metrics={"gain": 0.0}))
    return result


class TestMinePatterns:
    """Tests for mine_patterns()."""

    def test_success_pattern_from_zoned_outcomes(self, zoned_experiences):
        """Test that a mostly-successful context becomes a success pattern."""
        patterns = mine_patterns(zoned_experiences, NOW)

        assert [p.kind for p in patterns] == [PatternKind.SUCCESS]
        pattern = patterns[0]
        assert pattern.experience_type == "strategy_execution"
        assert pattern.confidence == pytest.approx(5 / 12)
        assert pattern.frequency == pytest.approx(5 / 12)
        assert pattern.support == 5
        assert [(c.key, c.value) for c in pattern.conditions] == [("tier", 1), ("zone", "a")]
        zone = next(c for c in pattern.conditions if c.key == "zone")
        assert zone.weight == pytest.approx(5 / 6)
        (outcome,) = pattern.outcomes
        assert outcome.metric == "gain"
        assert outcome.value == pytest.approx(1.0)
        assert pattern.context == {"zone": "a", "tier": 1}

    def test_failure_pattern_needs_outcomes(self, zoned_experiences):
        """Test that failures without a standout metric do not form a pattern."""
        patterns = mine_patterns(zoned_experiences, NOW)
        assert PatternKind.FAILURE not in {p.kind for p in patterns}

    def test_min_confidence_filters(self, zoned_experiences):
        assert mine_patterns(zoned_experiences, NOW, min_confidence=0.5) == []

    def test_types_are_mined_separately(self, zoned_experiences):
        other = [
            experience(100 + i, success=True, type="optimization", context={"zone": "a"},
                       metrics={"gain": float(i == 0) * 10})
            for i in range(4)
        ]
        patterns = mine_patterns(zoned_experiences + other, NOW)
        assert {p.experience_type for p in patterns} == {"optimization", "strategy_execution"}

    def test_empty_input(self):
        assert mine_patterns([], NOW) == []


class TestMiningHelpers:
    """Tests for the individual mining steps."""

    def test_adaptation_confidence_counts_adaptive_only(self):
        group = [
            experience(0, success=True, action_type="adaptation"),
            experience(1, success=False, action_type="adaptation"),
            experience(2, success=False),
            experience(3, success=False),
        ]
        assert pattern_confidence(PatternKind.ADAPTATION, group) == pytest.approx(0.5)
        assert pattern_confidence(PatternKind.SUCCESS, group) == pytest.approx(0.25)

    def test_adaptation_without_adaptive_actions(self):
        group = [experience(0, success=True)]
        assert pattern_confidence(PatternKind.ADAPTATION, group) == 0.0

    def test_significant_conditions_respect_ratio(self, zoned_experiences):
        successes = [e for e in zoned_experiences if e.success]
        strict = significant_conditions(
            PatternKind.SUCCESS, zoned_experiences, successes, significance_ratio=0.9
        )
        assert [c.key for c in strict] == ["tier"]

    def test_common_context_keeps_agreeing_scalars(self):
        group = [
            experience(0, success=True, context={"zone": "a", "tier": 1, "tags": ["x"]}),
            experience(1, success=True, context={"zone": "a", "tier": 2}),
        ]
        assert common_context(group) == {"zone": "a"}

    def test_recency_weight_decays(self):
        assert recency_weight(NOW, NOW) == pytest.approx(1.0)
        assert recency_weight(NOW - timedelta(days=1), NOW) == pytest.approx(math.exp(-1))
        assert recency_weight(NOW + timedelta(hours=1), NOW) == pytest.approx(1.0)


def make_pattern(
    kind: PatternKind = PatternKind.SUCCESS,
    *,
    confidence: float = 0.8,
    frequency: float = 0.5,
    context: dict | None = None,
    conditions: list[PatternCondition] | None = None,
) -> ExperiencePattern:
    return ExperiencePattern(
        kind=kind,
        experience_type="strategy_execution",
        frequency=frequency,
        confidence=confidence,
        conditions=conditions or [PatternCondition("zone", "a", 0.9)],
        outcomes=[PatternOutcome("gain", 1.0, 0.5)],
        context=context if context is not None else {"strategy_id": "s1", "load": 0.4},
        support=4,
        last_seen=NOW,
    )


class TestMergePatterns:
    """Tests for merge_patterns()."""

    def test_self_merge_is_identity(self):
        """Test that merging a pattern with a copy of itself changes nothing."""
        pattern = make_pattern()
        assert merge_patterns(pattern, copy.deepcopy(pattern)) == pattern

    def test_merge_averages_and_intersects(self):
        left = make_pattern(confidence=0.8, context={"zone": "a", "load": 0.2, "tier": 1})
        right = make_pattern(confidence=0.4, context={"zone": "b", "load": 0.6})
        right.outcomes = [PatternOutcome("gain", 3.0, 0.5), PatternOutcome("latency", 2.0, 1.0)]

        merged = merge_patterns(left, right)

        assert merged.confidence == pytest.approx(0.6)
        assert merged.context == {"load": pytest.approx(0.4)}
        assert [(o.metric, o.value) for o in merged.outcomes] == [("gain", 2.0), ("latency", 2.0)]


class TestRuleSynthesis:
    """Tests for synthesize_rule() and optimize_rule()."""

    def test_success_rule(self):
        rule = synthesize_rule(make_pattern(confidence=0.8, frequency=0.5))

        assert rule.id == "rule-success-strategy_execution-s1"
        assert rule.target == "s1"
        assert rule.condition.expression == "success_rate > threshold"
        assert rule.condition.threshold == 0.7
        assert rule.action.function == RuleFunction.ADJUST_STRATEGY
        assert rule.action.parameters == {"direction": 1, "step": pytest.approx(13.0)}
        assert rule.weight == pytest.approx(0.8 * 0.5 * 1.2)
        assert rule.confidence == pytest.approx(0.8)
        rule.validate()

    def test_failure_rule_lowers_priority(self):
        rule = synthesize_rule(make_pattern(PatternKind.FAILURE))
        assert rule.condition.expression == "success_rate < threshold"
        assert rule.action.parameters["direction"] == -1

    def test_adaptation_rule_optimizes(self):
        rule = synthesize_rule(make_pattern(PatternKind.ADAPTATION))
        assert rule.action.function == RuleFunction.OPTIMIZE_STRATEGY
        assert rule.action.parameters == {}

    def test_target_falls_back_to_conditions_then_wildcard(self):
        by_condition = make_pattern(
            context={}, conditions=[PatternCondition("strategy_type", "balance", 1.0)]
        )
        assert rule_target(by_condition) == "balance"
        assert rule_target(make_pattern(context={})) == "*"

    def test_optimize_rule(self):
        """Test that thresholds and numeric parameters move to observed optima."""
        rule = synthesize_rule(make_pattern())
        rule.observed_values = [0.2, 0.4, 0.9]

        assert optimize_rule(rule, {"step": [10.0, 20.0, 30.0], "unknown": [1.0]})
        assert rule.condition.threshold == pytest.approx(0.6 * 0.5 + 0.4 * 0.4)
        assert rule.action.parameters["step"] == pytest.approx(20.0)
        assert "unknown" not in rule.action.parameters

        assert not optimize_rule(rule, {"step": [10.0, 20.0, 30.0]})
