"""Tests for evoloop.adaptation.strategy module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from evoloop.adaptation.models import (
    RuleAction,
    RuleCondition,
    RuleFunction,
    Strategy,
    StrategyAction,
    StrategyActionType,
    StrategyCondition,
    StrategyRule,
)
from evoloop.adaptation.strategy import StrategyManager, optimal_threshold
from evoloop.core.config import StrategyConfig
from evoloop.core.errors import (
    ConfigurationError,
    InvalidDefinitionError,
    NotFoundError,
    ResourceExhaustedError,
)
from evoloop.mutation.detector import MutationDetector
from evoloop.mutation.handler import MutationHandler
from evoloop.mutation.responses import NullExecutor


class RejectingExecutor(NullExecutor):
    """Rejects actions aimed at the listed targets."""

    def __init__(self, *targets: str) -> None:
        super().__init__()
        self.targets = set(targets)

    def execute(self, action):
        if action.parameters.get("target") in self.targets:
            raise RuntimeError(f"{action.parameters['target']} unavailable")
        return super().execute(action)


def make_strategy(
    strategy_id: str,
    *,
    type: str = "balance",
    priority: int = 50,
    effectiveness: float = 0.5,
    conditions: list[StrategyCondition] | None = None,
) -> Strategy:
    return Strategy(
        id=strategy_id,
        type=type,
        actions=[StrategyAction(StrategyActionType.ADJUST_PARAMETER)],
        conditions=conditions or [],
        priority=priority,
        effectiveness=effectiveness,
    )


def make_rule(
    rule_id: str = "r1",
    *,
    target: str = "*",
    expression: str = "success_rate > threshold",
    threshold: float = 0.7,
    confidence: float = 0.8,
    function: RuleFunction = RuleFunction.ADJUST_STRATEGY,
    parameters: dict | None = None,
) -> StrategyRule:
    return StrategyRule(
        id=rule_id,
        name=rule_id,
        type="success",
        target=target,
        condition=RuleCondition(expression, threshold),
        action=RuleAction(function, parameters or {"direction": 1, "step": 10}),
        weight=1.0,
        confidence=confidence,
    )


@pytest.fixture
def executor() -> RejectingExecutor:
    return RejectingExecutor()


@pytest.fixture
def handler(provider, clock, executor) -> MutationHandler:
    return MutationHandler(MutationDetector(provider, clock=clock), executor=executor, clock=clock)


@pytest.fixture
def state() -> dict:
    return {"load": 0.4}


@pytest.fixture
def manager(handler, clock, state) -> StrategyManager:
    return StrategyManager(handler, StrategyConfig(), state_source=lambda: state, clock=clock)


# ─── Catalog ───────────────────────────────────────────────────────


class TestCatalog:
    """Tests for strategy and rule registration."""

    def test_requires_handler(self):
        with pytest.raises(ConfigurationError):
            StrategyManager(None)  # type: ignore[arg-type]

    def test_register_stamps_created(self, manager, clock):
        manager.register_strategy(make_strategy("s1"))
        assert manager.get_strategy("s1").created == clock.now

    def test_eviction_at_capacity(self, handler, clock):
        """Test that the least effective strategy makes room for a new one."""
        manager = StrategyManager(handler, StrategyConfig(max_strategies=2), clock=clock)
        manager.register_strategy(make_strategy("strong", effectiveness=0.9))
        manager.register_strategy(make_strategy("weak", effectiveness=0.2))

        manager.register_strategy(make_strategy("new"))

        assert {s.id for s in manager.get_strategies()} == {"strong", "new"}
        assert manager.get_metrics().evictions == 1

    def test_invalid_strategy_rejected(self, manager):
        with pytest.raises(InvalidDefinitionError, match="priority"):
            manager.register_strategy(make_strategy("s1", priority=-1))

    def test_update_parameters_by_type(self, manager):
        manager.register_strategy(make_strategy("s1", type="balance"))
        manager.register_strategy(make_strategy("s2", type="balance"))

        assert manager.update_parameters("balance", {"gain": 2.0}) == 2
        assert manager.get_strategy("s2").parameters == {"gain": 2.0}

    def test_update_parameters_unknown_raises(self, manager):
        with pytest.raises(NotFoundError):
            manager.update_parameters("nothing", {"gain": 2.0})

    def test_rule_capacity(self, handler, clock):
        manager = StrategyManager(handler, StrategyConfig(max_rules=1), clock=clock)
        manager.register_rule(make_rule("r1"))
        manager.register_rule(make_rule("r1", threshold=0.6))
        with pytest.raises(ResourceExhaustedError):
            manager.register_rule(make_rule("r2"))

    def test_rule_expression_validated(self, manager):
        with pytest.raises(InvalidDefinitionError, match="unsupported rule expression"):
            manager.register_rule(make_rule(expression="success_rate ~ 3"))

    def test_update_unknown_rule_raises(self, manager):
        with pytest.raises(NotFoundError):
            manager.update_rule(make_rule("missing"))

    @pytest.mark.parametrize(
        "parameters",
        [
            {"direction": "up"},
            {"direction": 1, "step": None},
            {"step": float("nan")},
            {"direction": True},
            {"parameters": ["gain", 2]},
        ],
    )
    def test_rule_action_parameters_validated(self, manager, parameters):
        """Test that rules with unusable action parameters are never stored."""
        with pytest.raises(InvalidDefinitionError, match="rule r1"):
            manager.register_rule(make_rule(parameters=parameters))
        assert manager.get_rules() == []


# ─── Execution ─────────────────────────────────────────────────────


class TestExecution:
    """Tests for the execution cycle."""

    def test_runs_applicable_strategies_by_priority(self, manager, executor):
        """Test that strategies whose conditions hold run highest priority first."""
        manager.register_strategy(make_strategy("low", priority=10))
        manager.register_strategy(make_strategy("high", priority=90))
        manager.register_strategy(make_strategy(
            "idle", conditions=[StrategyCondition("load", ">", 0.8)]
        ))

        events = manager.execute()

        assert [e.strategy_id for e in events] == ["high", "low"]
        assert [a.parameters["target"] for a in executor.executed] == ["high", "low"]
        assert all(e.type == "executed" for e in events)

    def test_failure_does_not_block_others(self, manager, executor):
        """Test that one failing strategy is recorded and the rest still run."""
        executor.targets.add("broken")
        manager.register_strategy(make_strategy("broken", priority=90))
        manager.register_strategy(make_strategy("fine", priority=10))

        events = manager.execute()

        assert [(e.strategy_id, e.status) for e in events] == [
            ("broken", "failure"),
            ("fine", "success"),
        ]
        assert "broken unavailable" in events[0].error
        metrics = manager.get_metrics()
        assert metrics.executions == 2
        assert metrics.failures == 1
        assert metrics.success_rate == pytest.approx(0.5)

    def test_effectiveness_is_recency_weighted(self, manager, executor, clock):
        """Test that older outcomes count less than newer ones."""
        executor.targets.add("s1")
        manager.register_strategy(make_strategy("s1"))
        manager.execute()

        executor.targets.clear()
        clock.advance(manager.config.effectiveness_half_life_seconds)
        manager.execute()

        strategy = manager.get_strategy("s1")
        assert manager.evaluate_effectiveness(strategy) == pytest.approx(1.0 / 1.5)

    def test_ineffective_strategy_is_retuned_once_per_interval(self, manager, executor, clock):
        """Test that thresholds move toward observed values, at most once per interval."""
        executor.targets.add("s1")
        manager.register_strategy(make_strategy(
            "s1", conditions=[StrategyCondition("load", ">=", 0.3)]
        ))

        manager.execute()
        clock.advance(60)
        manager.execute()

        tuned = manager.get_strategy("s1")
        assert tuned.last_tuned == clock.now
        assert tuned.conditions[0].value == pytest.approx(0.4)
        assert manager.get_metrics().retunes == 1

        clock.advance(60)
        manager.execute()
        assert manager.get_metrics().retunes == 1

    def test_collapsed_strategy_is_retired(self, handler, executor, clock):
        executor.targets.add("s1")
        manager = StrategyManager(handler, StrategyConfig(min_outcomes=2), clock=clock)
        manager.register_strategy(make_strategy("s1"))

        manager.execute()
        clock.advance(60)
        manager.execute()

        assert manager.get_strategies() == []
        assert manager.get_metrics().retired == 1

    def test_history_is_bounded(self, handler, clock):
        manager = StrategyManager(handler, StrategyConfig(max_history=3), clock=clock)
        manager.register_strategy(make_strategy("s1"))
        for _ in range(5):
            manager.execute()

        history = manager.get_history()
        assert len(history) == 3
        assert [e.sequence for e in history] == [4, 5, 6]

    def test_recent_results_cursor(self, manager):
        """Test that consumers only see outcomes newer than their cursor."""
        manager.register_strategy(make_strategy("s1"))
        manager.execute()
        first = manager.get_recent_results()
        manager.execute()
        newer = manager.get_recent_results(after=first[-1].sequence)

        assert len(first) == 1
        assert len(newer) == 1
        assert newer[0].sequence > first[-1].sequence
        assert newer[0].details["state"] == {"load": 0.4}


# ─── Rules ─────────────────────────────────────────────────────────


class TestRules:
    """Tests for rule application."""

    def test_adjust_rule_raises_priority(self, manager):
        """Test that a confident adjust rule shifts priority and records its outcome."""
        manager.register_strategy(make_strategy("s1", effectiveness=0.9))
        manager.register_rule(make_rule())

        manager.execute()

        assert manager.get_strategy("s1").priority == 60
        (rule,) = manager.get_rules()
        assert rule.applications == 1
        assert rule.effectiveness == pytest.approx(2 / 3)
        assert rule.observed_values == [0.9]

    def test_unconfident_rule_is_not_applied(self, manager):
        manager.register_strategy(make_strategy("s1", effectiveness=0.9))
        manager.register_rule(make_rule(confidence=0.5))

        manager.execute()

        assert manager.get_strategy("s1").priority == 50
        assert manager.get_metrics().rule_applications == 0

    def test_rule_targets_by_type(self, manager):
        manager.register_strategy(make_strategy("a", type="balance", effectiveness=0.9))
        manager.register_strategy(make_strategy("b", type="expand", effectiveness=0.9))
        manager.register_rule(make_rule(target="expand"))

        manager.execute()

        assert manager.get_strategy("a").priority == 50
        assert manager.get_strategy("b").priority == 60

    def test_optimize_rule_forces_retune(self, manager):
        manager.register_strategy(make_strategy(
            "s1", conditions=[StrategyCondition("load", "<", 0.9)]
        ))
        manager.register_rule(make_rule(
            expression="priority >= 0", function=RuleFunction.OPTIMIZE_STRATEGY, parameters={}
        ))

        manager.execute()

        assert manager.get_strategy("s1").conditions[0].value == pytest.approx(0.4)

    def test_failing_rule_does_not_stop_cycle(self, manager):
        """Test that a rule that fails to apply is recorded and strategies still run."""
        manager.register_strategy(make_strategy("s1", effectiveness=0.9))
        manager.register_rule(make_rule())

        with patch.object(
            manager, "_apply_rule", side_effect=RuntimeError("priority store unavailable")
        ):
            events = manager.execute()

        assert [(e.strategy_id, e.type) for e in events] == [("s1", "executed")]
        failed = [e for e in manager.get_history() if e.type == "rule_failed"]
        assert len(failed) == 1
        assert failed[0].details["rule_id"] == "r1"
        assert failed[0].error == "priority store unavailable"
        metrics = manager.get_metrics()
        assert metrics.rule_failures == 1
        assert metrics.rule_applications == 0
        assert manager.get_strategy("s1").priority == 50


class TestOptimalThreshold:
    def test_blend_of_mean_and_median(self):
        assert optimal_threshold([1.0, 2.0, 6.0]) == pytest.approx(0.6 * 3.0 + 0.4 * 2.0)
