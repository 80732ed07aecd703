"""Adaptation strategy management.

The StrategyManager owns the catalog of Strategies and StrategyRules. Each
`execute()` cycle:

1. Re-derives every strategy's effectiveness from its recent outcomes
   (recency-weighted, half-life configurable). Strategies below the
   effectiveness floor get a threshold re-tune, at most once per update
   interval.
2. Applies enabled, sufficiently confident rules to the strategies they
   target.
3. Executes the strategies whose conditions hold against the current state,
   in descending priority. A failing strategy is recorded and skipped; it
   never blocks the rest.
4. Retires strategies whose effectiveness collapsed, drops disabled rules,
   and refreshes metrics.

Every outcome is appended to a bounded audit history (oldest dropped
first), which is also what the learning subsystem consumes.
"""

from __future__ import annotations

import copy
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from evoloop.adaptation.models import (
    RuleFunction,
    Strategy,
    StrategyActionType,
    StrategyEvent,
    StrategyRule,
)
from evoloop.core.config import StrategyConfig
from evoloop.core.errors import (
    ConfigurationError,
    NotFoundError,
    ResourceExhaustedError,
)
from evoloop.core.logging import get_logger
from evoloop.mutation.handler import MutationHandler
from evoloop.utils.stats import clamp, is_finite_number, mean, median
from evoloop.utils.time import utc_now

_logger = get_logger("strategy")

# Priority points a full-weight adjust_strategy rule moves per application
DEFAULT_PRIORITY_STEP = 10

MAX_OBSERVED_VALUES = 100


def optimal_threshold(values: list[float]) -> float:
    """Blend of mean and median used when re-tuning thresholds."""
    return 0.6 * mean(values) + 0.4 * median(values)


@dataclass
class StrategyMetrics:
    cycles: int = 0
    executions: int = 0
    successes: int = 0
    failures: int = 0
    retunes: int = 0
    evictions: int = 0
    retired: int = 0
    rule_applications: int = 0
    rule_failures: int = 0
    strategies: int = 0
    rules: int = 0
    average_effectiveness: float = 0.0
    last_cycle_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.successes / self.executions

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "executions": self.executions,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "retunes": self.retunes,
            "evictions": self.evictions,
            "retired": self.retired,
            "rule_applications": self.rule_applications,
            "rule_failures": self.rule_failures,
            "strategies": self.strategies,
            "rules": self.rules,
            "average_effectiveness": self.average_effectiveness,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class StrategyManager:
    """Catalog and executor of adaptation strategies.

    Thread-safe: every public method holds the manager's lock. Strategies
    reach the monitored system only through the handler's action surface.
    """

    def __init__(
        self,
        handler: MutationHandler,
        config: StrategyConfig | None = None,
        *,
        state_source: Callable[[], Mapping[str, Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            handler: Outbound action surface.
            config: Catalog limits and thresholds.
            state_source: Current system state for condition checks.
                Defaults to the handler's aggregate state.
            clock: Time source, for deterministic tests.
        """
        if handler is None:
            raise ConfigurationError("StrategyManager requires a handler")
        self._handler = handler
        self._config = config or StrategyConfig()
        self._state_source = state_source or (lambda: handler.get_current_state().as_dict())
        self._clock = clock or utc_now

        self._strategies: dict[str, Strategy] = {}
        self._rules: dict[str, StrategyRule] = {}
        self._history: deque[StrategyEvent] = deque(maxlen=self._config.max_history)
        self._observed: dict[str, deque[float]] = {}
        self._sequence = 0
        self._metrics = StrategyMetrics()
        self._lock = RLock()

    @property
    def config(self) -> StrategyConfig:
        return self._config

    # ─── Catalog ───────────────────────────────────────────────────

    def register_strategy(self, strategy: Strategy) -> None:
        """Register (or replace) a strategy, evicting the least effective at capacity.

        Raises:
            InvalidDefinitionError: If the strategy is malformed.
        """
        strategy.validate()
        with self._lock:
            now = self._clock()
            full = len(self._strategies) >= self._config.max_strategies
            if strategy.id not in self._strategies and full:
                weakest = min(
                    self._strategies.values(), key=lambda s: (s.effectiveness, s.priority)
                )
                del self._strategies[weakest.id]
                self._metrics.evictions += 1
                self._record(
                    weakest.id, "evicted", "success", {"effectiveness": weakest.effectiveness}
                )
                _logger.info("strategy.evicted", strategy_id=weakest.id, replaced_by=strategy.id)

            stored = copy.deepcopy(strategy)
            stored.created = stored.created or now
            self._strategies[stored.id] = stored
            self._record(stored.id, "registered", "success", {"type": stored.type})
            _logger.debug("strategy.registered", strategy_id=stored.id, priority=stored.priority)

    def unregister_strategy(self, strategy_id: str) -> None:
        with self._lock:
            if self._strategies.pop(strategy_id, None) is None:
                raise NotFoundError("strategy", strategy_id)
            self._record(strategy_id, "unregistered", "success")

    def get_strategy(self, strategy_id: str) -> Strategy:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                raise NotFoundError("strategy", strategy_id)
            return copy.deepcopy(strategy)

    def get_strategies(self) -> list[Strategy]:
        """Copies of all strategies, highest priority first."""
        with self._lock:
            ordered = sorted(self._strategies.values(), key=lambda s: s.priority, reverse=True)
            return copy.deepcopy(ordered)

    def update_parameters(self, target: str, parameters: Mapping[str, Any]) -> int:
        """Merge ``parameters`` into every strategy whose id or type is ``target``.

        Returns:
            Number of strategies updated.

        Raises:
            NotFoundError: If no strategy matches.
        """
        with self._lock:
            matched = [s for s in self._strategies.values() if target in (s.id, s.type)]
            if not matched:
                raise NotFoundError("strategy", target)
            for strategy in matched:
                strategy.parameters.update(parameters)
                self._record(
                    strategy.id, "parameters_updated", "success", {"keys": sorted(parameters)}
                )
            return len(matched)

    def register_rule(self, rule: StrategyRule) -> None:
        """Register a rule, or replace the rule with the same id.

        Raises:
            InvalidDefinitionError: If the rule is malformed.
            ResourceExhaustedError: If the rule capacity is reached.
        """
        rule.validate()
        with self._lock:
            existing = self._rules.get(rule.id)
            if existing is None and len(self._rules) >= self._config.max_rules:
                raise ResourceExhaustedError(f"rule capacity reached ({self._config.max_rules})")
            stored = copy.deepcopy(rule)
            if existing is not None:
                # Keep the track record of the rule being replaced
                stored.applications = existing.applications
                stored.successes = existing.successes
                stored.effectiveness = existing.effectiveness
                stored.observed_values = existing.observed_values
            self._rules[stored.id] = stored
            _logger.debug(
                "strategy.rule_registered", rule_id=stored.id, replaced=existing is not None
            )

    def update_rule(self, rule: StrategyRule) -> None:
        """Replace an existing rule wholesale.

        Raises:
            NotFoundError: If no rule has this id.
        """
        rule.validate()
        with self._lock:
            if rule.id not in self._rules:
                raise NotFoundError("rule", rule.id)
            self._rules[rule.id] = copy.deepcopy(rule)

    def get_rules(self) -> list[StrategyRule]:
        with self._lock:
            return copy.deepcopy(list(self._rules.values()))

    # ─── Cycle ─────────────────────────────────────────────────────

    def execute(self) -> list[StrategyEvent]:
        """Run one strategy cycle.

        Returns:
            The outcome events (executed / execution_error) of this cycle.
        """
        with self._lock:
            now = self._clock()
            state = dict(self._state_source())
            self._observe(state)

            for strategy in list(self._strategies.values()):
                strategy.effectiveness = self.evaluate_effectiveness(strategy, now)
                if strategy.effectiveness < self._config.min_effectiveness:
                    self._retune(strategy, now)

            applied = self._apply_rules(state, now)

            applicable = [s for s in self._strategies.values() if s.applies_to(state)]
            applicable.sort(key=lambda s: s.priority, reverse=True)
            outcomes = [self._run_strategy(s, state, now) for s in applicable]

            succeeded = {e.strategy_id for e in outcomes if e.status == "success"}
            for rule_id, strategy_ids in applied.items():
                rule = self._rules.get(rule_id)
                for strategy_id in strategy_ids:
                    if rule is not None:
                        rule.record_outcome(strategy_id in succeeded)

            self._cleanup()

            m = self._metrics
            m.cycles += 1
            m.strategies = len(self._strategies)
            m.rules = len(self._rules)
            m.average_effectiveness = mean(s.effectiveness for s in self._strategies.values())
            m.last_cycle_at = now
            _logger.info(
                "strategy.cycle_complete",
                applicable=len(applicable),
                succeeded=len(succeeded),
                strategies=m.strategies,
                rules=m.rules,
            )
            return list(outcomes)

    def _observe(self, state: Mapping[str, Any]) -> None:
        for key, value in state.items():
            if is_finite_number(value):
                history = self._observed.setdefault(key, deque(maxlen=MAX_OBSERVED_VALUES))
                history.append(float(value))

    def evaluate_effectiveness(self, strategy: Strategy, now: datetime | None = None) -> float:
        """Recency-weighted success ratio of a strategy's recorded outcomes.

        Without any recorded outcome the current effectiveness is kept.
        """
        with self._lock:
            now = now or self._clock()
            half_life = self._config.effectiveness_half_life_seconds
            weighted = 0.0
            total = 0.0
            for event in self._history:
                if event.strategy_id != strategy.id or not event.is_outcome:
                    continue
                age = max(0.0, (now - event.timestamp).total_seconds())
                weight = 0.5 ** (age / half_life)
                total += weight
                if event.status == "success":
                    weighted += weight
            if total == 0:
                return strategy.effectiveness
            return clamp(weighted / total)

    def _retune(self, strategy: Strategy, now: datetime, force: bool = False) -> bool:
        interval = timedelta(seconds=self._config.update_interval_seconds)
        if not force and strategy.last_tuned is not None and now - strategy.last_tuned < interval:
            return False

        changed: dict[str, float] = {}
        for condition in strategy.conditions:
            history = self._observed.get(condition.target)
            if not history or not is_finite_number(condition.value):
                continue
            if condition.operator not in (">", ">=", "<", "<="):
                continue
            threshold = optimal_threshold(list(history))
            if threshold != condition.value:
                condition.value = threshold
                changed[condition.target] = threshold
        strategy.last_tuned = now
        self._metrics.retunes += 1
        self._record(strategy.id, "retuned", "success", {"thresholds": changed})
        _logger.info(
            "strategy.retuned",
            strategy_id=strategy.id,
            effectiveness=round(strategy.effectiveness, 4),
            thresholds=changed,
        )
        return True

    def _apply_rules(self, state: Mapping[str, Any], now: datetime) -> dict[str, list[str]]:
        """Apply eligible rules; returns rule id -> strategy ids it acted on."""
        applied: dict[str, list[str]] = {}
        for rule in self._rules.values():
            if not rule.enabled or rule.confidence < self._config.adaptive_threshold:
                continue
            for strategy in self._strategies.values():
                if not rule.matches(strategy):
                    continue
                values = {
                    **state,
                    "success_rate": strategy.success_ratio,
                    "effectiveness": strategy.effectiveness,
                    "priority": strategy.priority,
                }
                try:
                    fired, observed = rule.condition.evaluate(values)
                except Exception as exc:
                    self._metrics.rule_failures += 1
                    _logger.warning("strategy.rule_failed", rule_id=rule.id, error=str(exc))
                    continue
                if observed is not None:
                    observed_values = rule.observed_values + [observed]
                    rule.observed_values = observed_values[-MAX_OBSERVED_VALUES:]
                if not fired:
                    continue
                try:
                    self._apply_rule(rule, strategy, now)
                except Exception as exc:
                    self._metrics.rule_failures += 1
                    self._record(
                        strategy.id, "rule_failed", "failure",
                        {"rule_id": rule.id, "function": rule.action.function.value},
                        error=str(exc),
                    )
                    _logger.warning(
                        "strategy.rule_failed", rule_id=rule.id, strategy_id=strategy.id,
                        error=str(exc),
                    )
                    continue
                applied.setdefault(rule.id, []).append(strategy.id)
                self._metrics.rule_applications += 1
        return applied

    def _apply_rule(self, rule: StrategyRule, strategy: Strategy, now: datetime) -> None:
        params = rule.action.parameters
        if rule.action.function == RuleFunction.ADJUST_STRATEGY:
            direction = 1 if params.get("direction", 1) >= 0 else -1
            step = params.get("step", DEFAULT_PRIORITY_STEP)
            delta = round(direction * rule.weight * step)
            strategy.priority = int(clamp(strategy.priority + delta, 0, 100))
            strategy.parameters.update(params.get("parameters", {}))
        else:
            self._retune(strategy, now, force=True)
        self._record(
            strategy.id, "rule_applied", "success",
            {
                "rule_id": rule.id,
                "function": rule.action.function.value,
                "priority": strategy.priority,
            },
        )

    def _run_strategy(
        self, strategy: Strategy, state: Mapping[str, Any], now: datetime
    ) -> StrategyEvent:
        details: dict[str, Any] = {
            "strategy_type": strategy.type,
            "priority": strategy.priority,
            "effectiveness": strategy.effectiveness,
            "parameters": dict(strategy.parameters),
            "state": {k: v for k, v in state.items() if is_finite_number(v)},
            "actions": len(strategy.actions),
            "tuned": strategy.last_tuned is not None,
        }
        strategy.last_used = now
        strategy.executions += 1
        self._metrics.executions += 1
        try:
            for action in strategy.actions:
                params = {**strategy.parameters, **action.parameters}
                if action.type == StrategyActionType.ADJUST_PARAMETER:
                    self._handler.adjust_parameter(action.target or strategy.id, params)
                elif action.type == StrategyActionType.OPTIMIZE:
                    self._handler.optimize(params)
                else:
                    self._handler.transform(params)
        except Exception as exc:
            self._metrics.failures += 1
            _logger.warning("strategy.execution_failed", strategy_id=strategy.id, error=str(exc))
            return self._record(strategy.id, "execution_error", "failure", details, error=str(exc))

        strategy.successes += 1
        self._metrics.successes += 1
        return self._record(strategy.id, "executed", "success", details)

    def _cleanup(self) -> None:
        floor = self._config.min_effectiveness / 2
        for strategy in list(self._strategies.values()):
            if strategy.executions >= self._config.min_outcomes and strategy.effectiveness < floor:
                del self._strategies[strategy.id]
                self._metrics.retired += 1
                self._record(
                    strategy.id, "retired", "success", {"effectiveness": strategy.effectiveness}
                )
                _logger.info("strategy.retired", strategy_id=strategy.id)

        for rule in list(self._rules.values()):
            if rule.applications >= self._config.min_outcomes and rule.effectiveness < floor:
                rule.enabled = False
            if not rule.enabled:
                del self._rules[rule.id]
                _logger.debug("strategy.rule_dropped", rule_id=rule.id)

    # ─── History & telemetry ───────────────────────────────────────

    def _record(
        self,
        strategy_id: str,
        event_type: str,
        status: str,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> StrategyEvent:
        event = StrategyEvent(
            timestamp=self._clock(),
            strategy_id=strategy_id,
            type=event_type,
            status=status,
            details=details or {},
            error=error,
            sequence=self._sequence + 1,
        )
        self._sequence += 1
        self._history.append(event)
        return event

    def get_history(self) -> list[StrategyEvent]:
        with self._lock:
            return copy.deepcopy(list(self._history))

    def get_recent_results(self, after: int = 0) -> list[StrategyEvent]:
        """Retained execution outcomes whose sequence number is above ``after``.

        Consumers remember the last sequence they saw and pass it back to
        receive only newer outcomes.
        """
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._history if e.is_outcome and e.sequence > after
            ]

    def get_metrics(self) -> StrategyMetrics:
        with self._lock:
            return copy.copy(self._metrics)
