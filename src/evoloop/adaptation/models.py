"""Data models for adaptation strategies, rules, and optimization objectives.

Strategies are reusable adaptation recipes: conditions over the current
system state plus actions pushed through the handler's action surface.
Rules are learned adjustments applied to strategies. Objectives describe
target values the optimizer drives the system toward.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from evoloop.core.errors import InvalidDefinitionError
from evoloop.mutation.responses import CONDITION_OPERATORS, compare
from evoloop.utils.stats import is_finite_number

# ─── Strategies ────────────────────────────────────────────────────


class StrategyActionType(str, Enum):
    """Which handler entry point a strategy action goes through."""

    ADJUST_PARAMETER = "adjust_parameter"
    OPTIMIZE = "optimize"
    TRANSFORM = "transform"


@dataclass
class StrategyCondition:
    """A predicate over the current system state."""

    target: str
    operator: str
    value: Any

    def holds(self, state: Mapping[str, Any]) -> bool:
        return self.target in state and compare(state[self.target], self.operator, self.value)


@dataclass
class StrategyAction:
    type: StrategyActionType
    target: str = ""
    """Parameter target for ADJUST_PARAMETER; defaults to the strategy id."""

    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class Strategy:
    """A registered adaptation recipe.

    ``effectiveness`` is re-derived by the manager from execution outcomes;
    registrants only seed it.
    """

    id: str
    type: str
    actions: list[StrategyAction]
    conditions: list[StrategyCondition] = field(default_factory=list)
    priority: int = 50
    parameters: dict[str, Any] = field(default_factory=dict)
    effectiveness: float = 0.5
    created: datetime | None = None
    last_used: datetime | None = None
    last_tuned: datetime | None = None
    executions: int = 0
    successes: int = 0

    @property
    def score(self) -> float:
        return self.effectiveness

    @property
    def timestamp(self) -> datetime | None:
        return self.created

    @property
    def success_ratio(self) -> float:
        if self.executions == 0:
            return self.effectiveness
        return self.successes / self.executions

    def applies_to(self, state: Mapping[str, Any]) -> bool:
        return all(c.holds(state) for c in self.conditions)

    def validate(self) -> None:
        if not self.id:
            raise InvalidDefinitionError("strategy id is required")
        if not self.type:
            raise InvalidDefinitionError(f"strategy {self.id}: type is required")
        if not 0 <= self.priority <= 100:
            raise InvalidDefinitionError(
                f"strategy {self.id}: priority must be in [0, 100], got {self.priority}"
            )
        if not 0.0 <= self.effectiveness <= 1.0:
            raise InvalidDefinitionError(f"strategy {self.id}: effectiveness must be in [0, 1]")
        if not self.actions:
            raise InvalidDefinitionError(f"strategy {self.id}: at least one action is required")
        for action in self.actions:
            if not isinstance(action.type, StrategyActionType):
                raise InvalidDefinitionError(
                    f"strategy {self.id}: unknown action type {action.type!r}"
                )
        for condition in self.conditions:
            if not condition.target:
                raise InvalidDefinitionError(f"strategy {self.id}: condition target is required")
            if condition.operator not in CONDITION_OPERATORS:
                raise InvalidDefinitionError(
                    f"strategy {self.id}: unknown operator {condition.operator!r}"
                )


# ─── Rules ─────────────────────────────────────────────────────────

_EXPRESSION = re.compile(
    r"^\s*([A-Za-z_]\w*)\s*(>=|<=|==|!=|>|<)\s*(threshold|-?\d+(?:\.\d+)?)\s*$"
)


class RuleFunction(str, Enum):
    """What a rule does to the strategies it targets."""

    ADJUST_STRATEGY = "adjust_strategy"
    """Shift priority by direction × weight × step, and merge parameters."""

    OPTIMIZE_STRATEGY = "optimize_strategy"
    """Force a threshold re-tune."""


@dataclass
class RuleCondition:
    """``<metric> <op> <threshold|number>``, e.g. ``success_rate > threshold``."""

    expression: str
    threshold: float = 0.5
    parameters: dict[str, Any] = field(default_factory=dict)

    def parse(self) -> tuple[str, str, float]:
        match = _EXPRESSION.match(self.expression)
        if match is None:
            raise InvalidDefinitionError(f"unsupported rule expression: {self.expression!r}")
        name, op, rhs = match.groups()
        value = self.threshold if rhs == "threshold" else float(rhs)
        return name, op, value

    def evaluate(self, values: Mapping[str, Any]) -> tuple[bool, float | None]:
        """Evaluate against ``values``; also returns the observed metric value."""
        name, op, threshold = self.parse()
        observed = values.get(name)
        if observed is None:
            return False, None
        return compare(observed, op, threshold), float(observed)


@dataclass
class RuleAction:
    function: RuleFunction
    parameters: dict[str, Any] = field(default_factory=dict)
    result_type: str = "strategy_adjustment"


@dataclass
class StrategyRule:
    """A learned (or hand-written) adjustment applied to matching strategies.

    ``target`` is a strategy id, a strategy type, or ``*`` for all.
    """

    id: str
    name: str
    type: str
    target: str
    condition: RuleCondition
    action: RuleAction
    weight: float = 1.0
    confidence: float = 0.5
    enabled: bool = True
    effectiveness: float = 0.5
    applications: int = 0
    successes: int = 0
    observed_values: list[float] = field(default_factory=list)

    @property
    def score(self) -> float:
        return self.effectiveness

    def matches(self, strategy: Strategy) -> bool:
        return self.target in ("*", strategy.id, strategy.type)

    def record_outcome(self, success: bool) -> None:
        self.applications += 1
        if success:
            self.successes += 1
        # Laplace smoothing keeps a single outcome from pinning the score
        self.effectiveness = (self.successes + 1) / (self.applications + 2)

    def validate(self) -> None:
        if not self.id:
            raise InvalidDefinitionError("rule id is required")
        if not self.target:
            raise InvalidDefinitionError(f"rule {self.id}: target is required")
        if not isinstance(self.action.function, RuleFunction):
            raise InvalidDefinitionError(
                f"rule {self.id}: unknown function {self.action.function!r}"
            )
        if not 0.0 <= self.weight <= 1.0:
            raise InvalidDefinitionError(f"rule {self.id}: weight must be in [0, 1]")
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidDefinitionError(f"rule {self.id}: confidence must be in [0, 1]")
        params = self.action.parameters
        for key in ("direction", "step"):
            if key in params and not is_finite_number(params[key]):
                raise InvalidDefinitionError(
                    f"rule {self.id}: {key} must be a finite number, got {params[key]!r}"
                )
        if not isinstance(params.get("parameters", {}), Mapping):
            raise InvalidDefinitionError(f"rule {self.id}: parameters must be a mapping")
        self.condition.parse()


@dataclass
class StrategyEvent:
    """Audit record of a strategy-manager action."""

    timestamp: datetime
    strategy_id: str
    type: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    sequence: int = 0
    """Monotonic position in the manager's history."""

    @property
    def is_outcome(self) -> bool:
        return self.type in ("executed", "execution_error")


# ─── Objectives ────────────────────────────────────────────────────


class ObjectiveType(str, Enum):
    """Where a successful optimization's parameters are applied."""

    COMPONENT = "component"
    """handler.adjust_parameter(target_id, parameters)"""

    SYSTEM = "system"
    """handler.optimize(parameters)"""

    STRATEGY = "strategy"
    """strategy_manager.update_parameters(target_id, parameters)"""


@dataclass
class OptimizationParameter:
    """A tunable candidate value with its search range."""

    name: str
    value: float
    lower: float
    upper: float
    step: float = 0.1
    """Fraction of the range a single perturbation may move."""

    weight: float = 1.0

    def __post_init__(self) -> None:
        if not all(map(math.isfinite, (self.value, self.lower, self.upper))):
            raise ValueError(f"parameter {self.name}: values must be finite")
        if self.lower > self.upper:
            raise ValueError(f"parameter {self.name}: lower bound exceeds upper bound")
        if not self.lower <= self.value <= self.upper:
            raise ValueError(
                f"parameter {self.name}: value {self.value} outside "
                f"[{self.lower}, {self.upper}]"
            )
        if self.step <= 0:
            raise ValueError(f"parameter {self.name}: step must be positive")

    def clip(self, value: float) -> float:
        return max(self.lower, min(self.upper, value))


@dataclass
class Objective:
    """A target value for some measurable aspect of system state.

    ``evaluator`` receives the current state merged with the candidate
    parameter values and returns the objective's current value. When
    ``parameters`` is empty the optimizer searches over a single parameter
    named ``value`` that the evaluator may read.
    """

    id: str
    name: str
    target: float
    evaluator: Callable[[Mapping[str, Any]], float]
    weight: float = 1.0
    type: ObjectiveType = ObjectiveType.SYSTEM
    target_id: str = ""
    parameters: list[OptimizationParameter] = field(default_factory=list)

    def validate(self) -> None:
        if not self.id:
            raise InvalidDefinitionError("objective id is required")
        if not callable(self.evaluator):
            raise InvalidDefinitionError(f"objective {self.id}: evaluator must be callable")
        if not math.isfinite(self.target):
            raise InvalidDefinitionError(f"objective {self.id}: target must be finite")
        if self.weight <= 0:
            raise InvalidDefinitionError(f"objective {self.id}: weight must be positive")
        if self.type in (ObjectiveType.COMPONENT, ObjectiveType.STRATEGY) and not self.target_id:
            raise InvalidDefinitionError(
                f"objective {self.id}: {self.type.value} objectives need a target_id"
            )
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise InvalidDefinitionError(f"objective {self.id}: duplicate parameter names")
