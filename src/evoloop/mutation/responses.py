"""Response strategies, actions, and the executor contract.

A ResponseStrategy is a registered recipe: conditions describing which
mutations it suits and action templates describing what to do. Matching a
strategy to a mutation produces a MutationResponse whose actions are
instantiated from the templates and run through an ActionExecutor.

Response lifecycle:
- PENDING: created, no action run yet
- EXECUTING: at least one action has been attempted
- COMPLETED: every action completed
- FAILED: actions still failing after the retry budget was spent
- TIMEOUT: running longer than the strategy's largest action timeout
"""

from __future__ import annotations

import operator
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from evoloop.core.errors import InvalidDefinitionError

PARAMETER_SENTINEL = "$"
DEFAULT_EXECUTED_HISTORY = 1000

CONDITION_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def compare(actual: Any, op: str, expected: Any) -> bool:
    """Apply a condition operator. Incomparable values never match."""
    try:
        return bool(CONDITION_OPERATORS[op](actual, expected))
    except (KeyError, TypeError):
        return False


class ResponseStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (ResponseStatus.COMPLETED, ResponseStatus.FAILED, ResponseStatus.TIMEOUT)


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ResponseCondition:
    """A predicate over a mutation's context (see MutationHandler.mutation_context)."""

    target: str
    operator: str
    value: Any
    weight: float = 1.0


@dataclass
class ActionTemplate:
    """Blueprint for an action. ``$name`` parameter values are resolved at runtime."""

    type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = 30.0


@dataclass
class ResponseStrategy:
    """A registered corrective recipe."""

    id: str
    type: str
    actions: list[ActionTemplate]
    conditions: list[ResponseCondition] = field(default_factory=list)
    priority: int = 50
    """0-100, higher is preferred."""

    success_rate: float = 0.5
    """Running success rate, seeded by the registrant."""

    parameters: dict[str, Any] = field(default_factory=dict)
    executions: int = 0

    @property
    def score(self) -> float:
        return self.success_rate

    @property
    def max_timeout_seconds(self) -> float:
        return max(a.timeout_seconds for a in self.actions)

    def record_outcome(self, success: bool) -> None:
        """Fold one outcome into the running success rate."""
        self.executions += 1
        outcome = 1.0 if success else 0.0
        self.success_rate += (outcome - self.success_rate) / (self.executions + 1)

    def validate(self) -> None:
        """Reject malformed strategies before they are stored.

        Raises:
            InvalidDefinitionError: Describing the first problem found.
        """
        if not self.id:
            raise InvalidDefinitionError("strategy id is required")
        if not self.type:
            raise InvalidDefinitionError(f"strategy {self.id}: type is required")
        if not 0 <= self.priority <= 100:
            raise InvalidDefinitionError(
                f"strategy {self.id}: priority must be in [0, 100], got {self.priority}"
            )
        if not 0.0 <= self.success_rate <= 1.0:
            raise InvalidDefinitionError(
                f"strategy {self.id}: success_rate must be in [0, 1]"
            )
        if not self.actions:
            raise InvalidDefinitionError(f"strategy {self.id}: at least one action is required")
        for condition in self.conditions:
            if not condition.target:
                raise InvalidDefinitionError(f"strategy {self.id}: condition target is required")
            if condition.operator not in CONDITION_OPERATORS:
                raise InvalidDefinitionError(
                    f"strategy {self.id}: unknown operator {condition.operator!r}"
                )
            if not 0.0 <= condition.weight <= 1.0:
                raise InvalidDefinitionError(
                    f"strategy {self.id}: condition weight must be in [0, 1]"
                )
        for template in self.actions:
            if not template.type:
                raise InvalidDefinitionError(f"strategy {self.id}: action type is required")
            if template.timeout_seconds <= 0:
                raise InvalidDefinitionError(
                    f"strategy {self.id}: action timeout must be positive"
                )


@dataclass
class ResponseAction:
    """One concrete action, either from a template or from the direct action surface."""

    id: str
    type: str
    parameters: dict[str, Any]
    timeout_seconds: float
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "parameters": dict(self.parameters),
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class MutationResponse:
    """One execution of a strategy against one mutation."""

    id: str
    mutation_id: str
    strategy_id: str
    actions: list[ResponseAction]
    max_timeout_seconds: float
    started_at: datetime
    last_update: datetime
    status: ResponseStatus = ResponseStatus.PENDING
    progress: float = 0.0
    retries: int = 0
    finished_at: datetime | None = None

    @property
    def completed_actions(self) -> int:
        return sum(1 for a in self.actions if a.status == ActionStatus.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mutation_id": self.mutation_id,
            "strategy_id": self.strategy_id,
            "status": self.status.value,
            "progress": self.progress,
            "retries": self.retries,
            "actions": [a.to_dict() for a in self.actions],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ResponseEvent:
    """Audit record of something the handler did."""

    timestamp: datetime
    type: str
    status: str
    response_id: str | None = None
    action_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class ActionExecutor(Protocol):
    """Pushes a concrete action into the monitored system.

    Raise to signal failure. Implementations must honour
    ``action.timeout_seconds`` themselves; the handler additionally fails
    any action whose execution overran it.
    """

    def execute(self, action: ResponseAction) -> Any: ...


class NullExecutor:
    """Executor that accepts every action without side effects.

    Used when the loop runs without a connected system, and in tests.
    Only the most recent ``history`` actions are kept.
    """

    def __init__(self, history: int = DEFAULT_EXECUTED_HISTORY) -> None:
        self.executed: deque[ResponseAction] = deque(maxlen=history)

    def execute(self, action: ResponseAction) -> dict[str, Any]:
        self.executed.append(action)
        return {"applied": True, "type": action.type}


def resolve_parameters(
    parameters: Mapping[str, Any], context: Mapping[str, Any]
) -> dict[str, Any]:
    """Replace ``$name`` string values with ``context[name]``.

    Unknown references are left as written so the executor can report them.
    """
    resolved: dict[str, Any] = {}
    for key, value in parameters.items():
        if isinstance(value, str) and value.startswith(PARAMETER_SENTINEL):
            name = value[len(PARAMETER_SENTINEL):]
            resolved[key] = context.get(name, value)
        else:
            resolved[key] = value
    return resolved
