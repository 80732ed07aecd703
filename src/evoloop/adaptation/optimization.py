"""Adaptive optimization: bounded local search toward objective targets.

Each registered Objective names a target value and an evaluator over the
current system state. When an objective drifts further than the
improvement threshold from its target (and was not optimized within the
re-optimization interval), a run starts:

- every iteration perturbs each parameter by a random fraction of its
  range, scaled by the parameter's step and weight, clipped to bounds
- a candidate is accepted only if it lowers the error and its value stays
  in the corridor between the starting value and the target (or lands
  within the threshold of the target)
- the run ends when it converges, reaches the target, or runs out of
  iterations

Successful runs push their parameters out through the handler (or the
strategy manager, for strategy objectives). Every finished run is also
recorded as an "optimization" experience for the learning engine.
"""

from __future__ import annotations

import copy
import dataclasses
import random
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import RLock
from typing import Any

from evoloop.adaptation.learning import (
    AdaptiveLearning,
    ExperienceStatus,
    LearningAction,
    LearningExperience,
    LearningResult,
)
from evoloop.adaptation.models import Objective, ObjectiveType, OptimizationParameter
from evoloop.adaptation.strategy import StrategyManager
from evoloop.core.config import OptimizationConfig
from evoloop.core.errors import (
    ConfigurationError,
    InvalidDefinitionError,
    NotFoundError,
    OperationError,
)
from evoloop.core.logging import get_logger
from evoloop.mutation.handler import MutationHandler
from evoloop.utils.stats import is_finite_number, mean
from evoloop.utils.time import utc_now

_logger = get_logger("optimizer")

OPTIMIZATION_EXPERIENCE = "optimization"
SYNTHETIC_PARAMETER = "value"

# Trailing improvements inspected by the convergence test
CONVERGENCE_WINDOW = 3


class OptimizationStatus(str, Enum):
    ACTIVE = "active"
    CONVERGED = "converged"
    TARGET_REACHED = "target_reached"
    EXHAUSTED = "exhausted"

    @property
    def is_success(self) -> bool:
        return self in (OptimizationStatus.CONVERGED, OptimizationStatus.TARGET_REACHED)


@dataclass
class ConvergencePoint:
    iteration: int
    value: float
    error: float
    improvement: float
    accepted: bool


@dataclass
class Optimization:
    """One optimization run against one objective."""

    id: str
    objective_id: str
    target: float
    initial_value: float
    initial_error: float
    current_value: float
    best_error: float
    parameters: list[OptimizationParameter]
    started_at: datetime
    status: OptimizationStatus = OptimizationStatus.ACTIVE
    iterations: int = 0
    curve: list[ConvergencePoint] = field(default_factory=list)
    finished_at: datetime | None = None
    applied: bool = False
    error: str | None = None

    @property
    def improvement(self) -> float:
        return self.initial_error - self.best_error

    @property
    def parameter_values(self) -> dict[str, float]:
        return {p.name: p.value for p in self.parameters}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "objective_id": self.objective_id,
            "status": self.status.value,
            "target": self.target,
            "initial_value": self.initial_value,
            "current_value": self.current_value,
            "improvement": self.improvement,
            "iterations": self.iterations,
            "parameters": self.parameter_values,
            "applied": self.applied,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class OptimizationMetrics:
    cycles: int = 0
    started: int = 0
    total: int = 0
    successes: int = 0
    failures: int = 0
    evaluation_errors: int = 0
    average_improvement: float = 0.0
    active: int = 0
    objectives: int = 0
    last_cycle_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.successes / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "started": self.started,
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "evaluation_errors": self.evaluation_errors,
            "average_improvement": self.average_improvement,
            "active": self.active,
            "objectives": self.objectives,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


def _copy_objective(objective: Objective) -> Objective:
    # Evaluators may be bound methods; only the parameter list is copied
    return dataclasses.replace(objective, parameters=copy.deepcopy(objective.parameters))


def synthesize_parameter(value: float, step: float) -> OptimizationParameter:
    """A single search parameter spanning half to one and a half times ``value``."""
    if value == 0:
        lower, upper = -1.0, 1.0
    else:
        lower, upper = sorted((0.5 * value, 1.5 * value))
    return OptimizationParameter(
        name=SYNTHETIC_PARAMETER, value=value, lower=lower, upper=upper, step=step
    )


class AdaptiveOptimizer:
    """Drives registered objectives toward their targets.

    Thread-safe: public methods hold the optimizer's lock.
    """

    def __init__(
        self,
        handler: MutationHandler,
        learning: AdaptiveLearning,
        strategy_manager: StrategyManager | None = None,
        config: OptimizationConfig | None = None,
        *,
        state_source: Callable[[], Mapping[str, Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the optimizer.

        Args:
            handler: Outbound action surface for component and system objectives.
            learning: Receives one experience per finished run.
            strategy_manager: Required only for strategy objectives.
            config: Search limits and thresholds.
            state_source: Current system state passed to evaluators.
                Defaults to the handler's aggregate state.
            clock: Time source, for deterministic tests.
            rng: Random source for perturbations.
        """
        if handler is None or learning is None:
            raise ConfigurationError("AdaptiveOptimizer requires a handler and a learning engine")
        self._handler = handler
        self._learning = learning
        self._strategies = strategy_manager
        self._config = config or OptimizationConfig()
        self._state_source = state_source or (lambda: handler.get_current_state().as_dict())
        self._clock = clock or utc_now
        self._rng = rng or random.Random()

        self._objectives: dict[str, Objective] = {}
        self._active: dict[str, Optimization] = {}
        self._last_run: dict[str, datetime] = {}
        self._history: deque[Optimization] = deque(maxlen=self._config.max_history)
        self._metrics = OptimizationMetrics()
        self._lock = RLock()

    # ─── Objectives ────────────────────────────────────────────────

    def register_objective(self, objective: Objective) -> None:
        """Register an objective.

        Raises:
            InvalidDefinitionError: If the objective is malformed, its id is
                taken, or it targets strategies without a strategy manager.
        """
        objective.validate()
        if objective.type == ObjectiveType.STRATEGY and self._strategies is None:
            raise InvalidDefinitionError(
                f"objective {objective.id}: strategy objectives need a strategy manager"
            )
        with self._lock:
            if objective.id in self._objectives:
                raise InvalidDefinitionError(f"objective {objective.id} is already registered")
            self._objectives[objective.id] = _copy_objective(objective)
            self._metrics.objectives = len(self._objectives)
            _logger.debug("optimizer.objective_registered", objective_id=objective.id)

    def unregister_objective(self, objective_id: str) -> None:
        with self._lock:
            if self._objectives.pop(objective_id, None) is None:
                raise NotFoundError("objective", objective_id)
            self._active.pop(objective_id, None)
            self._last_run.pop(objective_id, None)
            self._metrics.objectives = len(self._objectives)

    def get_objectives(self) -> list[Objective]:
        with self._lock:
            return [_copy_objective(o) for o in self._objectives.values()]

    # ─── Cycle ─────────────────────────────────────────────────────

    def optimize(self) -> list[Optimization]:
        """Advance every objective by one cycle.

        Returns:
            Runs that finished during this cycle.
        """
        with self._lock:
            now = self._clock()
            state = dict(self._state_source())
            finished: list[Optimization] = []
            for objective in list(self._objectives.values()):
                try:
                    done = self._step(objective, state, now)
                except OperationError as exc:
                    self._metrics.evaluation_errors += 1
                    self._active.pop(objective.id, None)
                    _logger.warning(
                        "optimizer.objective_failed", objective_id=objective.id, error=str(exc)
                    )
                    continue
                if done is not None:
                    finished.append(done)

            m = self._metrics
            m.cycles += 1
            m.active = len(self._active)
            m.last_cycle_at = now
            _logger.info(
                "optimizer.cycle_complete",
                objectives=len(self._objectives),
                active=m.active,
                finished=len(finished),
            )
            return copy.deepcopy(finished)

    def _evaluate(
        self,
        objective: Objective,
        state: Mapping[str, Any],
        parameters: list[OptimizationParameter],
    ) -> float:
        context = {**state, **{p.name: p.value for p in parameters}}
        try:
            value = objective.evaluator(context)
        except Exception as exc:
            raise OperationError(
                str(exc), operation="evaluate_objective", context={"objective_id": objective.id}
            ) from exc
        if not is_finite_number(value):
            raise OperationError(
                f"evaluator returned {value!r}",
                operation="evaluate_objective",
                context={"objective_id": objective.id},
            )
        return float(value)

    def _start(
        self, objective: Objective, state: Mapping[str, Any], now: datetime
    ) -> Optimization | None:
        last = self._last_run.get(objective.id)
        interval = timedelta(seconds=self._config.optimization_interval_seconds)
        if last is not None and now - last < interval:
            return None

        parameters = copy.deepcopy(objective.parameters)
        value = self._evaluate(objective, state, parameters)
        if not parameters:
            parameters = [synthesize_parameter(value, self._config.default_step)]
            value = self._evaluate(objective, state, parameters)

        error = abs(value - objective.target)
        if error <= self._config.improvement_threshold:
            return None

        run = Optimization(
            id=f"opt-{uuid.uuid4().hex[:12]}",
            objective_id=objective.id,
            target=objective.target,
            initial_value=value,
            initial_error=error,
            current_value=value,
            best_error=error,
            parameters=parameters,
            started_at=now,
        )
        self._active[objective.id] = run
        self._metrics.started += 1
        _logger.info(
            "optimizer.run_started",
            objective_id=objective.id,
            value=round(value, 6),
            target=objective.target,
        )
        return run

    def _step(
        self, objective: Objective, state: Mapping[str, Any], now: datetime
    ) -> Optimization | None:
        run = self._active.get(objective.id) or self._start(objective, state, now)
        if run is None:
            return None

        for _ in range(self._config.iterations_per_cycle):
            self._iterate(run, objective, state)
            status = self._termination(run)
            if status is not None:
                run.status = status
                self._finish(run, objective, state, now)
                return run
        return None

    def _iterate(
        self, run: Optimization, objective: Objective, state: Mapping[str, Any]
    ) -> None:
        candidate = [self._perturb(p) for p in run.parameters]
        value = self._evaluate(objective, state, candidate)
        error = abs(value - objective.target)
        accepted = error < run.best_error and self._in_corridor(run, value)
        improvement = run.best_error - error if accepted else 0.0
        if accepted:
            run.parameters = candidate
            run.current_value = value
            run.best_error = error
        run.iterations += 1
        run.curve.append(
            ConvergencePoint(
                iteration=run.iterations,
                value=value,
                error=error,
                improvement=improvement,
                accepted=accepted,
            )
        )

    def _perturb(self, parameter: OptimizationParameter) -> OptimizationParameter:
        span = parameter.upper - parameter.lower
        delta = span * self._rng.uniform(-1.0, 1.0) * parameter.step * parameter.weight
        return dataclasses.replace(parameter, value=parameter.clip(parameter.value + delta))

    def _in_corridor(self, run: Optimization, value: float) -> bool:
        lower, upper = sorted((run.initial_value, run.target))
        near_target = abs(value - run.target) <= self._config.improvement_threshold
        return lower <= value <= upper or near_target

    def has_converged(self, run: Optimization) -> bool:
        """Stalled within tolerance of the target.

        At least three iterations, each of the last three improving by less
        than the convergence rate, and the best error under the threshold.
        """
        if run.iterations < CONVERGENCE_WINDOW:
            return False
        recent = run.curve[-CONVERGENCE_WINDOW:]
        stalled = all(p.improvement < self._config.convergence_rate for p in recent)
        return stalled and run.best_error < self._config.improvement_threshold

    def _termination(self, run: Optimization) -> OptimizationStatus | None:
        if run.best_error <= self._config.convergence_rate:
            return OptimizationStatus.TARGET_REACHED
        if self.has_converged(run):
            return OptimizationStatus.CONVERGED
        if run.iterations >= self._config.max_iterations:
            return OptimizationStatus.EXHAUSTED
        return None

    def _finish(
        self,
        run: Optimization,
        objective: Objective,
        state: Mapping[str, Any],
        now: datetime,
    ) -> None:
        run.finished_at = now
        self._active.pop(objective.id, None)
        self._last_run[objective.id] = now

        if run.status.is_success:
            try:
                self._apply(objective, run.parameter_values)
                run.applied = True
            except Exception as exc:
                run.error = str(exc)
                _logger.warning(
                    "optimizer.apply_failed", objective_id=objective.id, error=str(exc)
                )
            if objective.parameters:
                objective.parameters = copy.deepcopy(run.parameters)

        self._history.append(run)
        m = self._metrics
        m.total += 1
        if run.status.is_success:
            m.successes += 1
        else:
            m.failures += 1
        m.average_improvement = mean(r.improvement for r in self._history)

        self._record_experience(run, objective, state, now)
        _logger.info(
            "optimizer.run_finished",
            objective_id=objective.id,
            status=run.status.value,
            iterations=run.iterations,
            improvement=round(run.improvement, 6),
            applied=run.applied,
        )

    def _apply(self, objective: Objective, parameters: dict[str, float]) -> None:
        if objective.type == ObjectiveType.COMPONENT:
            self._handler.adjust_parameter(objective.target_id, parameters)
        elif objective.type == ObjectiveType.SYSTEM:
            self._handler.optimize(parameters)
        elif self._strategies is not None:
            self._strategies.update_parameters(objective.target_id, parameters)

    def _record_experience(
        self,
        run: Optimization,
        objective: Objective,
        state: Mapping[str, Any],
        now: datetime,
    ) -> None:
        context: dict[str, Any] = {
            "objective_id": objective.id,
            "objective_type": objective.type.value,
        }
        context.update({f"state.{k}": v for k, v in state.items() if is_finite_number(v)})
        started = run.started_at
        success = run.status.is_success
        experience = LearningExperience(
            id=f"exp-{uuid.uuid4().hex[:12]}",
            type=OPTIMIZATION_EXPERIENCE,
            action=LearningAction(
                type="optimize", target=objective.id, parameters=run.parameter_values
            ),
            result=LearningResult(
                status=ExperienceStatus.SUCCESS if success else ExperienceStatus.FAILURE,
                metrics={
                    "improvement": run.improvement,
                    "iterations": float(run.iterations),
                    "final_error": run.best_error,
                },
                duration_seconds=max(0.0, (now - started).total_seconds()),
            ),
            timestamp=now,
            context=context,
        )
        self._learning.add_experience(experience)

    # ─── Telemetry ─────────────────────────────────────────────────

    def get_optimizations(self) -> list[Optimization]:
        """Copies of the runs still in progress."""
        with self._lock:
            return copy.deepcopy(list(self._active.values()))

    def get_history(self) -> list[Optimization]:
        with self._lock:
            return copy.deepcopy(list(self._history))

    def get_metrics(self) -> OptimizationMetrics:
        with self._lock:
            return copy.copy(self._metrics)
