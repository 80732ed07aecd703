"""Mutation response handling.

The handler matches each active mutation to the best-fitting registered
ResponseStrategy, runs the strategy's actions through an ActionExecutor, and
drives every response through its state machine:

    pending -> executing -> {completed | failed | timeout}

Strategy fit is a weighted score:

    0.30 × priority/100
  + 0.25 × historical success rate
  + 0.25 × condition-match ratio against the mutation's context
  + 0.20 × resource fit

Resource fit is the free share of response capacity, 1 − active/capacity,
scaled by 1 / (1 + 0.1 × (actions − 1)) so that longer strategies cost a
little more.

Strategies scoring below ``response_threshold`` are never chosen, so a
mutation with no good match stays unhandled until the next cycle.

Each cycle a response:
- times out once it has run longer than its largest action timeout
- retries failed actions while its retry budget lasts, then fails
- completes once every action has completed

Terminal responses leave the active set. Their outcome feeds the
strategy's success rate, and a completed response marks its mutation
resolved in the detector.

The handler is also the loop's outbound action surface. `adjust_parameter`,
`optimize` and `transform` each record a synthetic action and push it
through the same executor.
"""

from __future__ import annotations

import copy
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any

from evoloop.core.config import HandlerConfig
from evoloop.core.errors import (
    ConfigurationError,
    InvalidDefinitionError,
    NotFoundError,
    OperationError,
    ResourceExhaustedError,
)
from evoloop.core.logging import get_logger
from evoloop.core.types import SystemState, derive_phase
from evoloop.mutation.detector import MutationDetector
from evoloop.mutation.models import Mutation, new_id
from evoloop.mutation.responses import (
    ActionExecutor,
    ActionStatus,
    MutationResponse,
    NullExecutor,
    ResponseAction,
    ResponseEvent,
    ResponseStatus,
    ResponseStrategy,
    compare,
    resolve_parameters,
)
from evoloop.utils.stats import clamp, mean
from evoloop.utils.time import utc_now

_logger = get_logger("handler")

FIT_WEIGHTS = {"priority": 0.30, "success": 0.25, "conditions": 0.25, "resources": 0.20}

# Condition-match score of a strategy that declares no conditions
UNCONDITIONAL_MATCH = 0.5

# Resource-fit penalty per action beyond the first
ACTION_COUNT_PENALTY = 0.1


@dataclass
class HandlingMetrics:
    """Handler telemetry.

    ``success_rate`` is completed / finished responses, reported as 1.0
    before any response has finished.
    """

    cycles: int = 0
    responses_created: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    unhandled: int = 0
    action_failures: int = 0
    direct_actions: int = 0
    direct_failures: int = 0
    element_failures: int = 0
    active: int = 0
    success_rate: float = 1.0
    average_latency_seconds: float = 0.0
    last_cycle_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "responses_created": self.responses_created,
            "completed": self.completed,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "unhandled": self.unhandled,
            "action_failures": self.action_failures,
            "direct_actions": self.direct_actions,
            "direct_failures": self.direct_failures,
            "element_failures": self.element_failures,
            "active": self.active,
            "success_rate": self.success_rate,
            "average_latency_seconds": self.average_latency_seconds,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class MutationHandler:
    """Selects strategies for mutations and runs the response state machine.

    Thread-safe: every public method holds the handler's lock. The detector
    is only touched through its public methods.
    """

    def __init__(
        self,
        detector: MutationDetector,
        config: HandlerConfig | None = None,
        *,
        executor: ActionExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if detector is None:
            raise ConfigurationError("MutationHandler requires a detector")
        self._detector = detector
        self._config = config or HandlerConfig()
        self._executor: ActionExecutor = executor or NullExecutor()
        self._clock = clock or utc_now

        self._strategies: dict[str, ResponseStrategy] = {}
        self._active: dict[str, MutationResponse] = {}
        self._finished: deque[MutationResponse] = deque(maxlen=self._config.max_history)
        self._events: deque[ResponseEvent] = deque(maxlen=self._config.max_history)
        self._latencies: deque[float] = deque(maxlen=self._config.max_history)
        self._metrics = HandlingMetrics()
        self._lock = RLock()

    @property
    def config(self) -> HandlerConfig:
        return self._config

    # ─── Strategy catalog ──────────────────────────────────────────

    def register_strategy(self, strategy: ResponseStrategy) -> None:
        """Register a response strategy.

        Raises:
            InvalidDefinitionError: If the strategy is malformed or its id is taken.
            ResourceExhaustedError: If the catalog is full.
        """
        strategy.validate()
        with self._lock:
            if strategy.id in self._strategies:
                raise InvalidDefinitionError(f"strategy already registered: {strategy.id}")
            if len(self._strategies) >= self._config.max_strategies:
                raise ResourceExhaustedError(
                    f"response strategy capacity reached ({self._config.max_strategies})"
                )
            self._strategies[strategy.id] = copy.deepcopy(strategy)
            self._record(
                "strategy_registered", "success", details={"strategy_id": strategy.id}
            )
            _logger.debug("handler.strategy_registered", strategy_id=strategy.id)

    def unregister_strategy(self, strategy_id: str) -> None:
        with self._lock:
            if self._strategies.pop(strategy_id, None) is None:
                raise NotFoundError("response strategy", strategy_id)

    def get_strategies(self) -> list[ResponseStrategy]:
        with self._lock:
            return copy.deepcopy(list(self._strategies.values()))

    def get_strategy(self, strategy_id: str) -> ResponseStrategy:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                raise NotFoundError("response strategy", strategy_id)
            return copy.deepcopy(strategy)

    # ─── Strategy selection ────────────────────────────────────────

    @staticmethod
    def mutation_context(mutation: Mutation) -> dict[str, Any]:
        """Flat context conditions are evaluated against.

        Includes the mutation's type, severity, probability and entity, each
        changed property's new value and ``delta_<property>``, and the
        source entity's context attributes.
        """
        context: dict[str, Any] = dict(mutation.source.context)
        context.update({
            "mutation_id": mutation.id,
            "entity_id": mutation.source.entity_id,
            "type": mutation.type.value,
            "severity": mutation.severity,
            "probability": mutation.probability,
            "change_count": len(mutation.changes),
        })
        for change in mutation.changes:
            context[change.property] = change.new_value
            context[f"delta_{change.property}"] = change.delta
        return context

    @staticmethod
    def condition_match(strategy: ResponseStrategy, context: Mapping[str, Any]) -> float:
        """Weighted share of the strategy's conditions satisfied by ``context``."""
        if not strategy.conditions:
            return UNCONDITIONAL_MATCH
        total = sum(c.weight for c in strategy.conditions)
        if total == 0:
            return UNCONDITIONAL_MATCH
        matched = sum(
            c.weight
            for c in strategy.conditions
            if c.target in context and compare(context[c.target], c.operator, c.value)
        )
        return matched / total

    def _resource_fit(self, strategy: ResponseStrategy) -> float:
        usage = len(self._active) / self._config.max_concurrent_responses
        penalty = 1.0 / (1.0 + ACTION_COUNT_PENALTY * max(0, len(strategy.actions) - 1))
        return clamp(1.0 - usage) * penalty

    def evaluate_strategy_fit(self, strategy: ResponseStrategy, mutation: Mutation) -> float:
        """Weighted fit of a strategy for a mutation, in [0, 1]."""
        with self._lock:
            context = self.mutation_context(mutation)
            score = (
                FIT_WEIGHTS["priority"] * clamp(strategy.priority / 100.0)
                + FIT_WEIGHTS["success"] * clamp(strategy.success_rate)
                + FIT_WEIGHTS["conditions"] * self.condition_match(strategy, context)
                + FIT_WEIGHTS["resources"] * self._resource_fit(strategy)
            )
            return clamp(score)

    def _select(self, mutation: Mutation) -> tuple[ResponseStrategy | None, float]:
        best: ResponseStrategy | None = None
        best_score = 0.0
        for strategy in self._strategies.values():
            score = self.evaluate_strategy_fit(strategy, mutation)
            if score > best_score:
                best, best_score = strategy, score
        if best is None or best_score < self._config.response_threshold:
            return None, best_score
        return best, best_score

    def select_strategy(self, mutation: Mutation) -> ResponseStrategy | None:
        """Best strategy for a mutation, or None if nothing clears the threshold."""
        with self._lock:
            strategy, _ = self._select(mutation)
            return copy.deepcopy(strategy) if strategy else None

    # ─── Cycle ─────────────────────────────────────────────────────

    def handle(self) -> list[MutationResponse]:
        """Run one handling cycle.

        Returns:
            Copies of the responses created during this cycle.
        """
        with self._lock:
            now = self._clock()
            responded = {r.mutation_id for r in self._active.values()}

            created: list[MutationResponse] = []
            for mutation in self._detector.get_active_mutations():
                if mutation.id in responded:
                    continue
                try:
                    response = self._respond(mutation, now)
                except Exception as exc:
                    self._metrics.element_failures += 1
                    self._record(
                        "response_error",
                        "failed",
                        details={"mutation_id": mutation.id},
                        error=str(exc),
                    )
                    _logger.warning(
                        "handler.respond_failed", mutation_id=mutation.id, error=str(exc)
                    )
                    continue
                if response is not None:
                    created.append(response)

            for response in list(self._active.values()):
                try:
                    self._advance(response, now)
                except Exception as exc:
                    self._metrics.element_failures += 1
                    self._record("advance_error", "failed", response_id=response.id, error=str(exc))
                    _logger.warning(
                        "handler.advance_failed", response_id=response.id, error=str(exc)
                    )
                    continue
                if response.status.is_terminal:
                    self._finalize(response, now)

            self._metrics.cycles += 1
            self._metrics.active = len(self._active)
            self._metrics.last_cycle_at = now
            _logger.info(
                "handler.cycle_complete",
                created=len(created),
                active=len(self._active),
                success_rate=round(self.success_rate, 4),
            )
            return copy.deepcopy(created)

    def _respond(self, mutation: Mutation, now: datetime) -> MutationResponse | None:
        if len(self._active) >= self._config.max_concurrent_responses:
            self._metrics.unhandled += 1
            self._record("capacity_reached", "skipped", details={"mutation_id": mutation.id})
            return None

        strategy, score = self._select(mutation)
        if strategy is None:
            self._metrics.unhandled += 1
            _logger.debug(
                "handler.mutation_unhandled", mutation_id=mutation.id, best_score=round(score, 4)
            )
            return None

        response_id = new_id("resp")
        context = {
            **strategy.parameters,
            **self.mutation_context(mutation),
            "response_id": response_id,
            "strategy_id": strategy.id,
            "start_time": now.isoformat(),
        }
        actions = [
            ResponseAction(
                id=new_id("act"),
                type=template.type,
                parameters=resolve_parameters(template.parameters, context),
                timeout_seconds=template.timeout_seconds,
            )
            for template in strategy.actions
        ]
        response = MutationResponse(
            id=response_id,
            mutation_id=mutation.id,
            strategy_id=strategy.id,
            actions=actions,
            max_timeout_seconds=strategy.max_timeout_seconds,
            started_at=now,
            last_update=now,
        )
        self._active[response.id] = response
        self._metrics.responses_created += 1
        self._record(
            "response_created",
            response.status.value,
            response_id=response.id,
            details={"mutation_id": mutation.id, "strategy_id": strategy.id, "fit": score},
        )
        _logger.info(
            "handler.response_created",
            response_id=response.id,
            mutation_id=mutation.id,
            strategy_id=strategy.id,
            fit=round(score, 4),
        )
        return response

    def _advance(self, response: MutationResponse, now: datetime) -> None:
        """Move one response through its state machine for this cycle."""
        elapsed = (now - response.started_at).total_seconds()
        if elapsed > response.max_timeout_seconds:
            response.status = ResponseStatus.TIMEOUT
            response.last_update = now
            return

        failed = [a for a in response.actions if a.status == ActionStatus.FAILED]
        if failed:
            if response.retries >= self._config.max_retries:
                response.status = ResponseStatus.FAILED
                response.last_update = now
                return
            response.retries += 1
            for action in failed:
                action.status = ActionStatus.PENDING
                action.error = None
            self._record(
                "response_retry", "executing", response_id=response.id,
                details={"retry": response.retries, "actions": len(failed)},
            )

        if response.status == ResponseStatus.PENDING:
            response.status = ResponseStatus.EXECUTING

        for action in response.actions:
            if action.status == ActionStatus.PENDING:
                self._execute_action(action, now, response_id=response.id)

        total = len(response.actions)
        response.progress = max(response.progress, response.completed_actions / total)
        response.last_update = now
        if response.completed_actions == total:
            response.status = ResponseStatus.COMPLETED

    def _execute_action(
        self, action: ResponseAction, now: datetime, response_id: str | None = None
    ) -> None:
        action.status = ActionStatus.EXECUTING
        action.attempts += 1
        action.started_at = now
        self._record(
            "action_start", action.status.value, response_id=response_id, action_id=action.id
        )

        started = time.monotonic()
        try:
            result = self._executor.execute(action)
        except Exception as exc:
            action.status = ActionStatus.FAILED
            action.error = str(exc) or type(exc).__name__
        else:
            runtime = time.monotonic() - started
            if runtime > action.timeout_seconds:
                action.status = ActionStatus.FAILED
                action.error = (
                    f"action exceeded its timeout ({runtime:.2f}s > {action.timeout_seconds}s)"
                )
            else:
                action.status = ActionStatus.COMPLETED
                action.result = result
        action.finished_at = self._clock()

        if action.status == ActionStatus.FAILED:
            self._metrics.action_failures += 1
            self._record(
                "action_failed", action.status.value,
                response_id=response_id, action_id=action.id, error=action.error,
            )
            _logger.warning(
                "handler.action_failed", action_id=action.id, type=action.type, error=action.error
            )
        else:
            self._record(
                "action_complete", action.status.value, response_id=response_id, action_id=action.id
            )

    def _finalize(self, response: MutationResponse, now: datetime) -> None:
        response.finished_at = now
        del self._active[response.id]
        self._finished.append(response)
        self._latencies.append((now - response.started_at).total_seconds())

        success = response.status == ResponseStatus.COMPLETED
        if response.status == ResponseStatus.COMPLETED:
            self._metrics.completed += 1
        elif response.status == ResponseStatus.FAILED:
            self._metrics.failed += 1
        else:
            self._metrics.timed_out += 1

        strategy = self._strategies.get(response.strategy_id)
        if strategy is not None:
            strategy.record_outcome(success)

        if success:
            try:
                self._detector.mark_resolved(response.mutation_id)
            except NotFoundError:
                _logger.debug("handler.mutation_already_gone", mutation_id=response.mutation_id)

        self._metrics.success_rate = self.success_rate
        self._metrics.average_latency_seconds = mean(self._latencies)
        self._record(
            f"response_{response.status.value}",
            response.status.value,
            response_id=response.id,
            details={"mutation_id": response.mutation_id, "retries": response.retries},
        )
        _logger.info(
            "handler.response_finished",
            response_id=response.id,
            status=response.status.value,
            retries=response.retries,
        )

    # ─── Direct action surface ─────────────────────────────────────

    def adjust_parameter(self, target: str, parameters: Mapping[str, Any]) -> ResponseAction:
        """Push a parameter change for ``target`` into the monitored system.

        Raises:
            InvalidDefinitionError: If ``target`` is empty.
            OperationError: If the executor rejects the action.
        """
        if not target:
            raise InvalidDefinitionError("adjust_parameter requires a target")
        return self._direct("parameter_adjustment", {"target": target, **parameters})

    def optimize(self, parameters: Mapping[str, Any]) -> ResponseAction:
        """Request a system-wide optimization pass with the given parameters."""
        return self._direct("system_optimization", dict(parameters))

    def transform(self, parameters: Mapping[str, Any]) -> ResponseAction:
        """Request a structural transform of the monitored system."""
        return self._direct("system_transform", dict(parameters))

    def _direct(self, action_type: str, parameters: dict[str, Any]) -> ResponseAction:
        with self._lock:
            action = ResponseAction(
                id=new_id("act"),
                type=action_type,
                parameters=parameters,
                timeout_seconds=self._config.default_action_timeout_seconds,
            )
            self._execute_action(action, self._clock())
            self._metrics.direct_actions += 1
            if action.status == ActionStatus.FAILED:
                self._metrics.direct_failures += 1
                raise OperationError(
                    action.error or "action failed",
                    operation=action_type,
                    context={"action_id": action.id, "parameters": parameters},
                )
            return copy.deepcopy(action)

    # ─── State & telemetry ─────────────────────────────────────────

    @property
    def success_rate(self) -> float:
        finished = self._metrics.completed + self._metrics.failed + self._metrics.timed_out
        if finished == 0:
            return 1.0
        return self._metrics.completed / finished

    def get_current_state(self) -> SystemState:
        """Aggregate state for objective evaluators.

        energy is the active-response load, balance the mean progress of
        active responses (1.0 when idle), entropy its complement, and
        harmony the response success rate.
        """
        with self._lock:
            load = len(self._active) / self._config.max_concurrent_responses
            stability = mean(r.progress for r in self._active.values()) if self._active else 1.0
            harmony = self.success_rate
            return SystemState(
                energy=load,
                entropy=1.0 - stability,
                harmony=harmony,
                balance=stability,
                phase=derive_phase(harmony, stability),
                timestamp=self._clock(),
                properties={
                    "load": load,
                    "stability": stability,
                    "stable": 1.0 if stability >= self._config.stability_target else 0.0,
                    "active_responses": float(len(self._active)),
                    "success_rate": harmony,
                },
            )

    def get_active_responses(self) -> list[MutationResponse]:
        with self._lock:
            return copy.deepcopy(list(self._active.values()))

    def get_response(self, response_id: str) -> MutationResponse:
        """Find an active or finished response by id."""
        with self._lock:
            response = self._active.get(response_id)
            if response is None:
                response = next((r for r in self._finished if r.id == response_id), None)
            if response is None:
                raise NotFoundError("response", response_id)
            return copy.deepcopy(response)

    def get_finished_responses(self) -> list[MutationResponse]:
        with self._lock:
            return copy.deepcopy(list(self._finished))

    def get_history(self) -> list[ResponseEvent]:
        with self._lock:
            return list(self._events)

    def get_metrics(self) -> HandlingMetrics:
        with self._lock:
            self._metrics.active = len(self._active)
            return copy.copy(self._metrics)

    def _record(
        self,
        event_type: str,
        status: str,
        *,
        response_id: str | None = None,
        action_id: str | None = None,
        details: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self._events.append(ResponseEvent(
            timestamp=self._clock(),
            type=event_type,
            status=status,
            response_id=response_id,
            action_id=action_id,
            details=details or {},
            error=error,
        ))
