"""Adaptive learning engine.

Each `learn()` cycle:

1. Pulls strategy outcomes the engine has not seen yet from the strategy
   manager and stores them as experiences in a bounded memory.
2. Mines experience patterns and integrates the valid ones into the
   knowledge store, then re-validates older knowledge.
3. Retrains one outcome model per experience type.
4. Feeds back into the strategy manager: averaged parameters of
   confidently successful runs, synthesized rules, and re-tuned
   thresholds for rules that are not working.

Feedback calls that the strategy manager refuses are logged and skipped;
they never abort the cycle.
"""

from __future__ import annotations

import contextlib
import copy
import math
import random
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from evoloop.adaptation.learning import mining
from evoloop.adaptation.learning import model as outcome_model
from evoloop.adaptation.learning.knowledge import KnowledgeStore
from evoloop.adaptation.learning.models import (
    ADAPTIVE_ACTION_TYPE,
    ExperiencePattern,
    ExperienceStatus,
    LearningAction,
    LearningExperience,
    LearningModel,
    LearningResult,
    LearningStatistics,
    PatternKind,
    TrainingItem,
    mean_accuracy,
)
from evoloop.adaptation.models import StrategyEvent
from evoloop.adaptation.strategy import StrategyManager
from evoloop.core.config import LearningConfig
from evoloop.core.errors import (
    ConfigurationError,
    InvalidDefinitionError,
    NotFoundError,
    ResourceExhaustedError,
)
from evoloop.core.logging import get_logger
from evoloop.utils.stats import is_finite_number, mean
from evoloop.utils.time import utc_now

_logger = get_logger("learning")

STRATEGY_EXPERIENCE = "strategy_execution"

MIN_LEARNING_RATE = 1e-6
MAX_LEARNING_RATE = 1.0
MAX_PARAMETER_HISTORY = 100


def experience_from_event(event: StrategyEvent) -> LearningExperience:
    """Translate a strategy outcome event into a learning experience."""
    details = event.details
    context: dict[str, Any] = {"strategy_id": event.strategy_id}
    if details.get("strategy_type"):
        context["strategy_type"] = details["strategy_type"]
    if is_finite_number(details.get("priority")):
        context["priority"] = details["priority"]
    for key, value in details.get("state", {}).items():
        if is_finite_number(value):
            context[f"state.{key}"] = value

    parameters = {
        k: v for k, v in details.get("parameters", {}).items() if is_finite_number(v)
    }
    metrics = {
        k: float(details[k])
        for k in ("effectiveness", "actions")
        if is_finite_number(details.get(k))
    }
    status = ExperienceStatus.SUCCESS if event.status == "success" else ExperienceStatus.FAILURE
    return LearningExperience(
        id=f"exp-{uuid.uuid4().hex[:12]}",
        type=STRATEGY_EXPERIENCE,
        action=LearningAction(
            type=ADAPTIVE_ACTION_TYPE if details.get("tuned") else "strategy",
            target=event.strategy_id,
            parameters=parameters,
        ),
        result=LearningResult(status=status, metrics=metrics),
        timestamp=event.timestamp,
        context=context,
    )


class AdaptiveLearning:
    """Learns from strategy outcomes and feeds improvements back.

    Thread-safe: public methods hold the engine's lock. The knowledge store
    is its own thread-safe object and is shared with callers as is.
    """

    def __init__(
        self,
        strategy_manager: StrategyManager,
        config: LearningConfig | None = None,
        *,
        knowledge: KnowledgeStore | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if strategy_manager is None:
            raise ConfigurationError("AdaptiveLearning requires a strategy manager")
        self._strategies = strategy_manager
        self._config = config or LearningConfig()
        self._clock = clock or utc_now
        self._rng = rng or random.Random()
        self._knowledge = knowledge or KnowledgeStore(
            decay_factor=self._config.knowledge_decay,
            confidence_floor=self._config.knowledge_floor,
            grace_period=timedelta(seconds=self._config.knowledge_grace_seconds),
            link_threshold=self._config.link_threshold,
            clock=self._clock,
        )

        self._experiences: deque[LearningExperience] = deque(maxlen=self._config.memory_capacity)
        self._models: dict[str, LearningModel] = {}
        self._rule_parameters: dict[str, dict[str, deque[float]]] = {}
        self._learning_rate = self._config.learning_rate
        self._cursor = 0
        self._previous_units = 0
        self._stats = LearningStatistics(learning_rate=self._learning_rate)
        self._lock = RLock()

    @property
    def learning_rate(self) -> float:
        with self._lock:
            return self._learning_rate

    # ─── Experiences ───────────────────────────────────────────────

    def add_experience(self, experience: LearningExperience) -> None:
        """Record an experience. The oldest is dropped when memory is full.

        Raises:
            InvalidDefinitionError: If the experience has no id or type.
        """
        if not experience.id or not experience.type:
            raise InvalidDefinitionError("experience id and type are required")
        with self._lock:
            self._experiences.append(copy.deepcopy(experience))

    def get_experiences(self, experience_type: str | None = None) -> list[LearningExperience]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._experiences
                if experience_type is None or e.type == experience_type
            ]

    def _collect(self) -> int:
        events = self._strategies.get_recent_results(after=self._cursor)
        for event in events:
            self._experiences.append(experience_from_event(event))
            self._cursor = max(self._cursor, event.sequence)
        return len(events)

    # ─── Cycle ─────────────────────────────────────────────────────

    def learn(self) -> LearningStatistics:
        """Run one learning cycle.

        Returns:
            A snapshot of the statistics after the cycle.
        """
        with self._lock:
            now = self._clock()
            collected = self._collect()
            experiences = list(self._experiences)

            patterns = mining.mine_patterns(
                experiences,
                now,
                significance_ratio=self._config.significance_ratio,
                min_confidence=self._config.min_pattern_confidence,
            )
            for pattern in patterns:
                self._knowledge.integrate(pattern, now=now)
            self._knowledge.validate(experiences, now)

            trained = self._train_models(now)
            if trained:
                self.update_learning_rate(mean_accuracy(list(self._models.values())))

            updated = self._update_strategy_parameters(patterns, now)
            synthesized = self._synthesize_rules(patterns)
            retuned = self._retune_rules()

            units = len(self._knowledge)
            s = self._stats
            s.cycles += 1
            s.total_experiences = len(self._experiences)
            s.success_rate = mean(1.0 if e.success else 0.0 for e in self._experiences)
            s.knowledge_units = units
            if self._previous_units:
                s.knowledge_growth_rate = (units - self._previous_units) / self._previous_units
            else:
                s.knowledge_growth_rate = 1.0 if units else 0.0
            s.model_accuracy = mean_accuracy(list(self._models.values()))
            s.learning_rate = self._learning_rate
            s.patterns_mined = len(patterns)
            s.rules_synthesized += synthesized
            s.parameters_updated += updated
            s.last_cycle_at = now
            self._previous_units = units

            _logger.info(
                "learning.cycle_complete",
                collected=collected,
                patterns=len(patterns),
                knowledge_units=units,
                models_trained=trained,
                rules_synthesized=synthesized,
                rules_retuned=retuned,
                parameters_updated=updated,
            )
            return copy.copy(s)

    def _train_models(self, now: datetime) -> int:
        trained = 0
        for experience_type, group in mining.group_by_type(self._experiences).items():
            model = self._models.get(experience_type)
            if model is None:
                model = LearningModel(
                    id=f"model-{experience_type}",
                    outcome_type=experience_type,
                    history=deque(maxlen=self._config.max_model_history),
                )
                self._models[experience_type] = model
            model.training_data = [
                TrainingItem(
                    features=outcome_model.extract_features(e),
                    expected=1.0 if e.success else 0.0,
                    weight=mining.recency_weight(e.timestamp, now),
                )
                for e in group
            ]
            try:
                outcome_model.train(
                    model,
                    learning_rate=self._learning_rate,
                    momentum=self._config.momentum,
                    l2_lambda=self._config.l2_lambda,
                    rng=self._rng,
                    now=now,
                )
            except (ArithmeticError, ValueError) as exc:
                self._stats.failures += 1
                _logger.warning("learning.training_failed", model_id=model.id, error=str(exc))
                continue
            trained += 1
        return trained

    # ─── Feedback ──────────────────────────────────────────────────

    def _successful_parameters(self, pattern: ExperiencePattern) -> dict[str, float]:
        """Mean numeric action parameters shared by the pattern's successful runs."""
        runs = [
            e
            for e in self._experiences
            if e.type == pattern.experience_type
            and e.success
            and all(c.key in e.context and e.context[c.key] == c.value for c in pattern.conditions)
        ]
        if not runs:
            return {}
        names = set(runs[0].action.parameters)
        for run in runs[1:]:
            names &= set(run.action.parameters)
        return {
            name: mean(float(r.action.parameters[name]) for r in runs) for name in sorted(names)
        }

    def _update_strategy_parameters(self, patterns: list[ExperiencePattern], now: datetime) -> int:
        updated = 0
        for pattern in patterns:
            if pattern.kind != PatternKind.SUCCESS:
                continue
            if pattern.confidence <= self._config.parameter_confidence:
                continue
            target = mining.rule_target(pattern)
            parameters = self._successful_parameters(pattern)
            if target == "*" or not parameters:
                continue
            try:
                updated += self._strategies.update_parameters(target, parameters)
            except NotFoundError:
                _logger.debug("learning.parameter_target_missing", target=target)
                continue
            with contextlib.suppress(NotFoundError):
                self._knowledge.record_usage(pattern.signature, now)
        return updated

    def _synthesize_rules(self, patterns: list[ExperiencePattern]) -> int:
        synthesized = 0
        for pattern in patterns:
            confident = pattern.confidence > self._config.parameter_confidence
            if not confident and self._rng.random() >= self._config.exploration_rate:
                continue
            rule = mining.synthesize_rule(pattern)
            history = self._rule_parameters.setdefault(rule.id, {})
            for name, value in rule.action.parameters.items():
                if name != "direction" and is_finite_number(value):
                    history.setdefault(name, deque(maxlen=MAX_PARAMETER_HISTORY)).append(value)
            try:
                self._strategies.register_rule(rule)
            except (ResourceExhaustedError, InvalidDefinitionError) as exc:
                _logger.warning("learning.rule_rejected", rule_id=rule.id, error=str(exc))
                continue
            synthesized += 1
        return synthesized

    def _retune_rules(self) -> int:
        retuned = 0
        for rule in self._strategies.get_rules():
            if rule.effectiveness >= self._config.rule_effectiveness_floor:
                continue
            history = {k: list(v) for k, v in self._rule_parameters.get(rule.id, {}).items()}
            if not mining.optimize_rule(rule, history):
                continue
            try:
                self._strategies.update_rule(rule)
            except (NotFoundError, InvalidDefinitionError) as exc:
                _logger.warning("learning.rule_retune_failed", rule_id=rule.id, error=str(exc))
                continue
            retuned += 1
            _logger.debug(
                "learning.rule_retuned", rule_id=rule.id, threshold=rule.condition.threshold
            )
        return retuned

    # ─── Models ────────────────────────────────────────────────────

    def update_learning_rate(self, accuracy: float) -> float:
        """Slow down when accurate, speed up when not, then decay.

        Returns:
            The new learning rate.
        """
        with self._lock:
            rate = self._learning_rate
            if accuracy > 0.8:
                rate *= 0.9
            elif accuracy < 0.5:
                rate *= 1.1
            rate *= self._config.decay_factor
            self._learning_rate = min(MAX_LEARNING_RATE, max(MIN_LEARNING_RATE, rate))
            return self._learning_rate

    def predict(self, outcome_type: str, features: Mapping[str, float]) -> float:
        """Predicted success probability for an outcome type.

        Raises:
            NotFoundError: If no model has been trained for the type.
        """
        with self._lock:
            trained = self._models.get(outcome_type)
            if trained is None or trained.version == 0:
                raise NotFoundError("model", outcome_type)
            values = {k: float(v) for k, v in features.items() if is_finite_number(v)}
            values.setdefault(outcome_model.BIAS_FEATURE, 1.0)
            probability = outcome_model.forward(trained.weights, values)
            return probability if math.isfinite(probability) else 0.5

    def get_models(self) -> list[LearningModel]:
        with self._lock:
            return copy.deepcopy(list(self._models.values()))

    def get_knowledge(self) -> KnowledgeStore:
        return self._knowledge

    def get_statistics(self) -> LearningStatistics:
        with self._lock:
            return copy.copy(self._stats)
