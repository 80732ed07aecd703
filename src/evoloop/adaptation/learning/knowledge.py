"""Knowledge store: deduplicated, linked, self-validating insights.

Units are keyed by their pattern signature. Integrating a pattern whose
signature is already known merges it into the existing unit instead of
adding a duplicate. Units of different kinds that describe similar
circumstances are linked both ways.

Validation re-checks each unit that is older than the grace period
against recent experiences. Units that no longer hold lose confidence
multiplicatively and are dropped once below the floor.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from evoloop.adaptation.learning.models import (
    ExperiencePattern,
    KnowledgeLink,
    KnowledgeUnit,
    LearningExperience,
    Validator,
)
from evoloop.core.errors import NotFoundError
from evoloop.core.logging import get_logger
from evoloop.core.types import by_score
from evoloop.utils.stats import mean
from evoloop.utils.time import utc_now

_logger = get_logger("learning.knowledge")

AUTO_TAG = "auto_generated"
RELATED_LINK = "related"

# Minimum pattern quality for a unit to keep holding
MIN_HOLD_CONFIDENCE = 0.3
MIN_HOLD_FREQUENCY = 0.1
MIN_HOLD_RATIO = 0.5


def pattern_holds(unit: KnowledgeUnit, experiences: Sequence[LearningExperience]) -> bool:
    """Default validator.

    The pattern must still be well formed, and among experiences of its
    type satisfying all its conditions, at least half must exemplify it.
    A unit with no matching experiences is not contradicted.
    """
    pattern = unit.content
    if pattern.confidence < MIN_HOLD_CONFIDENCE or pattern.frequency < MIN_HOLD_FREQUENCY:
        return False
    if not pattern.conditions or not pattern.outcomes:
        return False

    relevant = [
        e
        for e in experiences
        if e.type == pattern.experience_type
        and all(c.key in e.context and e.context[c.key] == c.value for c in pattern.conditions)
    ]
    if not relevant:
        return True
    ratio = sum(1 for e in relevant if e.matches(pattern.kind)) / len(relevant)
    return ratio >= MIN_HOLD_RATIO


def _overlap(left: dict[str, Any], right: dict[str, Any]) -> float:
    if not left and not right:
        return 0.0
    shared = sum(1 for k, v in left.items() if k in right and right[k] == v)
    return shared / max(len(left), len(right))


def pattern_similarity(a: ExperiencePattern, b: ExperiencePattern) -> float:
    """Mean overlap of conditions, outcome metrics, and shared context."""
    conditions = _overlap(
        {c.key: c.value for c in a.conditions}, {c.key: c.value for c in b.conditions}
    )
    outcome_names_a = {o.metric for o in a.outcomes}
    outcome_names_b = {o.metric for o in b.outcomes}
    union = outcome_names_a | outcome_names_b
    outcomes = len(outcome_names_a & outcome_names_b) / len(union) if union else 0.0
    context = _overlap(a.context, b.context)
    return mean([conditions, outcomes, context])


class KnowledgeStore:
    """Thread-safe collection of KnowledgeUnits."""

    def __init__(
        self,
        *,
        decay_factor: float = 0.9,
        confidence_floor: float = 0.3,
        grace_period: timedelta = timedelta(hours=24),
        link_threshold: float = 0.7,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._decay_factor = decay_factor
        self._floor = confidence_floor
        self._grace = grace_period
        self._link_threshold = link_threshold
        self._clock = clock or utc_now
        self._units: dict[str, KnowledgeUnit] = {}
        self._by_signature: dict[str, str] = {}
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._units)

    def integrate(
        self,
        pattern: ExperiencePattern,
        *,
        validator: Validator | None = None,
        now: datetime | None = None,
    ) -> KnowledgeUnit:
        """Add a pattern as knowledge, merging into an existing unit with the same signature.

        Returns:
            A copy of the stored (new or merged) unit.
        """
        with self._lock:
            now = now or self._clock()
            incoming = KnowledgeUnit(
                id=f"ku-{uuid.uuid4().hex[:12]}",
                content=copy.deepcopy(pattern),
                confidence=pattern.confidence,
                created=now,
                tags=[pattern.kind.value, AUTO_TAG],
                validator=validator,
            )
            existing_id = self._by_signature.get(incoming.signature)
            if existing_id is not None:
                unit = self._units[existing_id]
                unit.merge(incoming)
                _logger.debug(
                    "knowledge.merged",
                    unit_id=unit.id,
                    confidence=round(unit.confidence, 4),
                    observations=unit.observations,
                )
            else:
                unit = incoming
                self._units[unit.id] = unit
                self._by_signature[unit.signature] = unit.id
                _logger.debug("knowledge.added", unit_id=unit.id, signature=unit.signature)
            self._link(unit)
            return copy.deepcopy(unit)

    def _link(self, unit: KnowledgeUnit) -> None:
        for other in self._units.values():
            if other.id == unit.id or other.type == unit.type:
                continue
            strength = pattern_similarity(unit.content, other.content)
            if strength <= self._link_threshold:
                continue
            for source, target in ((unit, other), (other, unit)):
                link = KnowledgeLink(target_id=target.id, type=RELATED_LINK, strength=strength)
                kept = [x for x in source.links if x.target_id != target.id]
                source.links = kept + [link]

    def validate(
        self, experiences: Sequence[LearningExperience], now: datetime | None = None
    ) -> tuple[int, int]:
        """Decay units that no longer hold and drop those below the floor.

        Returns:
            (decayed, removed) counts.
        """
        with self._lock:
            now = now or self._clock()
            decayed = 0
            removed: list[str] = []
            for unit in list(self._units.values()):
                if now - unit.created <= self._grace:
                    continue
                check = unit.validator or pattern_holds
                try:
                    holds = check(unit, experiences)
                except Exception as exc:
                    _logger.warning("knowledge.validator_failed", unit_id=unit.id, error=str(exc))
                    holds = False
                if holds:
                    continue
                unit.decay(self._decay_factor)
                decayed += 1
                if unit.confidence < self._floor:
                    removed.append(unit.id)

            for unit_id in removed:
                self._remove(unit_id)
            if decayed or removed:
                _logger.info("knowledge.validated", decayed=decayed, removed=len(removed))
            return decayed, len(removed)

    def _remove(self, unit_id: str) -> None:
        unit = self._units.pop(unit_id)
        self._by_signature.pop(unit.signature, None)
        for other in self._units.values():
            other.links = [x for x in other.links if x.target_id != unit_id]

    def record_usage(self, signature: str, now: datetime | None = None) -> None:
        with self._lock:
            unit_id = self._by_signature.get(signature)
            if unit_id is None:
                raise NotFoundError("knowledge unit", signature)
            self._units[unit_id].touch(now or self._clock())

    def get(self, unit_id: str) -> KnowledgeUnit:
        with self._lock:
            unit = self._units.get(unit_id)
            if unit is None:
                raise NotFoundError("knowledge unit", unit_id)
            return copy.deepcopy(unit)

    def find(self, signature: str) -> KnowledgeUnit | None:
        with self._lock:
            unit_id = self._by_signature.get(signature)
            return copy.deepcopy(self._units[unit_id]) if unit_id else None

    def units(self) -> list[KnowledgeUnit]:
        """Copies of all units, most confident first."""
        with self._lock:
            return copy.deepcopy(by_score(self._units.values()))
