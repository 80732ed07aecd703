"""Statistical mutation detection.

The detector keeps a rolling observation window per monitored entity and
derives a baseline (mean, population standard deviation, 2σ bounds) for
every tracked metric. Each detection cycle:

1. Fetches entity snapshots from the SnapshotProvider.
2. Appends one observation per entity, tagging metrics that fall outside
   mean ± σ·sensitivity of the previous baseline as anomalies.
3. Flags metrics whose deviation from the previous baseline is significant.
4. Groups flagged metrics into one candidate Mutation per entity, scores
   its severity and probability, and discards candidates below threshold.
5. Stores surviving candidates, updating a live mutation for the same
   entity in place rather than creating a duplicate.
6. Recomputes baselines from the retained window and purges mutations
   that have not been re-observed within the window.

Scoring always uses the baseline as it stood before the current
observation, so a sudden spike cannot dilute its own reference point.

Example usage:
    detector = MutationDetector(provider, DetectionConfig(sensitivity=1.5))
    for mutation in detector.detect():
        print(mutation.type, mutation.severity)
"""

from __future__ import annotations

import copy
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Any

from evoloop.core.config import DetectionConfig
from evoloop.core.errors import ConfigurationError, NotFoundError, OperationError
from evoloop.core.logging import get_logger
from evoloop.core.types import EntitySnapshot, SnapshotProvider, oldest_first
from evoloop.mutation.models import (
    BaselineMetric,
    Mutation,
    MutationBaseline,
    MutationObservation,
    MutationSource,
    MutationStatus,
    MutationType,
    PropertyChange,
    new_id,
)
from evoloop.utils.stats import clamp, is_finite_number, mean, population_std
from evoloop.utils.time import utc_now

_logger = get_logger("detector")

# Weights of baseline confidence, inverse severity and stability factor
PROBABILITY_WEIGHTS = (1.0, 1.0 / 2.0, 1.0 / 3.0)

# A baseline with spread never flags deviations of one σ or less
MIN_SIGMA_DEVIATION = 1.0

_EPSILON = 1e-9


def baseline_confidence(sample_count: int) -> float:
    """Confidence in a baseline built from ``sample_count`` observations.

    0.5 below five samples, 1.0 above one hundred, linear in between.
    """
    if sample_count < 5:
        return 0.5
    if sample_count > 100:
        return 1.0
    return 0.5 + 0.5 * (sample_count - 5) / 95


@dataclass
class DetectionMetrics:
    """Counters describing detector behaviour for telemetry."""

    cycles: int = 0
    """Completed detection cycles."""

    detected: int = 0
    """New mutations stored."""

    updated: int = 0
    """Cycles in which a live mutation was refreshed by a re-observation."""

    discarded: int = 0
    """Candidates rejected by the probability/window check."""

    purged: int = 0
    """Mutations removed after aging out of the window."""

    entity_failures: int = 0
    """Entities skipped because processing raised."""

    active: int = 0
    """Mutations currently in DETECTED status."""

    tracked_entities: int = 0
    """Entities with a baseline."""

    last_cycle_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "detected": self.detected,
            "updated": self.updated,
            "discarded": self.discarded,
            "purged": self.purged,
            "entity_failures": self.entity_failures,
            "active": self.active,
            "tracked_entities": self.tracked_entities,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class MutationDetector:
    """Detects statistically significant metric deviations per entity.

    Thread-safe: every public method holds the detector's lock, and
    `detect()` holds it for the whole cycle. Readers get deep copies.
    """

    def __init__(
        self,
        provider: SnapshotProvider,
        config: DetectionConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            provider: Source of entity snapshots.
            config: Detection thresholds. Defaults to DetectionConfig().
            clock: Time source, for deterministic tests.

        Raises:
            ConfigurationError: If no provider is given.
        """
        if provider is None:
            raise ConfigurationError("MutationDetector requires a snapshot provider")

        self._provider = provider
        self._config = config or DetectionConfig()
        self._clock = clock or utc_now

        self._observations: dict[str, deque[MutationObservation]] = {}
        self._baselines: dict[str, MutationBaseline] = {}
        self._mutations: dict[str, Mutation] = {}
        self._live_by_entity: dict[str, str] = {}
        self._metrics = DetectionMetrics()
        self._lock = RLock()

        _logger.debug(
            "detector.initialized",
            threshold=self._config.detection_threshold,
            window_seconds=self._config.time_window_seconds,
            sensitivity=self._config.sensitivity,
        )

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self._config.time_window_seconds)

    # ─── Cycle ─────────────────────────────────────────────────────

    def detect(self) -> list[Mutation]:
        """Run one detection cycle.

        Returns:
            Copies of the mutations created or refreshed during this cycle.

        Raises:
            OperationError: If the snapshot provider fails.
        """
        with self._lock:
            now = self._clock()
            snapshots = self._fetch_snapshots()

            touched: list[Mutation] = []
            for snapshot in snapshots:
                try:
                    mutation = self._process_entity(snapshot, now)
                except Exception as exc:
                    self._metrics.entity_failures += 1
                    _logger.warning(
                        "detector.entity_failed",
                        entity_id=getattr(snapshot, "entity_id", None),
                        error=str(exc),
                    )
                    continue
                if mutation is not None:
                    touched.append(mutation)

            self._prune_observations(now)
            self._recompute_baselines(now)
            purged = self._purge_expired(now)

            self._metrics.cycles += 1
            self._metrics.last_cycle_at = now
            self._metrics.active = self._count_active()
            self._metrics.tracked_entities = len(self._baselines)

            _logger.info(
                "detector.cycle_complete",
                entities=len(snapshots),
                mutations=len(touched),
                purged=purged,
                active=self._metrics.active,
            )
            return [copy.deepcopy(m) for m in touched]

    def _fetch_snapshots(self) -> Sequence[EntitySnapshot]:
        try:
            return list(self._provider.current_patterns())
        except Exception as exc:
            raise OperationError(
                str(exc),
                operation="fetch_snapshots",
                context={"provider": type(self._provider).__name__},
            ) from exc

    def _process_entity(self, snapshot: EntitySnapshot, now: datetime) -> Mutation | None:
        metrics = self._collect_metrics(snapshot)
        if not metrics:
            return None

        entity_id = snapshot.entity_id
        prior = self._baselines.get(entity_id)

        observation = MutationObservation(
            timestamp=now,
            entity_id=entity_id,
            metrics=metrics,
            anomalies=self._find_anomalies(metrics, prior),
        )
        history = self._observations.setdefault(
            entity_id, deque(maxlen=self._config.max_samples)
        )
        history.append(observation)

        if prior is None or prior.sample_count < self._config.min_samples:
            return None

        changes = self._significant_changes(metrics, prior, now)
        if not changes:
            return None

        candidate = self._build_mutation(snapshot, metrics, prior, changes, now)
        if not self._is_valid(candidate, now):
            self._metrics.discarded += 1
            _logger.debug(
                "detector.candidate_discarded",
                entity_id=entity_id,
                probability=round(candidate.probability, 4),
                threshold=self._config.detection_threshold,
            )
            return None
        return self._store(candidate, now)

    # ─── Metric collection ─────────────────────────────────────────

    def _collect_metrics(self, snapshot: EntitySnapshot) -> dict[str, float]:
        """Finite numeric metrics of a snapshot, plus derived complexity."""
        metrics = {
            name: float(value)
            for name, value in snapshot.metrics.items()
            if is_finite_number(value)
        }
        if "complexity" not in metrics and "strength" in metrics and "stability" in metrics:
            metrics["complexity"] = metrics["strength"] * metrics["stability"]
        return metrics

    def _find_anomalies(
        self, metrics: dict[str, float], baseline: MutationBaseline | None
    ) -> list[str]:
        if baseline is None:
            return []
        anomalies = []
        for name, value in metrics.items():
            profile = baseline.metrics.get(name)
            if profile is None or profile.std_dev == 0:
                continue
            band = profile.std_dev * self._config.sensitivity
            if value < profile.mean - band or value > profile.mean + band:
                anomalies.append(name)
        return sorted(anomalies)

    def is_significant(self, value: float, profile: BaselineMetric) -> bool:
        """Whether ``value`` deviates significantly from ``profile``.

        With spread, the deviation must exceed max(1, sensitivity) standard
        deviations. Without spread, the deviation relative to the mean must
        exceed the sensitivity ratio.
        """
        deviation = abs(value - profile.mean)
        if profile.std_dev > 0:
            return deviation > max(MIN_SIGMA_DEVIATION, self._config.sensitivity) * profile.std_dev
        reference = max(abs(profile.mean), _EPSILON)
        return deviation / reference > self._config.sensitivity

    def _significant_changes(
        self, metrics: dict[str, float], baseline: MutationBaseline, now: datetime
    ) -> list[PropertyChange]:
        changes = []
        for name in sorted(metrics):
            profile = baseline.metrics.get(name)
            if profile is None:
                continue
            value = metrics[name]
            if self.is_significant(value, profile):
                changes.append(PropertyChange(
                    property=name,
                    old_value=profile.mean,
                    new_value=value,
                    timestamp=now,
                ))
        return changes

    # ─── Scoring ───────────────────────────────────────────────────

    def classify(self, properties: Sequence[str]) -> MutationType:
        """Mutation type implied by which properties changed."""
        fired = set(properties)
        energetic = bool(fired & set(self._config.energy_metrics))
        structural = bool(fired & set(self._config.structural_metrics))
        if energetic and structural:
            return MutationType.COMPOUND
        if energetic:
            return MutationType.ENERGETIC
        if structural:
            return MutationType.STRUCTURAL
        return MutationType.BEHAVIORAL

    def _probability(
        self, baseline: MutationBaseline, changes: list[PropertyChange]
    ) -> float:
        relative = mean(
            min(1.0, abs(c.delta) / max(abs(c.old_value), _EPSILON)) for c in changes
        )
        terms = (baseline.confidence, 1.0 - relative, self._config.stability_factor)
        weighted = sum(t * w for t, w in zip(terms, PROBABILITY_WEIGHTS, strict=True))
        return clamp(weighted / sum(PROBABILITY_WEIGHTS))

    def _build_mutation(
        self,
        snapshot: EntitySnapshot,
        metrics: dict[str, float],
        baseline: MutationBaseline,
        changes: list[PropertyChange],
        now: datetime,
    ) -> Mutation:
        source = MutationSource(
            entity_id=snapshot.entity_id,
            location=str(snapshot.context.get("location", "")),
            energy=metrics.get("energy", metrics.get("strength", 0.0)),
            context=dict(snapshot.context),
        )
        return Mutation(
            id=new_id("mut"),
            type=self.classify([c.property for c in changes]),
            source=source,
            changes=changes,
            severity=mean(abs(c.delta) for c in changes),
            probability=self._probability(baseline, changes),
            detected_at=now,
            last_update=now,
        )

    def _is_valid(self, mutation: Mutation, now: datetime) -> bool:
        if not mutation.changes:
            return False
        if mutation.probability < self._config.detection_threshold:
            return False
        return now - mutation.last_update <= self.window

    def _store(self, candidate: Mutation, now: datetime) -> Mutation:
        entity_id = candidate.source.entity_id
        live_id = self._live_by_entity.get(entity_id)
        live = self._mutations.get(live_id) if live_id else None

        if live is not None and live.status == MutationStatus.DETECTED:
            live.type = candidate.type
            live.source = candidate.source
            live.changes = candidate.changes
            live.severity = candidate.severity
            live.probability = candidate.probability
            live.last_update = now
            self._metrics.updated += 1
            _logger.debug("detector.mutation_updated", mutation_id=live.id, entity_id=entity_id)
            return live

        self._mutations[candidate.id] = candidate
        self._live_by_entity[entity_id] = candidate.id
        self._metrics.detected += 1
        _logger.info(
            "detector.mutation_detected",
            mutation_id=candidate.id,
            entity_id=entity_id,
            type=candidate.type.value,
            severity=round(candidate.severity, 4),
            probability=round(candidate.probability, 4),
        )
        return candidate

    # ─── Window maintenance ────────────────────────────────────────

    def _prune_observations(self, now: datetime) -> None:
        cutoff = now - self.window
        for entity_id in list(self._observations):
            history = self._observations[entity_id]
            while history and history[0].timestamp < cutoff:
                history.popleft()
            if not history:
                del self._observations[entity_id]

    def _recompute_baselines(self, now: datetime) -> None:
        for entity_id in list(self._baselines):
            if entity_id not in self._observations:
                del self._baselines[entity_id]
                _logger.debug("detector.baseline_evicted", entity_id=entity_id)

        for entity_id, history in self._observations.items():
            profiles: dict[str, BaselineMetric] = {}
            names = {name for obs in history for name in obs.metrics}
            for name in names:
                values = [obs.metrics[name] for obs in history if name in obs.metrics]
                mu = mean(values)
                sigma = population_std(values, mu)
                profiles[name] = BaselineMetric(
                    mean=mu,
                    std_dev=sigma,
                    lower_bound=mu - 2 * sigma,
                    upper_bound=mu + 2 * sigma,
                    history=values,
                )
            self._baselines[entity_id] = MutationBaseline(
                entity_id=entity_id,
                metrics=profiles,
                confidence=baseline_confidence(len(history)),
                sample_count=len(history),
                last_update=now,
            )

    def _purge_expired(self, now: datetime) -> int:
        cutoff = now - self.window
        expired = [mid for mid, m in self._mutations.items() if m.last_update < cutoff]
        for mutation_id in expired:
            mutation = self._mutations.pop(mutation_id)
            if self._live_by_entity.get(mutation.source.entity_id) == mutation_id:
                del self._live_by_entity[mutation.source.entity_id]
        self._metrics.purged += len(expired)
        return len(expired)

    def _count_active(self) -> int:
        return sum(1 for m in self._mutations.values() if m.status == MutationStatus.DETECTED)

    # ─── Queries ───────────────────────────────────────────────────

    def get_active_mutations(self) -> list[Mutation]:
        """Copies of mutations still awaiting a response, oldest first."""
        with self._lock:
            active = [
                m for m in self._mutations.values() if m.status == MutationStatus.DETECTED
            ]
            return copy.deepcopy(oldest_first(active))

    def get_recent_mutations(self, window: timedelta | None = None) -> list[Mutation]:
        """Copies of every stored mutation detected within ``window``."""
        with self._lock:
            cutoff = self._clock() - (window if window is not None else self.window)
            recent = [m for m in self._mutations.values() if m.detected_at >= cutoff]
            return copy.deepcopy(oldest_first(recent))

    def get_mutation(self, mutation_id: str) -> Mutation:
        with self._lock:
            mutation = self._mutations.get(mutation_id)
            if mutation is None:
                raise NotFoundError("mutation", mutation_id)
            return copy.deepcopy(mutation)

    def mark_resolved(self, mutation_id: str) -> None:
        """Mark a mutation as resolved so it is no longer offered for response.

        Raises:
            NotFoundError: If the mutation is unknown or already purged.
        """
        with self._lock:
            mutation = self._mutations.get(mutation_id)
            if mutation is None:
                raise NotFoundError("mutation", mutation_id)
            mutation.status = MutationStatus.RESOLVED
            if self._live_by_entity.get(mutation.source.entity_id) == mutation_id:
                del self._live_by_entity[mutation.source.entity_id]
            self._metrics.active = self._count_active()
            _logger.debug("detector.mutation_resolved", mutation_id=mutation_id)

    def get_observations(self, window: timedelta | None = None) -> list[MutationObservation]:
        with self._lock:
            cutoff = self._clock() - (window if window is not None else self.window)
            observations = [
                obs
                for history in self._observations.values()
                for obs in history
                if obs.timestamp >= cutoff
            ]
            observations.sort(key=lambda o: o.timestamp)
            return copy.deepcopy(observations)

    def get_baselines(self) -> dict[str, MutationBaseline]:
        with self._lock:
            return copy.deepcopy(self._baselines)

    def get_current_state(self) -> dict[str, float]:
        """Aggregate view of the latest observation of every entity.

        ``energy`` is the summed energy metric and ``stability`` the mean
        stability metric, falling back to the share of entities without
        anomalies when no entity reports stability.
        """
        with self._lock:
            latest = [history[-1] for history in self._observations.values() if history]
            energy = sum(obs.metrics.get("energy", 0.0) for obs in latest)
            reported = [obs.metrics["stability"] for obs in latest if "stability" in obs.metrics]
            if reported:
                stability = mean(reported)
            elif latest:
                stability = 1.0 - sum(1 for obs in latest if obs.anomalies) / len(latest)
            else:
                stability = 1.0
            return {
                "energy": energy,
                "stability": stability,
                "entities": float(len(latest)),
                "active_mutations": float(self._count_active()),
            }

    def get_metrics(self) -> DetectionMetrics:
        with self._lock:
            return copy.copy(self._metrics)
