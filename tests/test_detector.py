"""Tests for evoloop.mutation.detector module."""

from __future__ import annotations

import pytest

from evoloop.core.config import DetectionConfig
from evoloop.core.errors import ConfigurationError, NotFoundError, OperationError
from evoloop.mutation.detector import MutationDetector, baseline_confidence
from evoloop.mutation.models import (
    Mutation,
    MutationSource,
    MutationStatus,
    MutationType,
)


def warm_up(detector, provider, clock, entity="e1", metric="energy", cycles=10):
    """Feed alternating 9/11 readings: mean 10, population σ 1."""
    for i in range(cycles):
        provider.set(entity, **{metric: 9.0 if i % 2 == 0 else 11.0})
        assert detector.detect() == []
        clock.advance(10)


@pytest.fixture
def detector(provider, clock) -> MutationDetector:
    return MutationDetector(provider, DetectionConfig(min_samples=10), clock=clock)


# ─── Construction ──────────────────────────────────────────────────


class TestConstruction:
    """Tests for detector construction."""

    def test_requires_provider(self):
        """Test that a missing provider is a configuration error."""
        with pytest.raises(ConfigurationError):
            MutationDetector(None)  # type: ignore[arg-type]

    def test_default_config(self, provider):
        detector = MutationDetector(provider)
        assert detector.config.sensitivity == 0.8
        assert detector.config.min_samples == 5


class TestBaselineConfidence:
    """Tests for baseline_confidence()."""

    def test_low_sample_floor(self):
        assert baseline_confidence(0) == 0.5
        assert baseline_confidence(4) == 0.5

    def test_linear_ramp(self):
        assert baseline_confidence(5) == pytest.approx(0.5)
        assert baseline_confidence(100) == pytest.approx(1.0)
        assert baseline_confidence(10) == pytest.approx(0.5 + 0.5 * 5 / 95)

    def test_saturates(self):
        assert baseline_confidence(5000) == 1.0


# ─── Detection ─────────────────────────────────────────────────────


class TestDetection:
    """Tests for the detection cycle."""

    def test_spike_against_stable_baseline(self, detector, provider, clock):
        """Test that a 4σ spike on an energy metric becomes an energetic mutation."""
        warm_up(detector, provider, clock)

        provider.set("e1", energy=14.0)
        mutations = detector.detect()

        assert len(mutations) == 1
        mutation = mutations[0]
        assert mutation.type == MutationType.ENERGETIC
        assert mutation.severity == pytest.approx(4.0)
        assert mutation.probability >= detector.config.detection_threshold
        assert mutation.changes[0].property == "energy"
        assert mutation.changes[0].old_value == pytest.approx(10.0)
        assert mutation.changes[0].new_value == 14.0
        assert mutation.source.entity_id == "e1"

    def test_no_false_positive_on_stable_readings(self, detector, provider, clock):
        """Test that readings within σ of the baseline never produce mutations."""
        warm_up(detector, provider, clock)

        for i in range(10):
            provider.set("e1", energy=10.3 if i % 2 == 0 else 9.7)
            assert detector.detect() == []
            clock.advance(10)

        assert detector.get_active_mutations() == []
        assert detector.get_metrics().detected == 0

    def test_no_scoring_before_min_samples(self, detector, provider, clock):
        """Test that a young baseline never scores candidates."""
        for value in (10.0, 10.0, 10.0, 50.0):
            provider.set("e1", energy=value)
            assert detector.detect() == []
            clock.advance(10)

    def test_re_observation_updates_live_mutation(self, detector, provider, clock):
        """Test that a second spike refreshes the live mutation instead of duplicating."""
        warm_up(detector, provider, clock)
        provider.set("e1", energy=14.0)
        first = detector.detect()[0]

        clock.advance(10)
        provider.set("e1", energy=15.0)
        second = detector.detect()

        assert len(second) == 1
        assert second[0].id == first.id
        assert second[0].last_update > first.last_update
        assert len(detector.get_active_mutations()) == 1
        assert detector.get_metrics().updated == 1

    def test_classifies_structural_and_compound(self, provider, clock):
        """Test that mutation type follows the metric families that fired."""
        detector = MutationDetector(provider, DetectionConfig(min_samples=10), clock=clock)
        for i in range(10):
            low = i % 2 == 0
            provider.set("e1", energy=9.0 if low else 11.0, coherence=9.0 if low else 11.0)
            detector.detect()
            clock.advance(10)

        provider.set("e1", energy=14.0, coherence=14.0)
        (mutation,) = detector.detect()
        assert mutation.type == MutationType.COMPOUND
        assert sorted(mutation.changed_properties) == ["coherence", "energy"]

    def test_flat_baseline_uses_relative_deviation(self, provider, clock):
        """Test that a zero-spread baseline flags changes beyond the sensitivity ratio."""
        config = DetectionConfig(min_samples=5, detection_threshold=0.0)
        small = MutationDetector(provider, config, clock=clock)
        large = MutationDetector(provider, config, clock=clock)
        for _ in range(5):
            provider.set("e1", load=10.0)
            small.detect()
            large.detect()
            clock.advance(10)

        provider.set("e1", load=15.0)
        assert small.detect() == []

        provider.set("e1", load=20.0)
        (mutation,) = large.detect()
        assert mutation.type == MutationType.BEHAVIORAL
        assert mutation.severity == pytest.approx(10.0)

    def test_low_probability_candidate_discarded(self, detector, provider, clock):
        """Test that a change too large relative to its baseline is discarded."""
        warm_up(detector, provider, clock)
        provider.set("e1", energy=1000.0)

        assert detector.detect() == []
        assert detector.get_metrics().discarded == 1

    def test_derived_complexity_metric(self, detector, provider, clock):
        """Test that strength × stability is tracked as complexity."""
        provider.set("e1", strength=2.0, stability=0.5)
        detector.detect()

        baseline = detector.get_baselines()["e1"]
        assert baseline.metrics["complexity"].mean == pytest.approx(1.0)

    def test_non_finite_metrics_are_ignored(self, detector, provider, clock):
        """Test that NaN and non-numeric readings are dropped."""
        provider.set("e1", energy=float("nan"), load=3.0)
        detector.detect()
        assert set(detector.get_baselines()["e1"].metrics) == {"load"}


# ─── Failure handling ──────────────────────────────────────────────


class TestFailureHandling:
    """Tests for provider and per-entity failures."""

    def test_provider_failure_raises_operation_error(self, detector, provider):
        """Test that snapshot fetch failures are wrapped."""
        provider.fail_with = TimeoutError("provider timed out")
        with pytest.raises(OperationError, match="fetch_snapshots") as exc_info:
            detector.detect()
        assert exc_info.value.operation == "fetch_snapshots"
        assert isinstance(exc_info.value.__cause__, TimeoutError)

    def test_bad_entity_does_not_abort_cycle(self, detector, provider):
        """Test that one malformed snapshot is skipped and counted."""
        provider.set("good", energy=1.0)
        provider.snapshots.append(object())  # type: ignore[arg-type]

        detector.detect()

        metrics = detector.get_metrics()
        assert metrics.entity_failures == 1
        assert "good" in detector.get_baselines()


# ─── Lifecycle ─────────────────────────────────────────────────────


class TestLifecycle:
    """Tests for resolution, purging and queries."""

    def test_mark_resolved_removes_from_active(self, detector, provider, clock):
        """Test that resolved mutations are no longer offered for response."""
        warm_up(detector, provider, clock)
        provider.set("e1", energy=14.0)
        (mutation,) = detector.detect()

        detector.mark_resolved(mutation.id)

        assert detector.get_active_mutations() == []
        assert detector.get_mutation(mutation.id).status == MutationStatus.RESOLVED

    def test_mark_resolved_unknown_raises(self, detector):
        with pytest.raises(NotFoundError, match="mutation not found"):
            detector.mark_resolved("mut-missing")

    def test_mutation_purged_after_window(self, detector, provider, clock):
        """Test that mutations not re-observed within the window are purged."""
        warm_up(detector, provider, clock)
        provider.set("e1", energy=14.0)
        (mutation,) = detector.detect()

        provider.snapshots = []
        clock.advance(detector.config.time_window_seconds + 1)
        detector.detect()

        with pytest.raises(NotFoundError):
            detector.get_mutation(mutation.id)
        metrics = detector.get_metrics()
        assert metrics.purged == 1
        assert metrics.tracked_entities == 0

    def test_readers_get_copies(self, detector, provider, clock):
        """Test that mutating a returned mutation does not touch stored state."""
        warm_up(detector, provider, clock)
        provider.set("e1", energy=14.0)
        (mutation,) = detector.detect()

        mutation.status = MutationStatus.RESOLVED
        assert detector.get_mutation(mutation.id).status == MutationStatus.DETECTED

    def test_current_state_aggregates_latest_observations(self, detector, provider):
        provider.set("a", energy=2.0, stability=0.4)
        provider.set("b", energy=3.0, stability=0.8)
        detector.detect()

        state = detector.get_current_state()
        assert state["energy"] == pytest.approx(5.0)
        assert state["stability"] == pytest.approx(0.6)
        assert state["entities"] == 2.0


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        "properties,expected",
        [
            (["energy"], MutationType.ENERGETIC),
            (["coherence"], MutationType.STRUCTURAL),
            (["strength", "pattern"], MutationType.COMPOUND),
            (["latency"], MutationType.BEHAVIORAL),
        ],
    )
    def test_classify(self, detector, properties, expected):
        assert detector.classify(properties) == expected


class TestMutationModel:
    """Tests for the Mutation dataclass invariants."""

    def test_requires_changes(self, clock):
        """Test that a mutation without property changes is rejected."""
        with pytest.raises(ValueError, match="at least one property change"):
            Mutation(
                "mut-1",
                MutationType.ENERGETIC,
                MutationSource("e1"),
                [],
                1.0,
                0.5,
                clock(),
                clock(),
            )
