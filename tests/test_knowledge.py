"""Tests for evoloop.adaptation.learning.knowledge module."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from evoloop.adaptation.learning.knowledge import (
    AUTO_TAG,
    KnowledgeStore,
    pattern_holds,
    pattern_similarity,
)
from evoloop.adaptation.learning.models import (
    ExperiencePattern,
    ExperienceStatus,
    KnowledgeUnit,
    LearningAction,
    LearningExperience,
    LearningResult,
    PatternCondition,
    PatternKind,
    PatternOutcome,
)
from evoloop.core.errors import NotFoundError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
AFTER_GRACE = NOW + timedelta(hours=25)


def make_pattern(
    kind: PatternKind = PatternKind.SUCCESS,
    *,
    confidence: float = 0.5,
    frequency: float = 0.5,
    zone: str = "a",
) -> ExperiencePattern:
    return ExperiencePattern(
        kind=kind,
        experience_type="strategy_execution",
        frequency=frequency,
        confidence=confidence,
        conditions=[PatternCondition("zone", zone, 0.9)],
        outcomes=[PatternOutcome("gain", 1.0, 0.5)],
        context={"zone": zone},
        support=3,
        last_seen=NOW,
    )


def experience(success: bool, zone: str = "a") -> LearningExperience:
    return LearningExperience(
        id="exp",
        type="strategy_execution",
        action=LearningAction(type="strategy"),
        result=LearningResult(
            status=ExperienceStatus.SUCCESS if success else ExperienceStatus.FAILURE
        ),
        timestamp=NOW,
        context={"zone": zone},
    )


def never_holds(unit, experiences) -> bool:
    return False


@pytest.fixture
def store() -> KnowledgeStore:
    return KnowledgeStore(clock=lambda: NOW)


# ─── Integration ───────────────────────────────────────────────────


class TestIntegrate:
    """Tests for KnowledgeStore.integrate()."""

    def test_new_pattern_becomes_unit(self, store):
        unit = store.integrate(make_pattern())

        assert len(store) == 1
        assert unit.type == PatternKind.SUCCESS
        assert unit.confidence == pytest.approx(0.5)
        assert unit.tags == ["success", AUTO_TAG]
        assert unit.created == NOW

    def test_same_signature_merges(self, store):
        """Test that re-integrating a known pattern merges instead of duplicating."""
        first = store.integrate(make_pattern())
        second = store.integrate(make_pattern())

        assert len(store) == 1
        assert second.id == first.id
        assert second.observations == 2
        assert second.confidence == pytest.approx(first.confidence)
        assert second.content == first.content

    def test_merge_is_observation_weighted(self, store):
        store.integrate(make_pattern(confidence=0.4))
        store.integrate(make_pattern(confidence=0.4))
        merged = store.integrate(make_pattern(confidence=0.7))
        assert merged.confidence == pytest.approx((0.4 * 2 + 0.7) / 3)

    def test_similar_units_of_different_kinds_are_linked(self, store):
        """Test that related insights of different kinds link both ways."""
        success = store.integrate(make_pattern(PatternKind.SUCCESS))
        adaptation = store.integrate(make_pattern(PatternKind.ADAPTATION))

        success = store.get(success.id)
        assert [link.target_id for link in success.links] == [adaptation.id]
        assert [link.target_id for link in adaptation.links] == [success.id]
        assert adaptation.links[0].strength == pytest.approx(1.0)

    def test_same_kind_is_not_linked(self, store):
        store.integrate(make_pattern(zone="a"))
        unit = store.integrate(make_pattern(zone="b"))
        assert unit.links == []

    def test_readers_get_copies(self, store):
        unit = store.integrate(make_pattern())
        unit.tags.append("edited")
        assert "edited" not in store.get(unit.id).tags


# ─── Validation ────────────────────────────────────────────────────


class TestValidate:
    """Tests for KnowledgeStore.validate()."""

    def test_young_units_are_not_checked(self, store):
        store.integrate(make_pattern(), validator=never_holds)
        assert store.validate([], NOW + timedelta(hours=1)) == (0, 0)
        assert store.units()[0].confidence == pytest.approx(0.5)

    def test_failing_unit_decays_then_is_removed(self, store):
        """Test that a unit that keeps failing decays below the floor and is dropped."""
        store.integrate(make_pattern(), validator=never_holds)

        for _ in range(4):
            assert store.validate([], AFTER_GRACE) == (1, 0)
        assert store.units()[0].confidence == pytest.approx(0.5 * 0.9**4)

        assert store.validate([], AFTER_GRACE) == (1, 1)
        assert len(store) == 0

    def test_removal_strips_links(self, store):
        doomed = store.integrate(make_pattern(PatternKind.SUCCESS), validator=never_holds)
        kept = store.integrate(
            make_pattern(PatternKind.ADAPTATION), validator=lambda unit, exps: True
        )
        assert store.get(kept.id).links

        for _ in range(5):
            store.validate([], AFTER_GRACE)

        with pytest.raises(NotFoundError):
            store.get(doomed.id)
        assert store.get(kept.id).links == []

    def test_raising_validator_counts_as_failure(self, store):
        def broken(unit, experiences):
            raise RuntimeError("validator crashed")

        store.integrate(make_pattern(), validator=broken)
        assert store.validate([], AFTER_GRACE) == (1, 0)

    def test_default_validator_uses_experiences(self, store):
        """Test that a contradicted pattern decays under the default validator."""
        store.integrate(make_pattern())
        contradicting = [experience(False), experience(False), experience(True)]

        assert store.validate(contradicting, AFTER_GRACE) == (1, 0)
        assert store.validate([experience(True)], AFTER_GRACE) == (0, 0)


class TestPatternHolds:
    """Tests for pattern_holds()."""

    def unit(self, pattern: ExperiencePattern) -> KnowledgeUnit:
        return KnowledgeUnit("ku-1", pattern, pattern.confidence, NOW)

    def test_no_relevant_experiences_is_not_contradiction(self):
        assert pattern_holds(self.unit(make_pattern()), [experience(False, zone="b")])

    def test_majority_must_exemplify(self):
        unit = self.unit(make_pattern())
        assert pattern_holds(unit, [experience(True), experience(False)])
        assert not pattern_holds(unit, [experience(True), experience(False), experience(False)])

    def test_weak_pattern_does_not_hold(self):
        assert not pattern_holds(self.unit(make_pattern(confidence=0.2)), [])
        assert not pattern_holds(self.unit(make_pattern(frequency=0.05)), [])


class TestSimilarity:
    def test_identical_circumstances(self):
        assert pattern_similarity(make_pattern(), make_pattern()) == pytest.approx(1.0)

    def test_disjoint_conditions_and_context(self):
        similarity = pattern_similarity(make_pattern(zone="a"), make_pattern(zone="b"))
        assert similarity == pytest.approx(1 / 3)


# ─── Usage ─────────────────────────────────────────────────────────


class TestUsage:
    """Tests for usage tracking and lookups."""

    def test_record_usage(self, store):
        pattern = make_pattern()
        store.integrate(pattern)
        store.record_usage(pattern.signature, NOW + timedelta(minutes=5))

        unit = store.find(pattern.signature)
        assert unit.usage == 1
        assert unit.last_access == NOW + timedelta(minutes=5)

    def test_record_usage_unknown_raises(self, store):
        with pytest.raises(NotFoundError, match="knowledge unit"):
            store.record_usage("success:strategy_execution:zone=z")

    def test_find_unknown_returns_none(self, store):
        assert store.find("nothing") is None

    def test_units_most_confident_first(self, store):
        store.integrate(make_pattern(zone="a", confidence=0.4))
        store.integrate(make_pattern(zone="b", confidence=0.9))
        assert [u.confidence for u in store.units()] == pytest.approx([0.9, 0.4])

    def test_to_dict(self, store):
        unit = store.integrate(make_pattern())
        data = unit.to_dict()
        assert data["type"] == "success"
        assert data["signature"] == "success:strategy_execution:zone=a"
        assert data["created"] == NOW.isoformat()
