"""Tests for evoloop.adaptation.learning.model module."""

from __future__ import annotations

import random
from datetime import UTC, datetime

import pytest

from evoloop.adaptation.learning.model import (
    BIAS_FEATURE,
    backward,
    batch_size,
    evaluate,
    extract_features,
    forward,
    iteration_count,
    loss,
    sigmoid,
    train,
    update,
)
from evoloop.adaptation.learning.models import (
    ExperienceStatus,
    LearningAction,
    LearningExperience,
    LearningModel,
    LearningResult,
    TrainingItem,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestFeatures:
    """Tests for extract_features()."""

    def test_numeric_context_and_parameters(self):
        """Test that only finite numbers become features, metrics excluded."""
        experience = LearningExperience(
            id="exp-1",
            type="strategy_execution",
            action=LearningAction(type="strategy", parameters={"gain": 2, "mode": "fast"}),
            result=LearningResult(ExperienceStatus.SUCCESS, metrics={"effectiveness": 0.9}),
            timestamp=NOW,
            context={"load": 0.4, "zone": "a", "active": True, "bad": float("inf")},
        )

        assert extract_features(experience) == {
            BIAS_FEATURE: 1.0,
            "ctx.load": 0.4,
            "param.gain": 2.0,
        }


class TestMath:
    """Tests for the forward and backward passes."""

    def test_sigmoid_is_stable_at_extremes(self):
        assert sigmoid(1000.0) == pytest.approx(1.0)
        assert sigmoid(-1000.0) == pytest.approx(0.0)
        assert sigmoid(0.0) == 0.5

    def test_forward_ignores_unknown_weights(self):
        assert forward({"x": 2.0, "unused": 5.0}, {"x": 0.0}) == 0.5

    def test_backward_is_zero_at_target(self):
        gradients = backward({"x": 3.0}, prediction=1.0, expected=1.0)
        assert gradients == {"x": 0.0}

    def test_backward_direction(self):
        gradients = backward({"x": 1.0}, prediction=0.5, expected=1.0)
        assert gradients["x"] == pytest.approx(2 * -0.5 * 0.25)

    def test_update_leaves_inputs_untouched(self):
        """Test that update() returns fresh dicts and applies L2 shrinkage."""
        weights = {"a": 1.0}
        velocity: dict[str, float] = {}

        new_weights, new_velocity = update(
            weights, {}, velocity, learning_rate=0.1, momentum=0.9, l2_lambda=0.01
        )

        assert weights == {"a": 1.0}
        assert velocity == {}
        assert new_velocity == {"a": 0.0}
        assert new_weights["a"] == pytest.approx(1.0 * (1 - 0.1 * 0.01))

    def test_update_follows_momentum(self):
        new_weights, new_velocity = update(
            {"a": 0.0}, {"a": 1.0}, {"a": 1.0}, learning_rate=0.5, momentum=0.9, l2_lambda=0.0
        )
        assert new_velocity["a"] == pytest.approx(0.9 + 0.1)
        assert new_weights["a"] == pytest.approx(-0.5)


class TestSchedule:
    @pytest.mark.parametrize(
        "samples,size,iterations",
        [(1, 1, 10), (50, 5, 10), (320, 32, 30), (100_000, 32, 1000)],
    )
    def test_batch_size_and_iterations(self, samples, size, iterations):
        assert batch_size(samples) == size
        assert iteration_count(samples) == iterations


class TestTrain:
    """Tests for train()."""

    def separable_items(self, count: int = 320) -> list[TrainingItem]:
        return [
            TrainingItem(
                features={BIAS_FEATURE: 1.0, "ctx.x": 1.0 if i % 2 == 0 else -1.0},
                expected=1.0 if i % 2 == 0 else 0.0,
            )
            for i in range(count)
        ]

    def test_learns_separable_data(self):
        """Test that training separates two clean classes."""
        model = LearningModel(id="model-x", outcome_type="x")
        model.training_data = self.separable_items()

        final_loss = train(model, learning_rate=1.0, rng=random.Random(7), now=NOW)

        assert model.version == 1
        assert model.accuracy >= 0.9
        assert final_loss < 0.25
        assert model.last_loss == final_loss
        assert model.weights["ctx.x"] > 0
        assert model.history[-1].timestamp == NOW

    def test_empty_model_is_untouched(self):
        model = LearningModel(id="model-x", outcome_type="x")
        assert train(model, learning_rate=0.1) == 0.0
        assert model.version == 0
        assert model.weights == {}

    def test_loss_and_evaluate_on_empty(self):
        assert loss({}, []) == 0.0
        assert evaluate({}, []) == 0.0

    def test_loss_is_weighted(self):
        items = [
            TrainingItem({"x": 0.0}, expected=1.0, weight=3.0),
            TrainingItem({"x": 0.0}, expected=0.5, weight=1.0),
        ]
        assert loss({}, items) == pytest.approx(3 * 0.25 / 4)
