"""Logistic outcome predictor.

Pure functions over plain dicts: feature extraction, the forward pass,
squared-error gradients through the sigmoid, and a momentum update with
L2 shrinkage. `train()` is the only function that mutates, and only the
LearningModel it is handed.
"""

from __future__ import annotations

import math
import random
from collections.abc import Mapping, Sequence
from datetime import datetime

from evoloop.adaptation.learning.models import (
    LearningExperience,
    LearningModel,
    ModelPoint,
    TrainingItem,
)
from evoloop.utils.stats import is_finite_number
from evoloop.utils.time import utc_now

BIAS_FEATURE = "bias"
DECISION_BOUNDARY = 0.5


def extract_features(experience: LearningExperience) -> dict[str, float]:
    """Numeric context and action parameters, plus a constant bias term.

    Result metrics are excluded: the model predicts outcomes from what was
    known before the action ran.
    """
    features: dict[str, float] = {BIAS_FEATURE: 1.0}
    for key, value in experience.context.items():
        if is_finite_number(value):
            features[f"ctx.{key}"] = float(value)
    for key, value in experience.action.parameters.items():
        if is_finite_number(value):
            features[f"param.{key}"] = float(value)
    return features


def sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def forward(weights: Mapping[str, float], features: Mapping[str, float]) -> float:
    z = sum(weights.get(name, 0.0) * value for name, value in features.items())
    return sigmoid(z)


def backward(
    features: Mapping[str, float], prediction: float, expected: float
) -> dict[str, float]:
    """Gradient of (p - y)^2 with respect to each weight."""
    delta = 2.0 * (prediction - expected) * prediction * (1.0 - prediction)
    return {name: delta * value for name, value in features.items()}


def update(
    weights: Mapping[str, float],
    gradients: Mapping[str, float],
    velocity: Mapping[str, float],
    *,
    learning_rate: float,
    momentum: float = 0.9,
    l2_lambda: float = 0.01,
) -> tuple[dict[str, float], dict[str, float]]:
    """One momentum step with L2 shrinkage.

    Returns:
        (new_weights, new_velocity). The inputs are left untouched.
    """
    names = set(weights) | set(gradients)
    new_velocity = {
        name: momentum * velocity.get(name, 0.0) + (1.0 - momentum) * gradients.get(name, 0.0)
        for name in names
    }
    new_weights = {
        name: (weights.get(name, 0.0) - learning_rate * new_velocity[name])
        * (1.0 - learning_rate * l2_lambda)
        for name in names
    }
    return new_weights, new_velocity


def batch_size(samples: int) -> int:
    return min(32, max(1, samples // 10))


def iteration_count(samples: int) -> int:
    return min(1000, max(10, samples // 32 * 3))


def loss(weights: Mapping[str, float], items: Sequence[TrainingItem]) -> float:
    """Weighted mean squared error."""
    total_weight = sum(item.weight for item in items)
    if total_weight == 0:
        return 0.0
    return sum(
        item.weight * (forward(weights, item.features) - item.expected) ** 2 for item in items
    ) / total_weight


def evaluate(weights: Mapping[str, float], items: Sequence[TrainingItem]) -> float:
    """Share of items classified on the right side of the decision boundary."""
    if not items:
        return 0.0
    correct = sum(
        1
        for item in items
        if (forward(weights, item.features) >= DECISION_BOUNDARY)
        == (item.expected >= DECISION_BOUNDARY)
    )
    return correct / len(items)


def _batch_gradient(
    weights: Mapping[str, float], batch: Sequence[TrainingItem]
) -> dict[str, float]:
    total_weight = sum(item.weight for item in batch) or 1.0
    summed: dict[str, float] = {}
    for item in batch:
        prediction = forward(weights, item.features)
        for name, grad in backward(item.features, prediction, item.expected).items():
            summed[name] = summed.get(name, 0.0) + item.weight * grad
    return {name: grad / total_weight for name, grad in summed.items()}


def train(
    model: LearningModel,
    *,
    learning_rate: float,
    momentum: float = 0.9,
    l2_lambda: float = 0.01,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> float:
    """Run mini-batch gradient descent over the model's training data.

    Returns:
        The weighted loss after training. A model without training data is
        left unchanged.
    """
    items = model.training_data
    if not items:
        return model.last_loss
    rng = rng or random.Random()
    size = batch_size(len(items))
    weights = dict(model.weights)
    velocity = dict(model.velocity)
    gradients: dict[str, float] = {}
    for _ in range(iteration_count(len(items))):
        batch = rng.sample(items, size)
        gradients = _batch_gradient(weights, batch)
        weights, velocity = update(
            weights,
            gradients,
            velocity,
            learning_rate=learning_rate,
            momentum=momentum,
            l2_lambda=l2_lambda,
        )

    model.weights = weights
    model.velocity = velocity
    model.gradients = gradients
    model.last_loss = loss(weights, items)
    model.accuracy = evaluate(weights, items)
    model.version += 1
    model.history.append(
        ModelPoint(timestamp=now or utc_now(), accuracy=model.accuracy, loss=model.last_loss)
    )
    return model.last_loss
