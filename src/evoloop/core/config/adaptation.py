"""Adaptation configuration models.

Defines models for the strategy catalog, the adaptive learning subsystem,
and the objective optimizer.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class StrategyConfig(BaseModel):
    """Configuration for the adaptation strategy catalog."""

    update_interval_seconds: float = Field(
        default=1800.0,
        ge=0,
        description="Minimum spacing between automatic re-tunes of one strategy.",
    )
    max_strategies: int = Field(
        default=100,
        ge=1,
        description="Catalog capacity. The least effective strategy is evicted "
        "to make room for a new one.",
    )
    max_rules: int = Field(
        default=200,
        ge=1,
        description="Rule capacity. Registration is refused once reached.",
    )
    min_effectiveness: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Effectiveness floor below which a strategy is re-tuned.",
    )
    adaptive_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Rule confidence needed for a triggered rule to be applied.",
    )
    min_outcomes: int = Field(
        default=5,
        ge=1,
        description="Outcomes a strategy needs before it can be retired for "
        "collapsed effectiveness.",
    )
    effectiveness_half_life_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Half-life of an outcome's weight in the effectiveness score.",
    )
    max_history: int = Field(
        default=1000,
        ge=1,
        description="Maximum retained audit events (oldest dropped first).",
    )


class LearningConfig(BaseModel):
    """Configuration for experience mining, knowledge, and the outcome model.

    Example YAML:
        learning:
          learning_rate: 0.05
          memory_capacity: 1000
          exploration_rate: 0.2
    """

    learning_rate: float = Field(
        default=0.05,
        gt=0.0,
        le=1.0,
        description="Step size of the outcome model's weight updates.",
    )
    memory_capacity: int = Field(
        default=1000,
        ge=1,
        description="Maximum retained experiences (oldest dropped first).",
    )
    exploration_rate: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Chance of proposing a rule from a pattern below the "
        "parameter confidence bar.",
    )
    decay_factor: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Multiplier applied when the learning rate is re-derived.",
    )
    momentum: float = Field(
        default=0.9,
        ge=0.0,
        lt=1.0,
        description="Momentum coefficient of the weight update.",
    )
    l2_lambda: float = Field(
        default=0.01,
        ge=0.0,
        description="L2 regularization strength of the weight update.",
    )
    min_pattern_confidence: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Confidence a mined pattern needs to become knowledge.",
    )
    significance_ratio: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Outcome ratio a context key=value needs to be a pre-condition.",
    )
    parameter_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Confidence a success pattern needs to update strategy parameters.",
    )
    knowledge_decay: float = Field(
        default=0.9,
        gt=0.0,
        lt=1.0,
        description="Confidence multiplier applied on each failed validation.",
    )
    knowledge_floor: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Units whose confidence decays below this are removed.",
    )
    knowledge_grace_seconds: float = Field(
        default=86400.0,
        ge=0,
        description="Units younger than this are not decayed.",
    )
    link_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Similarity needed to link two knowledge units.",
    )
    rule_effectiveness_floor: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Rules below this effectiveness get their thresholds re-tuned.",
    )
    max_model_history: int = Field(
        default=100,
        ge=1,
        description="Maximum retained accuracy/loss points per model.",
    )

    @model_validator(mode="after")
    def _validate_confidence_bands(self) -> LearningConfig:
        if self.min_pattern_confidence > self.parameter_confidence:
            raise ValueError(
                f"min_pattern_confidence ({self.min_pattern_confidence}) must not "
                f"exceed parameter_confidence ({self.parameter_confidence})"
            )
        return self


class OptimizationConfig(BaseModel):
    """Configuration for the bounded local-search optimizer."""

    optimization_interval_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="Minimum spacing between runs for the same objective.",
    )
    improvement_threshold: float = Field(
        default=0.01,
        gt=0.0,
        description="Error against target below which an objective needs no work.",
    )
    max_iterations: int = Field(
        default=100,
        ge=1,
        description="Iteration cap per optimization run.",
    )
    iterations_per_cycle: int = Field(
        default=100,
        ge=1,
        description="Iterations each active run advances per optimize() call.",
    )
    convergence_rate: float = Field(
        default=0.001,
        gt=0.0,
        description="Improvement floor used by the convergence test.",
    )
    default_step: float = Field(
        default=0.1,
        gt=0.0,
        le=1.0,
        description="Step scale for parameters synthesized from an objective.",
    )
    max_history: int = Field(
        default=1000,
        ge=1,
        description="Maximum retained finished optimizations.",
    )
