"""Mutation detection, analysis, and response configuration models.

Defines models for the detector's statistical thresholds, the analyzer's
correlation and prediction constants, and the handler's response policy.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class DetectionConfig(BaseModel):
    """Configuration for baseline tracking and mutation detection.

    Example YAML:
        detection:
          detection_threshold: 0.5
          time_window_seconds: 600
          sensitivity: 0.8
    """

    detection_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum probability a candidate mutation needs to be stored.",
    )
    time_window_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Observation retention window. Mutations not re-observed "
        "within this window are purged.",
    )
    sensitivity: float = Field(
        default=0.8,
        gt=0.0,
        description="Deviation ratio a metric must exceed to count as changed. "
        "Applied in standard deviations (never below one) when the baseline "
        "has spread, and as a ratio of the mean when it does not.",
    )
    stability_factor: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Prior belief that the monitored system is stable; "
        "one of the three terms blended into mutation probability.",
    )
    min_samples: int = Field(
        default=5,
        ge=1,
        description="Observations required before a baseline is used for scoring.",
    )
    max_samples: int = Field(
        default=1000,
        ge=1,
        description="Maximum history retained per baseline metric.",
    )
    energy_metrics: list[str] = Field(
        default_factory=lambda: ["energy", "intensity", "strength"],
        description="Metric names whose change classifies a mutation as energetic.",
    )
    structural_metrics: list[str] = Field(
        default_factory=lambda: ["structure", "pattern", "complexity", "coherence"],
        description="Metric names whose change classifies a mutation as structural.",
    )

    @model_validator(mode="after")
    def _validate_sample_bounds(self) -> DetectionConfig:
        if self.min_samples > self.max_samples:
            raise ValueError(
                f"min_samples ({self.min_samples}) must not exceed "
                f"max_samples ({self.max_samples})"
            )
        overlap = set(self.energy_metrics) & set(self.structural_metrics)
        if overlap:
            raise ValueError(
                f"metrics cannot be both energetic and structural: {sorted(overlap)}"
            )
        return self


class AnalysisConfig(BaseModel):
    """Configuration for mutation analysis, correlation, and prediction.

    The correlation threshold and the prediction-accuracy constants are
    heuristics. They are exposed here so deployments can tune them.
    """

    correlation_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Minimum strength for a correlation to be reported.",
    )
    correlation_horizon_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="Time offset at which the time-proximity term reaches zero.",
    )
    pattern_window_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="How far back mutations are considered for pattern mining.",
    )
    grouping_window_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Mutations within this span of a group's first member "
        "are grouped together.",
    )
    prediction_horizon_seconds: float = Field(
        default=43200.0,
        gt=0,
        description="Time frame attached to each new prediction.",
    )
    prediction_tolerance: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Relative tolerance for threshold-type prediction conditions.",
    )
    low_probability_floor: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Predictions below this probability count as accurate "
        "(the non-event was correctly expected).",
    )
    high_probability_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Predictions above this probability are judged with the "
        "composite accuracy score.",
    )
    high_probability_accuracy: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Composite score a high-probability prediction needs to "
        "count as accurate.",
    )
    max_history: int = Field(
        default=1000,
        ge=1,
        description="Maximum retained performance points and evaluated predictions.",
    )

    @model_validator(mode="after")
    def _validate_probability_bands(self) -> AnalysisConfig:
        if self.low_probability_floor >= self.high_probability_threshold:
            raise ValueError(
                f"low_probability_floor ({self.low_probability_floor}) must be "
                f"less than high_probability_threshold ({self.high_probability_threshold})"
            )
        if self.grouping_window_seconds > self.pattern_window_seconds:
            raise ValueError(
                "grouping_window_seconds must not exceed pattern_window_seconds"
            )
        return self


class HandlerConfig(BaseModel):
    """Configuration for strategy selection and the response state machine."""

    response_threshold: float = Field(
        default=0.3,
        gt=0.0,
        le=1.0,
        description="Minimum strategy fit score. Mutations whose best strategy "
        "scores lower are left unhandled for the cycle.",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=100,
        description="Retry budget for failed actions before a response fails.",
    )
    stability_target: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Stability level the handler reports as 'stable'.",
    )
    max_concurrent_responses: int = Field(
        default=100,
        ge=1,
        description="Active response capacity. Resource fit falls to zero here.",
    )
    max_strategies: int = Field(
        default=100,
        ge=1,
        description="Maximum registered response strategies.",
    )
    default_action_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for actions created through the direct action surface.",
    )
    max_history: int = Field(
        default=1000,
        ge=1,
        description="Maximum retained response events and finished responses.",
    )
