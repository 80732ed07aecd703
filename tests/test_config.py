"""Tests for evoloop.core.config models."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from evoloop.core.config import (
    AnalysisConfig,
    DetectionConfig,
    EngineConfig,
    HandlerConfig,
    LearningConfig,
    LogConfig,
    OptimizationConfig,
    StrategyConfig,
)


class TestDetectionConfig:
    """Tests for DetectionConfig."""

    def test_default_values(self):
        """Test the documented defaults."""
        config = DetectionConfig()
        assert config.detection_threshold == 0.5
        assert config.time_window_seconds == 600.0
        assert config.sensitivity == 0.8
        assert config.stability_factor == 0.6
        assert config.min_samples == 5
        assert "energy" in config.energy_metrics
        assert "complexity" in config.structural_metrics

    def test_threshold_must_be_probability(self):
        """Test that the detection threshold is bounded to [0, 1]."""
        with pytest.raises(ValidationError):
            DetectionConfig(detection_threshold=1.5)

    def test_min_samples_cannot_exceed_max(self):
        """Test the sample bound cross-check."""
        with pytest.raises(ValidationError, match="min_samples"):
            DetectionConfig(min_samples=20, max_samples=10)

    def test_metric_families_must_not_overlap(self):
        """Test that a metric cannot be both energetic and structural."""
        with pytest.raises(ValidationError, match="both energetic and structural"):
            DetectionConfig(energy_metrics=["energy"], structural_metrics=["energy"])


class TestAnalysisConfig:
    """Tests for AnalysisConfig."""

    def test_default_values(self):
        """Test the documented defaults."""
        config = AnalysisConfig()
        assert config.correlation_threshold == 0.7
        assert config.low_probability_floor == 0.2
        assert config.high_probability_threshold == 0.8
        assert config.high_probability_accuracy == 0.85

    def test_probability_bands_must_be_ordered(self):
        """Test that the low floor must sit below the high threshold."""
        with pytest.raises(ValidationError, match="low_probability_floor"):
            AnalysisConfig(low_probability_floor=0.9, high_probability_threshold=0.8)

    def test_grouping_window_within_pattern_window(self):
        """Test that groups cannot span more than the mining window."""
        with pytest.raises(ValidationError, match="grouping_window_seconds"):
            AnalysisConfig(grouping_window_seconds=7200, pattern_window_seconds=3600)


class TestHandlerConfig:
    """Tests for HandlerConfig."""

    def test_default_values(self):
        config = HandlerConfig()
        assert config.response_threshold == 0.3
        assert config.max_retries == 3
        assert config.max_concurrent_responses == 100

    def test_response_threshold_must_be_positive(self):
        """Test that a zero threshold is rejected."""
        with pytest.raises(ValidationError):
            HandlerConfig(response_threshold=0.0)


class TestAdaptationConfigs:
    """Tests for the strategy, learning and optimization models."""

    def test_strategy_defaults(self):
        config = StrategyConfig()
        assert config.update_interval_seconds == 1800.0
        assert config.min_effectiveness == 0.5
        assert config.adaptive_threshold == 0.7

    def test_learning_defaults(self):
        config = LearningConfig()
        assert config.learning_rate == 0.05
        assert config.memory_capacity == 1000
        assert config.exploration_rate == 0.2
        assert config.momentum == 0.9
        assert config.l2_lambda == 0.01

    def test_learning_rate_bounds(self):
        """Test that the learning rate must be in (0, 1]."""
        with pytest.raises(ValidationError):
            LearningConfig(learning_rate=0.0)
        with pytest.raises(ValidationError):
            LearningConfig(learning_rate=1.5)

    def test_learning_confidence_bands(self):
        """Test that mining confidence cannot exceed the parameter bar."""
        with pytest.raises(ValidationError, match="min_pattern_confidence"):
            LearningConfig(min_pattern_confidence=0.8, parameter_confidence=0.7)

    def test_optimization_defaults(self):
        config = OptimizationConfig()
        assert config.max_iterations == 100
        assert config.improvement_threshold == 0.01
        assert config.convergence_rate == 0.001


class TestLogConfig:
    """Tests for LogConfig."""

    def test_default_values(self):
        config = LogConfig()
        assert config.level == "INFO"
        assert config.format == "console"
        assert config.file_path is None

    def test_level_validation(self):
        """Test that unknown levels are rejected."""
        with pytest.raises(ValidationError):
            LogConfig(level="TRACE")

    def test_both_format_requires_file(self):
        """Test that format='both' needs a file path."""
        with pytest.raises(ValidationError, match="file_path is required"):
            LogConfig(format="both")


class TestEngineConfig:
    """Tests for EngineConfig loading."""

    def test_defaults_cover_every_component(self):
        """Test that an empty config builds every component section."""
        config = EngineConfig()
        assert config.loop_id == "evoloop"
        assert isinstance(config.detection, DetectionConfig)
        assert isinstance(config.optimization, OptimizationConfig)
        assert isinstance(config.logging, LogConfig)

    def test_from_yaml_string(self):
        """Test that nested sections override only what they name."""
        config = EngineConfig.from_yaml_string(
            """
            loop_id: primary
            detection:
              sensitivity: 1.2
            optimization:
              max_iterations: 50
            logging:
              level: DEBUG
            """
        )
        assert config.loop_id == "primary"
        assert config.detection.sensitivity == 1.2
        assert config.detection.min_samples == 5
        assert config.optimization.max_iterations == 50
        assert config.logging.level == "DEBUG"

    def test_empty_yaml_uses_defaults(self):
        """Test that an empty document yields the default config."""
        assert EngineConfig.from_yaml_string("") == EngineConfig()

    def test_from_yaml_file(self, tmp_path: Path):
        """Test loading from a file on disk."""
        path = tmp_path / "engine.yaml"
        path.write_text("handler:\n  max_retries: 1\n")
        config = EngineConfig.from_yaml(path)
        assert config.handler.max_retries == 1

    def test_invalid_nested_value_rejected(self):
        """Test that nested validation errors surface."""
        with pytest.raises(ValidationError):
            EngineConfig.from_yaml_string("learning:\n  exploration_rate: 2.0\n")
