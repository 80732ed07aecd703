"""Configuration models for evoloop.

Pydantic models for every component's tunables, re-exported here so callers
can write ``from evoloop.core.config import DetectionConfig``.
"""

# Adaptation configuration
from evoloop.core.config.adaptation import (
    LearningConfig,
    OptimizationConfig,
    StrategyConfig,
)

# Engine and logging configuration
from evoloop.core.config.engine import EngineConfig, LogConfig

# Mutation configuration
from evoloop.core.config.mutation import (
    AnalysisConfig,
    DetectionConfig,
    HandlerConfig,
)

__all__ = [
    "AnalysisConfig",
    "DetectionConfig",
    "EngineConfig",
    "HandlerConfig",
    "LearningConfig",
    "LogConfig",
    "OptimizationConfig",
    "StrategyConfig",
]
