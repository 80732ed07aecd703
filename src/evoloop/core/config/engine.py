"""Top-level engine configuration.

EngineConfig groups the per-component models and the logging settings, and
is the only model loaded from YAML.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from evoloop.core.config.adaptation import (
    LearningConfig,
    OptimizationConfig,
    StrategyConfig,
)
from evoloop.core.config.mutation import AnalysisConfig, DetectionConfig, HandlerConfig


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console", "both"] = Field(
        default="console",
        description="Output format: json for structured, console for human-readable, "
        "both for console to stderr and JSON to file",
    )
    file_path: Path | None = Field(
        default=None,
        description="Path for log file output (required if format='both')",
    )
    max_file_size_mb: int = Field(
        default=50,
        gt=0,
        le=1000,
        description="Maximum log file size before rotation (MB)",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Number of rotated log files to keep",
    )
    include_timestamps: bool = Field(
        default=True,
        description="Include ISO8601 UTC timestamps in log entries",
    )
    include_context: bool = Field(
        default=True,
        description="Include loop context (loop_id, cycle) in log entries",
    )
    compress_logs: bool = Field(
        default=True,
        description="Gzip rotated log files",
    )

    @model_validator(mode="after")
    def _check_file_path_required(self) -> LogConfig:
        if self.format == "both" and self.file_path is None:
            raise ValueError(
                f"file_path is required when format='{self.format}'"
            )
        return self


class EngineConfig(BaseModel):
    """Complete configuration for an adaptation loop.

    Example YAML:
        loop_id: primary
        detection:
          sensitivity: 1.2
        optimization:
          max_iterations: 50
        logging:
          level: DEBUG
    """

    loop_id: str = Field(
        default="evoloop",
        min_length=1,
        description="Identifier attached to every log entry of this loop.",
    )
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    handler: HandlerConfig = Field(default_factory=HandlerConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load engine configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> EngineConfig:
        """Load engine configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})
