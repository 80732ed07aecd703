"""Core infrastructure: configuration, errors, logging, and shared types."""

from evoloop.core.config import EngineConfig
from evoloop.core.errors import (
    ConfigurationError,
    EvoloopError,
    InvalidDefinitionError,
    NotFoundError,
    OperationError,
    ResourceExhaustedError,
)
from evoloop.core.types import (
    EntitySnapshot,
    Identifiable,
    Scored,
    SnapshotProvider,
    SystemPhase,
    SystemState,
    Timestamped,
)

__all__ = [
    "ConfigurationError",
    "EngineConfig",
    "EntitySnapshot",
    "EvoloopError",
    "Identifiable",
    "InvalidDefinitionError",
    "NotFoundError",
    "OperationError",
    "ResourceExhaustedError",
    "Scored",
    "SnapshotProvider",
    "SystemPhase",
    "SystemState",
    "Timestamped",
]
