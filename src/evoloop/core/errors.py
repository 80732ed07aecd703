"""Exception hierarchy for evoloop.

All evoloop exceptions inherit from EvoloopError, so callers can catch
broadly or narrowly (e.g. ResourceExhaustedError on a full catalog).
Cycle operations never raise these for a single bad element; they log a
warning, record an audit event, and carry on. Registration calls and the
explicit action surface raise them directly.
"""

from __future__ import annotations

from typing import Any


class EvoloopError(Exception):
    """Base exception for all evoloop errors."""


class ConfigurationError(EvoloopError):
    """Raised when a component cannot be constructed.

    Examples: a required collaborator is missing, or the supplied
    configuration is internally inconsistent.
    """


class InvalidDefinitionError(EvoloopError):
    """Raised when a strategy, rule, or objective is malformed.

    The definition is rejected before anything is stored.
    """


class ResourceExhaustedError(EvoloopError):
    """Raised when a bounded catalog or queue is at capacity."""


class NotFoundError(EvoloopError):
    """Raised when referencing an unknown mutation, strategy, or objective id."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class OperationError(EvoloopError):
    """Raised when an outbound operation fails.

    Wraps the underlying failure (fetching snapshots, executing an action)
    with the operation name and whatever context identifies the target.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.operation = operation
        self.context = dict(context or {})
        super().__init__(f"{operation}: {message}")


__all__ = [
    "ConfigurationError",
    "EvoloopError",
    "InvalidDefinitionError",
    "NotFoundError",
    "OperationError",
    "ResourceExhaustedError",
]
