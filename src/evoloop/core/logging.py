"""Structured logging infrastructure for evoloop.

Provides structured logging using structlog with loop-specific context such
as loop_id, cycle number and component names. Supports console output, JSON
output, and rotating (optionally gzip-compressed) log files.

Example usage:
    from evoloop.core.logging import configure_logging, get_logger, with_context

    # Configure once at startup
    configure_logging(level="DEBUG", format="console")

    # Get a component-specific logger
    logger = get_logger("detector")
    logger.info("detector.cycle_complete", detected=3)

    # Correlate everything logged during one loop cycle
    ctx = ExecutionContext(loop_id="primary", cycle=12)
    with with_context(ctx):
        logger.info("handler.response_created")  # includes loop_id, cycle
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field-name fragments whose values are never written to the log
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
})


class CompressingRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that gzips rotated files.

    ``evoloop.log.1`` becomes ``evoloop.log.1.gz``. Existing backups shift up
    by one and anything beyond ``backupCount`` is removed.
    """

    def __init__(
        self,
        filename: str | Path,
        maxBytes: int = 0,
        backupCount: int = 0,
        encoding: str | None = None,
        compress_level: int = 9,
    ) -> None:
        self.compress_level = compress_level
        super().__init__(
            filename,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
        )

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]

        for i in range(self.backupCount - 1, 0, -1):
            src = f"{self.baseFilename}.{i}.gz"
            dst = f"{self.baseFilename}.{i + 1}.gz"
            if os.path.exists(src):
                os.replace(src, dst)

        if os.path.exists(self.baseFilename) and self.backupCount > 0:
            compressed_path = f"{self.baseFilename}.1.gz"
            try:
                with (
                    open(self.baseFilename, "rb") as f_in,
                    gzip.open(
                        compressed_path, "wb", compresslevel=self.compress_level
                    ) as f_out,
                ):
                    shutil.copyfileobj(f_in, f_out)
                os.remove(self.baseFilename)
            except OSError:
                # Keep an uncompressed backup rather than lose the data
                if os.path.exists(compressed_path):
                    os.remove(compressed_path)
                os.replace(self.baseFilename, f"{self.baseFilename}.1")

        stale = Path(f"{self.baseFilename}.{self.backupCount + 1}.gz")
        if stale.exists():
            stale.unlink()

        self.stream = self._open()

    def get_log_files(self) -> list[Path]:
        """Current log file followed by its backups, newest first."""
        files: list[Path] = []
        base = Path(self.baseFilename)
        if base.exists():
            files.append(base)
        for i in range(1, self.backupCount + 1):
            gz_path = Path(f"{self.baseFilename}.{i}.gz")
            plain_path = Path(f"{self.baseFilename}.{i}")
            if gz_path.exists():
                files.append(gz_path)
            elif plain_path.exists():
                files.append(plain_path)
        return files


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable context for correlating log entries across a loop cycle.

    Attributes:
        loop_id: Identifier of the adaptation loop instance.
        run_id: Unique id for this process's run of the loop.
        cycle: Current cycle number (None outside a cycle).
        component: Component doing the work (e.g. "detector", "optimizer").
        parent_run_id: Run id of the enclosing operation, for nested runs.
    """

    loop_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cycle: int | None = None
    component: str = "unknown"
    parent_run_id: str | None = None

    def with_cycle(self, cycle: int) -> ExecutionContext:
        """Return a copy bound to the given cycle number."""
        return replace(self, cycle=cycle)

    def with_component(self, component: str) -> ExecutionContext:
        """Return a copy bound to the given component."""
        return replace(self, component=component)

    def as_child(self, child_run_id: str | None = None) -> ExecutionContext:
        """Create a child context whose parent is this context's run."""
        return replace(
            self,
            run_id=child_run_id or str(uuid.uuid4()),
            parent_run_id=self.run_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Context fields for logging, omitting unset optional fields."""
        result: dict[str, Any] = {
            "loop_id": self.loop_id,
            "run_id": self.run_id,
            "component": self.component,
        }
        if self.cycle is not None:
            result["cycle"] = self.cycle
        if self.parent_run_id is not None:
            result["parent_run_id"] = self.parent_run_id
        return result


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "evoloop_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    """Get the current ExecutionContext if set."""
    return _current_context.get()


def set_context(ctx: ExecutionContext) -> None:
    """Set the current ExecutionContext. Prefer `with_context()`."""
    _current_context.set(ctx)


def clear_context() -> None:
    """Clear the current ExecutionContext."""
    _current_context.set(None)


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Set the ExecutionContext for the duration of a block.

    Args:
        ctx: The ExecutionContext to use for the block.

    Yields:
        The ExecutionContext that was set.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds ExecutionContext fields.

    Explicitly bound fields take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            if key not in event_dict:
                event_dict[key] = value
    return event_dict


class EvoLogger:
    """Component logger wrapping structlog.

    The underlying structlog logger is fetched on every call so loggers
    created at import time still honour a later `configure_logging()`.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        """Initialize a logger for a component.

        Args:
            component: The component name (e.g. "detector", "learning").
            **initial_context: Additional context to bind.
        """
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> EvoLogger:
        """Create a new logger with additional bound context."""
        new_logger = EvoLogger.__new__(EvoLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def unbind(self, *keys: str) -> EvoLogger:
        """Create a new logger with the given keys removed."""
        new_logger = EvoLogger.__new__(EvoLogger)
        new_logger._component = self._component
        new_logger._context = {k: v for k, v in self._context.items() if k not in keys}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._get_logger().critical(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with traceback. Call from inside an exception handler."""
        self._get_logger().exception(event, **kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
    include_context: bool = True,
    compress_logs: bool = True,
) -> None:
    """Configure evoloop structured logging.

    Call once at startup, before the loop runs.

    Args:
        level: Minimum log level to capture.
        format: "console" for human-readable stderr output, "json" for JSON
            (to file_path when given, stdout otherwise), "both" for console
            to stderr plus JSON to file_path.
        file_path: Log file path. Required when format="both".
        max_file_size_mb: Log file size that triggers rotation.
        backup_count: Number of rotated files to keep.
        include_timestamps: Add ISO8601 UTC timestamps.
        include_context: Add ExecutionContext fields when a context is active.
        compress_logs: Gzip rotated files.

    Raises:
        ValueError: If format="both" but file_path is not provided.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        handlers.append(console_handler)

    if format in ("json", "both"):
        if file_path:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            max_bytes = max_file_size_mb * 1024 * 1024
            if compress_logs:
                file_handler: logging.Handler = CompressingRotatingFileHandler(
                    file_path,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            else:
                file_handler = RotatingFileHandler(
                    file_path,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            file_handler.setLevel(log_level)
            handlers.append(file_handler)
        else:
            json_handler = logging.StreamHandler(sys.stdout)
            json_handler.setLevel(log_level)
            handlers.append(json_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # cache_logger_on_first_use=False so import-time loggers see this config
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps, include_context),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> EvoLogger:
    """Get a logger bound to a component.

    Args:
        component: The component name (e.g. "detector", "handler").
        **initial_context: Additional context to bind.

    Returns:
        An EvoLogger instance bound to the component.
    """
    return EvoLogger(component, **initial_context)


__all__ = [
    "CompressingRotatingFileHandler",
    "EvoLogger",
    "ExecutionContext",
    "SENSITIVE_PATTERNS",
    "clear_context",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "set_context",
    "with_context",
]
