"""In-process adaptation loop.

AdaptationLoop wires the six components together from an EngineConfig and
runs one full cycle on demand:

    detect -> analyze -> handle -> execute strategies -> learn -> optimize

Each stage runs under an ExecutionContext bound to the loop id, cycle
number, and component, so every log entry of a cycle correlates. A stage
that raises is logged and recorded in the CycleReport; later stages still
run. There is no scheduler: callers decide cadence.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from evoloop.adaptation.learning import AdaptiveLearning
from evoloop.adaptation.optimization import AdaptiveOptimizer
from evoloop.adaptation.strategy import StrategyManager
from evoloop.core.config import EngineConfig
from evoloop.core.errors import OperationError
from evoloop.core.logging import ExecutionContext, configure_logging, get_logger, with_context
from evoloop.core.types import SnapshotProvider
from evoloop.mutation.analyzer import MutationAnalyzer
from evoloop.mutation.detector import MutationDetector
from evoloop.mutation.handler import MutationHandler
from evoloop.mutation.responses import ActionExecutor
from evoloop.utils.time import utc_now

_logger = get_logger("loop")


@dataclass
class StageResult:
    """Outcome of one stage within a cycle."""

    stage: str
    ok: bool
    items: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "items": self.items,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }


@dataclass
class CycleReport:
    cycle: int
    started_at: datetime
    finished_at: datetime | None = None
    stages: list[StageResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(s.ok for s in self.stages)

    @property
    def failed_stages(self) -> list[str]:
        return [s.stage for s in self.stages if not s.ok]

    def stage(self, name: str) -> StageResult | None:
        return next((s for s in self.stages if s.stage == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "succeeded": self.succeeded,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stages": [s.to_dict() for s in self.stages],
        }


class AdaptationLoop:
    """The six adaptation components, wired and driven together."""

    def __init__(
        self,
        provider: SnapshotProvider,
        config: EngineConfig | None = None,
        *,
        executor: ActionExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        setup_logging: bool = False,
    ) -> None:
        """Build every component from ``config``.

        Args:
            provider: Live data about the monitored system.
            config: Engine configuration; defaults throughout when omitted.
            executor: Pushes actions into the monitored system. Defaults to
                a NullExecutor.
            clock: Shared time source for every component.
            rng: Shared random source for learning and optimization.
            setup_logging: Apply ``config.logging`` via configure_logging().
                Leave off when the host application configures logging.
        """
        self._config = config or EngineConfig()
        self._provider = provider
        self._clock = clock or utc_now
        rng = rng or random.Random()

        if setup_logging:
            log = self._config.logging
            configure_logging(
                level=log.level,
                format=log.format,
                file_path=log.file_path,
                max_file_size_mb=log.max_file_size_mb,
                backup_count=log.backup_count,
                include_timestamps=log.include_timestamps,
                include_context=log.include_context,
                compress_logs=log.compress_logs,
            )

        cfg = self._config
        self.detector = MutationDetector(provider, cfg.detection, clock=self._clock)
        self.analyzer = MutationAnalyzer(self.detector, cfg.analysis, clock=self._clock)
        self.handler = MutationHandler(
            self.detector, cfg.handler, executor=executor, clock=self._clock
        )
        self.strategies = StrategyManager(
            self.handler, cfg.strategy, state_source=self.system_state, clock=self._clock
        )
        self.learning = AdaptiveLearning(
            self.strategies, cfg.learning, clock=self._clock, rng=rng
        )
        self.optimizer = AdaptiveOptimizer(
            self.handler,
            self.learning,
            self.strategies,
            cfg.optimization,
            state_source=self.system_state,
            clock=self._clock,
            rng=rng,
        )

        self._context = ExecutionContext(loop_id=cfg.loop_id, component="loop")
        self._cycle = 0
        self._last_report: CycleReport | None = None

    @classmethod
    def from_yaml(
        cls, path: Path, provider: SnapshotProvider, **kwargs: Any
    ) -> AdaptationLoop:
        """Build a loop from a YAML engine configuration file."""
        return cls(provider, EngineConfig.from_yaml(path), **kwargs)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    def system_state(self) -> dict[str, Any]:
        """Provider-reported state overlaid with the handler's aggregate state.

        Strategy conditions and objective evaluators read this mapping. On a
        key collision the aggregate value wins.

        Raises:
            OperationError: If the provider fails.
        """
        try:
            reported = dict(self._provider.current_state())
        except Exception as exc:
            raise OperationError(
                str(exc),
                operation="fetch_state",
                context={"provider": type(self._provider).__name__},
            ) from exc
        return {**reported, **self.handler.get_current_state().as_dict()}

    def _stages(self) -> list[tuple[str, str, Callable[[], Any]]]:
        return [
            ("detect", "detector", self.detector.detect),
            ("analyze", "analyzer", self.analyzer.analyze),
            ("handle", "handler", self.handler.handle),
            ("execute", "strategy", self.strategies.execute),
            ("learn", "learning", self.learning.learn),
            ("optimize", "optimizer", self.optimizer.optimize),
        ]

    def run_cycle(self) -> CycleReport:
        """Run every stage once, in order."""
        self._cycle += 1
        context = self._context.with_cycle(self._cycle)
        report = CycleReport(cycle=self._cycle, started_at=self._clock())

        with with_context(context):
            for stage, component, run in self._stages():
                report.stages.append(self._run_stage(context, stage, component, run))
            report.finished_at = self._clock()
            _logger.info(
                "loop.cycle_complete",
                succeeded=report.succeeded,
                failed_stages=report.failed_stages,
            )
        self._last_report = report
        return report

    def _run_stage(
        self,
        context: ExecutionContext,
        stage: str,
        component: str,
        run: Callable[[], Any],
    ) -> StageResult:
        started = time.monotonic()
        with with_context(context.with_component(component)):
            try:
                output = run()
            except Exception as exc:
                _logger.exception("loop.stage_failed", stage=stage, error=str(exc))
                return StageResult(
                    stage=stage,
                    ok=False,
                    duration_seconds=time.monotonic() - started,
                    error=f"{type(exc).__name__}: {exc}",
                )
        items = len(output) if isinstance(output, list) else 0
        return StageResult(
            stage=stage, ok=True, items=items, duration_seconds=time.monotonic() - started
        )

    def get_metrics(self) -> dict[str, dict[str, Any]]:
        """Telemetry from every component, keyed by component name."""
        return {
            "detector": self.detector.get_metrics().to_dict(),
            "analyzer": self.analyzer.get_metrics().to_dict(),
            "handler": self.handler.get_metrics().to_dict(),
            "strategy": self.strategies.get_metrics().to_dict(),
            "learning": self.learning.get_statistics().to_dict(),
            "optimizer": self.optimizer.get_metrics().to_dict(),
            "loop": {
                "cycles": self._cycle,
                "last_cycle_succeeded": self._last_report.succeeded if self._last_report else None,
            },
        }
