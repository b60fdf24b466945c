"""Scenario runner: single-flight lifecycle around one instrumented scenario.

A runner moves through ``idle -> armed -> running -> finalizing -> idle``.
`start()` validates the config, installs a fresh instrumentation session,
records the start snapshot and runs ``setup()`` synchronously, then hands back
a future resolving to the report. Whatever happens afterwards (normal expiry,
`stop()`, `dispose()`, a failing scenario body or cancellation of the runner
task) finalization runs exactly once and the session is always uninstalled.
"""

from __future__ import annotations

import asyncio
import gc
import inspect
import logging
import math
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import ClassVar, Literal

from .capabilities import (
    DeviceInfo,
    MemoryProvider,
    collect_device_info,
    resolve_memory_provider,
)
from .errors import ConcurrentInvocationError, ScenarioConfigError, ScenarioFailure
from .frame_analysis import PerformanceAnalyzer, analyze_composite_layers
from .host import EventTarget, HostRuntime
from .interception import InstrumentationSession
from .leak_analysis import LeakAnalyzer
from .reports import CompositeLayerInfo, ReportStatus, ScenarioReport
from .runtime_config import DEFAULT_EXPECTED_FPS, GradeThresholds, LeakThresholds
from .sampling import FrameTimingSampler, SnapshotSampler

logger = logging.getLogger(__name__)

RunnerState = Literal["idle", "armed", "running", "finalizing"]
ScenarioKind = Literal["leak", "performance"]

ITERATION_COOLDOWN_S = 0.1
BATCH_COOLDOWN_S = 2.0


@dataclass(frozen=True)
class ScenarioConfig:
    """Caller-supplied scenario definition.

    `setup` and `cleanup` must be synchronous. `run` may return an awaitable,
    which is awaited before the next iteration. `duration_ms` is measured from
    the end of setup and bounds the whole iteration sequence.
    """

    name: str
    description: str
    duration_ms: float
    sample_interval_ms: float
    setup: Callable[[], object]
    cleanup: Callable[[], object]
    run: Callable[[], object] | None = None
    iterations: int | None = None
    kind: ScenarioKind = "leak"
    expected_fps: float = DEFAULT_EXPECTED_FPS
    style_root: object | None = None


def _positive_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def validate_scenario_config(config: ScenarioConfig) -> None:
    """Raise `ScenarioConfigError` when `config` breaks the runner contract."""
    if not isinstance(config, ScenarioConfig):
        raise ScenarioConfigError(
            f"expected ScenarioConfig, got {type(config).__name__}"
        )
    if not isinstance(config.name, str) or not config.name.strip():
        raise ScenarioConfigError("scenario name must be a non-empty string")
    if not _positive_number(config.duration_ms):
        raise ScenarioConfigError(
            f"{config.name}: duration_ms must be a positive number"
        )
    if not _positive_number(config.sample_interval_ms):
        raise ScenarioConfigError(
            f"{config.name}: sample_interval_ms must be a positive number"
        )
    for label in ("setup", "cleanup"):
        func = getattr(config, label)
        if not callable(func):
            raise ScenarioConfigError(f"{config.name}: {label} must be callable")
        if inspect.iscoroutinefunction(func):
            raise ScenarioConfigError(f"{config.name}: {label} must be synchronous")
    if config.run is not None and not callable(config.run):
        raise ScenarioConfigError(f"{config.name}: run must be callable or None")
    if config.iterations is not None and (
        isinstance(config.iterations, bool)
        or not isinstance(config.iterations, int)
        or config.iterations < 1
    ):
        raise ScenarioConfigError(
            f"{config.name}: iterations must be a positive integer"
        )
    if config.kind not in ("leak", "performance"):
        raise ScenarioConfigError(f"{config.name}: unknown kind {config.kind!r}")
    if not _positive_number(config.expected_fps):
        raise ScenarioConfigError(
            f"{config.name}: expected_fps must be a positive number"
        )


@dataclass(eq=False)
class _ScenarioRun:
    """Mutable state owned by one started scenario."""

    config: ScenarioConfig
    session: InstrumentationSession
    snapshot_sampler: SnapshotSampler
    frame_sampler: FrameTimingSampler | None
    stop_event: asyncio.Event
    errors: list[ScenarioFailure] = field(default_factory=list)
    stop_requested: bool = False
    run_task: asyncio.Task[None] | None = None
    running_since_ms: float | None = None
    in_setup: bool = False
    finalize_started: bool = False
    composite_layers: list[CompositeLayerInfo] = field(default_factory=list)
    report: ScenarioReport | None = None

    def stop_samplers(self) -> None:
        self.snapshot_sampler.stop()
        if self.frame_sampler is not None:
            self.frame_sampler.stop()


class ScenarioRunner:
    """Runs one scenario at a time against a host runtime.

    The listener primitives are patched on the class, so the single-flight
    slot is shared by every runner in the process, not held per instance.
    """

    _active_run: ClassVar[_ScenarioRun | None] = None

    def __init__(
        self,
        host: HostRuntime,
        *,
        listener_class: type = EventTarget,
        memory_provider: MemoryProvider | None = None,
        memory_preference: str = "process",
        leak_thresholds: LeakThresholds | None = None,
        grade_thresholds: GradeThresholds | None = None,
        device_info: DeviceInfo | None = None,
        iteration_cooldown_s: float = ITERATION_COOLDOWN_S,
        batch_cooldown_s: float = BATCH_COOLDOWN_S,
    ) -> None:
        self._host = host
        self._listener_class = listener_class
        # Resolved once; sampling never probes for memory APIs again.
        self._memory_provider = (
            memory_provider
            if memory_provider is not None
            else resolve_memory_provider(memory_preference)
        )
        self._leak_analyzer = LeakAnalyzer(leak_thresholds)
        self._performance_analyzer = PerformanceAnalyzer(grade_thresholds)
        self._device_info = device_info
        self._iteration_cooldown_s = iteration_cooldown_s
        self._batch_cooldown_s = batch_cooldown_s
        self._state: RunnerState = "idle"
        self._current: _ScenarioRun | None = None
        self._last_session: InstrumentationSession | None = None

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def active_scenario(self) -> ScenarioConfig | None:
        return self._current.config if self._current is not None else None

    @property
    def session(self) -> InstrumentationSession | None:
        """Instrumentation session of the current or most recent scenario."""
        return self._last_session

    @property
    def memory_provider(self) -> MemoryProvider | None:
        return self._memory_provider

    def start(self, config: ScenarioConfig) -> asyncio.Future[ScenarioReport]:
        """Arm and launch `config`; must be called with a running event loop."""
        validate_scenario_config(config)
        active_run = ScenarioRunner._active_run
        if self._state != "idle" or active_run is not None:
            active = active_run.config if active_run else self.active_scenario
            raise ConcurrentInvocationError(active.name if active else None)
        loop = asyncio.get_running_loop()

        gc.collect()
        session = InstrumentationSession(
            self._host, listener_class=self._listener_class
        )
        snapshot_sampler = SnapshotSampler(
            self._host, session, memory_provider=self._memory_provider
        )
        run = _ScenarioRun(
            config=config,
            session=session,
            snapshot_sampler=snapshot_sampler,
            frame_sampler=(
                FrameTimingSampler(self._host, snapshot_sampler=snapshot_sampler)
                if config.kind == "performance"
                else None
            ),
            stop_event=asyncio.Event(),
        )
        self._state = "armed"
        self._current = run
        self._last_session = session
        ScenarioRunner._active_run = run
        try:
            session.install()
        except BaseException:
            session.uninstall()
            self._release(run)
            raise
        snapshot_sampler.begin()
        snapshot_sampler.record()
        logger.info(
            "Starting scenario %s",
            config.name,
            extra={
                "event": "scenario_started",
                "scenario": config.name,
                "kind": config.kind,
                "duration_ms": config.duration_ms,
                "iterations": config.iterations or 1,
            },
        )

        run.in_setup = True
        try:
            config.setup()
        except Exception as exc:
            logger.exception(
                "Setup failed for scenario %s: %s",
                config.name,
                exc,
                extra={"event": "scenario_setup_failed", "scenario": config.name},
            )
            run.errors.append(ScenarioFailure.from_exception("setup", exc))
            return self._settled(loop, self._finalize(run, "failed"))
        finally:
            run.in_setup = False
        if run.stop_requested:
            return self._settled(loop, self._finalize(run, "stopped"))

        task = loop.create_task(self._drive(run), name=f"tz-leakscope:{config.name}")
        # A task cancelled before its first step never enters _drive().
        task.add_done_callback(lambda _task: self._finalize_abandoned(run))
        return task

    def stop(self) -> None:
        """Finalize the active scenario now; a no-op when nothing is active.

        A stop issued from inside ``setup()`` is honored as soon as setup
        returns. Code already executing is never interrupted.
        """
        run = self._current
        if run is None or self._state == "finalizing":
            return
        logger.info(
            "Stop requested for scenario %s",
            run.config.name,
            extra={"event": "scenario_stop_requested", "state": self._state},
        )
        self._halt(run)

    def dispose(self) -> None:
        """Finalize any active scenario now and guarantee instrumentation is gone."""
        run = self._current
        if run is not None and self._state != "finalizing":
            self._halt(run)
        if self._last_session is not None:
            self._last_session.uninstall()

    async def run_batch(
        self,
        configs: Iterable[ScenarioConfig],
        *,
        cooldown_s: float | None = None,
    ) -> list[ScenarioReport]:
        """Run scenarios strictly one after another."""
        cooldown = self._batch_cooldown_s if cooldown_s is None else cooldown_s
        reports: list[ScenarioReport] = []
        ran_any = False
        for config in configs:
            try:
                validate_scenario_config(config)
            except ScenarioConfigError as exc:
                logger.warning(
                    "Skipping invalid scenario: %s",
                    exc,
                    extra={
                        "event": "scenario_skipped",
                        "scenario": getattr(config, "name", None),
                    },
                )
                continue
            if ran_any:
                await asyncio.sleep(cooldown)
                gc.collect()
            ran_any = True
            reports.append(await self.start(config))
        logger.info(
            "Batch finished: %s report(s)",
            len(reports),
            extra={"event": "batch_completed", "reports": len(reports)},
        )
        return reports

    async def _drive(self, run: _ScenarioRun) -> ScenarioReport:
        config = run.config
        status: ReportStatus = "completed"
        try:
            if not run.stop_requested:
                self._state = "running"
                run.running_since_ms = self._host.now_ms()
                run.snapshot_sampler.start(config.sample_interval_ms)
                if run.frame_sampler is not None:
                    run.frame_sampler.start()
                run.run_task = asyncio.create_task(self._run_iterations(run))
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        run.stop_event.wait(), config.duration_ms / 1000.0
                    )
                # Duration elapsed or stop requested: truncate the in-flight run.
                if not run.run_task.done():
                    run.run_task.cancel()
                await asyncio.wait({run.run_task})
            if run.stop_requested:
                status = "stopped"
        except asyncio.CancelledError:
            status = "stopped"
            if run.run_task is not None and not run.run_task.done():
                run.run_task.cancel()
            raise
        finally:
            report = self._finalize(run, status)
        return report

    async def _run_iterations(self, run: _ScenarioRun) -> None:
        config = run.config
        if config.run is None:
            return
        count = config.iterations or 1
        for index in range(count):
            if run.stop_requested:
                return
            try:
                result = config.run()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception(
                    "Run failed for scenario %s on iteration %s: %s",
                    config.name,
                    index + 1,
                    exc,
                    extra={
                        "event": "scenario_run_failed",
                        "scenario": config.name,
                        "iteration": index + 1,
                    },
                )
                run.errors.append(ScenarioFailure.from_exception("run", exc))
                return
            if index + 1 < count:
                await asyncio.sleep(self._iteration_cooldown_s)

    def _halt(self, run: _ScenarioRun) -> None:
        run.stop_requested = True
        run.stop_samplers()
        run.stop_event.set()
        if run.in_setup:
            # start() finalizes as soon as setup() returns.
            self._state = "finalizing"
            return
        if run.run_task is not None and not run.run_task.done():
            run.run_task.cancel()
        self._finalize(run, "stopped")

    def _finalize_abandoned(self, run: _ScenarioRun) -> None:
        if not run.finalize_started:
            self._finalize(run, "stopped")

    def _release(self, run: _ScenarioRun) -> None:
        if self._current is run:
            self._current = None
            self._state = "idle"
        if ScenarioRunner._active_run is run:
            ScenarioRunner._active_run = None

    @staticmethod
    def _settled(
        loop: asyncio.AbstractEventLoop, report: ScenarioReport
    ) -> asyncio.Future[ScenarioReport]:
        future: asyncio.Future[ScenarioReport] = loop.create_future()
        future.set_result(report)
        return future

    def _finalize(self, run: _ScenarioRun, status: ReportStatus) -> ScenarioReport:
        if run.report is not None:
            return run.report
        config = run.config
        run.finalize_started = True
        if self._current is run:
            self._state = "finalizing"
        try:
            run.stop_samplers()
            run.snapshot_sampler.record()
            if config.kind == "performance":
                # Styles are scanned before cleanup detaches the animated nodes.
                run.composite_layers = self._composite_layers(run)
            try:
                config.cleanup()
            except Exception as exc:
                logger.exception(
                    "Cleanup failed for scenario %s: %s",
                    config.name,
                    exc,
                    extra={
                        "event": "scenario_cleanup_failed",
                        "scenario": config.name,
                    },
                )
                run.errors.append(ScenarioFailure.from_exception("cleanup", exc))
        finally:
            run.session.uninstall()
        try:
            report = self._build_report(run, status)
        finally:
            self._release(run)
        run.report = report
        logger.info(
            "Scenario %s finalized (%s)",
            config.name,
            status,
            extra={
                "event": "scenario_finalized",
                "scenario": config.name,
                "status": status,
                "errors": len(run.errors),
            },
        )
        return report

    def _build_report(self, run: _ScenarioRun, status: ReportStatus) -> ScenarioReport:
        config = run.config
        if config.kind == "leak":
            return self._leak_analyzer.analyze(
                test_name=config.name,
                snapshots=run.snapshot_sampler.snapshots,
                timers=run.session.timers,
                listeners=run.session.listeners,
                status=status,
                errors=run.errors,
            )
        frames = run.frame_sampler.samples if run.frame_sampler is not None else []
        joint = run.frame_sampler.joint_snapshots if run.frame_sampler else []
        started = run.running_since_ms
        duration_ms = 0.0 if started is None else self._host.now_ms() - started
        if self._device_info is None:
            self._device_info = collect_device_info()
        return self._performance_analyzer.analyze(
            test_name=config.name,
            frames=frames,
            snapshots=joint or run.snapshot_sampler.snapshots,
            duration_ms=max(0.0, duration_ms),
            device=self._device_info,
            expected_fps=config.expected_fps,
            composite_layers=run.composite_layers,
            status=status,
            errors=run.errors,
        )

    def _composite_layers(self, run: _ScenarioRun) -> list[CompositeLayerInfo]:
        config = run.config
        if config.style_root is None:
            return []
        try:
            return analyze_composite_layers(self._host.style_views(config.style_root))
        except Exception as exc:
            logger.exception(
                "Composite layer scan failed for scenario %s: %s",
                config.name,
                exc,
                extra={"event": "composite_scan_failed", "scenario": config.name},
            )
            run.errors.append(ScenarioFailure.from_exception("sampling", exc))
            return []
