"""Report values handed to callers, plus rendering and artifact helpers.

Reports are plain frozen dataclasses. `to_dict()` / `to_json()` give a stable
JSON-friendly shape so runs can be archived under the local results directory
and compared later.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, TypeAlias

from .capabilities import DeviceInfo
from .errors import ScenarioFailure
from .runtime_config import Grade, Severity
from .sampling import FrameSample, Snapshot

REPORT_SCHEMA_VERSION = 1
RESULTS_DIR_ENV = "TZ_LEAKSCOPE_RESULTS_DIR"
DEFAULT_LOCAL_RESULTS_DIR = Path(".local/leakscope_results")
_MIB = 1024 * 1024

ReportStatus = Literal["completed", "stopped", "failed"]
FindingCategory = Literal["memory", "listener", "timer", "dom"]

JsonScalar: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonScalar | list["JsonValue"] | dict[str, "JsonValue"]

SEVERITY_MARKERS: dict[str, str] = {
    "low": "[LOW]",
    "medium": "[MEDIUM]",
    "high": "[HIGH]",
    "critical": "[CRITICAL]",
}


def now_epoch_ms() -> float:
    return time.time() * 1000.0


def utc_now_iso() -> str:
    """Return current UTC timestamp formatted as an ISO-8601 `Z` string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TimerLeak:
    kind: str
    id: int | str
    planned_delay_ms: float
    created_at_ms: float
    callback_name: str


@dataclass(frozen=True)
class ListenerLeak:
    """Unremoved listeners for one (target type, event type) pair."""

    target: str
    event_type: str
    count: int
    added: int
    removed: int


@dataclass(frozen=True)
class DomLeak:
    node_type: str
    count: int
    growth: int


@dataclass(frozen=True)
class Finding:
    """A classified suspected resource-retention problem."""

    category: FindingCategory
    message: str
    severity: Severity
    value: float


@dataclass(frozen=True)
class LeakReport:
    test_name: str
    duration_ms: float
    snapshots: list[Snapshot]
    start_snapshot: Snapshot
    end_snapshot: Snapshot
    peak_snapshot: Snapshot
    memory_growth_mb: float
    memory_growth_rate: float
    dom_node_growth: int
    timer_leaks: list[TimerLeak]
    listener_leaks: list[ListenerLeak]
    dom_leaks: list[DomLeak]
    findings: list[Finding]
    severity: Severity
    recommendations: list[str]
    status: ReportStatus = "completed"
    errors: list[ScenarioFailure] = field(default_factory=list)
    timestamp: float = field(default_factory=now_epoch_ms)
    kind: Literal["leak"] = "leak"

    @property
    def suspected_leaks(self) -> list[str]:
        return [finding.message for finding in self.findings]

    @property
    def listener_leak_total(self) -> int:
        return sum(leak.count for leak in self.listener_leaks)

    def to_dict(self) -> dict[str, JsonValue]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


@dataclass(frozen=True)
class FrameMetrics:
    fps: float
    avg_frame_time_ms: float
    min_frame_time_ms: float
    max_frame_time_ms: float
    total_frames: int
    dropped_frames: int
    jank_frames: int
    duration_ms: float
    memory: Snapshot | None = None

    @property
    def jank_ratio(self) -> float:
        if self.total_frames <= 0:
            return 0.0
        return self.jank_frames / self.total_frames


@dataclass(frozen=True)
class CompositeLayerInfo:
    """Advisory entry for a node whose styles suggest a compositing layer."""

    node: str
    reasons: list[str]
    has_composite_layer: bool
    will_change_property: str | None
    transform_3d: bool


@dataclass(frozen=True)
class PerformanceReport:
    test_name: str
    duration_ms: float
    device: DeviceInfo
    metrics: FrameMetrics
    frames: list[FrameSample]
    snapshots: list[Snapshot]
    grade: Grade
    issues: list[str]
    recommendations: list[str]
    composite_layers: list[CompositeLayerInfo] = field(default_factory=list)
    status: ReportStatus = "completed"
    errors: list[ScenarioFailure] = field(default_factory=list)
    timestamp: float = field(default_factory=now_epoch_ms)
    kind: Literal["performance"] = "performance"

    def to_dict(self) -> dict[str, JsonValue]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


ScenarioReport: TypeAlias = LeakReport | PerformanceReport


def render_leak_reports_text(reports: list[LeakReport]) -> str:
    """Render a markdown summary for a batch of leak reports."""
    lines = ["# Memory leak report", "", f"Generated: {utc_now_iso()}", ""]
    if not reports:
        lines.append("No leak scenarios were run.")
        return "\n".join(lines)
    total_findings = sum(len(report.findings) for report in reports)
    critical = sum(1 for report in reports if report.severity == "critical")
    avg_growth = sum(report.memory_growth_mb for report in reports) / len(reports)
    lines.extend(
        [
            "## Summary",
            f"- Scenarios: {len(reports)}",
            f"- Findings: {total_findings}",
            f"- Critical scenarios: {critical}",
            f"- Average memory growth: {avg_growth:.2f}MB",
            "",
            "## Results",
            "",
        ]
    )
    for report in reports:
        lines.append(f"### {SEVERITY_MARKERS[report.severity]} {report.test_name}")
        lines.append(f"- Severity: {report.severity.upper()}")
        lines.append(f"- Status: {report.status}")
        lines.append(f"- Duration: {round(report.duration_ms / 1000)}s")
        lines.append(f"- Memory growth: {report.memory_growth_mb:.2f}MB")
        lines.append(f"- Growth rate: {report.memory_growth_rate:.2f}MB/min")
        if report.listener_leaks:
            lines.append(f"- Listener leaks: {report.listener_leak_total}")
        if report.timer_leaks:
            lines.append(f"- Timer leaks: {len(report.timer_leaks)}")
        if report.findings:
            lines.append(f"- Suspected leaks: {'; '.join(report.suspected_leaks)}")
        if report.recommendations:
            lines.append(f"- Recommendations: {'; '.join(report.recommendations)}")
        for failure in report.errors:
            lines.append(
                f"- Error during {failure.phase}: "
                f"{failure.error_type}: {failure.message}"
            )
        lines.append("")
    return "\n".join(lines)


def render_performance_reports_text(reports: list[PerformanceReport]) -> str:
    """Render a markdown summary for a batch of frame-timing reports."""
    lines = ["# Animation performance report", "", f"Generated: {utc_now_iso()}", ""]
    if not reports:
        lines.append("No performance scenarios were run.")
        return "\n".join(lines)
    device = reports[0].device
    memory = f"{device.memory_gb}GB" if device.memory_gb is not None else "unknown"
    lines.extend(
        [
            "## Device",
            f"- Platform: {device.platform}",
            f"- Python: {device.python_version}",
            f"- CPU cores: {device.cpu_count}",
            f"- Memory: {memory}",
            f"- Low-end device: {'yes' if device.is_low_end_device else 'no'}",
            "",
            "## Results",
            "",
        ]
    )
    for report in reports:
        metrics = report.metrics
        lines.append(f"### {report.test_name}")
        lines.append(f"- Grade: {report.grade}")
        lines.append(f"- Status: {report.status}")
        lines.append(f"- FPS: {metrics.fps}")
        lines.append(f"- Average frame time: {metrics.avg_frame_time_ms}ms")
        lines.append(f"- Jank frames: {metrics.jank_frames}/{metrics.total_frames}")
        lines.append(f"- Dropped frames: {metrics.dropped_frames}")
        if report.issues:
            lines.append(f"- Issues: {', '.join(report.issues)}")
        if report.recommendations:
            lines.append(f"- Recommendations: {'; '.join(report.recommendations)}")
        if report.composite_layers:
            promoted = sum(
                1 for info in report.composite_layers if info.has_composite_layer
            )
            lines.append(
                f"- Composite layer hints: {len(report.composite_layers)} nodes "
                f"({promoted} promoted)"
            )
        lines.append("")
    return "\n".join(lines)


def resolve_results_dir(
    *, cwd: Path | None = None, env: dict[str, str] | None = None
) -> Path:
    """Resolve local report artifact directory path."""
    if env is None:
        env = dict(os.environ)
    if cwd is None:
        cwd = Path.cwd()
    explicit = env.get(RESULTS_DIR_ENV)
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_absolute():
            path = (cwd / path).resolve()
        return path
    return (cwd / DEFAULT_LOCAL_RESULTS_DIR).resolve()


def build_run_payload(
    reports: list[ScenarioReport],
    *,
    run_id: str | None = None,
    app_version: str | None = None,
) -> dict[str, JsonValue]:
    """Wrap reports in a versioned run payload."""
    return {
        "schema_version": REPORT_SCHEMA_VERSION,
        "run_id": run_id or uuid.uuid4().hex[:12],
        "created_at": utc_now_iso(),
        "app_version": app_version,
        "reports": [report.to_dict() for report in reports],
    }


def write_report_artifact(
    payload: dict[str, JsonValue],
    *,
    results_dir: Path | None = None,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> Path:
    """Write a run payload as JSON into the results directory."""
    if results_dir is None:
        results_dir = resolve_results_dir(cwd=cwd, env=env)
    results_dir.mkdir(parents=True, exist_ok=True)
    run_id = str(payload.get("run_id") or "run")
    created_at = str(payload.get("created_at") or utc_now_iso())
    safe_run_id = "".join(ch if ch.isalnum() or ch in "-._" else "_" for ch in run_id)
    stem = f"{created_at.replace(':', '').replace('-', '')}_{safe_run_id}"
    path = results_dir / f"{stem}.json"
    path.write_text(
        json.dumps(payload, sort_keys=True, ensure_ascii=True) + "\n", encoding="utf-8"
    )
    return path
