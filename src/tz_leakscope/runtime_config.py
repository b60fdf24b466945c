"""Runtime configuration: log level resolution and analyzer calibration.

Severity and grade thresholds are product calibration constants. They are kept
as named, overridable values so analyzers never embed magic numbers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Severity = Literal["low", "medium", "high", "critical"]
Grade = Literal["A", "B", "C", "D", "F"]

SEVERITY_LEVELS: tuple[Severity, ...] = ("low", "medium", "high", "critical")
GRADES: tuple[Grade, ...] = ("A", "B", "C", "D", "F")
MEMORY_PROVIDER_CHOICES = ("process", "tracemalloc", "none")

# 60fps frame budget. Jank is always measured against it, whatever the target.
JANK_FRAME_BUDGET_MS = 16.67
DEFAULT_EXPECTED_FPS = 60.0


def resolve_log_level(*, verbose: bool, quiet: bool) -> str:
    """Resolve effective log level from CLI flags.

    Precedence is deterministic: --quiet overrides --verbose.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    return "INFO"


def normalize_memory_provider(value: str) -> str:
    """Normalize persisted/CLI memory provider preference."""
    normalized = value.strip().lower()
    if normalized in MEMORY_PROVIDER_CHOICES:
        return normalized
    return "process"


@dataclass(frozen=True)
class SeverityLevel:
    """One rung of the leak severity ladder; any exceeded limit matches."""

    memory_growth_mb: float
    timer_leaks: int
    listener_leaks: int

    def matches(
        self, *, memory_growth_mb: float, timer_leaks: int, listener_leaks: int
    ) -> bool:
        return (
            memory_growth_mb > self.memory_growth_mb
            or timer_leaks > self.timer_leaks
            or listener_leaks > self.listener_leaks
        )


@dataclass(frozen=True)
class LeakThresholds:
    """Calibration for leak findings and severity."""

    memory_finding_mb: float = 10.0
    dom_growth_nodes: int = 50
    critical: SeverityLevel = field(
        default_factory=lambda: SeverityLevel(50.0, 10, 20)
    )
    high: SeverityLevel = field(default_factory=lambda: SeverityLevel(20.0, 5, 10))
    medium: SeverityLevel = field(default_factory=lambda: SeverityLevel(5.0, 2, 5))
    dom_finding_severity: Severity = "medium"

    def ladder(self) -> tuple[tuple[Severity, SeverityLevel], ...]:
        """Return severity rungs ordered from most to least severe."""
        return (
            ("critical", self.critical),
            ("high", self.high),
            ("medium", self.medium),
        )


@dataclass(frozen=True)
class GradeRung:
    grade: Grade
    min_fps_ratio: float
    max_jank_ratio: float


@dataclass(frozen=True)
class GradeThresholds:
    """Calibration for frame-timing grades and advisory issues."""

    rungs: tuple[GradeRung, ...] = (
        GradeRung("A", 0.95, 0.05),
        GradeRung("B", 0.85, 0.10),
        GradeRung("C", 0.70, 0.20),
        GradeRung("D", 0.50, 0.35),
    )
    failing_grade: Grade = "F"
    dropped_frame_factor: float = 1.5
    low_fps: float = 30.0
    jank_issue_ratio: float = 0.10
    long_frame_ms: float = 100.0
    heap_ratio_issue: float = 0.8
