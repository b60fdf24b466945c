"""Frame-timing metrics, grading and compositing advisory."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from .capabilities import DeviceInfo
from .errors import ScenarioFailure
from .reports import (
    CompositeLayerInfo,
    FrameMetrics,
    PerformanceReport,
    ReportStatus,
)
from .runtime_config import (
    DEFAULT_EXPECTED_FPS,
    JANK_FRAME_BUDGET_MS,
    Grade,
    GradeThresholds,
)
from .sampling import FrameSample, Snapshot

logger = logging.getLogger(__name__)

ISSUE_LOW_FPS = "Frame rate is too low; the animation is not smooth"
ISSUE_JANK = "Too many jank frames; the experience feels choppy"
ISSUE_LONG_FRAME = "Extremely long frames are present and cause visible stutter"
ISSUE_HEAP = "Memory usage ratio is high and may be hurting frame times"

LOW_FPS_RECOMMENDATIONS = (
    "Animate transform and opacity only, so frames never trigger a layout pass",
    "Promote the animated element to its own layer (will-change) before it moves",
)
LOW_END_RECOMMENDATIONS = (
    "Reduce animation complexity on low-end devices or honour a reduced-motion "
    "preference",
)
JANK_RECOMMENDATIONS = (
    "Simplify easing and per-frame computation inside the animation callback",
    "Prefer declarative style animations over script-driven per-frame updates",
)


def _round2(value: float) -> float:
    return round(value, 2)


def _is_3d_transform(transform: str) -> bool:
    return "3d" in transform or "translateZ" in transform


def _opacity_differs(opacity: str) -> bool:
    if opacity == "1":
        return False
    try:
        return float(opacity) != 1.0
    except ValueError:
        return True


def analyze_composite_layers(
    views: Iterable[tuple[str, Mapping[str, str]]],
) -> list[CompositeLayerInfo]:
    """Flag nodes whose computed styles suggest a compositing layer.

    Only nodes with at least one notable property are returned. `transform`
    and `opacity` are listed as reasons, but only a 3D transform counts as a
    promotion on its own.
    """
    results: list[CompositeLayerInfo] = []
    for label, style in views:
        will_change = style.get("will-change", "auto") or "auto"
        transform = style.get("transform", "none") or "none"
        opacity = style.get("opacity", "1") or "1"
        filter_value = style.get("filter", "none") or "none"
        position = style.get("position", "static") or "static"

        reasons: list[str] = []
        promoted = False
        if will_change != "auto":
            reasons.append(f"will-change: {will_change}")
            promoted = True
        if transform != "none":
            reasons.append(f"transform: {transform}")
            if _is_3d_transform(transform):
                promoted = True
        if _opacity_differs(opacity):
            reasons.append(f"opacity: {opacity}")
        if filter_value != "none":
            reasons.append(f"filter: {filter_value}")
            promoted = True
        if position in ("fixed", "sticky"):
            reasons.append(f"position: {position}")
            promoted = True

        if reasons:
            results.append(
                CompositeLayerInfo(
                    node=label,
                    reasons=reasons,
                    has_composite_layer=promoted,
                    will_change_property=None if will_change == "auto" else will_change,
                    transform_3d=_is_3d_transform(transform),
                )
            )
    return results


class PerformanceAnalyzer:
    """Turns frame samples into metrics, a letter grade and advice."""

    def __init__(self, thresholds: GradeThresholds | None = None) -> None:
        self._thresholds = thresholds if thresholds is not None else GradeThresholds()

    @property
    def thresholds(self) -> GradeThresholds:
        return self._thresholds

    def frame_metrics(
        self,
        frames: Sequence[FrameSample],
        *,
        duration_ms: float,
        expected_fps: float = DEFAULT_EXPECTED_FPS,
        memory: Snapshot | None = None,
    ) -> FrameMetrics:
        intervals = [frame.interval_ms for frame in frames]
        if not intervals:
            return FrameMetrics(
                fps=0.0,
                avg_frame_time_ms=0.0,
                min_frame_time_ms=0.0,
                max_frame_time_ms=0.0,
                total_frames=0,
                dropped_frames=0,
                jank_frames=0,
                duration_ms=duration_ms,
                memory=memory,
            )
        average = sum(intervals) / len(intervals)
        fps = 1000.0 / average if average > 0 else 0.0
        target_frame_ms = 1000.0 / (expected_fps or DEFAULT_EXPECTED_FPS)
        dropped_limit = target_frame_ms * self._thresholds.dropped_frame_factor
        return FrameMetrics(
            fps=_round2(fps),
            avg_frame_time_ms=_round2(average),
            min_frame_time_ms=_round2(min(intervals)),
            max_frame_time_ms=_round2(max(intervals)),
            total_frames=len(intervals),
            dropped_frames=sum(1 for value in intervals if value > dropped_limit),
            jank_frames=sum(1 for value in intervals if value > JANK_FRAME_BUDGET_MS),
            duration_ms=duration_ms,
            memory=memory,
        )

    def grade(
        self, metrics: FrameMetrics, expected_fps: float = DEFAULT_EXPECTED_FPS
    ) -> Grade:
        if metrics.total_frames <= 0:
            return self._thresholds.failing_grade
        fps_ratio = metrics.fps / (expected_fps or DEFAULT_EXPECTED_FPS)
        jank_ratio = metrics.jank_ratio
        for rung in self._thresholds.rungs:
            if fps_ratio >= rung.min_fps_ratio and jank_ratio <= rung.max_jank_ratio:
                return rung.grade
        return self._thresholds.failing_grade

    def issues(self, metrics: FrameMetrics) -> list[str]:
        thresholds = self._thresholds
        found: list[str] = []
        if metrics.fps < thresholds.low_fps:
            found.append(ISSUE_LOW_FPS)
        if metrics.jank_ratio > thresholds.jank_issue_ratio:
            found.append(ISSUE_JANK)
        if metrics.max_frame_time_ms > thresholds.long_frame_ms:
            found.append(ISSUE_LONG_FRAME)
        if (
            metrics.memory is not None
            and metrics.memory.heap_ratio > thresholds.heap_ratio_issue
        ):
            found.append(ISSUE_HEAP)
        return found

    def recommendations(self, metrics: FrameMetrics, device: DeviceInfo) -> list[str]:
        advice: list[str] = []
        if metrics.fps < self._thresholds.low_fps:
            advice.extend(LOW_FPS_RECOMMENDATIONS)
        if device.is_low_end_device:
            advice.extend(LOW_END_RECOMMENDATIONS)
        if metrics.jank_ratio > self._thresholds.jank_issue_ratio:
            advice.extend(JANK_RECOMMENDATIONS)
        return advice

    def analyze(
        self,
        *,
        test_name: str,
        frames: Sequence[FrameSample],
        snapshots: Sequence[Snapshot],
        duration_ms: float,
        device: DeviceInfo,
        expected_fps: float = DEFAULT_EXPECTED_FPS,
        composite_layers: Sequence[CompositeLayerInfo] = (),
        status: ReportStatus = "completed",
        errors: Sequence[ScenarioFailure] = (),
    ) -> PerformanceReport:
        memory = snapshots[-1] if snapshots else None
        metrics = self.frame_metrics(
            frames,
            duration_ms=duration_ms,
            expected_fps=expected_fps,
            memory=memory,
        )
        grade = self.grade(metrics, expected_fps)
        logger.info(
            "Frame analysis complete for %s: grade=%s fps=%s",
            test_name,
            grade,
            metrics.fps,
            extra={
                "event": "frame_analysis_completed",
                "test_name": test_name,
                "grade": grade,
                "fps": metrics.fps,
                "total_frames": metrics.total_frames,
                "jank_frames": metrics.jank_frames,
                "dropped_frames": metrics.dropped_frames,
            },
        )
        return PerformanceReport(
            test_name=test_name,
            duration_ms=duration_ms,
            device=device,
            metrics=metrics,
            frames=list(frames),
            snapshots=list(snapshots),
            grade=grade,
            issues=self.issues(metrics),
            recommendations=self.recommendations(metrics, device),
            composite_layers=list(composite_layers),
            status=status,
            errors=list(errors),
        )
