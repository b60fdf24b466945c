"""Reduce snapshot series and registry state into a graded leak report."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .errors import ScenarioFailure
from .interception import ListenerRegistration, ResourceHandle
from .reports import (
    DomLeak,
    Finding,
    FindingCategory,
    LeakReport,
    ListenerLeak,
    ReportStatus,
    TimerLeak,
)
from .runtime_config import LeakThresholds, Severity
from .sampling import Snapshot

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024

REMEDIATIONS: dict[FindingCategory, str] = {
    "memory": "Look for objects that stay referenced after use and can never be "
    "garbage collected.",
    "listener": "Remove every listener added during the scenario, passing the same "
    "function reference that was added.",
    "timer": "Clear every set_timeout/set_interval handle with "
    "clear_timeout/clear_interval during cleanup.",
    "dom": "Detach nodes created during the scenario when their component is "
    "torn down.",
}


def summarize_timer_leaks(timers: Sequence[ResourceHandle]) -> list[TimerLeak]:
    """Return one leak entry per timer still uncleared at finalize time."""
    return [
        TimerLeak(
            kind=handle.kind,
            id=handle.id if isinstance(handle.id, (int, str)) else repr(handle.id),
            planned_delay_ms=handle.planned_delay_ms,
            created_at_ms=handle.created_at_ms,
            callback_name=handle.callback_name,
        )
        for handle in timers
        if not handle.cleared
    ]


def summarize_listener_leaks(
    listeners: Sequence[ListenerRegistration],
) -> list[ListenerLeak]:
    """Bucket registrations by (target type, event type); keep positive nets."""
    buckets: dict[tuple[str, str], list[int]] = {}
    for registration in listeners:
        key = (registration.target_type, registration.event_type)
        stats = buckets.setdefault(key, [0, 0])
        stats[0] += 1
        if registration.removed:
            stats[1] += 1
    return [
        ListenerLeak(
            target=target,
            event_type=event_type,
            count=added - removed,
            added=added,
            removed=removed,
        )
        for (target, event_type), (added, removed) in buckets.items()
        if added > removed
    ]


class LeakAnalyzer:
    """Classifies suspected leaks and grades their severity."""

    def __init__(self, thresholds: LeakThresholds | None = None) -> None:
        self._thresholds = thresholds if thresholds is not None else LeakThresholds()

    @property
    def thresholds(self) -> LeakThresholds:
        return self._thresholds

    def severity(
        self, *, memory_growth_mb: float, timer_leaks: int, listener_leaks: int
    ) -> Severity:
        """Return the highest severity whose rung any metric exceeds."""
        for name, level in self._thresholds.ladder():
            if level.matches(
                memory_growth_mb=memory_growth_mb,
                timer_leaks=timer_leaks,
                listener_leaks=listener_leaks,
            ):
                return name
        return "low"

    def analyze(
        self,
        *,
        test_name: str,
        snapshots: Sequence[Snapshot],
        timers: Sequence[ResourceHandle],
        listeners: Sequence[ListenerRegistration],
        status: ReportStatus = "completed",
        errors: Sequence[ScenarioFailure] = (),
    ) -> LeakReport:
        series = list(snapshots) or [Snapshot(timestamp_ms=0.0)]
        start, end = series[0], series[-1]
        peak = max(series, key=lambda snapshot: snapshot.used_memory)
        duration_ms = max(0.0, end.timestamp_ms - start.timestamp_ms)
        memory_growth_mb = (end.used_memory - start.used_memory) / _MIB
        elapsed_minutes = duration_ms / 60_000.0
        growth_rate = memory_growth_mb / elapsed_minutes if elapsed_minutes > 0 else 0.0
        dom_node_growth = end.dom_node_count - start.dom_node_count

        timer_leaks = summarize_timer_leaks(timers)
        listener_leaks = summarize_listener_leaks(listeners)
        listener_total = sum(leak.count for leak in listener_leaks)
        dom_leaks: list[DomLeak] = []
        if dom_node_growth > self._thresholds.dom_growth_nodes:
            dom_leaks.append(
                DomLeak(
                    node_type="Node",
                    count=end.dom_node_count,
                    growth=dom_node_growth,
                )
            )

        findings: list[Finding] = []
        if memory_growth_mb > self._thresholds.memory_finding_mb:
            findings.append(
                Finding(
                    category="memory",
                    message=f"Memory grew by {memory_growth_mb:.2f}MB",
                    severity=self.severity(
                        memory_growth_mb=memory_growth_mb,
                        timer_leaks=0,
                        listener_leaks=0,
                    ),
                    value=round(memory_growth_mb, 3),
                )
            )
        if listener_leaks:
            findings.append(
                Finding(
                    category="listener",
                    message=(
                        f"{listener_total} unremoved event listener(s) across "
                        f"{len(listener_leaks)} target/event pair(s)"
                    ),
                    severity=self.severity(
                        memory_growth_mb=0.0,
                        timer_leaks=0,
                        listener_leaks=listener_total,
                    ),
                    value=float(listener_total),
                )
            )
        if timer_leaks:
            findings.append(
                Finding(
                    category="timer",
                    message=f"{len(timer_leaks)} uncleared timer(s)",
                    severity=self.severity(
                        memory_growth_mb=0.0,
                        timer_leaks=len(timer_leaks),
                        listener_leaks=0,
                    ),
                    value=float(len(timer_leaks)),
                )
            )
        if dom_leaks:
            findings.append(
                Finding(
                    category="dom",
                    message=f"Node count grew by {dom_node_growth}",
                    severity=self._thresholds.dom_finding_severity,
                    value=float(dom_node_growth),
                )
            )

        severity = self.severity(
            memory_growth_mb=memory_growth_mb,
            timer_leaks=len(timer_leaks),
            listener_leaks=listener_total,
        )
        logger.info(
            "Leak analysis complete for %s: severity=%s",
            test_name,
            severity,
            extra={
                "event": "leak_analysis_completed",
                "test_name": test_name,
                "severity": severity,
                "timer_leaks": len(timer_leaks),
                "listener_leaks": listener_total,
                "memory_growth_mb": round(memory_growth_mb, 3),
                "dom_node_growth": dom_node_growth,
            },
        )
        return LeakReport(
            test_name=test_name,
            duration_ms=duration_ms,
            snapshots=list(snapshots),
            start_snapshot=start,
            end_snapshot=end,
            peak_snapshot=peak,
            memory_growth_mb=memory_growth_mb,
            memory_growth_rate=growth_rate,
            dom_node_growth=dom_node_growth,
            timer_leaks=timer_leaks,
            listener_leaks=listener_leaks,
            dom_leaks=dom_leaks,
            findings=findings,
            severity=severity,
            recommendations=[REMEDIATIONS[finding.category] for finding in findings],
            status=status,
            errors=list(errors),
        )
