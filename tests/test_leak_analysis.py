"""Tests for leak classification and severity grading."""

from __future__ import annotations

import pytest

from tz_leakscope.errors import ScenarioFailure
from tz_leakscope.host import Node
from tz_leakscope.interception import ListenerRegistration, ResourceHandle
from tz_leakscope.leak_analysis import (
    REMEDIATIONS,
    LeakAnalyzer,
    summarize_listener_leaks,
    summarize_timer_leaks,
)
from tz_leakscope.runtime_config import LeakThresholds
from tz_leakscope.sampling import Snapshot

MB = 1024 * 1024


def _timers(count: int, *, cleared: int = 0) -> list[ResourceHandle]:
    return [
        ResourceHandle(
            id=index,
            kind="interval" if index % 2 else "timeout",
            created_at_ms=float(index),
            planned_delay_ms=100.0,
            callback_name="tick",
            cleared=index < cleared,
        )
        for index in range(count)
    ]


def _listeners(
    target: object, event_type: str, count: int, *, removed: int = 0
) -> list[ListenerRegistration]:
    return [
        ListenerRegistration(
            target=target,
            event_type=event_type,
            listener=lambda event: None,
            added_at_ms=0.0,
            removed=index < removed,
        )
        for index in range(count)
    ]


def _flat_series(nodes: int = 0) -> list[Snapshot]:
    return [
        Snapshot(timestamp_ms=0.0, used_memory=100 * MB, dom_node_count=nodes),
        Snapshot(timestamp_ms=1000.0, used_memory=100 * MB, dom_node_count=nodes),
    ]


def test_memory_growth_and_rate_over_two_minutes() -> None:
    snapshots = [
        Snapshot(timestamp_ms=0.0, used_memory=100 * MB),
        Snapshot(timestamp_ms=60_000.0, used_memory=180 * MB),
        Snapshot(timestamp_ms=120_000.0, used_memory=160 * MB),
    ]
    report = LeakAnalyzer().analyze(
        test_name="growth", snapshots=snapshots, timers=[], listeners=[]
    )

    assert report.memory_growth_mb == pytest.approx(60.0)
    assert report.memory_growth_rate == pytest.approx(30.0)
    assert report.duration_ms == 120_000.0
    assert report.peak_snapshot.used_memory == 180 * MB
    assert report.severity == "critical"
    assert [finding.category for finding in report.findings] == ["memory"]
    assert report.findings[0].severity == "critical"
    assert report.recommendations == [REMEDIATIONS["memory"]]


def test_zero_duration_gives_zero_growth_rate() -> None:
    snapshot = Snapshot(timestamp_ms=5.0, used_memory=100 * MB)
    report = LeakAnalyzer().analyze(
        test_name="instant", snapshots=[snapshot], timers=[], listeners=[]
    )
    assert report.memory_growth_rate == 0.0
    assert report.start_snapshot is report.end_snapshot


def test_empty_series_produces_neutral_report() -> None:
    report = LeakAnalyzer().analyze(
        test_name="empty", snapshots=[], timers=[], listeners=[]
    )
    assert report.severity == "low"
    assert report.findings == []
    assert report.snapshots == []


def test_peak_keeps_first_of_equal_maxima() -> None:
    snapshots = [
        Snapshot(timestamp_ms=0.0, used_memory=10 * MB),
        Snapshot(timestamp_ms=1.0, used_memory=20 * MB),
        Snapshot(timestamp_ms=2.0, used_memory=20 * MB),
    ]
    report = LeakAnalyzer().analyze(
        test_name="peak", snapshots=snapshots, timers=[], listeners=[]
    )
    assert report.peak_snapshot is snapshots[1]


@pytest.mark.parametrize(
    ("timer_count", "expected"),
    [(2, "low"), (3, "medium"), (6, "high"), (11, "critical")],
)
def test_timer_severity_ladder(timer_count: int, expected: str) -> None:
    report = LeakAnalyzer().analyze(
        test_name="timers",
        snapshots=_flat_series(),
        timers=_timers(timer_count),
        listeners=[],
    )
    assert len(report.timer_leaks) == timer_count
    assert report.severity == expected


@pytest.mark.parametrize(
    ("listener_count", "expected"),
    [(5, "low"), (6, "medium"), (11, "high"), (21, "critical")],
)
def test_listener_severity_uses_total(listener_count: int, expected: str) -> None:
    target = Node("button")
    report = LeakAnalyzer().analyze(
        test_name="listeners",
        snapshots=_flat_series(),
        timers=[],
        listeners=_listeners(target, "click", listener_count),
    )
    assert report.listener_leak_total == listener_count
    assert report.severity == expected


def test_cleared_timers_are_not_leaks() -> None:
    leaks = summarize_timer_leaks(_timers(5, cleared=3))
    assert [leak.id for leak in leaks] == [3, 4]
    assert leaks[0].kind == "interval"


def test_listener_buckets_keep_positive_net_counts() -> None:
    button = Node("button")
    registrations = (
        _listeners(button, "click", 4, removed=1)
        + _listeners(button, "mouseover", 2, removed=2)
        + _listeners(object(), "click", 1)
    )
    leaks = summarize_listener_leaks(registrations)
    summary = {(leak.target, leak.event_type): leak for leak in leaks}

    assert set(summary) == {("Node", "click"), ("object", "click")}
    node_click = summary[("Node", "click")]
    assert (node_click.added, node_click.removed, node_click.count) == (4, 1, 3)


def test_dom_growth_over_threshold_is_reported() -> None:
    snapshots = [
        Snapshot(timestamp_ms=0.0, dom_node_count=10),
        Snapshot(timestamp_ms=500.0, dom_node_count=71),
    ]
    report = LeakAnalyzer().analyze(
        test_name="dom", snapshots=snapshots, timers=[], listeners=[]
    )
    assert report.dom_node_growth == 61
    assert len(report.dom_leaks) == 1
    assert report.dom_leaks[0].count == 71
    finding = report.findings[0]
    assert finding.category == "dom"
    assert finding.severity == "medium"
    assert report.severity == "low"


def test_dom_growth_at_threshold_is_not_reported() -> None:
    snapshots = [
        Snapshot(timestamp_ms=0.0, dom_node_count=0),
        Snapshot(timestamp_ms=500.0, dom_node_count=50),
    ]
    report = LeakAnalyzer().analyze(
        test_name="dom", snapshots=snapshots, timers=[], listeners=[]
    )
    assert report.dom_leaks == []


def test_small_memory_growth_is_not_a_finding() -> None:
    snapshots = [
        Snapshot(timestamp_ms=0.0, used_memory=100 * MB),
        Snapshot(timestamp_ms=1000.0, used_memory=108 * MB),
    ]
    report = LeakAnalyzer().analyze(
        test_name="small", snapshots=snapshots, timers=[], listeners=[]
    )
    assert report.findings == []
    assert report.severity == "medium"


def test_findings_order_and_remediations() -> None:
    button = Node("button")
    snapshots = [
        Snapshot(timestamp_ms=0.0, used_memory=0, dom_node_count=0),
        Snapshot(timestamp_ms=1000.0, used_memory=12 * MB, dom_node_count=60),
    ]
    report = LeakAnalyzer().analyze(
        test_name="everything",
        snapshots=snapshots,
        timers=_timers(1),
        listeners=_listeners(button, "click", 1),
    )
    categories = [finding.category for finding in report.findings]
    assert categories == ["memory", "listener", "timer", "dom"]
    assert report.recommendations == [REMEDIATIONS[name] for name in categories]
    assert len(report.suspected_leaks) == 4


def test_custom_thresholds_change_grading() -> None:
    thresholds = LeakThresholds(memory_finding_mb=1.0, dom_finding_severity="high")
    analyzer = LeakAnalyzer(thresholds)
    assert analyzer.thresholds is thresholds
    snapshots = [
        Snapshot(timestamp_ms=0.0, used_memory=0, dom_node_count=0),
        Snapshot(timestamp_ms=1000.0, used_memory=2 * MB, dom_node_count=51),
    ]
    report = analyzer.analyze(
        test_name="custom", snapshots=snapshots, timers=[], listeners=[]
    )
    assert [finding.severity for finding in report.findings] == ["low", "high"]


def test_status_and_errors_are_carried() -> None:
    failure = ScenarioFailure(phase="run", error_type="RuntimeError", message="x")
    report = LeakAnalyzer().analyze(
        test_name="failed",
        snapshots=_flat_series(),
        timers=[],
        listeners=[],
        status="stopped",
        errors=[failure],
    )
    assert report.status == "stopped"
    assert report.errors == [failure]
