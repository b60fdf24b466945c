"""Tests for the scenario runner lifecycle."""

from __future__ import annotations

import asyncio
import math

import pytest
from conftest import FakeMemoryProvider

from tz_leakscope.errors import ConcurrentInvocationError, ScenarioConfigError
from tz_leakscope.host import AsyncioHost, EventTarget, Node
from tz_leakscope.observability import capture_diagnostic_events
from tz_leakscope.reports import LeakReport, PerformanceReport
from tz_leakscope.runner import ScenarioConfig, ScenarioRunner, validate_scenario_config

MB = 1024 * 1024
TIMER_PRIMITIVES = ("set_timeout", "set_interval", "clear_timeout", "clear_interval")


def _run(coro):
    return asyncio.run(coro)


def _noop() -> None:
    return None


def _config(name: str = "scenario", **overrides) -> ScenarioConfig:
    values = {
        "name": name,
        "description": "test scenario",
        "duration_ms": 100.0,
        "sample_interval_ms": 20.0,
        "setup": _noop,
        "cleanup": _noop,
    }
    values.update(overrides)
    return ScenarioConfig(**values)


def _runner(host, device_info, **overrides) -> ScenarioRunner:
    values = {
        "memory_provider": FakeMemoryProvider([100 * MB, 101 * MB]),
        "device_info": device_info,
        "iteration_cooldown_s": 0.01,
        "batch_cooldown_s": 0.0,
    }
    values.update(overrides)
    return ScenarioRunner(host, **values)


def _assert_restored(host: AsyncioHost) -> None:
    for name in TIMER_PRIMITIVES:
        assert name not in vars(host)


class Counter:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


def test_clean_scenario_reports_no_leaks(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        handles: list[int] = []
        button = Node("button")

        def on_click(event) -> None:
            return None

        def setup() -> None:
            handles.append(host.set_interval(_noop, 10))
            button.add_event_listener("click", on_click)

        def cleanup() -> None:
            host.clear_interval(handles[0])
            button.remove_event_listener("click", on_click)

        try:
            future = runner.start(_config(setup=setup, cleanup=cleanup))
            assert runner.state == "armed"
            report = await future
        finally:
            host.close()
        return runner, host, report

    runner, host, report = _run(scenario())
    assert isinstance(report, LeakReport)
    assert report.status == "completed"
    assert report.timer_leaks == []
    assert report.listener_leaks == []
    assert report.severity == "low"
    assert len(report.snapshots) >= 3
    assert report.memory_growth_mb == pytest.approx(1.0)
    assert runner.state == "idle"
    assert runner.active_scenario is None
    _assert_restored(host)


def test_leaky_scenario_reports_timers_and_listeners(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        target = Node("div")

        def setup() -> None:
            for _ in range(3):
                host.set_timeout(_noop, 10_000)
            target.add_event_listener("mouseover", lambda event: None)

        try:
            return await runner.start(_config(setup=setup))
        finally:
            host.close()

    report = _run(scenario())
    assert len(report.timer_leaks) == 3
    assert report.listener_leak_total == 1
    assert report.severity == "medium"
    assert [finding.category for finding in report.findings] == ["listener", "timer"]


def test_run_iterations_execute_in_order(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        calls = Counter()
        try:
            report = await runner.start(
                _config(run=calls, iterations=3, duration_ms=200.0)
            )
        finally:
            host.close()
        return report, calls.calls

    report, calls = _run(scenario())
    assert calls == 3
    assert report.status == "completed"


def test_duration_truncates_in_flight_iterations(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        completed: list[int] = []
        cleanup = Counter()

        async def slow_iteration() -> None:
            await asyncio.sleep(0.08)
            completed.append(1)

        try:
            report = await runner.start(
                _config(
                    run=slow_iteration,
                    iterations=20,
                    duration_ms=150.0,
                    cleanup=cleanup,
                )
            )
        finally:
            host.close()
        return report, len(completed), cleanup.calls

    report, completed, cleanup_calls = _run(scenario())
    assert 1 <= completed < 20
    assert report.status == "completed"
    assert cleanup_calls == 1


def test_stop_while_running_finalizes_once(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        cleanup = Counter()

        async def forever() -> None:
            while True:
                await asyncio.sleep(0.01)

        try:
            future = runner.start(
                _config(run=forever, cleanup=cleanup, duration_ms=5_000.0)
            )
            await asyncio.sleep(0.05)
            assert runner.state == "running"
            runner.stop()
            runner.stop()
            report = await future
        finally:
            host.close()
        return runner, host, report, cleanup.calls

    runner, host, report, cleanup_calls = _run(scenario())
    assert report.status == "stopped"
    assert cleanup_calls == 1
    assert report.duration_ms < 5_000.0
    assert runner.state == "idle"
    _assert_restored(host)


def test_stop_during_setup_skips_run(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        run_calls = Counter()
        cleanup = Counter()
        try:
            report = await runner.start(
                _config(setup=runner.stop, run=run_calls, cleanup=cleanup)
            )
        finally:
            host.close()
        return host, report, run_calls.calls, cleanup.calls

    host, report, run_calls, cleanup_calls = _run(scenario())
    assert report.status == "stopped"
    assert run_calls == 0
    assert cleanup_calls == 1
    _assert_restored(host)


def test_concurrent_start_is_rejected(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        first = _config("first", duration_ms=50.0)
        try:
            future = runner.start(first)
            with pytest.raises(ConcurrentInvocationError) as excinfo:
                runner.start(_config("second"))
            assert runner.state == "armed"
            assert runner.active_scenario is first
            report = await future
        finally:
            host.close()
        return excinfo.value, report

    error, report = _run(scenario())
    assert error.active_name == "first"
    assert report.test_name == "first"
    assert report.status == "completed"


def test_second_runner_is_rejected_while_another_is_active(device_info) -> None:
    original_add = vars(EventTarget)["add_event_listener"]
    original_remove = vars(EventTarget)["remove_event_listener"]

    async def scenario():
        first_host = AsyncioHost()
        second_host = AsyncioHost()
        first = _runner(first_host, device_info)
        second = _runner(second_host, device_info)
        try:
            future = first.start(_config("first", duration_ms=50.0))
            with pytest.raises(ConcurrentInvocationError) as excinfo:
                second.start(_config("second", duration_ms=50.0))
            assert second.state == "idle"
            assert second.session is None
            report = await future
            follow_up = await second.start(_config("second", duration_ms=30.0))
        finally:
            first_host.close()
            second_host.close()
        return excinfo.value, report, follow_up

    error, report, follow_up = _run(scenario())
    assert error.active_name == "first"
    assert report.status == "completed"
    assert follow_up.test_name == "second"
    assert vars(EventTarget)["add_event_listener"] is original_add
    assert vars(EventTarget)["remove_event_listener"] is original_remove


def test_stop_finalizes_before_returning(device_info) -> None:
    original_add = vars(EventTarget)["add_event_listener"]

    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        cleanup = Counter()

        async def forever() -> None:
            while True:
                await asyncio.sleep(0.005)

        try:
            future = runner.start(
                _config(run=forever, cleanup=cleanup, duration_ms=5_000.0)
            )
            await asyncio.sleep(0.01)
            runner.stop()
            observed = {
                "state": runner.state,
                "add_patched": vars(EventTarget)["add_event_listener"]
                is not original_add,
                "host_patched": "set_timeout" in vars(host),
                "cleanup_calls": cleanup.calls,
            }
            restarted = runner.start(_config("again", duration_ms=20.0))
            report = await future
            await restarted
        finally:
            host.close()
        return observed, report, cleanup.calls

    observed, report, cleanup_calls = _run(scenario())
    assert observed == {
        "state": "idle",
        "add_patched": False,
        "host_patched": False,
        "cleanup_calls": 1,
    }
    assert report.status == "stopped"
    assert cleanup_calls == 1


def test_stop_in_armed_window_restores_without_loop_turn(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        try:
            task = runner.start(_config(duration_ms=5_000.0))
            assert runner.state == "armed"
            runner.stop()
            assert runner.state == "idle"
            _assert_restored(host)
            report = await task
        finally:
            host.close()
        return report

    assert _run(scenario()).status == "stopped"


def test_setup_failure_produces_failed_report(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        cleanup = Counter()

        def setup() -> None:
            host.set_timeout(_noop, 10_000)
            raise RuntimeError("setup exploded")

        try:
            with capture_diagnostic_events(
                event_names={"scenario_setup_failed"}
            ) as capture:
                report = await runner.start(_config(setup=setup, cleanup=cleanup))
        finally:
            host.close()
        return runner, host, report, cleanup.calls, capture.events

    runner, host, report, cleanup_calls, events = _run(scenario())
    assert report.status == "failed"
    assert [(e.phase, e.error_type) for e in report.errors] == [
        ("setup", "RuntimeError")
    ]
    assert len(report.timer_leaks) == 1
    assert cleanup_calls == 1
    assert len(events) == 1
    assert runner.state == "idle"
    _assert_restored(host)


def test_run_failure_is_recorded_and_stops_iterations(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        calls = Counter()

        def broken() -> None:
            calls()
            raise ValueError("iteration broke")

        try:
            report = await runner.start(_config(run=broken, iterations=5))
        finally:
            host.close()
        return report, calls.calls

    report, calls = _run(scenario())
    assert calls == 1
    assert report.status == "completed"
    assert report.errors[0].phase == "run"
    assert report.errors[0].message == "iteration broke"


def test_cleanup_failure_is_recorded(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)

        def cleanup() -> None:
            raise OSError("cleanup broke")

        try:
            report = await runner.start(_config(cleanup=cleanup, duration_ms=30.0))
        finally:
            host.close()
        return host, report

    host, report = _run(scenario())
    assert [failure.phase for failure in report.errors] == ["cleanup"]
    _assert_restored(host)


def test_dispose_finalizes_active_scenario(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        cleanup = Counter()
        try:
            future = runner.start(_config(cleanup=cleanup, duration_ms=5_000.0))
            await asyncio.sleep(0.03)
            runner.dispose()
            assert runner.state == "idle"
            for name in TIMER_PRIMITIVES:
                assert name not in vars(host)
            report = await future
            runner.dispose()
        finally:
            host.close()
        return report, cleanup.calls

    report, cleanup_calls = _run(scenario())
    assert report.status == "stopped"
    assert cleanup_calls == 1


def test_cancelling_runner_task_still_finalizes(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        cleanup = Counter()
        try:
            task = runner.start(_config(cleanup=cleanup, duration_ms=5_000.0))
            await asyncio.sleep(0.03)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            host.close()
        return runner, host, cleanup.calls

    runner, host, cleanup_calls = _run(scenario())
    assert cleanup_calls == 1
    assert runner.state == "idle"
    _assert_restored(host)


def test_runner_can_start_again_after_finishing(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        try:
            first = await runner.start(_config("one", duration_ms=20.0))
            second = await runner.start(_config("two", duration_ms=20.0))
        finally:
            host.close()
        return first, second

    first, second = _run(scenario())
    assert (first.test_name, second.test_name) == ("one", "two")


def test_batch_runs_sequentially_and_skips_invalid(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        order: list[str] = []

        def marker(name: str):
            return lambda: order.append(name)

        configs = [
            _config("a", setup=marker("a"), duration_ms=20.0),
            _config("invalid", duration_ms=0),
            _config("b", setup=marker("b"), duration_ms=20.0),
        ]
        try:
            with capture_diagnostic_events(
                event_names={"scenario_skipped"}
            ) as capture:
                reports = await runner.run_batch(configs, cooldown_s=0)
        finally:
            host.close()
        return reports, order, capture.events

    reports, order, skipped = _run(scenario())
    assert [report.test_name for report in reports] == ["a", "b"]
    assert order == ["a", "b"]
    assert [event.context["scenario"] for event in skipped] == ["invalid"]


def test_performance_scenario_collects_frames(device_info) -> None:
    async def scenario():
        host = AsyncioHost(frame_interval_ms=5)
        runner = _runner(host, device_info)
        root = Node("section", node_id="stage")
        sprite = root.append_child(Node("div", node_id="sprite"))
        sprite.style.update({"will-change": "transform", "opacity": "0.8"})
        try:
            report = await runner.start(
                _config(
                    "spinner",
                    kind="performance",
                    duration_ms=150.0,
                    style_root=root,
                )
            )
        finally:
            host.close()
        return report

    report = _run(scenario())
    assert isinstance(report, PerformanceReport)
    assert report.metrics.total_frames > 0
    assert len(report.snapshots) == report.metrics.total_frames
    assert report.device == device_info
    assert [info.node for info in report.composite_layers] == ["div#sprite"]
    assert report.composite_layers[0].has_composite_layer
    assert report.metrics.duration_ms > 0


def test_bad_style_root_is_recorded_as_sampling_failure(device_info) -> None:
    async def scenario():
        host = AsyncioHost(frame_interval_ms=5)
        runner = _runner(host, device_info)
        try:
            return await runner.start(
                _config(kind="performance", duration_ms=40.0, style_root=object())
            )
        finally:
            host.close()

    report = _run(scenario())
    assert report.composite_layers == []
    assert [failure.phase for failure in report.errors] == ["sampling"]


def test_stop_and_dispose_when_idle_are_noops(device_info, loop_host) -> None:
    runner = _runner(loop_host, device_info)
    runner.stop()
    runner.dispose()
    assert runner.state == "idle"
    assert runner.session is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "  "},
        {"duration_ms": 0},
        {"duration_ms": math.nan},
        {"sample_interval_ms": -5},
        {"setup": "not callable"},
        {"iterations": 0},
        {"iterations": True},
        {"kind": "visual"},
        {"expected_fps": 0},
    ],
)
def test_invalid_configs_are_rejected(overrides, device_info, loop_host) -> None:
    runner = _runner(loop_host, device_info)
    with pytest.raises(ScenarioConfigError):
        runner.start(_config(**overrides))
    assert runner.state == "idle"


def test_async_setup_is_rejected() -> None:
    async def setup() -> None:
        return None

    with pytest.raises(ScenarioConfigError, match="synchronous"):
        validate_scenario_config(_config(setup=setup))


def test_lifecycle_events_are_logged(device_info) -> None:
    async def scenario():
        host = AsyncioHost()
        runner = _runner(host, device_info)
        try:
            with capture_diagnostic_events() as capture:
                await runner.start(_config(duration_ms=20.0))
        finally:
            host.close()
        return [event.event for event in capture.events]

    names = _run(scenario())
    assert names[0] == "interception_installed"
    assert "scenario_started" in names
    assert "leak_analysis_completed" in names
    assert names[-1] == "scenario_finalized"
