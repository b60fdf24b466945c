"""Built-in scenario catalog.

Leak scenarios exercise timers, listeners, node churn and frame loops on an
`AsyncioHost`; each has a well-behaved default and a leaky variant that
forgets part of its teardown. Performance scenarios drive frame-paced
animations of increasing per-frame cost. Scenario ids are stable and used by
the CLI.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import ScenarioConfigError
from .host import AsyncioHost, Event, Node
from .runner import ScenarioConfig, ScenarioKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScenarioBody:
    setup: Callable[[], object]
    cleanup: Callable[[], object]
    run: Callable[[], object] | None = None


@dataclass(frozen=True)
class CatalogEntry:
    """Static description of one built-in scenario."""

    scenario_id: str
    title: str
    description: str
    kind: ScenarioKind
    duration_ms: float
    sample_interval_ms: float
    iterations: int | None
    factory: ScenarioFactory


class Workbench:
    """Scratch area and resource bookkeeping for one built-in scenario.

    Everything a scenario body creates goes through the workbench so teardown
    can release it. With ``leaky=True`` teardown keeps every other timer and
    listener alive and leaves created nodes attached.
    """

    def __init__(self, host: AsyncioHost, *, time_scale: float = 1.0) -> None:
        self.host = host
        self.time_scale = time_scale
        self.area = Node("section", node_id="test-area")
        self._timers: list[Any] = []
        self._listeners: list[tuple[Node, str, Callable[[Event], object]]] = []
        self._nodes: list[Node] = []
        self.retained: list[object] = []

    def ms(self, value: float) -> float:
        return max(1.0, value * self.time_scale)

    def attach(self) -> None:
        if self.area.parent is None:
            self.host.document.append_child(self.area)

    def node(self, tag: str, *, node_id: str | None = None) -> Node:
        created = Node(tag, node_id=node_id)
        self.area.append_child(created)
        self._nodes.append(created)
        return created

    def timeout(self, callback: Callable[[], object], delay_ms: float) -> Any:
        handle = self.host.set_timeout(callback, self.ms(delay_ms))
        self._timers.append(handle)
        return handle

    def interval(self, callback: Callable[[], object], delay_ms: float) -> Any:
        handle = self.host.set_interval(callback, self.ms(delay_ms))
        self._timers.append(handle)
        return handle

    def listen(
        self, target: Node, event_type: str, listener: Callable[[Event], object]
    ) -> None:
        target.add_event_listener(event_type, listener)
        self._listeners.append((target, event_type, listener))

    def teardown(self, *, leaky: bool = False) -> None:
        for index, handle in enumerate(self._timers):
            if leaky and index % 2:
                continue
            self.host.clear_interval(handle)
        for index, (target, event_type, listener) in enumerate(self._listeners):
            if leaky and index % 2:
                continue
            target.remove_event_listener(event_type, listener)
        self._timers.clear()
        self._listeners.clear()
        if not leaky:
            for created in self._nodes:
                created.remove()
            self.area.remove()
            self.retained.clear()
        self._nodes.clear()


ScenarioFactory = Callable[[Workbench, bool], ScenarioBody]


class FrameAnimation:
    """Frame-paced loop calling `on_frame(index, timestamp_ms)` every refresh."""

    def __init__(
        self,
        host: AsyncioHost,
        on_frame: Callable[[int, float], object],
        *,
        max_frames: int | None = None,
    ) -> None:
        self._host = host
        self._on_frame = on_frame
        self._max_frames = max_frames
        self._handle: Any = None
        self._frames = 0

    @property
    def frames(self) -> int:
        return self._frames

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is None:
            self._handle = self._host.request_frame(self._step)

    def stop(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            self._host.cancel_frame(handle)

    def _step(self, timestamp_ms: float) -> None:
        self._handle = None
        self._on_frame(self._frames, timestamp_ms)
        self._frames += 1
        if self._max_frames is None or self._frames < self._max_frames:
            self._handle = self._host.request_frame(self._step)


def _noop(*_: object) -> None:
    return None


def _timer_lifecycle(bench: Workbench, leaky: bool) -> ScenarioBody:
    def start_timer(index: int) -> None:
        handle = bench.interval(_noop, 1000)
        if index % 2 == 0:
            # Half the timers are stopped early, like a user pausing them.
            bench.timeout(lambda: bench.host.clear_interval(handle), 500 + index * 100)

    def run() -> None:
        for index in range(5):
            bench.node("div", node_id=f"timer-{index}")
            bench.timeout(lambda index=index: start_timer(index), index * 100)

    return ScenarioBody(
        setup=bench.attach, cleanup=lambda: bench.teardown(leaky=leaky), run=run
    )


def _event_listeners(bench: Workbench, leaky: bool) -> ScenarioBody:
    document = bench.host.document

    def run() -> None:
        for index in range(10):
            button = bench.node("button", node_id=f"button-{index}")
            bench.listen(button, "click", lambda event: None)
            bench.listen(button, "mouseover", lambda event: None)
            bench.listen(document, "keydown", lambda event: None)
            button.dispatch_event(Event("click"))

    return ScenarioBody(
        setup=bench.attach, cleanup=lambda: bench.teardown(leaky=leaky), run=run
    )


class _MockComponent:
    """Component with an update timer and button handlers."""

    def __init__(self, bench: Workbench, index: int) -> None:
        self._bench = bench
        self.container = bench.node("div", node_id=f"mock-component-{index}")
        self.mounted = True
        self.ticks = 0
        self._timer = bench.interval(self._tick, 100)
        self._handlers: list[tuple[Node, Callable[[Event], object]]] = []
        for label in ("start", "pause", "reset"):
            button = Node("button", node_id=f"{label}-{index}")
            self.container.append_child(button)
            handler = self._on_click
            bench.listen(button, "click", handler)
            self._handlers.append((button, handler))

    def _tick(self) -> None:
        if self.mounted:
            self.ticks += 1

    def _on_click(self, event: Event) -> None:
        self.ticks = 0

    def unmount(self) -> None:
        if not self.mounted:
            return
        self.mounted = False
        self._bench.host.clear_interval(self._timer)
        for button, handler in self._handlers:
            button.remove_event_listener("click", handler)
        self.container.remove()


def _component_mounting(bench: Workbench, leaky: bool) -> ScenarioBody:
    components: list[_MockComponent] = []

    def mount(index: int) -> None:
        component = _MockComponent(bench, index)
        components.append(component)
        if leaky and index % 3 == 0:
            return
        bench.timeout(component.unmount, 2000 + index * 250)

    def run() -> None:
        for index in range(8):
            bench.timeout(lambda index=index: mount(index), index * 200)

    def cleanup() -> None:
        if not leaky:
            for component in components:
                component.unmount()
        components.clear()
        bench.teardown(leaky=leaky)

    return ScenarioBody(setup=bench.attach, cleanup=cleanup, run=run)


def _animation_cleanup(bench: Workbench, leaky: bool) -> ScenarioBody:
    animations: list[FrameAnimation] = []

    def animate(index: int) -> None:
        element = bench.node("div", node_id=f"sprite-{index}")
        element.style["position"] = "absolute"

        def step(frame: int, _: float) -> None:
            scale = 1 + math.sin(frame * 0.1) * 0.5
            element.style["transform"] = f"rotate({frame * 2}deg) scale({scale:.2f})"
            if frame + 1 >= 200 and not leaky:
                element.remove()

        animation = FrameAnimation(bench.host, step, max_frames=200)
        animations.append(animation)
        animation.start()

    def run() -> None:
        for index in range(20):
            bench.timeout(lambda index=index: animate(index), index * 100)

    def cleanup() -> None:
        for index, animation in enumerate(animations):
            if leaky and index % 2:
                continue
            animation.stop()
        animations.clear()
        bench.teardown(leaky=leaky)

    return ScenarioBody(setup=bench.attach, cleanup=cleanup, run=run)


def _long_running(bench: Workbench, leaky: bool) -> ScenarioBody:
    async def run() -> None:
        interaction = 0
        while True:
            element = bench.node("div", node_id=f"interaction-{interaction}")
            payload = [str(value) * 8 for value in range(500)]

            def on_click(event: Event, payload: list[str] = payload) -> None:
                bench.retained.append(len(payload))

            element.add_event_listener("click", on_click)
            element.dispatch_event(Event("click"))
            if leaky:
                bench.retained.append(payload)
            else:
                element.remove_event_listener("click", on_click)
                element.remove()
            interaction += 1
            await asyncio.sleep(bench.ms(200) / 1000.0)

    return ScenarioBody(
        setup=bench.attach, cleanup=lambda: bench.teardown(leaky=leaky), run=run
    )


def _busy_wait(duration_ms: float) -> None:
    deadline = time.perf_counter() + duration_ms / 1000.0
    while time.perf_counter() < deadline:
        pass


def _animated_body(
    bench: Workbench,
    style: dict[str, str],
    on_frame: Callable[[Node, int], None],
) -> ScenarioBody:
    element = bench.node("div", node_id="animated")
    element.style.update(style)
    animation = FrameAnimation(bench.host, lambda frame, _: on_frame(element, frame))

    def cleanup() -> None:
        animation.stop()
        bench.teardown()

    return ScenarioBody(setup=bench.attach, cleanup=cleanup, run=animation.start)


def _spinner(bench: Workbench, leaky: bool) -> ScenarioBody:
    def on_frame(element: Node, frame: int) -> None:
        element.style["transform"] = f"rotate({frame * 6 % 360}deg) translateZ(0)"

    return _animated_body(bench, {"will-change": "transform"}, on_frame)


def _progress_ring(bench: Workbench, leaky: bool) -> ScenarioBody:
    def on_frame(element: Node, frame: int) -> None:
        progress = (frame % 120) / 120
        element.style["opacity"] = f"{0.5 + progress / 2:.2f}"
        element.style["transform"] = f"rotate({progress * 360:.1f}deg)"
        _busy_wait(2.0)

    return _animated_body(bench, {"position": "sticky"}, on_frame)


def _heavy_frames(bench: Workbench, leaky: bool) -> ScenarioBody:
    def on_frame(element: Node, frame: int) -> None:
        element.style["filter"] = f"blur({frame % 4}px)"
        _busy_wait(40.0 if frame % 3 == 0 else 12.0)

    return _animated_body(bench, {"filter": "blur(0px)"}, on_frame)


LEAK_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(
        "timer-lifecycle",
        "Timer lifecycle",
        "Starts, pauses and tears down interval timers",
        "leak",
        15000,
        1000,
        20,
        _timer_lifecycle,
    ),
    CatalogEntry(
        "event-listeners",
        "Event listener cleanup",
        "Adds click, hover and document key listeners to short-lived buttons",
        "leak",
        12000,
        800,
        30,
        _event_listeners,
    ),
    CatalogEntry(
        "component-mounting",
        "Component mount/unmount",
        "Mounts components with timers and handlers, then unmounts them",
        "leak",
        20000,
        1000,
        15,
        _component_mounting,
    ),
    CatalogEntry(
        "animation-cleanup",
        "Animation cleanup",
        "Runs frame loops on temporary nodes and cancels them",
        "leak",
        10000,
        500,
        25,
        _animation_cleanup,
    ),
    CatalogEntry(
        "long-running",
        "Long running session",
        "Simulates continuous user interaction for the whole window",
        "leak",
        30000,
        2000,
        1,
        _long_running,
    ),
)

PERFORMANCE_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(
        "spinner",
        "Spinner",
        "Composited rotation with no per-frame work",
        "performance",
        3000,
        500,
        None,
        _spinner,
    ),
    CatalogEntry(
        "progress-ring",
        "Progress ring",
        "Opacity and rotation with light per-frame work",
        "performance",
        4000,
        500,
        None,
        _progress_ring,
    ),
    CatalogEntry(
        "heavy-frames",
        "Heavy frames",
        "Filter animation with expensive frames that blow the frame budget",
        "performance",
        5000,
        500,
        None,
        _heavy_frames,
    ),
)

CATALOG: dict[str, CatalogEntry] = {
    entry.scenario_id: entry for entry in (*LEAK_CATALOG, *PERFORMANCE_CATALOG)
}
LEAK_SCENARIOS = tuple(entry.scenario_id for entry in LEAK_CATALOG)
PERFORMANCE_SCENARIOS = tuple(entry.scenario_id for entry in PERFORMANCE_CATALOG)
SUITES: dict[str, tuple[str, ...]] = {
    "leak": LEAK_SCENARIOS,
    "performance": PERFORMANCE_SCENARIOS,
    "all": LEAK_SCENARIOS + PERFORMANCE_SCENARIOS,
}


def build_scenario(
    scenario_id: str,
    host: AsyncioHost,
    *,
    leaky: bool = False,
    duration_scale: float = 1.0,
) -> ScenarioConfig:
    """Build a runnable config for catalog entry `scenario_id`."""
    entry = CATALOG.get(scenario_id)
    if entry is None:
        raise ScenarioConfigError(f"Unknown scenario id: {scenario_id!r}")
    if not duration_scale > 0:
        raise ScenarioConfigError("duration_scale must be positive")
    bench = Workbench(host, time_scale=duration_scale)
    body = entry.factory(bench, leaky)
    name = f"{entry.title} (leaky)" if leaky and entry.kind == "leak" else entry.title
    logger.debug(
        "Built scenario %s",
        scenario_id,
        extra={
            "event": "scenario_built",
            "scenario_id": scenario_id,
            "leaky": leaky,
            "duration_scale": duration_scale,
        },
    )
    return ScenarioConfig(
        name=name,
        description=entry.description,
        duration_ms=max(1.0, entry.duration_ms * duration_scale),
        sample_interval_ms=max(1.0, entry.sample_interval_ms * duration_scale),
        setup=body.setup,
        cleanup=body.cleanup,
        run=body.run,
        iterations=entry.iterations,
        kind=entry.kind,
        style_root=bench.area if entry.kind == "performance" else None,
    )


def build_suite(
    suite: str,
    host: AsyncioHost,
    *,
    leaky: bool = False,
    duration_scale: float = 1.0,
) -> list[ScenarioConfig]:
    scenario_ids = SUITES.get(suite)
    if scenario_ids is None:
        raise ScenarioConfigError(f"Unknown suite: {suite!r}")
    return [
        build_scenario(
            scenario_id, host, leaky=leaky, duration_scale=duration_scale
        )
        for scenario_id in scenario_ids
    ]
