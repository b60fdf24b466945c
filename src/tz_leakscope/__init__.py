"""tz-leakscope: in-process leak detection and frame-timing profiling."""

from __future__ import annotations

from .errors import (
    ConcurrentInvocationError,
    LeakscopeError,
    ScenarioConfigError,
    ScenarioFailure,
)
from .host import AsyncioHost, Event, EventTarget, Node
from .interception import InstrumentationSession, instrumented
from .reports import LeakReport, PerformanceReport
from .runner import ScenarioConfig, ScenarioRunner
from .version import __version__

__all__ = [
    "AsyncioHost",
    "ConcurrentInvocationError",
    "Event",
    "EventTarget",
    "InstrumentationSession",
    "LeakReport",
    "LeakscopeError",
    "Node",
    "PerformanceReport",
    "ScenarioConfig",
    "ScenarioConfigError",
    "ScenarioFailure",
    "ScenarioRunner",
    "__version__",
    "instrumented",
]
