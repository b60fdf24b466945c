"""Test configuration."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tz_leakscope.capabilities import DeviceInfo, MemoryReading  # noqa: E402
from tz_leakscope.host import AsyncioHost, EventTarget  # noqa: E402
from tz_leakscope.runner import ScenarioRunner  # noqa: E402


@pytest.fixture(autouse=True)
def ensure_current_event_loop():
    """Provide a current event loop for sync tests."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        yield
    finally:
        loop.close()
        asyncio.set_event_loop(None)


@pytest.fixture(autouse=True)
def listener_primitives_untouched():
    """Fail loudly if a test leaves the class-level listener patch installed."""
    before = dict(vars(EventTarget))
    yield
    after = dict(vars(EventTarget))
    for name in ("add_event_listener", "remove_event_listener"):
        assert after[name] is before[name], f"EventTarget.{name} left patched"


@pytest.fixture(autouse=True)
def no_scenario_left_active():
    """Fail if a test leaves the process-wide scenario slot claimed."""
    yield
    active = ScenarioRunner._active_run
    ScenarioRunner._active_run = None
    assert active is None, f"scenario {active.config.name!r} left active"


class FakeMemoryProvider:
    """Memory provider returning scripted readings, last one repeating."""

    name = "fake"

    def __init__(self, used_values: list[int], limit: int = 8 * 1024**3) -> None:
        self._used_values = list(used_values)
        self._limit = limit
        self.reads = 0

    def read(self) -> MemoryReading:
        index = min(self.reads, len(self._used_values) - 1)
        self.reads += 1
        used = self._used_values[index]
        return MemoryReading(used=used, total=used, limit=self._limit)


@pytest.fixture
def device_info() -> DeviceInfo:
    return DeviceInfo(
        platform="test",
        python_version="3.12.0",
        cpu_count=8,
        memory_gb=16.0,
        is_low_end_device=False,
    )


@pytest.fixture
def loop_host():
    """AsyncioHost bound to a private, non-running loop for sync tests."""
    loop = asyncio.new_event_loop()
    host = AsyncioHost(loop=loop)
    try:
        yield host
    finally:
        host.close()
        loop.close()
