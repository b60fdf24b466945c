"""Snapshot and frame-timing samplers driven by the host's schedulers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .capabilities import MemoryProvider, MemoryReading
from .host import HostRuntime
from .interception import InstrumentationSession

logger = logging.getLogger(__name__)

_NO_MEMORY = MemoryReading(used=0, total=0, limit=0)


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time runtime measures; memory fields are bytes."""

    timestamp_ms: float
    used_memory: int = 0
    total_memory: int = 0
    memory_limit: int = 0
    heap_ratio: float = 0.0
    dom_node_count: int = 0
    outstanding_listener_count: int = 0
    outstanding_timer_count: int = 0
    session_elapsed_ms: float = 0.0


@dataclass(frozen=True)
class FrameSample:
    """Interval between two consecutive refresh callbacks."""

    index: int
    interval_ms: float


class SnapshotSampler:
    """Captures snapshots on demand and on a periodic schedule.

    The periodic schedule goes through the session's untracked interval
    primitive so sampling never shows up as a scenario timer. The sampler does
    not stop itself; its owner calls `stop()`.
    """

    def __init__(
        self,
        host: HostRuntime,
        session: InstrumentationSession,
        *,
        memory_provider: MemoryProvider | None = None,
        node_probe: Callable[[], int] | None = None,
    ) -> None:
        self._host = host
        self._session = session
        self._memory_provider = memory_provider
        self._node_probe = node_probe if node_probe is not None else host.node_count
        self._started_at_ms: float | None = None
        self._snapshots: list[Snapshot] = []
        self._interval_handle: Any = None

    @property
    def snapshots(self) -> list[Snapshot]:
        return list(self._snapshots)

    @property
    def is_scheduled(self) -> bool:
        return self._interval_handle is not None

    def begin(self) -> None:
        """Reset the series and mark the session start time."""
        self._snapshots.clear()
        self._started_at_ms = self._host.now_ms()

    def capture(self) -> Snapshot:
        """Build a snapshot without recording it."""
        now = self._host.now_ms()
        started = self._started_at_ms if self._started_at_ms is not None else now
        memory = self._read_memory()
        return Snapshot(
            timestamp_ms=now,
            used_memory=memory.used,
            total_memory=memory.total,
            memory_limit=memory.limit,
            heap_ratio=memory.ratio,
            dom_node_count=self._probe_nodes(),
            outstanding_listener_count=self._session.outstanding_listener_count(),
            outstanding_timer_count=self._session.outstanding_timer_count(),
            session_elapsed_ms=max(0.0, now - started),
        )

    def record(self) -> Snapshot:
        """Capture a snapshot and append it to the series."""
        snapshot = self.capture()
        self._snapshots.append(snapshot)
        return snapshot

    def start(self, interval_ms: float) -> None:
        if self._interval_handle is not None:
            return
        schedule = self._session.untracked("set_interval")
        self._interval_handle = schedule(self.record, interval_ms)

    def stop(self) -> None:
        if self._interval_handle is None:
            return
        handle, self._interval_handle = self._interval_handle, None
        self._session.untracked("clear_interval")(handle)

    def _read_memory(self) -> MemoryReading:
        provider = self._memory_provider
        if provider is None:
            return _NO_MEMORY
        try:
            return provider.read()
        except Exception as exc:
            # Degrade for the rest of the run instead of failing every sample.
            self._memory_provider = None
            logger.warning(
                "Memory provider %s failed; memory fields will read zero: %s",
                provider.name,
                exc,
                extra={"event": "memory_probe_failed", "provider": provider.name},
            )
            return _NO_MEMORY

    def _probe_nodes(self) -> int:
        try:
            return int(self._node_probe())
        except Exception as exc:
            logger.warning(
                "Node count probe failed: %s",
                exc,
                extra={"event": "node_probe_failed"},
            )
            return 0


class FrameTimingSampler:
    """Measures inter-frame intervals on the host's refresh scheduler."""

    def __init__(
        self,
        host: HostRuntime,
        *,
        snapshot_sampler: SnapshotSampler | None = None,
    ) -> None:
        self._host = host
        self._snapshot_sampler = snapshot_sampler
        self._samples: list[FrameSample] = []
        self._joint_snapshots: list[Snapshot] = []
        self._previous_ms = 0.0
        self._frame_handle: Any = None
        self._running = False

    @property
    def samples(self) -> list[FrameSample]:
        return list(self._samples)

    @property
    def joint_snapshots(self) -> list[Snapshot]:
        return list(self._joint_snapshots)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._previous_ms = self._host.now_ms()
        self._frame_handle = self._host.request_frame(self._on_frame)

    def stop(self) -> None:
        self._running = False
        if self._frame_handle is None:
            return
        handle, self._frame_handle = self._frame_handle, None
        self._host.cancel_frame(handle)

    def _on_frame(self, timestamp_ms: float) -> None:
        self._frame_handle = None
        if not self._running:
            return
        interval = timestamp_ms - self._previous_ms
        self._previous_ms = timestamp_ms
        self._samples.append(
            FrameSample(index=len(self._samples), interval_ms=interval)
        )
        if self._snapshot_sampler is not None:
            self._joint_snapshots.append(self._snapshot_sampler.capture())
        self._frame_handle = self._host.request_frame(self._on_frame)
