"""Host capability negotiation: memory introspection and device profile.

Capabilities are resolved once, up front. Callers receive an optional provider
rather than probing for APIs while sampling; a missing capability degrades
the affected snapshot fields to zero and never fails a scenario.
"""

from __future__ import annotations

import logging
import os
import platform
import tracemalloc
from dataclasses import dataclass
from typing import Protocol

import psutil

from .runtime_config import normalize_memory_provider

logger = logging.getLogger(__name__)

LOW_END_CPU_COUNT = 2
LOW_END_MEMORY_GB = 4.0
_GIB = 1024**3


@dataclass(frozen=True)
class MemoryReading:
    """Point-in-time memory figures in bytes."""

    used: int
    total: int
    limit: int

    @property
    def ratio(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used / self.limit


class MemoryProvider(Protocol):
    name: str

    def read(self) -> MemoryReading: ...


class ProcessMemoryProvider:
    """Resident/virtual memory of the current process via psutil."""

    name = "process"

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process if process is not None else psutil.Process()

    def read(self) -> MemoryReading:
        info = self._process.memory_info()
        return MemoryReading(
            used=int(info.rss),
            total=int(info.vms),
            limit=int(psutil.virtual_memory().total),
        )


class TracemallocMemoryProvider:
    """Python heap allocations traced by `tracemalloc`.

    Requires tracing to be active; `total` reports the traced peak.
    """

    name = "tracemalloc"

    def read(self) -> MemoryReading:
        current, peak = tracemalloc.get_traced_memory()
        return MemoryReading(
            used=int(current),
            total=int(peak),
            limit=int(psutil.virtual_memory().total),
        )


def resolve_memory_provider(preference: str = "process") -> MemoryProvider | None:
    """Resolve the memory provider once; `None` means introspection is absent."""
    normalized = normalize_memory_provider(preference)
    provider: MemoryProvider
    if normalized == "none":
        logger.info(
            "Memory introspection disabled; memory fields will read zero",
            extra={"event": "memory_provider_resolved", "provider": "none"},
        )
        return None
    if normalized == "tracemalloc":
        if not tracemalloc.is_tracing():
            logger.info(
                "tracemalloc is not tracing; memory fields will read zero",
                extra={"event": "memory_provider_unavailable", "provider": normalized},
            )
            return None
        provider = TracemallocMemoryProvider()
    else:
        try:
            provider = ProcessMemoryProvider()
        except (psutil.Error, OSError) as exc:
            logger.info(
                "Process memory introspection unavailable (%s)",
                exc.__class__.__name__,
                extra={"event": "memory_provider_unavailable", "provider": normalized},
            )
            return None
    try:
        provider.read()
    except (psutil.Error, OSError) as exc:
        logger.info(
            "Memory provider %s failed its probe read (%s)",
            provider.name,
            exc.__class__.__name__,
            extra={"event": "memory_provider_unavailable", "provider": provider.name},
        )
        return None
    logger.debug(
        "Memory provider resolved",
        extra={"event": "memory_provider_resolved", "provider": provider.name},
    )
    return provider


@dataclass(frozen=True)
class DeviceInfo:
    """Coarse description of the machine running the scenarios."""

    platform: str
    python_version: str
    cpu_count: int
    memory_gb: float | None
    is_low_end_device: bool


def collect_device_info() -> DeviceInfo:
    """Collect device profile used by frame-timing recommendations."""
    cpu_count = os.cpu_count() or 1
    memory_gb: float | None
    try:
        memory_gb = round(psutil.virtual_memory().total / _GIB, 1)
    except (psutil.Error, OSError):
        memory_gb = None
    is_low_end = cpu_count <= LOW_END_CPU_COUNT or (
        memory_gb is not None and memory_gb <= LOW_END_MEMORY_GB
    )
    return DeviceInfo(
        platform=platform.platform(),
        python_version=platform.python_version(),
        cpu_count=cpu_count,
        memory_gb=memory_gb,
        is_low_end_device=is_low_end,
    )
