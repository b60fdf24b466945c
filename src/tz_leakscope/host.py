"""Asyncio-backed host runtime exposing interceptable resource primitives.

The host plays the part of a browser-like runtime for scenario bodies: it
offers timer registration/cancellation, a display-refresh frame scheduler,
`EventTarget` listener registration and a small node tree whose size is the
node-count probe. Timer primitives live on the host instance and listener
primitives on the `EventTarget` class, so an instrumentation session can wrap
them without the scenario code noticing.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_FRAME_INTERVAL_MS = 1000.0 / 60.0
MIN_INTERVAL_MS = 1.0

Listener = Callable[["Event"], object]
FrameCallback = Callable[[float], object]


@dataclass(frozen=True)
class Event:
    """Event payload delivered to listeners by `EventTarget.dispatch_event`."""

    type: str
    detail: object = None


class EventTarget:
    """Object that accepts event listeners keyed by event type."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def add_event_listener(self, event_type: str, listener: Listener) -> None:
        """Register `listener`; re-adding the same function reference is a no-op."""
        bucket = self._listeners.setdefault(event_type, [])
        if not any(existing is listener for existing in bucket):
            bucket.append(listener)

    def remove_event_listener(self, event_type: str, listener: Listener) -> None:
        """Remove `listener` if it was added with this exact function reference."""
        bucket = self._listeners.get(event_type)
        if not bucket:
            return
        for index, existing in enumerate(bucket):
            if existing is listener:
                del bucket[index]
                break
        if not bucket:
            del self._listeners[event_type]

    def dispatch_event(self, event: Event) -> int:
        """Deliver `event` to current listeners and return how many were called."""
        delivered = 0
        for listener in list(self._listeners.get(event.type, ())):
            delivered += 1
            try:
                listener(event)
            except Exception as exc:
                logger.exception(
                    "Event listener failed for %r: %s",
                    event.type,
                    exc,
                    extra={
                        "event": "event_listener_failed",
                        "event_type": event.type,
                    },
                )
        return delivered

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, ()))
        return sum(len(bucket) for bucket in self._listeners.values())


class Node(EventTarget):
    """Minimal document node with children and inline style properties."""

    def __init__(self, tag: str, *, node_id: str | None = None) -> None:
        super().__init__()
        self.tag = tag
        self.node_id = node_id
        self.parent: Node | None = None
        self.children: list[Node] = []
        self.style: dict[str, str] = {}

    def __repr__(self) -> str:
        suffix = f"#{self.node_id}" if self.node_id else ""
        return f"<Node {self.tag}{suffix} children={len(self.children)}>"

    @property
    def label(self) -> str:
        return f"{self.tag}#{self.node_id}" if self.node_id else self.tag

    def append_child(self, child: Node) -> Node:
        if child.parent is not None:
            child.parent.remove_child(child)
        child.parent = self
        self.children.append(child)
        return child

    def remove_child(self, child: Node) -> None:
        for index, existing in enumerate(self.children):
            if existing is child:
                del self.children[index]
                child.parent = None
                return

    def remove(self) -> None:
        """Detach this node from its parent, if attached."""
        if self.parent is not None:
            self.parent.remove_child(self)

    def walk(self, *, with_self: bool = False) -> Iterator[Node]:
        """Yield descendants depth-first."""
        if with_self:
            yield self
        for child in list(self.children):
            yield from child.walk(with_self=True)


class HostRuntime(Protocol):
    """Primitives the diagnostics engine consumes from a host runtime."""

    def now_ms(self) -> float: ...

    def set_timeout(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> Any: ...

    def set_interval(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> Any: ...

    def clear_timeout(self, handle: Any) -> None: ...

    def clear_interval(self, handle: Any) -> None: ...

    def request_frame(self, callback: FrameCallback) -> Any: ...

    def cancel_frame(self, handle: Any) -> None: ...

    def node_count(self) -> int: ...

    def style_views(
        self, root: object
    ) -> Iterator[tuple[str, Mapping[str, str]]]: ...


class AsyncioHost(EventTarget):
    """Host runtime implemented on top of an asyncio event loop.

    Timer ids are small integers, like browser timer handles. The frame
    scheduler fires callbacks on fixed refresh boundaries derived from the
    monotonic clock, so a busy loop shows up as stretched frame intervals.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        frame_interval_ms: float = DEFAULT_FRAME_INTERVAL_MS,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        super().__init__()
        if frame_interval_ms <= 0:
            raise ValueError("frame_interval_ms must be positive")
        self._loop = loop
        self._clock = clock
        self._frame_interval_ms = frame_interval_ms
        self._ids = itertools.count(1)
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._frames: dict[int, asyncio.TimerHandle] = {}
        self.document = Node("document")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def frame_interval_ms(self) -> float:
        return self._frame_interval_ms

    def now_ms(self) -> float:
        return self._clock() * 1000.0

    def set_timeout(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> int:
        timer_id = next(self._ids)

        def _fire() -> None:
            self._timers.pop(timer_id, None)
            callback(*args)

        self._timers[timer_id] = self.loop.call_later(
            max(0.0, delay_ms) / 1000.0, _fire
        )
        return timer_id

    def set_interval(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> int:
        timer_id = next(self._ids)
        period_s = max(MIN_INTERVAL_MS, delay_ms) / 1000.0

        def _tick() -> None:
            if timer_id not in self._timers:
                return
            # Reschedule first so the callback may clear its own interval.
            self._timers[timer_id] = self.loop.call_later(period_s, _tick)
            callback(*args)

        self._timers[timer_id] = self.loop.call_later(period_s, _tick)
        return timer_id

    def clear_timeout(self, handle: Any) -> None:
        timer = self._timers.pop(handle, None) if isinstance(handle, int) else None
        if timer is not None:
            timer.cancel()

    def clear_interval(self, handle: Any) -> None:
        self.clear_timeout(handle)

    def active_timer_count(self) -> int:
        return len(self._timers)

    def request_frame(self, callback: FrameCallback) -> int:
        frame_id = next(self._ids)
        now = self.now_ms()
        interval = self._frame_interval_ms
        boundary = (math.floor(now / interval) + 1) * interval

        def _fire() -> None:
            if self._frames.pop(frame_id, None) is None:
                return
            callback(self.now_ms())

        self._frames[frame_id] = self.loop.call_later(
            (boundary - now) / 1000.0, _fire
        )
        return frame_id

    def cancel_frame(self, handle: Any) -> None:
        frame = self._frames.pop(handle, None) if isinstance(handle, int) else None
        if frame is not None:
            frame.cancel()

    def node_count(self) -> int:
        return sum(1 for _ in self.document.walk())

    def style_views(
        self, root: object
    ) -> Iterator[tuple[str, Mapping[str, str]]]:
        if not isinstance(root, Node):
            raise TypeError(f"style root must be a Node, got {type(root).__name__}")
        for node in root.walk(with_self=True):
            yield node.label, node.style

    def close(self) -> None:
        """Cancel every pending timer and frame callback owned by this host."""
        for handle in itertools.chain(self._timers.values(), self._frames.values()):
            handle.cancel()
        self._timers.clear()
        self._frames.clear()
