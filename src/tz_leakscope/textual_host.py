"""Host runtime backed by a running Textual `App`.

Lets scenarios run inside a live terminal UI: timers go through the app's own
timer scheduler, frame callbacks fire after the compositor refreshes, the node
count is the number of widgets mounted under the active screen, and style
views translate Textual styles into the CSS-like properties understood by the
composite-layer advisory.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from textual.app import App
from textual.dom import DOMNode
from textual.timer import Timer

from .host import MIN_INTERVAL_MS, FrameCallback

logger = logging.getLogger(__name__)


def _scalar_text(value: object) -> str:
    return str(value).strip() or "0"


def widget_label(node: DOMNode) -> str:
    name = type(node).__name__
    return f"{name}#{node.id}" if node.id else name


def widget_style_view(node: DOMNode) -> dict[str, str]:
    """Map a widget's computed Textual styles onto CSS-like property names.

    Layers stand in for `will-change`, offsets for 2D transforms, tint for a
    filter and docked/overlay widgets for fixed positioning.
    """
    styles = node.styles
    view: dict[str, str] = {}
    layer = getattr(styles, "layer", None)
    view["will-change"] = f"layer({layer})" if layer else "auto"

    offset = getattr(styles, "offset", None)
    x = getattr(offset, "x", None)
    y = getattr(offset, "y", None)
    moved = any(getattr(axis, "value", 0) for axis in (x, y))
    view["transform"] = (
        f"translate({_scalar_text(x)}, {_scalar_text(y)})" if moved else "none"
    )

    opacity = getattr(styles, "opacity", 1.0)
    view["opacity"] = "1" if opacity == 1 else f"{float(opacity):g}"

    tint = getattr(styles, "tint", None)
    tint_alpha = getattr(tint, "a", 0)
    view["filter"] = f"tint({tint_alpha:g})" if tint_alpha else "none"

    dock = getattr(styles, "dock", "") or ""
    overlay = getattr(styles, "overlay", "none") or "none"
    fixed = dock not in ("", "none") or overlay == "screen"
    view["position"] = "fixed" if fixed else "static"
    return view


class TextualHost:
    """Host runtime that schedules everything on a Textual app's loop."""

    def __init__(
        self, app: App[Any], *, clock: Callable[[], float] = time.perf_counter
    ) -> None:
        self._app = app
        self._clock = clock
        self._ids = itertools.count(1)
        self._timers: dict[int, Timer] = {}
        self._frames: dict[int, FrameCallback] = {}

    @property
    def app(self) -> App[Any]:
        return self._app

    def now_ms(self) -> float:
        return self._clock() * 1000.0

    def set_timeout(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> int:
        timer_id = next(self._ids)

        def _fire() -> None:
            self._timers.pop(timer_id, None)
            callback(*args)

        self._timers[timer_id] = self._app.set_timer(
            max(0.0, delay_ms) / 1000.0,
            _fire,
            name=f"tz-leakscope-timeout-{timer_id}",
        )
        return timer_id

    def set_interval(
        self, callback: Callable[..., object], delay_ms: float = 0, *args: Any
    ) -> int:
        timer_id = next(self._ids)

        def _tick() -> None:
            callback(*args)

        self._timers[timer_id] = self._app.set_interval(
            max(MIN_INTERVAL_MS, delay_ms) / 1000.0,
            _tick,
            name=f"tz-leakscope-interval-{timer_id}",
        )
        return timer_id

    def clear_timeout(self, handle: Any) -> None:
        timer = self._timers.pop(handle, None) if isinstance(handle, int) else None
        if timer is not None:
            timer.stop()

    def clear_interval(self, handle: Any) -> None:
        self.clear_timeout(handle)

    def active_timer_count(self) -> int:
        return len(self._timers)

    def request_frame(self, callback: FrameCallback) -> int:
        frame_id = next(self._ids)
        self._frames[frame_id] = callback

        def _fire() -> None:
            pending = self._frames.pop(frame_id, None)
            if pending is not None:
                pending(self.now_ms())

        self._app.call_after_refresh(_fire)
        self._app.refresh()
        return frame_id

    def cancel_frame(self, handle: Any) -> None:
        if isinstance(handle, int):
            self._frames.pop(handle, None)

    def node_count(self) -> int:
        return sum(1 for _ in self._app.screen.walk_children(with_self=False))

    def style_views(self, root: object) -> Iterator[tuple[str, Mapping[str, str]]]:
        if not isinstance(root, DOMNode):
            raise TypeError(
                f"style root must be a Textual DOMNode, got {type(root).__name__}"
            )
        for node in root.walk_children(with_self=True):
            yield widget_label(node), widget_style_view(node)

    def close(self) -> None:
        """Stop every timer this host created and drop pending frames."""
        for timer in self._timers.values():
            timer.stop()
        self._timers.clear()
        self._frames.clear()
        logger.debug(
            "Textual host closed",
            extra={"event": "textual_host_closed"},
        )
