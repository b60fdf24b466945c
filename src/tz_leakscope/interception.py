"""Instrumentation session that records timer and listener registrations.

`InstrumentationSession.install()` swaps the host's timer primitives and the
listener class's add/remove primitives for recording wrappers. Wrappers always
call through to the saved originals, so observable behavior is unchanged; the
registry is a side effect only. `uninstall()` puts the exact original
attributes back (instance attributes that did not exist are deleted again),
leaving attribute lookups reference-identical to their pre-install state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Any, Literal

from .host import EventTarget, HostRuntime

logger = logging.getLogger(__name__)

TimerKind = Literal["timeout", "interval"]

TIMER_PRIMITIVES = ("set_timeout", "set_interval", "clear_timeout", "clear_interval")
LISTENER_PRIMITIVES = ("add_event_listener", "remove_event_listener")

_MISSING = object()


@dataclass
class ResourceHandle:
    """Timer registered while instrumentation was installed."""

    id: Any
    kind: TimerKind
    created_at_ms: float
    planned_delay_ms: float
    callback_name: str
    cleared: bool = False


@dataclass(eq=False)
class ListenerRegistration:
    """Listener added while instrumentation was installed.

    There is no registration id; identity is the (target, event type, listener)
    triple compared by reference.
    """

    target: object
    event_type: str
    listener: Callable[..., object]
    added_at_ms: float
    removed: bool = False

    @property
    def target_type(self) -> str:
        return type(self.target).__name__

    def matches(self, target: object, event_type: str, listener: object) -> bool:
        return (
            self.target is target
            and self.event_type == event_type
            and self.listener is listener
        )


@dataclass(frozen=True)
class _Restore:
    owner: object
    attr_name: str
    previous: object


def _callable_name(func: object) -> str:
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", None)
    return str(name) if name else repr(func)[:100]


class InstrumentationSession:
    """Owned, explicit interception of a host's resource primitives."""

    def __init__(
        self,
        host: HostRuntime,
        *,
        listener_class: type = EventTarget,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._host = host
        self._listener_class = listener_class
        self._clock = clock if clock is not None else host.now_ms
        self._installed = False
        self._restores: list[_Restore] = []
        self._originals: dict[str, Callable[..., Any]] = {}
        self._timers: dict[Any, ResourceHandle] = {}
        self._listeners: list[ListenerRegistration] = []

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def host(self) -> HostRuntime:
        return self._host

    @property
    def timers(self) -> list[ResourceHandle]:
        return list(self._timers.values())

    @property
    def listeners(self) -> list[ListenerRegistration]:
        return list(self._listeners)

    def outstanding_timer_count(self) -> int:
        return sum(1 for handle in self._timers.values() if not handle.cleared)

    def outstanding_listener_count(self) -> int:
        return sum(1 for reg in self._listeners if not reg.removed)

    def reset(self) -> None:
        """Forget all recorded registrations."""
        self._timers.clear()
        self._listeners.clear()

    def untracked(self, name: str) -> Callable[..., Any]:
        """Return the original (never recorded) host primitive called `name`."""
        original = self._originals.get(name)
        if original is not None and self._installed:
            return original
        return getattr(self._host, name)

    def install(self) -> None:
        """Replace host primitives with recording wrappers; no-op if installed."""
        if self._installed:
            return
        self._originals.clear()
        self._patch(self._host, "set_timeout", self._wrap_register("timeout"))
        self._patch(self._host, "set_interval", self._wrap_register("interval"))
        self._patch(self._host, "clear_timeout", self._wrap_cancel)
        self._patch(self._host, "clear_interval", self._wrap_cancel)
        self._patch(self._listener_class, "add_event_listener", self._wrap_add)
        self._patch(self._listener_class, "remove_event_listener", self._wrap_remove)
        self._installed = True
        logger.debug(
            "Instrumentation installed",
            extra={
                "event": "interception_installed",
                "host_type": type(self._host).__name__,
                "listener_class": self._listener_class.__name__,
            },
        )

    def uninstall(self) -> None:
        """Restore saved originals, including after a partial install."""
        if not self._installed and not self._restores:
            return
        for restore in reversed(self._restores):
            if restore.previous is _MISSING:
                delattr(restore.owner, restore.attr_name)
            else:
                setattr(restore.owner, restore.attr_name, restore.previous)
        self._restores.clear()
        self._installed = False
        logger.debug(
            "Instrumentation uninstalled",
            extra={
                "event": "interception_uninstalled",
                "outstanding_timers": self.outstanding_timer_count(),
                "outstanding_listeners": self.outstanding_listener_count(),
            },
        )

    def _patch(
        self,
        owner: object,
        attr_name: str,
        factory: Callable[[Callable[..., Any]], Callable[..., Any]],
    ) -> None:
        # Class attributes are saved as raw descriptors so restoring them
        # yields the identical function object.
        own_attrs = vars(owner)
        previous = own_attrs.get(attr_name, _MISSING)
        original = getattr(owner, attr_name)
        self._originals[attr_name] = original
        self._restores.append(_Restore(owner, attr_name, previous))
        setattr(owner, attr_name, factory(original))

    def _guarded(self, primitive: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:
            logger.exception(
                "Resource bookkeeping failed in %s: %s",
                primitive,
                exc,
                extra={
                    "event": "interception_bookkeeping_failed",
                    "primitive": primitive,
                },
            )

    def _wrap_register(
        self, kind: TimerKind
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def factory(original: Callable[..., Any]) -> Callable[..., Any]:
            @wraps(original)
            def register(
                callback: Callable[..., object], delay_ms: float = 0, *args: Any
            ) -> Any:
                handle = original(callback, delay_ms, *args)
                self._guarded(
                    f"set_{kind}",
                    lambda: self._record_timer(handle, kind, delay_ms, callback),
                )
                return handle

            return register

        return factory

    def _wrap_cancel(self, original: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(original)
        def cancel(handle: Any, *args: Any, **kwargs: Any) -> Any:
            self._guarded(
                getattr(original, "__name__", "clear"),
                lambda: self._mark_cleared(handle),
            )
            return original(handle, *args, **kwargs)

        return cancel

    def _wrap_add(self, original: Callable[..., Any]) -> Callable[..., Any]:
        session = self

        @wraps(original)
        def add_event_listener(
            target: object, event_type: str, listener: Any, *args: Any, **kwargs: Any
        ) -> Any:
            result = original(target, event_type, listener, *args, **kwargs)
            session._guarded(
                "add_event_listener",
                lambda: session._record_listener(target, event_type, listener),
            )
            return result

        return add_event_listener

    def _wrap_remove(self, original: Callable[..., Any]) -> Callable[..., Any]:
        session = self

        @wraps(original)
        def remove_event_listener(
            target: object, event_type: str, listener: Any, *args: Any, **kwargs: Any
        ) -> Any:
            session._guarded(
                "remove_event_listener",
                lambda: session._mark_removed(target, event_type, listener),
            )
            return original(target, event_type, listener, *args, **kwargs)

        return remove_event_listener

    def _record_timer(
        self, handle: Any, kind: TimerKind, delay_ms: float, callback: object
    ) -> None:
        self._timers[handle] = ResourceHandle(
            id=handle,
            kind=kind,
            created_at_ms=self._clock(),
            planned_delay_ms=float(delay_ms or 0),
            callback_name=_callable_name(callback),
        )

    def _mark_cleared(self, handle: Any) -> None:
        record = self._timers.get(handle)
        if record is not None:
            record.cleared = True

    def _record_listener(self, target: object, event_type: str, listener: Any) -> None:
        # Re-adding an attached reference is a no-op on the target itself.
        if any(
            not registration.removed
            and registration.matches(target, event_type, listener)
            for registration in self._listeners
        ):
            return
        self._listeners.append(
            ListenerRegistration(
                target=target,
                event_type=event_type,
                listener=listener,
                added_at_ms=self._clock(),
            )
        )

    def _mark_removed(self, target: object, event_type: str, listener: Any) -> None:
        for registration in self._listeners:
            if not registration.removed and registration.matches(
                target, event_type, listener
            ):
                registration.removed = True
                return


@contextmanager
def instrumented(
    host: HostRuntime, *, listener_class: type = EventTarget
) -> Iterator[InstrumentationSession]:
    """Temporarily install an instrumentation session around a block."""
    session = InstrumentationSession(host, listener_class=listener_class)
    session.install()
    try:
        yield session
    finally:
        session.uninstall()
