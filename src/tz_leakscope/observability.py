"""Capture of structured ``event=...`` log records.

Every lifecycle step in tz-leakscope logs with an ``extra={"event": ...}``
field. These helpers collect those records in memory so tests and tooling can
assert on what happened without parsing log text.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .logging_utils import record_extras

DEFAULT_LOGGER_PREFIX = "tz_leakscope"


@dataclass(frozen=True)
class CapturedEvent:
    logger_name: str
    level: str
    message: str
    event: str
    created_s: float
    context: dict[str, object]


class DiagnosticEventHandler(logging.Handler):
    """Logging handler that buffers records carrying an `event` attribute."""

    def __init__(
        self,
        *,
        logger_prefixes: tuple[str, ...] = (DEFAULT_LOGGER_PREFIX,),
        event_names: Iterable[str] | None = None,
        min_level: int = logging.NOTSET,
    ) -> None:
        super().__init__(level=min_level)
        self._logger_prefixes = logger_prefixes
        self._event_names = frozenset(event_names) if event_names is not None else None
        self._lock = threading.Lock()
        self._events: list[CapturedEvent] = []

    def emit(self, record: logging.LogRecord) -> None:
        if self._logger_prefixes and not record.name.startswith(self._logger_prefixes):
            return
        event = getattr(record, "event", None)
        if not isinstance(event, str) or not event:
            return
        if self._event_names is not None and event not in self._event_names:
            return
        context = record_extras(record)
        context.pop("event", None)
        captured = CapturedEvent(
            logger_name=record.name,
            level=record.levelname,
            message=record.getMessage(),
            event=event,
            created_s=float(record.created),
            context=context,
        )
        with self._lock:
            self._events.append(captured)

    @property
    def events(self) -> list[CapturedEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


@contextmanager
def capture_diagnostic_events(
    *,
    logger: logging.Logger | None = None,
    logger_prefixes: tuple[str, ...] = (DEFAULT_LOGGER_PREFIX,),
    event_names: Iterable[str] | None = None,
    min_level: int = logging.DEBUG,
) -> Iterator[DiagnosticEventHandler]:
    """Attach a temporary capture handler to `logger` (root by default).

    The logger level is lowered to `min_level` for the duration so DEBUG
    lifecycle events are not filtered before reaching the handler.
    """
    target = logger if logger is not None else logging.getLogger()
    handler = DiagnosticEventHandler(
        logger_prefixes=logger_prefixes,
        event_names=event_names,
        min_level=min_level,
    )
    previous_level = target.level
    if previous_level == logging.NOTSET or previous_level > min_level:
        target.setLevel(min_level)
    target.addHandler(handler)
    try:
        yield handler
    finally:
        target.removeHandler(handler)
        target.setLevel(previous_level)


def count_events_by_name(events: Iterable[CapturedEvent]) -> dict[str, int]:
    return dict(Counter(event.event for event in events))


def filter_events(
    events: Iterable[CapturedEvent],
    *,
    event_name: str | None = None,
    logger_name: str | None = None,
) -> list[CapturedEvent]:
    return [
        event
        for event in events
        if (event_name is None or event.event == event_name)
        and (logger_name is None or event.logger_name == logger_name)
    ]
