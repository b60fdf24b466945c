"""JSON settings file for the CLI: threshold overrides and run defaults.

Loading never fails. Missing files give defaults silently; unreadable,
corrupt or mistyped content degrades field by field to defaults and the caller
gets a notice to show the user.
"""

from __future__ import annotations

import json
import logging
import math
import time
from contextlib import suppress
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any
from uuid import uuid4

from .runtime_config import (
    MEMORY_PROVIDER_CHOICES,
    GradeThresholds,
    LeakThresholds,
    SeverityLevel,
)

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1
_DEFAULT_LEAK = LeakThresholds()
_LADDER_NAMES = ("critical", "high", "medium")


def _default_ladder() -> dict[str, dict[str, float]]:
    return {name: asdict(level) for name, level in _DEFAULT_LEAK.ladder()}


@dataclass(frozen=True)
class Settings:
    """User settings persisted as JSON in the per-user config directory."""

    memory_provider: str = "process"
    log_level: str = "INFO"
    duration_scale: float = 1.0
    sample_interval_ms: float | None = None
    batch_cooldown_s: float = 2.0
    memory_finding_mb: float = _DEFAULT_LEAK.memory_finding_mb
    dom_growth_nodes: int = _DEFAULT_LEAK.dom_growth_nodes
    severity_ladder: dict[str, dict[str, float]] = field(
        default_factory=_default_ladder
    )
    low_fps: float = GradeThresholds().low_fps
    version: int = SETTINGS_VERSION

    def leak_thresholds(self) -> LeakThresholds:
        levels = {
            name: SeverityLevel(
                memory_growth_mb=float(values["memory_growth_mb"]),
                timer_leaks=int(values["timer_leaks"]),
                listener_leaks=int(values["listener_leaks"]),
            )
            for name, values in self.severity_ladder.items()
        }
        return replace(
            _DEFAULT_LEAK,
            memory_finding_mb=self.memory_finding_mb,
            dom_growth_nodes=self.dom_growth_nodes,
            **levels,
        )

    def grade_thresholds(self) -> GradeThresholds:
        return replace(GradeThresholds(), low_fps=self.low_fps)


def _number(value: Any, default: float, *, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    number = float(value)
    if not math.isfinite(number) or number <= minimum:
        return default
    return number


def _count(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return default
    return value


def _ladder(value: Any) -> dict[str, dict[str, float]]:
    ladder = _default_ladder()
    if not isinstance(value, dict):
        return ladder
    for name in _LADDER_NAMES:
        rung = value.get(name)
        if not isinstance(rung, dict):
            continue
        current = ladder[name]
        ladder[name] = {
            "memory_growth_mb": _number(
                rung.get("memory_growth_mb"), current["memory_growth_mb"]
            ),
            "timer_leaks": _count(rung.get("timer_leaks"), int(current["timer_leaks"])),
            "listener_leaks": _count(
                rung.get("listener_leaks"), int(current["listener_leaks"])
            ),
        }
    return ladder


def _coerce_settings(data: dict[str, Any]) -> Settings:
    defaults = Settings()
    provider = data.get("memory_provider")
    log_level = data.get("log_level")
    sample_interval = data.get("sample_interval_ms")
    return Settings(
        memory_provider=provider
        if isinstance(provider, str) and provider in MEMORY_PROVIDER_CHOICES
        else defaults.memory_provider,
        log_level=log_level.upper()
        if isinstance(log_level, str) and log_level.strip()
        else defaults.log_level,
        duration_scale=_number(data.get("duration_scale"), defaults.duration_scale),
        sample_interval_ms=None
        if sample_interval is None
        else _number(sample_interval, 0.0) or None,
        batch_cooldown_s=_number(
            data.get("batch_cooldown_s"), defaults.batch_cooldown_s, minimum=-1.0
        ),
        memory_finding_mb=_number(
            data.get("memory_finding_mb"), defaults.memory_finding_mb
        ),
        dom_growth_nodes=_count(
            data.get("dom_growth_nodes"), defaults.dom_growth_nodes
        ),
        severity_ladder=_ladder(data.get("severity_ladder")),
        low_fps=_number(data.get("low_fps"), defaults.low_fps),
    )


def _reset_notice(cause: str, path: Path, next_step: str) -> str:
    return (
        "Settings were reset to defaults.\n"
        f"Likely cause: {cause}.\n"
        f"Next step: {next_step} '{path}' and rerun."
    )


def load_settings_with_notice(path: Path) -> tuple[Settings, str | None]:
    """Load settings and return an optional user-facing notice."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("No settings file at %s; using defaults.", path)
        return Settings(), None
    except OSError as exc:
        logger.warning("Failed to read settings %s: %s; using defaults.", path, exc)
        return Settings(), _reset_notice(
            "the settings file is unreadable", path, "check permissions on"
        )
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Settings file %s is invalid JSON; using defaults.", path)
        return Settings(), _reset_notice(
            "the settings file is corrupt or partially written",
            path,
            "repair or delete",
        )
    if not isinstance(data, dict):
        logger.warning("Settings file %s is not a JSON object; using defaults.", path)
        return Settings(), _reset_notice(
            "the settings file has an unexpected format", path, "delete"
        )
    return _coerce_settings(data), None


def load_settings(path: Path) -> Settings:
    settings, _notice = load_settings_with_notice(path)
    return settings


def save_settings(path: Path, settings: Settings) -> None:
    """Write settings atomically: temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    payload = json.dumps(asdict(settings), indent=2, sort_keys=True)
    try:
        tmp_path.write_text(payload, encoding="utf-8")
        for attempt in range(3):
            try:
                tmp_path.replace(path)
                break
            except PermissionError:
                # Windows refuses the replace while a reader holds the target open.
                if attempt == 2:
                    raise
                time.sleep(0.05 * (attempt + 1))
    finally:
        with suppress(OSError):
            tmp_path.unlink()
    logger.debug(
        "Settings saved",
        extra={"event": "settings_saved", "path": str(path)},
    )
