"""Exception types surfaced by the diagnostics engine.

Only contract violations reach callers. Failures raised by scenario bodies
(setup/run/cleanup) are contained by the runner and recorded on the report as
`ScenarioFailure` values instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ScenarioPhase = Literal["setup", "run", "cleanup", "sampling"]


class LeakscopeError(Exception):
    """Base class for tz-leakscope errors."""


class ScenarioConfigError(LeakscopeError, ValueError):
    """Raised when a scenario config violates the runner contract."""


class ConcurrentInvocationError(LeakscopeError, RuntimeError):
    """Raised when a scenario is started while another one is active."""

    def __init__(self, active_name: str | None) -> None:
        super().__init__(
            f"Scenario {active_name!r} is still active; concurrent starts are rejected."
        )
        self.active_name = active_name


@dataclass(frozen=True)
class ScenarioFailure:
    """A contained failure raised by a scenario body during one phase."""

    phase: ScenarioPhase
    error_type: str
    message: str

    @classmethod
    def from_exception(
        cls, phase: ScenarioPhase, exc: BaseException
    ) -> ScenarioFailure:
        return cls(phase=phase, error_type=exc.__class__.__name__, message=str(exc))
