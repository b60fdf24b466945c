"""Nox sessions for the tz-leakscope quality gates."""

from __future__ import annotations

import nox

nox.options.sessions = ["lint", "typecheck", "tests"]


@nox.session
def lint(session: nox.Session) -> None:
    """Check lint and formatting without touching files."""
    session.install("ruff")
    session.run("ruff", "check", "src", "tests")
    session.run("ruff", "format", "--check", "src", "tests")


@nox.session(name="lint-fix")
def lint_fix(session: nox.Session) -> None:
    session.install("ruff")
    session.run("ruff", "check", "--fix", "src", "tests")
    session.run("ruff", "format", "src", "tests")


@nox.session
def typecheck(session: nox.Session) -> None:
    session.install("mypy", "types-psutil")
    session.install("-e", ".")
    session.run("mypy", "src")


@nox.session
def tests(session: nox.Session) -> None:
    """Run the pytest suite; extra args are passed through to pytest."""
    session.install("-e", ".[test]")
    session.run("pytest", *session.posargs)


@nox.session(name="leak-smoke")
def leak_smoke(session: nox.Session) -> None:
    """Run every built-in scenario at a tenth of its duration."""
    session.install("-e", ".")
    session.run(
        "tz-leakscope",
        "--suite",
        "all",
        "--duration-scale",
        "0.1",
        "--quiet",
        success_codes=[0, 2],
    )
