"""Command-line interface for tz-leakscope."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import tracemalloc
from contextlib import AbstractContextManager, nullcontext
from dataclasses import replace
from pathlib import Path

from .host import AsyncioHost
from .logging_utils import setup_logging
from .observability import (
    CapturedEvent,
    DiagnosticEventHandler,
    capture_diagnostic_events,
    count_events_by_name,
)
from .paths import log_dir, settings_path
from .reports import (
    LeakReport,
    PerformanceReport,
    ScenarioReport,
    build_run_payload,
    render_leak_reports_text,
    render_performance_reports_text,
    write_report_artifact,
)
from .runner import ScenarioRunner
from .runtime_config import MEMORY_PROVIDER_CHOICES, resolve_log_level
from .scenarios import CATALOG, SUITES, build_scenario
from .settings_store import Settings, load_settings_with_notice
from .version import __version__, build_help_epilog

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FINDINGS = 2

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tz-leakscope",
        description=(
            "Run built-in leak and frame-timing scenarios and report suspected "
            "resource leaks."
        ),
        epilog=build_help_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--list", action="store_true", help="List built-in scenarios and exit"
    )
    parser.add_argument(
        "--scenario",
        action="append",
        choices=sorted(CATALOG),
        metavar="ID",
        help="Scenario id to run (repeatable; overrides --suite)",
    )
    parser.add_argument(
        "--suite",
        choices=tuple(SUITES),
        default="leak",
        help="Scenario group to run when no --scenario is given (default: leak)",
    )
    parser.add_argument(
        "--leaky",
        action="store_true",
        help="Run the leaky variant of each leak scenario",
    )
    parser.add_argument(
        "--duration-scale",
        type=float,
        help="Multiply scenario durations and delays (e.g. 0.1 for a quick pass)",
    )
    parser.add_argument(
        "--memory",
        choices=MEMORY_PROVIDER_CHOICES,
        help="Memory introspection source (default from settings: process)",
    )
    parser.add_argument(
        "--json", action="store_true", help="Write a JSON report artifact"
    )
    parser.add_argument(
        "--results-dir",
        help="Directory for JSON artifacts (default: $TZ_LEAKSCOPE_RESULTS_DIR "
        "or .local/leakscope_results)",
    )
    parser.add_argument("--settings", help="Path to a settings JSON file")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--quiet", action="store_true", help="Only show warnings and errors"
    )
    parser.add_argument("--log-file", help="Write logs to a file path")
    return parser


def render_catalog() -> str:
    lines = []
    for suite in ("leak", "performance"):
        lines.append(f"{suite}:")
        for scenario_id in SUITES[suite]:
            entry = CATALOG[scenario_id]
            seconds = entry.duration_ms / 1000
            lines.append(
                f"  {scenario_id:<20} {seconds:>5.1f}s  {entry.description}"
            )
    return "\n".join(lines)


def render_event_summary(events: list[CapturedEvent]) -> str:
    """Summarize captured lifecycle events for --verbose runs."""
    counts = count_events_by_name(events)
    lines = [f"Diagnostic events ({len(events)}):"]
    lines.extend(f"  {name:<32} {counts[name]:>5}" for name in sorted(counts))
    return "\n".join(lines)


def exit_code_for(reports: list[ScenarioReport]) -> int:
    """Return 2 when any report is critical or failing-grade, else 0."""
    for report in reports:
        if isinstance(report, LeakReport) and report.severity == "critical":
            return EXIT_FINDINGS
        if isinstance(report, PerformanceReport) and report.grade == "F":
            return EXIT_FINDINGS
    return EXIT_OK


async def run_scenarios(
    scenario_ids: list[str],
    *,
    settings: Settings,
    memory: str,
    leaky: bool,
    duration_scale: float,
) -> list[ScenarioReport]:
    """Run catalog scenarios sequentially on a fresh asyncio host."""
    host = AsyncioHost()
    runner = ScenarioRunner(
        host,
        memory_preference=memory,
        leak_thresholds=settings.leak_thresholds(),
        grade_thresholds=settings.grade_thresholds(),
        batch_cooldown_s=settings.batch_cooldown_s,
    )
    configs = [
        build_scenario(
            scenario_id, host, leaky=leaky, duration_scale=duration_scale
        )
        for scenario_id in scenario_ids
    ]
    if settings.sample_interval_ms is not None:
        configs = [
            replace(config, sample_interval_ms=settings.sample_interval_ms)
            for config in configs
        ]
    try:
        return await runner.run_batch(configs)
    finally:
        runner.dispose()
        host.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.list:
        print(render_catalog())
        return EXIT_OK

    path = Path(args.settings) if args.settings else settings_path()
    settings, notice = load_settings_with_notice(path)
    if notice:
        print(notice, file=sys.stderr)
    if args.verbose or args.quiet:
        level = resolve_log_level(verbose=args.verbose, quiet=args.quiet)
    else:
        level = settings.log_level
    duration_scale = (
        args.duration_scale
        if args.duration_scale is not None
        else settings.duration_scale
    )
    if not duration_scale > 0:
        parser.error("--duration-scale must be positive")
    memory = args.memory or settings.memory_provider
    scenario_ids = args.scenario or list(SUITES[args.suite])

    log_file = Path(args.log_file) if args.log_file else None
    started_tracing = False
    try:
        setup_logging(
            log_dir=log_dir() if log_file is None else log_file.parent,
            level=level,
            log_file=log_file,
        )
        logger.info(
            "Running %s scenario(s)",
            len(scenario_ids),
            extra={
                "event": "cli_run_started",
                "scenarios": scenario_ids,
                "leaky": args.leaky,
                "memory": memory,
            },
        )
        if memory == "tracemalloc" and not tracemalloc.is_tracing():
            tracemalloc.start()
            started_tracing = True
        event_capture: AbstractContextManager[DiagnosticEventHandler | None] = (
            capture_diagnostic_events() if args.verbose else nullcontext()
        )
        with event_capture as capture:
            reports = asyncio.run(
                run_scenarios(
                    scenario_ids,
                    settings=settings,
                    memory=memory,
                    leaky=args.leaky,
                    duration_scale=duration_scale,
                )
            )
        if capture is not None:
            print(render_event_summary(capture.events), file=sys.stderr)
        leak_reports = [r for r in reports if isinstance(r, LeakReport)]
        performance_reports = [r for r in reports if isinstance(r, PerformanceReport)]
        if leak_reports:
            print(render_leak_reports_text(leak_reports))
        if performance_reports:
            print(render_performance_reports_text(performance_reports))
        if args.json:
            artifact = write_report_artifact(
                build_run_payload(reports, app_version=__version__),
                results_dir=Path(args.results_dir) if args.results_dir else None,
            )
            print(f"Report written to {artifact}")
        return exit_code_for(reports)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_ERROR
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Unhandled error: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if started_tracing:
            tracemalloc.stop()


if __name__ == "__main__":
    raise SystemExit(main())
