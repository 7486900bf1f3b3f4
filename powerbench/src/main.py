"""
Command-line entry point for running bench tests.

Subcommands:

- ``powerbench run <bench.json>``: create a run for the station/outlet/profile
  described in the file, energize it, collect readings under the safety
  monitor for ``--duration`` seconds, then finish and score it. SIGTERM or
  SIGINT cancels the run (ABORTED) instead. The final run is printed as JSON.
- ``powerbench check <bench.json>``: print the safety-precondition violations,
  the adapter configuration check, and a controller health check.

Whatever happens, both the collector and the safety monitor registries are
drained before the process exits.

Structured JSON logging is used for all events unless ``BENCH_LOG_JSON`` is
false.

CHANGELOG:
- 2026-10-16: Mark runs that fail to start FAILED instead of ABORTED (STORY-013)
- 2026-10-12: Add check subcommand (STORY-012)
- 2026-10-11: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import functools
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from powerbench.src.adapters import get_adapter
from powerbench.src.collector import ReadingsCollector
from powerbench.src.config import BenchSettings
from powerbench.src.errors import BenchError
from powerbench.src.models import Outlet, Profile, RunStatus, Station, TestRun
from powerbench.src.runs import TestRunManager
from powerbench.src.safety import validate_safety
from powerbench.src.store import BenchStore

logger = logging.getLogger(__name__)

_RUN_STATUS_POLL_S: float = 1.0
"""How often the run command re-reads the run while waiting."""


class BenchFile(BaseModel):
    """Contents of a bench description file."""

    station: Station
    outlet: Outlet
    profile: Profile
    operator_id: str | None = None
    checklist_values: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure the root logger to write to stderr.

    Args:
        level: Root level name.
        json_format: One JSON object per line when true, plain text otherwise.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: BenchSettings) -> None:
    """Log the effective configuration, masking SNMP community strings."""
    logger.info(
        "Bench starting with config: db_path=%s, poll_interval_ms=%s, "
        "reading_check_interval_ms=%s, spike_window_ms=%s, "
        "health_check_interval_s=%s, read_timeout_s=%s, health_timeout_s=%s, "
        "snmp_port=%s, snmp_read_community=%s, snmp_write_community=%s",
        settings.db_path,
        settings.poll_interval_ms,
        settings.reading_check_interval_ms,
        settings.spike_window_ms,
        settings.health_check_interval_s,
        settings.read_timeout_s,
        settings.health_timeout_s,
        settings.snmp_port,
        _masked_secret(settings.snmp_read_community),
        _masked_secret(settings.snmp_write_community),
    )


# ---------------------------------------------------------------------------
# Bench file loading
# ---------------------------------------------------------------------------


def load_bench_file(path: str | Path) -> BenchFile:
    """Parse and validate a bench description file.

    Raises:
        BenchError: If the file is missing, not JSON, or fails validation.
    """
    path_obj = Path(path)
    if not path_obj.exists():
        raise BenchError(f"Bench file does not exist: {path_obj}")
    try:
        return BenchFile.model_validate_json(path_obj.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise BenchError(f"Invalid bench file {path_obj}: {exc}") from exc


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def build_manager(
    store: BenchStore, settings: BenchSettings
) -> tuple[ReadingsCollector, TestRunManager]:
    """Wire a collector and a run manager (with its safety monitor)."""
    factory = functools.partial(get_adapter, settings=settings)
    collector = ReadingsCollector(
        store,
        adapter_factory=factory,
        interval_ms=settings.poll_interval_ms,
        read_timeout_s=settings.read_timeout_s,
    )
    manager = TestRunManager(
        store,
        collector,
        adapter_factory=factory,
        reading_check_interval_ms=settings.reading_check_interval_ms,
        spike_window_ms=settings.spike_window_ms,
        health_check_interval_s=settings.health_check_interval_s,
        health_timeout_s=settings.health_timeout_s,
    )
    return collector, manager


async def _wait_for_run(
    manager: TestRunManager,
    run_id: str,
    *,
    duration_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Wait until the duration elapses, a signal arrives, or the run ends."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration_s
    while not shutdown_event.is_set():
        remaining = deadline - loop.time()
        if remaining <= 0:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=min(_RUN_STATUS_POLL_S, remaining)
            )
        run = await manager.require_run(run_id)
        if run.status.is_terminal:
            logger.warning("Run %s ended early with status %s", run_id, run.status)
            return


async def run_command(
    bench: BenchFile,
    *,
    settings: BenchSettings,
    qlid: str,
    duration_s: float,
    shutdown_event: asyncio.Event,
) -> TestRun:
    """Execute one bench test end to end and return the final run."""
    async with BenchStore(settings.db_path) as store:
        collector, manager = build_manager(store, settings)
        run = await manager.create_run(
            qlid, bench.station, bench.outlet, bench.profile, bench.operator_id
        )
        try:
            try:
                await manager.start_run(
                    run.id, bench.station, bench.outlet, bench.profile
                )
            except BenchError:
                # A run that never energized failed; this also releases the
                # outlet claim. A run already FAILED by turn_on is left as is.
                await manager.update_status(run.id, RunStatus.FAILED)
                raise

            await _wait_for_run(
                manager, run.id, duration_s=duration_s, shutdown_event=shutdown_event
            )
            if shutdown_event.is_set():
                logger.info("Shutdown requested, cancelling run %s", run.id)
                return await manager.cancel_run(run.id, bench.station, bench.outlet)
            return await manager.finish_run(
                run.id,
                bench.station,
                bench.outlet,
                bench.profile,
                checklist_values=bench.checklist_values,
            )
        finally:
            stopped = collector.stop_all() + manager.monitor.stop_all()
            if stopped:
                logger.warning("Drained %d active polling registrations", stopped)


async def check_command(bench: BenchFile, *, settings: BenchSettings) -> dict[str, Any]:
    """Report whether the bench could be energized right now."""
    report: dict[str, Any] = {
        "safety_violations": validate_safety(bench.station, bench.outlet),
        "config_error": None,
    }
    adapter = get_adapter(bench.station.controller_type, settings)
    try:
        adapter.check_config(bench.station, bench.outlet)
    except BenchError as exc:
        report["config_error"] = str(exc)
    health = await adapter.health_check(bench.station)
    report["health"] = health.model_dump(mode="json")
    report["adapter"] = adapter.name
    return report


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="powerbench",
        description="Run automated power tests on bench outlets.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one test on a bench outlet")
    run.add_argument("bench_file", help="JSON file with station, outlet, profile")
    run.add_argument("--qlid", required=True, help="Item identifier under test")
    run.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Seconds to run (default: the profile's min_run_seconds)",
    )

    check = sub.add_parser("check", help="Check safety flags and controller health")
    check.add_argument("bench_file", help="JSON file with station, outlet, profile")
    return parser


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


async def async_main(args: argparse.Namespace, settings: BenchSettings) -> int:
    bench = load_bench_file(args.bench_file)

    if args.command == "check":
        report = await check_command(bench, settings=settings)
        print(json.dumps(report, indent=2, default=str))
        ok = (
            not report["safety_violations"]
            and report["config_error"] is None
            and report["health"]["ok"]
        )
        return 0 if ok else 1

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    duration_s = (
        args.duration
        if args.duration is not None
        else bench.profile.thresholds.min_run_seconds
    )
    run = await run_command(
        bench,
        settings=settings,
        qlid=args.qlid,
        duration_s=duration_s,
        shutdown_event=shutdown_event,
    )
    print(run.model_dump_json(indent=2))
    return 0 if run.status == RunStatus.COMPLETED else 1


def main(argv: list[str] | None = None) -> int:
    """Synchronous entrypoint for the ``powerbench`` console script."""
    args = _build_parser().parse_args(argv)
    settings = BenchSettings()
    configure_logging(settings.log_level, settings.log_json)
    log_config_summary(settings)
    try:
        return asyncio.run(async_main(args, settings))
    except BenchError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
