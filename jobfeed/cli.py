"""
Command-line entry point.

  jobfeed run        one import pass; waits for the queue to drain
  jobfeed schedule   cron-driven passes until interrupted
  jobfeed serve      HTTP API with scheduler and workers
  jobfeed stats      queue counters and recent import run statistics

Settings come from the environment (see `jobfeed.config`), plus a
``.env`` file in the working directory if present; the options below override
them.
"""

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

from jobfeed.clock import utc_now
from jobfeed.config import ImportSettings
from jobfeed.errors import ConfigurationError
from jobfeed.factory import build_orchestrator
from jobfeed.logging import setup_logging
from jobfeed.models import summarize_runs
from jobfeed.notify import BroadcastNotifier
from jobfeed.scheduler import ImportScheduler


def _settings_from_args(args: argparse.Namespace) -> ImportSettings:
    settings = ImportSettings.from_env()
    overrides = {}
    if getattr(args, "database_url", None):
        overrides["database_url"] = args.database_url
    if getattr(args, "feeds_file", None):
        overrides["feeds_file"] = args.feeds_file
    if getattr(args, "cron_schedule", None):
        overrides["cron_schedule"] = args.cron_schedule
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level
    return settings.with_overrides(**overrides)


async def _run_once(settings: ImportSettings, wait_timeout: float) -> int:
    log = setup_logging(settings.log_level_number)
    orchestrator = build_orchestrator(settings)
    try:
        summary = await orchestrator.start_import()
        try:
            await orchestrator.queue.wait_until_idle(orchestrator.queue_name, timeout=wait_timeout)
        except asyncio.TimeoutError:
            log.warning("Queue still busy after %ss; counts below may be incomplete", wait_timeout)
        log.info(summary)
        runs = [r for r in await orchestrator.run_storage.list_runs(limit=1000) if r.import_id == summary.import_id]
        for run in sorted(runs, key=lambda r: r.started_at):
            print(
                f"{run.source_name}: {run.status.value} fetched={run.total_fetched} "
                f"new={run.new_jobs} updated={run.updated_jobs} failed={run.failed_count}"
                + (f" error={run.error}" if run.error else "")
            )
        for result in summary.results:
            if not result.success:
                print(f"{result.feed_name}: not imported ({result.error})", file=sys.stderr)
        return 0 if summary.succeeded else 1
    finally:
        await orchestrator.queue.close()


async def _schedule(settings: ImportSettings) -> None:
    log = setup_logging(settings.log_level_number)
    notifier = BroadcastNotifier()
    orchestrator = build_orchestrator(settings, notifier=notifier)
    scheduler = ImportScheduler(
        orchestrator,
        notifier=notifier,
        cron_schedule=settings.cron_schedule,
        timezone=settings.cron_timezone,
    )
    orchestrator.start_workers()
    scheduler.start()
    log.info(scheduler.get_status())
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
        await orchestrator.queue.close()


async def _stats(settings: ImportSettings, days: int) -> None:
    log = setup_logging(settings.log_level_number)
    orchestrator = build_orchestrator(settings)
    try:
        log.info(await orchestrator.get_queue_stats())
        runs = await orchestrator.run_storage.list_since(utc_now() - timedelta(days=days))
        log.info(summarize_runs(runs))
    finally:
        await orchestrator.queue.close()


def _serve(settings: ImportSettings, host: str, port: int) -> None:
    import uvicorn

    from jobfeed.server import create_app

    setup_logging(settings.log_level_number)
    notifier = BroadcastNotifier()
    orchestrator = build_orchestrator(settings, notifier=notifier)
    scheduler = ImportScheduler(
        orchestrator,
        notifier=notifier,
        cron_schedule=settings.cron_schedule,
        timezone=settings.cron_timezone,
    )
    uvicorn.run(create_app(orchestrator, notifier, scheduler), host=host, port=port)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="jobfeed",
        description="Import job postings from XML/RSS/Atom feeds.",
    )
    parser.add_argument("--database-url", help="memory:// or a SQLAlchemy URL (overrides DATABASE_URL).")
    parser.add_argument("--feeds-file", type=Path, help="YAML list of {url, name} feeds (overrides FEEDS_FILE).")
    parser.add_argument("--log-level", help="Logging level name (overrides LOG_LEVEL).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one import pass and wait for the queue to drain.")
    run_parser.add_argument(
        "--wait-timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for queued batches to finish (default: 300).",
    )

    schedule_parser = subparsers.add_parser("schedule", help="Run imports on a cron schedule until interrupted.")
    schedule_parser.add_argument("--cron-schedule", help="Crontab expression (overrides CRON_SCHEDULE).")

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API with scheduler and workers.")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--cron-schedule", help="Crontab expression (overrides CRON_SCHEDULE).")

    stats_parser = subparsers.add_parser("stats", help="Show queue counters and recent import statistics.")
    stats_parser.add_argument("--days", type=int, default=7, help="Look back this many days (default: 7).")

    args = parser.parse_args(argv)
    # .env fills in settings not already in the environment
    load_dotenv(Path.cwd() / ".env")

    try:
        settings = _settings_from_args(args)
        if args.command == "run":
            sys.exit(asyncio.run(_run_once(settings, args.wait_timeout)))
        elif args.command == "schedule":
            asyncio.run(_schedule(settings))
        elif args.command == "serve":
            _serve(settings, args.host, args.port)
        elif args.command == "stats":
            asyncio.run(_stats(settings, args.days))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)


if __name__ == "__main__":
    main()
