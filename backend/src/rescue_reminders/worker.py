"""Standalone reminder worker.

Without arguments the worker blocks and runs the daily cron job. ``--once``
runs a single batch immediately and exits; ``--now`` pins the evaluation
instant for that batch (useful for replaying a missed day).
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import datetime

from .config import Settings, get_settings, runtime_config_issues
from .devices import create_device_repository
from .dispatchers import create_dispatcher
from .reminder_runs import create_reminder_run_repository
from .runner import ReminderRunError, ReminderRunner
from .trigger import create_reminder_scheduler, start_reminder_scheduler, stop_reminder_scheduler

logger = logging.getLogger(__name__)


def build_runner(settings: Settings) -> ReminderRunner:
    return ReminderRunner(
        devices=create_device_repository(backend=settings.device_store_backend, database_url=settings.database_url),
        dispatcher=create_dispatcher(settings),
        runs=create_reminder_run_repository(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        ),
        overlap_policy=settings.reminder_overlap_policy,
        max_workers=settings.reminder_max_workers,
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rescue-reminders-worker", description="Send rescue device repack reminders.")
    parser.add_argument("--once", action="store_true", help="run one batch now and exit")
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="ISO-8601 instant to evaluate against (implies --once)",
    )
    parser.add_argument("--dry-run", action="store_true", help="evaluate without sending or recording")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for issue in runtime_config_issues(settings):
        logger.warning("runtime config warning: %s", issue)

    runner = build_runner(settings)

    if args.once or args.now is not None:
        try:
            summary = runner.run_once(args.now, dry_run=args.dry_run, triggered_by="cli")
        except ReminderRunError as exc:
            logger.error("reminder run failed: %s", exc)
            return 1
        return 0 if summary.failed_count == 0 and summary.persist_failed_count == 0 else 2

    scheduler = create_reminder_scheduler(runner, settings)
    stop_requested = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("received signal %s, shutting down", signum)
        stop_requested.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    start_reminder_scheduler(scheduler)
    try:
        stop_requested.wait()
    finally:
        stop_reminder_scheduler(scheduler)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
