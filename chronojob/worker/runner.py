from __future__ import annotations

import argparse
import logging
import signal
from threading import Event

from sqlalchemy.exc import SQLAlchemyError

from chronojob.core.config import Settings, get_settings
from chronojob.core.logging import configure_logging
from chronojob.db.init_db import initialize_database
from chronojob.db.session import get_session_factory
from chronojob.jobs.dispatcher import DueJobDispatcher
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.registry import HandlerRegistry, get_handler_registry
from chronojob.jobs.store import JobStore
from chronojob.jobs.types import DispatchSummary

logger = logging.getLogger(__name__)


def build_dispatcher(
    settings: Settings,
    *,
    registry: HandlerRegistry | None = None,
    claimant: str | None = None,
) -> tuple[DueJobDispatcher, JobExecutor]:
    store = JobStore(settings=settings, session_factory=get_session_factory())
    executor = JobExecutor(settings=settings, store=store, registry=registry or get_handler_registry())
    dispatcher = DueJobDispatcher(settings=settings, store=store, executor=executor, claimant=claimant)
    return dispatcher, executor


def run_dispatch_once(
    *,
    registry: HandlerRegistry | None = None,
    limit: int | None = None,
) -> DispatchSummary:
    settings = get_settings()
    dispatcher, executor = build_dispatcher(settings, registry=registry)
    try:
        return dispatcher.process_due_jobs(limit=limit)
    finally:
        executor.shutdown()


def run_dispatch_loop(
    stop_event: Event,
    *,
    registry: HandlerRegistry | None = None,
    limit: int | None = None,
) -> int:
    """Dispatch due jobs every ``poll_interval_seconds`` until ``stop_event`` is set.

    A failed pass is logged and retried on the next tick. Returns the number
    of passes that completed.
    """
    settings = get_settings()
    dispatcher, executor = build_dispatcher(settings, registry=registry)
    passes = 0
    logger.info(
        "Dispatch loop started as %s (interval=%ss)",
        dispatcher.claimant,
        settings.poll_interval_seconds,
    )
    try:
        while not stop_event.is_set():
            try:
                dispatcher.process_due_jobs(limit=limit)
                passes += 1
            except SQLAlchemyError:
                logger.exception("Dispatch pass aborted by a store failure")
            stop_event.wait(timeout=settings.poll_interval_seconds)
    finally:
        executor.shutdown()
    logger.info("Dispatch loop stopped after %d passes", passes)
    return passes


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chronojob due-job dispatcher")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch pass and exit")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs per pass")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    if args.once:
        run_dispatch_once(limit=args.limit)
        return 0

    stop_event = Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received %s, stopping after the current pass", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    run_dispatch_loop(stop_event, limit=args.limit)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
