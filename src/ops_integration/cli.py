#!/usr/bin/env python3
"""Command-line interface for the outbox worker and payment reconciliation.

Usage:
    ops-integration dispatch --limit 25
    ops-integration poll --interval 5
    ops-integration reconcile --days 30
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .calendar import get_calendar_client
from .config import Settings
from .database import (
    create_async_engine,
    get_async_session_factory,
    get_database_url,
    run_migrations,
    session_scope,
)
from .notifications import get_notifier
from .outbox import OutboxDispatcher, OutboxPoller
from .reconciliation import ProviderError, ReconciliationRunner, get_charge_fetcher

logger = logging.getLogger(__name__)


def _print_json(document: dict) -> None:
    print(json.dumps(document, indent=2, default=str))


async def _with_engine(action, settings: Settings) -> int:
    """Open the database, run the startup migration step, then ``action(factory)``."""
    engine = create_async_engine(database_url=get_database_url())
    try:
        applied = await run_migrations(engine)
        if applied:
            logger.info(f"Applied schema patches: {', '.join(applied)}")
        return await action(get_async_session_factory(engine))
    finally:
        await engine.dispose()


def _dispatcher(session_factory, settings: Settings) -> OutboxDispatcher:
    return OutboxDispatcher(
        session_factory,
        calendar=get_calendar_client(),
        notifier=get_notifier(),
        settings=settings,
    )


async def dispatch_once(settings: Settings, limit: Optional[int] = None) -> int:
    async def action(session_factory) -> int:
        stats = await _dispatcher(session_factory, settings).dispatch_batch(
            limit if limit is not None else settings.outbox_batch_size
        )
        _print_json({"ok": True, **stats.model_dump()})
        return 0

    return await _with_engine(action, settings)


async def poll(settings: Settings, interval: Optional[float] = None, max_batches: Optional[int] = None) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # signal handlers are unavailable on some platforms (Windows)
            pass

    async def action(session_factory) -> int:
        poller = OutboxPoller(
            _dispatcher(session_factory, settings),
            poll_interval_seconds=interval,
        )
        await poller.run_forever(stop_event, max_batches=max_batches)
        return 0

    return await _with_engine(action, settings)


async def reconcile(settings: Settings, days: Optional[int] = None) -> int:
    async def action(session_factory) -> int:
        fetcher = get_charge_fetcher("stripe", api_key=settings.stripe_api_key)
        async with session_scope(session_factory) as session:
            runner = ReconciliationRunner(
                session,
                fetcher=fetcher,
                match_window_days=settings.match_window_days,
            )
            result = await runner.reconcile(days if days is not None else settings.reconcile_window_days)
        _print_json({"ok": True, **result.model_dump()})
        return 0

    return await _with_engine(action, settings)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ops-integration",
        description="Outbox dispatch and payment reconciliation.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    dispatch_parser = subparsers.add_parser("dispatch", help="Dispatch one outbox batch")
    dispatch_parser.add_argument(
        "--limit", "-l",
        type=int,
        help="Batch size, clamped to 1-50 (default: OUTBOX_BATCH_SIZE)",
    )

    poll_parser = subparsers.add_parser("poll", help="Run the outbox poller until interrupted")
    poll_parser.add_argument(
        "--interval", "-i",
        type=float,
        help="Idle sleep in seconds, at least 1 (default: OUTBOX_POLL_INTERVAL_SECONDS)",
    )
    poll_parser.add_argument(
        "--max-batches",
        type=int,
        help="Stop after this many batches",
    )

    reconcile_parser = subparsers.add_parser("reconcile", help="Import recent Stripe charges")
    reconcile_parser.add_argument(
        "--days", "-d",
        type=int,
        help="Lookback window in days, 1-90 (default: RECONCILE_WINDOW_DAYS)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    settings = Settings.from_env()

    try:
        if parsed_args.command == "dispatch":
            return asyncio.run(dispatch_once(settings, parsed_args.limit))
        if parsed_args.command == "poll":
            interval = parsed_args.interval
            if interval is None and settings.outbox_poll_interval_seconds <= 0:
                # no idle interval configured: behave like a single dispatch
                return asyncio.run(dispatch_once(settings))
            return asyncio.run(poll(settings, interval, parsed_args.max_batches))
        if parsed_args.command == "reconcile":
            return asyncio.run(reconcile(settings, parsed_args.days))
    except ValueError as e:
        logger.error(str(e))
        return 1
    except (ProviderError, ConnectionError) as e:
        logger.error(f"Provider failure: {e}")
        return 2
    except SQLAlchemyError as e:
        logger.error(f"Database failure: {type(e).__name__}")
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
