"""CLI command for failing generation jobs stuck in processing.

Meant for cron when the in-process dispatcher is disabled.

Usage:
    python -m genqueue.cli [OPTIONS]

Examples:
    # Reap with the configured STALE_AFTER_MINUTES
    python -m genqueue.cli

    # Override the threshold
    python -m genqueue.cli --stale-after-minutes 45

    # Verbose logging
    python -m genqueue.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from genqueue.core import timezone  # noqa: F401
from genqueue.core.config import Settings, configure_logging
from genqueue.core.database import setup_db_session
from genqueue.services.lifecycle import JobLifecycleManager
from genqueue.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail generation jobs stuck in processing and refund their tickets",
    )

    parser.add_argument(
        "--stale-after-minutes",
        type=int,
        help="Override STALE_AFTER_MINUTES for this run",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = settings or Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    if args.stale_after_minutes is not None:
        settings.stale_after_minutes = args.stale_after_minutes

    configure_logging(settings)
    logger.info("cli.started", stale_after_minutes=settings.stale_after_minutes)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        result = await JobLifecycleManager(uow_factory, settings).reap_stale()
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReap interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1
    finally:
        await session_factory.kw["bind"].dispose()

    print(f"Reaped {result.reaped_count} stale job(s)")
    logger.info("cli.completed", reaped_count=result.reaped_count)
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
