"""CLI command for failing and refunding generation jobs abandoned in RUNNING.

Usage:
    python -m blumpo.cli [OPTIONS]

Examples:
    # Recover one batch of abandoned jobs
    python -m blumpo.cli

    # Report without writing
    python -m blumpo.cli --dry-run

    # Treat jobs as abandoned right after the maximum wait
    python -m blumpo.cli --grace-seconds 0

    # Verbose logging
    python -m blumpo.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from blumpo.core.config import Settings, configure_logging
from blumpo.core.database import setup_db_session
from blumpo.uow import create_uow_factory
from blumpo.workers.stale_job_worker import recover_stale_jobs

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail and refund generation jobs stuck in RUNNING",
        epilog="A job is stuck once it ran longer than the maximum wait plus the grace period",
    )

    parser.add_argument(
        "--grace-seconds",
        type=int,
        help="Grace period after the maximum wait (default: STALE_JOB_GRACE_SECONDS)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stuck jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some refunds failed)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", grace_seconds=args.grace_seconds, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        result = await recover_stale_jobs(
            uow_factory,
            settings,
            grace_seconds=args.grace_seconds,
            dry_run=args.dry_run,
        )

        print("\n" + "=" * 60)
        print("Stale Job Recovery Summary")
        print("=" * 60)
        print(f"Stuck jobs found: {result.recovered_count}")
        for job_id in result.job_ids[:10]:
            print(f"  - {job_id}")
        if result.recovered_count > 10:
            print(f"  ... and {result.recovered_count - 10} more")
        print(f"Tokens refunded: {result.tokens_refunded}")

        if result.errors:
            print(f"\nRefund errors: {len(result.errors)}")
            for error in result.errors[:5]:
                print(f"  - {error}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")

        if result.errors:
            logger.warning("cli.partial_success", refund_errors=len(result.errors))
            return 2
        logger.info("cli.success", recovered=result.recovered_count)
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
