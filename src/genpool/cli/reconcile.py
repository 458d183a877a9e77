"""CLI command for one-off reconciliation of the job and token tables.

Runs a single reconciliation pass against PostgreSQL: fails jobs stuck in a
non-terminal state and disables tokens over the lifetime request limit.
No pollers run in this process, so every stale job is eligible. Rolling error
counts live only in the running scheduler, so error-based token disabling is
left to its in-process reconciliation worker.

Usage:
    python -m genpool.cli.reconcile [OPTIONS]

Examples:
    # Fail stale jobs and sweep tokens
    python -m genpool.cli.reconcile

    # Report what would change without writing
    python -m genpool.cli.reconcile --dry-run

    # Only reconcile jobs
    python -m genpool.cli.reconcile --skip-tokens -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genpool.app import build_stores
from genpool.core import timezone  # noqa: F401
from genpool.core.config import Settings, StoreBackend, configure_logging
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import SchedulerState
from genpool.workers.reconciliation_worker import run_reconciliation_pass

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail stale generation jobs and sweep provider tokens",
        epilog="Thresholds come from JOB_STALE_AFTER_SECONDS and TOKEN_MAX_REQUESTS",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report stale jobs and over-limit tokens without database writes",
    )

    parser.add_argument(
        "--skip-tokens",
        action="store_true",
        help="Do not sweep provider tokens (offline sweeps apply TOKEN_MAX_REQUESTS only)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]

    if args.verbose:
        settings.log_level = "DEBUG"

    configure_logging(settings)

    if settings.store_backend != StoreBackend.POSTGRES:
        logger.error("cli.unsupported_store", store_backend=settings.store_backend.value)
        print("Error: reconciliation requires STORE_BACKEND=postgres", file=sys.stderr)
        return 1

    logger.info("cli.started", dry_run=args.dry_run, skip_tokens=args.skip_tokens)

    try:
        job_store, token_store = await build_stores(settings)
        registry = TokenPoolRegistry(token_store, SchedulerState(), settings)

        result = await run_reconciliation_pass(
            job_store,
            registry,
            settings,
            dry_run=args.dry_run,
            skip_tokens=args.skip_tokens,
        )

        print("\n" + "=" * 60)
        print("Reconciliation Summary")
        print("=" * 60)
        print(f"Stale jobs failed: {len(result.stale_jobs)}")
        for job_id in result.stale_jobs[:5]:
            print(f"  - {job_id}")
        if len(result.stale_jobs) > 5:
            print(f"  ... and {len(result.stale_jobs) - 5} more jobs")
        print(f"Tokens disabled: {len(result.disabled_tokens)}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")
        logger.info(
            "cli.success",
            stale_jobs=len(result.stale_jobs),
            disabled_tokens=len(result.disabled_tokens),
        )
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
