"""CLI command for re-staging reference images that are about to expire.

Usage:
    python -m promptforge.cli refresh-references
"""

import asyncio
from argparse import Namespace

import structlog

from promptforge.app import lifespan
from promptforge.core.config import Settings
from promptforge.workers.reference_refresh_worker import refresh_once

logger = structlog.get_logger()


def add_parser(subparsers) -> None:
    parser = subparsers.add_parser(
        "refresh-references",
        help="Re-upload reference images whose staged copy expires soon",
    )
    parser.set_defaults(handler=main)


async def async_main(args: Namespace) -> int:
    """Run one refresh sweep.

    Returns:
        Exit code: 0 (success), 2 (some images skipped)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"

    async with lifespan(settings, run_refresh_worker=False) as services:
        report = await refresh_once(services.references)

    refreshed = sum(1 for ref in report.resolved if ref.was_refreshed)
    print(f"Reference images checked: {len(report.resolved) + len(report.warnings)}")
    print(f"Re-uploaded: {refreshed}")
    for warning in report.warnings:
        print(f"  - {warning}")

    if report.warnings:
        logger.warning("cli.partial_success", skipped=len(report.warnings))
        return 2
    return 0


def main(args: Namespace) -> int:
    """Synchronous entry point for the command."""
    return asyncio.run(async_main(args))
