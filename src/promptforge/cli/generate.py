"""CLI command for generating a batch of images.

Usage:
    python -m promptforge.cli generate PROMPT [OPTIONS]

Examples:
    # Four images from a prompt
    python -m promptforge.cli generate "a lighthouse at dusk" -n 4

    # Steer generation with reference images
    python -m promptforge.cli generate "same style, winter" -r style.png -r palette.jpg

    # Reuse the reference images of batch 12 and return without waiting
    python -m promptforge.cli generate "same style, summer" --reuse-from 12 --no-wait
"""

import asyncio
import sys
from argparse import Namespace
from pathlib import Path

import structlog

from promptforge.app import lifespan
from promptforge.core.config import Settings
from promptforge.models.batch import BatchStatus
from promptforge.services.exceptions import EngineError
from promptforge.services.generation.batch_service import BatchStatusReport
from promptforge.services.reference_cache import ReferenceFile

logger = structlog.get_logger()


def add_parser(subparsers) -> None:
    parser = subparsers.add_parser("generate", help="Generate a batch of images")
    parser.add_argument("prompt", help="Text prompt shared by every image")
    parser.add_argument(
        "-n",
        "--count",
        type=int,
        default=1,
        help="Number of images to generate (default: 1)",
    )
    parser.add_argument(
        "-r",
        "--reference",
        action="append",
        default=[],
        type=Path,
        help="Reference image file (repeatable)",
    )
    parser.add_argument(
        "--reuse-from",
        type=int,
        metavar="BATCH_ID",
        help="Reuse the reference images of an earlier batch",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return once the jobs are submitted instead of waiting for the images",
    )
    parser.set_defaults(handler=main)


def read_reference_files(paths: list[Path]) -> list[ReferenceFile]:
    return [ReferenceFile(data=path.read_bytes(), filename=path.name) for path in paths]


def print_report(report: BatchStatusReport) -> None:
    print("\n" + "=" * 60)
    print(f"Batch {report.batch_id}: {report.status.value}")
    print("=" * 60)
    for status, count in sorted(report.job_counts.items()):
        print(f"  {status}: {count}")
    if report.error_message:
        print(f"Error: {report.error_message}")
    for image_id in report.image_ids:
        print(f"  image {image_id}")
    print("=" * 60 + "\n")


def exit_code_for(report: BatchStatusReport) -> int:
    """0 when every image succeeded, 2 on partial success, 1 on failure."""
    if report.status == BatchStatus.FAILED:
        return 1
    if report.status == BatchStatus.COMPLETED and len(report.image_ids) < report.requested_count:
        return 2
    return 0


async def async_main(args: Namespace) -> int:
    """Main command entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"

    try:
        references = read_reference_files(args.reference)
    except OSError as e:
        print(f"Error: cannot read reference image: {e}", file=sys.stderr)
        return 1

    async with lifespan(settings, run_refresh_worker=False) as services:
        try:
            reuse_ids: list[int] = []
            if args.reuse_from is not None:
                reuse_ids = await services.batches.reference_ids_for_batch(args.reuse_from)

            submission = await services.batches.create_batch(
                args.prompt, args.count, references, reuse_ids
            )
            for warning in submission.warnings:
                print(f"Warning: {warning}", file=sys.stderr)

            if not submission.ok:
                print(f"Error: {submission.error_message}", file=sys.stderr)
                return 1

            print(f"Batch {submission.batch_id} started ({args.count} image(s))")
            if args.no_wait or submission.batch_id is None:
                return 0

            report = await services.batches.wait(submission.batch_id)
            print_report(report)
            return exit_code_for(report)

        except EngineError as e:
            logger.error("cli.error", error=str(e), error_kind=e.kind.value)
            print(f"\nError: {e}", file=sys.stderr)
            return 1

        except KeyboardInterrupt:
            logger.info("cli.interrupted")
            print("\nGeneration interrupted by user", file=sys.stderr)
            return 130


def main(args: Namespace) -> int:
    """Synchronous entry point for the command."""
    return asyncio.run(async_main(args))
