"""CLI entry point for promptforge.cli module.

Enables execution via: python -m promptforge.cli <command> [OPTIONS]
"""

import sys
from argparse import ArgumentParser, Namespace

from promptforge.cli import generate, refresh_references


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="python -m promptforge.cli",
        description="Generate image batches from text prompts",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate.add_parser(subparsers)
    refresh_references.add_parser(subparsers)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
