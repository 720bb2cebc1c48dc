"""Command line entry point for foliage administration."""

import argparse
import sys
from importlib.metadata import PackageNotFoundError, version

from . import admin

SUBPARSERS = [
    admin,
]

EPILOG = """\
Configuration is read from --config, else $FOLIAGE_CONFIG, else
config/config.yaml. FOLIAGE_DATABASE_URL, FOLIAGE_STORAGE_DIR and
FOLIAGE_LOG_LEVEL override the file.
"""


def _version() -> str:
    try:
        return version("foliage")
    except PackageNotFoundError:
        return "unknown"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="foliage",
        description=(
            "Manage foliage roots, expired temporary files and object store "
            "integrity"
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {_version()}"
    )

    subparsers = parser.add_subparsers(
        dest="command", metavar="COMMAND", help="Command to run"
    )
    for subparser in SUBPARSERS:
        subparser.add_parser(subparsers)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
