"""Administrative CLI commands."""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from foliage.models.fs import RootCategory
from foliage.server.app import FileSystemApp, create_app
from foliage.server.config import ServerConfig
from foliage.server.exceptions import FileSystemException

_LOGGER = logging.getLogger(__name__)


def setup_logging(config: ServerConfig, verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else config.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


def _run(args: Any, command: Callable[[FileSystemApp], Awaitable[None]]) -> None:
    config = ServerConfig.load(args.config)
    setup_logging(config, args.verbose)
    _LOGGER.debug(f"Running {args.command} against {config.database_url}")

    async def _main() -> None:
        app = create_app(config)
        try:
            await command(app)
        finally:
            await app.close()

    try:
        asyncio.run(_main())
    except FileSystemException as err:
        print(f"Error ({err.error_code}): {err}")
        sys.exit(1)


def subcommand_init_db(args) -> None:
    """Handler for init-db subcommand."""

    async def command(app: FileSystemApp) -> None:
        await app.session_manager.create_all()
        print(f"Initialized database at {app.config.database_url}")

    _run(args, command)


def subcommand_create_root(args) -> None:
    """Handler for create-root subcommand."""

    async def command(app: FileSystemApp) -> None:
        root = await app.tree.create_root(
            args.owner,
            RootCategory.from_value(args.category),
            name=args.name,
            max_bytes=args.max_bytes,
        )
        print(
            f"Created {root.category.value} root '{root.name}' "
            f"(ID: {root.id}, quota: {root.max_bytes} bytes)"
        )

    _run(args, command)


def subcommand_purge_expired(args) -> None:
    """Handler for purge-expired subcommand."""

    async def command(app: FileSystemApp) -> None:
        result = await app.reaper.purge_expired()
        print(
            f"Purged {result.deleted_count} nodes, "
            f"{result.s3_deleted_count} blobs deleted, "
            f"{result.s3_failed_count} failed"
        )

    _run(args, command)


def subcommand_verify(args) -> None:
    """Handler for verify subcommand."""

    async def command(app: FileSystemApp) -> None:
        report = await app.integrity.verify_root(args.root)
        print(f"Scanned: {report.scanned}")
        print(f"OK: {report.ok}")
        print(f"Missing content: {report.missing_blob}")
        for key in report.missing_keys:
            print(f"  {key}")
        print(f"Quota counter: {report.used_bytes} (actual {report.actual_bytes})")
        if args.fix and report.drift:
            actual = await app.integrity.reconcile_quota(args.root)
            print(f"Quota counter reset to {actual}")
        if report.missing_blob:
            sys.exit(2)

    _run(args, command)


def _add_common(parser) -> None:
    parser.add_argument(
        "--config", type=str, default=None, help="Path to config.yaml"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )


def add_parser(subparsers):
    # 'init-db' subcommand
    parser_init_db = subparsers.add_parser(
        "init-db", help="create the metadata store tables"
    )
    _add_common(parser_init_db)
    parser_init_db.set_defaults(func=subcommand_init_db)

    # 'create-root' subcommand
    parser_create_root = subparsers.add_parser(
        "create-root", help="create a hierarchy root owned by a user"
    )
    parser_create_root.add_argument(
        "--owner", type=str, required=True, help="user id of the owner"
    )
    parser_create_root.add_argument(
        "--category",
        type=str,
        required=True,
        choices=[category.value for category in RootCategory],
        help="root category",
    )
    parser_create_root.add_argument("--name", type=str, help="root folder name")
    parser_create_root.add_argument(
        "--max-bytes", type=int, help="quota, defaults to the category's quota"
    )
    _add_common(parser_create_root)
    parser_create_root.set_defaults(func=subcommand_create_root)

    # 'purge-expired' subcommand
    parser_purge = subparsers.add_parser(
        "purge-expired", help="delete expired temporary files"
    )
    _add_common(parser_purge)
    parser_purge.set_defaults(func=subcommand_purge_expired)

    # 'verify' subcommand
    parser_verify = subparsers.add_parser(
        "verify", help="check content and quota of a root"
    )
    parser_verify.add_argument("--root", type=int, required=True, help="root id")
    parser_verify.add_argument(
        "--fix", action="store_true", help="reset a drifted quota counter"
    )
    _add_common(parser_verify)
    parser_verify.set_defaults(func=subcommand_verify)
