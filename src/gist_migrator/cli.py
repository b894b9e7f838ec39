"""
Command-line interface for the gist migration engine.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import AppConfig, MigrationSettings
from .exceptions import MigrationError, SettingsError
from .models import JobStatus, SourceKind
from .opengist_source import OpenGistSource
from .service import MigrationService
from .sources import create_source
from .store import SqlAlchemyStore
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    _ = parser.add_argument("--username", "-u", default="", help="Only migrate this user's gists")
    _ = parser.add_argument("--dry-run", action="store_true", help="Report what would be migrated without writing")
    _ = parser.add_argument("--reset-passwords", action="store_true", help="Generate new passwords for all users")
    _ = parser.add_argument(
        "--preserve-timestamps", action="store_true", help="Keep the source's creation and update times"
    )
    _ = parser.add_argument("--migrate-keys", action="store_true", help="Process SSH keys (counted only)")
    _ = parser.add_argument(
        "--migrate-private", action="store_true", help="Also migrate private and unlisted gists"
    )
    _ = parser.add_argument("--import-comments", action="store_true", help="Import gist comments")
    _ = parser.add_argument("--batch-size", type=int, default=100, help="Page size for source reads (default: 100)")
    _ = parser.add_argument("--max-items", type=int, help="Stop after importing this many gists")
    _ = parser.add_argument(
        "--rate-limit-delay-ms", type=int, default=100, help="Pause between remote items (default: 100)"
    )


def _add_token_arguments(parser: argparse.ArgumentParser, env_var: str) -> None:
    _ = parser.add_argument("--token", help=f"API token (default: ${env_var})")
    _ = parser.add_argument("--pass-token", help="Path for the API token in pass utility")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gist-migrator",
        description="Migrate gists from OpenGist, GitHub or GitLab into the gist store",
    )
    _ = parser.add_argument(
        "--database-url", help="Target database URL (default: $GIST_MIGRATOR_DATABASE_URL or a local SQLite file)"
    )
    _ = parser.add_argument("--base-url", help="Public URL of the target instance, used to rewrite gist links")
    _ = parser.add_argument("--report", type=Path, help="Write the full migration report to this file")
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="source_kind", required=True)

    opengist = subparsers.add_parser("opengist", help="Migrate an OpenGist instance")
    _ = opengist.add_argument("--source-database", required=True, help="OpenGist database URL")
    _ = opengist.add_argument("--repositories", required=True, help="OpenGist repository directory")
    _ = opengist.add_argument("--web-url", default="", help="Public URL of the OpenGist instance")
    _ = opengist.add_argument(
        "--test-connection", action="store_true", help="Only check the source and print user and gist counts"
    )
    _add_common_arguments(opengist)

    github = subparsers.add_parser("github", help="Import gists from GitHub")
    _ = github.add_argument("--api-url", default="", help="GitHub API URL (default: https://api.github.com)")
    _add_token_arguments(github, "GITHUB_TOKEN")
    _add_common_arguments(github)

    gitlab = subparsers.add_parser("gitlab", help="Import personal snippets from GitLab")
    _ = gitlab.add_argument("--url", default="", help="GitLab URL (default: https://gitlab.com)")
    _add_token_arguments(gitlab, "GITLAB_TOKEN")
    _add_common_arguments(gitlab)

    return parser


def settings_from_args(args: argparse.Namespace) -> MigrationSettings:
    values: dict[str, Any] = {
        "source_kind": args.source_kind,
        "username": args.username,
        "reset_passwords": args.reset_passwords,
        "preserve_timestamps": args.preserve_timestamps,
        "migrate_keys": args.migrate_keys,
        "migrate_private_items": args.migrate_private,
        "import_comments": args.import_comments,
        "batch_size": args.batch_size,
        "max_items": args.max_items,
        "rate_limit_delay_ms": args.rate_limit_delay_ms,
    }
    if args.source_kind == SourceKind.OPENGIST.value:
        values.update(
            source_url=args.source_database, repository_path=args.repositories, source_web_url=args.web_url
        )
    else:
        values.update(
            source_url=args.api_url if args.source_kind == SourceKind.GITHUB.value else args.url,
            auth_token=args.token,
            token_pass_path=args.pass_token,
        )
    return MigrationSettings.from_mapping(values)


def _test_connection(settings: MigrationSettings) -> int:
    source = create_source(settings)
    try:
        if not isinstance(source, OpenGistSource):
            msg = "Connection tests are only available for OpenGist sources"
            raise SettingsError(msg)
        counts = source.test_connection()
    finally:
        source.close()
    print(f"Successfully connected to OpenGist database: {counts['users']} users, {counts['gists']} gists")
    return 0


def run(args: argparse.Namespace) -> int:
    """Execute the parsed command and return the process exit code."""
    config = AppConfig.from_env()
    if args.database_url or args.base_url:
        config = AppConfig(
            database_url=args.database_url or config.database_url,
            base_url=(args.base_url or config.base_url).rstrip("/"),
            max_jobs=config.max_jobs,
        )
    settings = settings_from_args(args)

    if getattr(args, "test_connection", False):
        return _test_connection(settings)

    store = SqlAlchemyStore.from_url(config.database_url)
    store.create_schema()
    service = MigrationService(store, config=config)
    try:
        if args.dry_run:
            preview = service.dry_run(settings)
            print(json.dumps(preview, indent=2, default=str))
            return 0

        handle = service.start(settings)
        logger.info(f"Started migration job {handle.job_id}")
        result = handle.wait()
        job = service.status(handle.job_id)
    finally:
        service.shutdown()
        store.dispose()

    if result is not None:
        if args.report:
            args.report.write_text(result.format_report(include_credentials=True))
            logger.info(f"Migration report written to {args.report}")
            print(result.format_report(include_credentials=False))
        else:
            print(result.format_report(include_credentials=True))
    for error in job.errors:
        logger.error(error)
    logger.info(f"Job {job.id} finished with status {job.status.value}")
    return 0 if job.status is JobStatus.COMPLETED else 1


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        sys.exit(run(args))
    except SettingsError as e:
        logger.error(f"Invalid settings: {e}")
        sys.exit(2)
    except MigrationError as e:
        logger.error(f"Migration failed: {e}")
        sys.exit(1)
