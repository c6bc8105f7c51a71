"""CLI entry point: import, gen-bcrypt."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from scripts.user_migration.config import load_config
from scripts.user_migration.dispatch import DispatchEngine
from scripts.user_migration.error_report import write_error_report
from scripts.user_migration.errors import FatalSetupError
from scripts.user_migration.export_stream import open_export
from scripts.user_migration.logging_config import configure_logging
from scripts.user_migration.models import EmailVerifiedMode, RunSummary
from scripts.user_migration.passwords import DEFAULT_ROUNDS, hash_password
from scripts.user_migration.reconciler import Reconciler
from scripts.user_migration.workos_client import WorkOSClient

logger = logging.getLogger("migration.cli")

FAILED_ID_SAMPLE = 5


def cmd_import(args: argparse.Namespace) -> int:
    """Stream the export into WorkOS and print the run summary."""
    config = load_config()
    concurrency = args.concurrency or config.dispatch.concurrency
    if concurrency < 1:
        raise ValueError("--concurrency must be at least 1")

    # Opened before the client so an unreadable export fails fast
    source = open_export(args.user_export)

    client = WorkOSClient(config.workos, pool_size=concurrency)
    try:
        reconciler = Reconciler(
            client,
            process_multi_email=args.process_multi_email,
            email_verified_mode=EmailVerifiedMode(args.email_verified),
        )
        engine = DispatchEngine(
            reconciler,
            concurrency=concurrency,
            default_retry_after=config.dispatch.default_retry_after,
            max_throttle_retries=config.dispatch.max_throttle_retries,
        )
        logger.info("Importing users from %s", args.user_export, extra={"run_id": engine.run_id})
        try:
            summary = engine.run(source)
        except FatalSetupError as exc:
            # Records admitted before the failure still get reported
            if exc.summary is not None:
                _report(args, exc.summary)
            raise
    finally:
        client.close()

    _report(args, summary)
    return 0


def _report(args: argparse.Namespace, summary: RunSummary) -> None:
    if not args.quiet:
        for line in summary.render_lines():
            print(line)

    if summary.errors == 0:
        return
    failed_ids = [f.source_id for f in summary.failures if f.source_id]
    sample = failed_ids[:FAILED_ID_SAMPLE]
    if sample:
        logger.warning(
            "Failed Clerk user ids (first %d): %s", len(sample), ", ".join(sample),
            extra={"run_id": summary.run_id},
        )
    if args.errors_out:
        try:
            count = write_error_report(args.errors_out, summary.failures)
            logger.info("Wrote %d failures to error report %s", count, args.errors_out)
        except OSError as exc:
            logger.error("Failed to write error report: %s", exc)


def cmd_gen_bcrypt(args: argparse.Namespace) -> int:
    """Print a bcrypt digest for a plaintext password."""
    print(hash_password(args.plaintext, rounds=args.rounds))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="user-migration",
        description="Migrate a Clerk user export into WorkOS User Management",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # import command
    import_parser = subparsers.add_parser("import", help="Import users from a Clerk export")
    import_parser.add_argument(
        "--user-export",
        required=True,
        help="Path to the user and password export received from Clerk (CSV or JSON).",
    )
    import_parser.add_argument(
        "--process-multi-email",
        action="store_true",
        help="For users with several email addresses, use the first one instead of skipping the user.",
    )
    import_parser.add_argument(
        "--email-verified",
        choices=[mode.value for mode in EmailVerifiedMode],
        default=EmailVerifiedMode.NEVER.value,
        help="Mark the primary email verified: never (default), always, or from-csv "
             "(only if the primary appears in verified_email_addresses).",
    )
    import_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress non-error output.",
    )
    import_parser.add_argument(
        "--errors-out",
        help="Optional path for a detailed error report (CSV if *.csv, otherwise JSON).",
    )
    import_parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Maximum records processed at once (default: MIGRATION_CONCURRENCY or 10)",
    )
    import_parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level for the JSON log on stderr (default: INFO)",
    )
    import_parser.set_defaults(func=cmd_import)

    # gen-bcrypt command
    bcrypt_parser = subparsers.add_parser("gen-bcrypt", help="Print a bcrypt digest")
    bcrypt_parser.add_argument("plaintext", nargs="?", default="password")
    bcrypt_parser.add_argument("rounds", nargs="?", type=int, default=DEFAULT_ROUNDS)
    bcrypt_parser.set_defaults(func=cmd_gen_bcrypt)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    quiet = getattr(args, "quiet", False)
    configure_logging("WARNING" if quiet else getattr(args, "log_level", "INFO"))

    try:
        return args.func(args)
    except FatalSetupError as exc:
        logger.error("Migration aborted: %s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
