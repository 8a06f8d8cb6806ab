"""Command-line interface for Gmail Mirror.

This module provides the main entry point for the CLI application. It is
also the trigger a scheduler invokes for periodic sync runs.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import structlog

from gmail_mirror import __version__
from gmail_mirror.config import get_settings
from gmail_mirror.exceptions import GmailMirrorError
from gmail_mirror.models import SyncAuditView
from gmail_mirror.services import Services, build_services
from gmail_mirror.sync import verify_trigger_secret

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gmail-mirror", description="Gmail Mirror")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Database commands
    db_parser = subparsers.add_parser("db", help="Manage the metadata store")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    db_sub.add_parser("init", help="Create missing tables")

    # User commands
    user_parser = subparsers.add_parser("user", help="Manage mirrored accounts")
    user_sub = user_parser.add_subparsers(dest="user_command", required=True)

    add_parser = user_sub.add_parser("add", help="Register an account with its OAuth tokens")
    add_parser.add_argument("email", help="Gmail address of the account")
    add_parser.add_argument("--name", default=None, help="Display name")
    add_parser.add_argument("--access-token", required=True, help="OAuth access token")
    add_parser.add_argument("--refresh-token", required=True, help="OAuth refresh token")

    delete_parser = user_sub.add_parser("delete", help="Delete an account with all its data and blobs")
    delete_parser.add_argument("user_id", type=int)

    # Sync commands
    sync_parser = subparsers.add_parser("sync", help="Run and inspect sync cycles")
    sync_sub = sync_parser.add_subparsers(dest="sync_command", required=True)

    run_parser = sync_sub.add_parser("run", help="Run a full sync cycle for one user")
    run_parser.add_argument("user_id", type=int)

    status_parser = sync_sub.add_parser("status", help="Show recent sync cycles of a user")
    status_parser.add_argument("user_id", type=int)

    progress_parser = sync_sub.add_parser("progress", help="Show one sync cycle")
    progress_parser.add_argument("audit_id", type=int)

    cancel_parser = sync_sub.add_parser("cancel", help="Cancel a running sync cycle")
    cancel_parser.add_argument("audit_id", type=int)

    scheduled_parser = sync_sub.add_parser("scheduled", help="Sync every user that is due")
    scheduled_parser.add_argument(
        "--secret",
        default=None,
        help="Shared secret configured as GMAIL_MIRROR_CRON_SECRET",
    )

    return parser


def _print_audit(audit: SyncAuditView) -> None:
    completed = audit.completed_at.isoformat() if audit.completed_at else "-"
    phase = audit.phase.value if audit.phase else "-"
    print(
        f"#{audit.id}\t{audit.kind.value}\t{audit.status.value}\t{phase}\t"
        f"{audit.started_at.isoformat()}\t{completed}\t"
        f"conversations={audit.conversations_synced} messages={audit.messages_synced} "
        f"attachments={audit.attachments_synced} pruned={audit.conversations_pruned}"
    )
    if audit.error_message:
        print(f"\terror: {audit.error_message}")


def _cmd_db_init(services: Services) -> int:
    services.repository.initialize()
    print(f"Metadata store ready at {services.settings.database_url}")
    return 0


def _cmd_user_add(services: Services, args: argparse.Namespace) -> int:
    services.repository.initialize()
    user = services.repository.create_user(
        args.email,
        name=args.name,
        access_token=args.access_token,
        refresh_token=args.refresh_token,
    )
    print(f"Created user {user.id} <{user.email}>")
    return 0


async def _cmd_user_delete(services: Services, args: argparse.Namespace) -> int:
    deleted = await services.mailbox.delete_account(args.user_id)
    print(f"Deleted user {args.user_id} and {deleted} stored objects")
    return 0


async def _cmd_sync_run(services: Services, args: argparse.Namespace) -> int:
    result = await services.sync.trigger_sync(args.user_id)
    if not result.success:
        label = "cancelled" if result.cancelled else "failed"
        print(f"Sync {label}: {result.error or 'stopped on request'}")
        return 1

    print(
        f"Synced {result.conversations_synced} conversations, {result.messages_synced} messages, "
        f"{result.attachments_synced} attachments; pruned {result.conversations_pruned}"
    )
    return 0


def _cmd_sync_status(services: Services, args: argparse.Namespace) -> int:
    report = services.sync.get_sync_status(args.user_id)
    last = report.last_sync_at.isoformat() if report.last_sync_at else "never"
    print(f"Last sync: {last}")
    for audit in report.recent_cycles:
        _print_audit(audit)
    return 0


def _cmd_sync_progress(services: Services, args: argparse.Namespace) -> int:
    _print_audit(services.sync.get_sync_progress(args.audit_id))
    return 0


def _cmd_sync_cancel(services: Services, args: argparse.Namespace) -> int:
    if services.sync.cancel_sync(args.audit_id):
        print(f"Cancelled sync cycle {args.audit_id}")
        return 0
    print(f"Sync cycle {args.audit_id} is not running")
    return 1


async def _cmd_sync_scheduled(services: Services, args: argparse.Namespace) -> int:
    if not verify_trigger_secret(args.secret, services.settings.cron_secret):
        logger.warning("scheduled_sync_unauthorized")
        print("Refusing scheduled sync: missing or invalid secret")
        return 1

    summary = await services.sync.run_scheduled_sync_for_all_users()
    print(f"Users: {summary.total_users}, succeeded: {summary.success_count}, failed: {summary.error_count}")
    for outcome in summary.results:
        state = "ok" if outcome.success else f"error: {outcome.error}"
        print(f"- {outcome.email} ({outcome.user_id}): {state}")
    return 0 if summary.error_count == 0 else 1


async def _dispatch(services: Services, parsed: argparse.Namespace) -> int:
    if parsed.command == "db" and parsed.db_command == "init":
        return _cmd_db_init(services)

    if parsed.command == "user":
        if parsed.user_command == "add":
            return _cmd_user_add(services, parsed)
        if parsed.user_command == "delete":
            return await _cmd_user_delete(services, parsed)

    if parsed.command == "sync":
        if parsed.sync_command == "run":
            return await _cmd_sync_run(services, parsed)
        if parsed.sync_command == "status":
            return _cmd_sync_status(services, parsed)
        if parsed.sync_command == "progress":
            return _cmd_sync_progress(services, parsed)
        if parsed.sync_command == "cancel":
            return _cmd_sync_cancel(services, parsed)
        if parsed.sync_command == "scheduled":
            return await _cmd_sync_scheduled(services, parsed)

    logger.error("unknown_command", command=parsed.command)
    return 2


async def _run(services: Services, parsed: argparse.Namespace) -> int:
    try:
        return await _dispatch(services, parsed)
    finally:
        await services.mailbox.wait_for_background()


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Gmail Mirror CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
    )

    logger.info("gmail_mirror_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    services = build_services(settings)
    try:
        return asyncio.run(_run(services, parsed))
    except GmailMirrorError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
