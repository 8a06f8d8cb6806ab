"""Entry points around the reconciliation engine.

This is the surface a UI, an API layer or a scheduler talks to: trigger a
cycle, query status and progress, cancel a running cycle, and run the
periodic batch over every user that is due.
"""

from __future__ import annotations

import asyncio
import hmac
from datetime import timedelta
from typing import Any, Awaitable, Callable

import structlog

from gmail_mirror.config import Settings
from gmail_mirror.exceptions import NotFoundError
from gmail_mirror.models import (
    ScheduledSyncSummary,
    SyncAuditView,
    SyncResult,
    SyncStatusReport,
    UserSyncOutcome,
)
from gmail_mirror.store import MailStoreRepository
from gmail_mirror.sync.engine import ReconciliationEngine
from gmail_mirror.utils import utcnow

logger = structlog.get_logger()


class SyncService:
    """Sync entry points for one deployment.

    Args:
        engine: Reconciliation engine doing the actual work.
        repository: Metadata store, used for status and user selection.
        settings: Application settings. If None, uses default settings.
        sleep: Awaitable sleep used between users in a scheduled run.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        repository: MailStoreRepository,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        from gmail_mirror.config import get_settings

        self.engine = engine
        self.repository = repository
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def trigger_sync(self, user_id: int) -> SyncResult:
        """Run a full cycle for one user and wait for its result.

        Raises:
            SyncAlreadyRunningError: If a cycle is already running for the user.
        """

        logger.info("sync_triggered", user_id=user_id)
        return await self.engine.run_full_sync(user_id)

    async def sync_conversation(self, user_id: int, remote_conversation_id: str) -> SyncResult:
        return await self.engine.sync_single_conversation(user_id, remote_conversation_id)

    def get_sync_status(self, user_id: int) -> SyncStatusReport:
        """Last sync time and the most recent cycles, newest first.

        Raises:
            NotFoundError: If the user does not exist.
        """

        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return SyncStatusReport(
            last_sync_at=user.last_sync_at,
            recent_cycles=self.repository.recent_audits(user_id, limit=self.settings.sync_status_history_limit),
        )

    def get_sync_progress(self, audit_id: int) -> SyncAuditView:
        audit = self.repository.get_audit(audit_id)
        if audit is None:
            raise NotFoundError(f"Sync audit record {audit_id} not found")
        return audit

    def cancel_sync(self, audit_id: int) -> bool:
        """Request cancellation of a running cycle.

        The audit record is marked cancelled and the cycle, if it runs in this
        process, is signalled directly. Cycles running elsewhere notice the
        status change at their next checkpoint.

        Returns:
            True if the record was running and is now cancelled.

        Raises:
            NotFoundError: If the audit record does not exist.
        """

        cancelled = self.repository.cancel_audit(audit_id)
        signalled = self.engine.cancellations.cancel(audit_id)
        logger.info("sync_cancel_requested", audit_id=audit_id, cancelled=cancelled, signalled=signalled)
        return cancelled

    async def run_scheduled_sync_for_all_users(self) -> ScheduledSyncSummary:
        """Sync every user whose last sync is older than the configured interval."""

        if not self.settings.sync_enabled:
            logger.info("scheduled_sync_disabled")
            return ScheduledSyncSummary()

        due_before = utcnow() - timedelta(minutes=self.settings.sync_interval_minutes)
        users = self.repository.users_due_for_sync(due_before)
        logger.info("scheduled_sync_started", user_count=len(users))

        summary = ScheduledSyncSummary(total_users=len(users))
        for index, user in enumerate(users):
            if index > 0 and self.settings.sync_user_delay_seconds > 0:
                await self._sleep(self.settings.sync_user_delay_seconds)

            try:
                result = await self.trigger_sync(user.id)
            except Exception as exc:  # noqa: BLE001 - one user never stops the batch
                logger.error("scheduled_sync_user_failed", user_id=user.id, error=str(exc))
                result = SyncResult.failed(str(exc))

            summary.results.append(
                UserSyncOutcome(
                    user_id=user.id,
                    email=user.email,
                    success=result.success,
                    conversations_synced=result.conversations_synced,
                    messages_synced=result.messages_synced,
                    attachments_synced=result.attachments_synced,
                    error=result.error,
                )
            )
            if result.success:
                summary.success_count += 1
            else:
                summary.error_count += 1

        summary.completed_at = utcnow()
        logger.info(
            "scheduled_sync_completed",
            total_users=summary.total_users,
            success_count=summary.success_count,
            error_count=summary.error_count,
        )
        return summary


def verify_trigger_secret(presented: str | None, expected: str | None) -> bool:
    """Check the shared secret of a scheduled invocation.

    Invocations are refused outright when no secret is configured.
    """

    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
