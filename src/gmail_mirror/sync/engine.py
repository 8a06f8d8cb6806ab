"""Reconciliation of a user's Gmail mailbox into the metadata and blob stores.

A full cycle moves through these phases, each recorded on the cycle's audit
record:

    STARTED -> LISTING_LABELS -> LISTING_CONVERSATIONS -> SYNCING_CONVERSATIONS
            -> PRUNING_DELETED -> FINALIZED

Failures are contained at three levels. Setup failures (credentials, label
listing, conversation listing) fail the whole cycle. A failing conversation
is logged and skipped. A failing message or attachment is logged and skipped
while its siblings carry on.

Conversations observed in a cycle get `last_seen_at` set to the cycle start.
Local conversations left with an older `last_seen_at` were not seen remotely
and are pruned, but only when the listing covered the whole mailbox and
every listed conversation was processed.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from gmail_mirror.config import Settings
from gmail_mirror.exceptions import SyncAlreadyRunningError
from gmail_mirror.models import (
    RemoteAttachmentPart,
    RemoteConversation,
    RemoteMessage,
    SyncKind,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from gmail_mirror.store import MailStoreRepository
from gmail_mirror.store.tables import Attachment, User
from gmail_mirror.sync.cancellation import CancellationRegistry, CancellationToken
from gmail_mirror.sync.flags import derive_conversation_flags, union_labels
from gmail_mirror.utils import utcnow

logger = structlog.get_logger()


@dataclass
class _Tally:
    conversations: int = 0
    messages: int = 0
    attachments: int = 0
    pruned: int = 0


class ReconciliationEngine:
    """Runs sync cycles for one user at a time.

    Args:
        repository: Metadata store.
        blobs: Blob store for bodies and attachment bytes.
        clients: Factory whose `for_user(user)` returns an unauthenticated Gmail client.
        settings: Application settings. If None, uses default settings.
        cancellations: Registry of cancel tokens shared with the sync service.
        clock: Source of naive UTC timestamps.
    """

    def __init__(
        self,
        repository: MailStoreRepository,
        blobs: Any,
        clients: Any,
        settings: Settings | None = None,
        *,
        cancellations: CancellationRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        from gmail_mirror.config import get_settings

        self.repository = repository
        self.blobs = blobs
        self.clients = clients
        self.settings = settings or get_settings()
        self.cancellations = cancellations or CancellationRegistry()
        self._clock = clock

    async def run_full_sync(self, user_id: int) -> SyncResult:
        """Reconcile the user's whole mailbox.

        Raises:
            SyncAlreadyRunningError: If another full cycle holds the user's lock.
        """

        started_at = self._clock()
        log = logger.bind(user_id=user_id, kind=SyncKind.FULL.value)

        user = self.repository.get_user(user_id)
        if user is None:
            log.warning("sync_user_not_found")
            return SyncResult.failed("User not found")

        lock_token = uuid.uuid4().hex
        stale_before = started_at - timedelta(minutes=self.settings.sync_lock_timeout_minutes)
        if not self.repository.acquire_sync_lock(user_id, lock_token, now=started_at, stale_before=stale_before):
            log.warning("sync_already_running")
            raise SyncAlreadyRunningError(f"A sync cycle is already running for user {user_id}")

        audit = self.repository.start_audit(user_id, SyncKind.FULL, started_at)
        log = log.bind(audit_id=audit.id)
        token = self.cancellations.register(audit.id)
        tally = _Tally()
        log.info("sync_cycle_started")

        try:
            client = await self._open_client(user)

            self._enter_phase(log, audit.id, SyncPhase.LISTING_LABELS)
            await self._sync_labels(user_id, client)

            self._enter_phase(log, audit.id, SyncPhase.LISTING_CONVERSATIONS)
            listing = await client.list_conversations(self.settings.sync_max_conversations)

            self._enter_phase(log, audit.id, SyncPhase.SYNCING_CONVERSATIONS)
            label_map = self.repository.label_ids_by_remote(user_id)
            cancelled = False
            failed: list[str] = []
            for remote in listing.conversations:
                if self._cancel_requested(audit.id, token):
                    cancelled = True
                    break
                try:
                    await self._sync_conversation(user_id, client, remote, started_at, label_map, tally)
                except Exception as exc:  # noqa: BLE001 - one conversation never fails the cycle
                    failed.append(remote.remote_conversation_id)
                    log.exception(
                        "sync_conversation_failed",
                        remote_conversation_id=remote.remote_conversation_id,
                        error=str(exc),
                    )

            # A cancel may land after the last conversation; check once more before pruning.
            if not cancelled:
                cancelled = self._cancel_requested(audit.id, token)

            if cancelled:
                log.info(
                    "sync_cycle_cancelled",
                    conversations_synced=tally.conversations,
                    messages_synced=tally.messages,
                )
                self._finalize(audit.id, SyncStatus.CANCELLED, tally)
                return self._result(audit.id, tally, success=False, cancelled=True)

            if not listing.complete:
                log.warning("sync_prune_skipped", reason="incomplete_listing")
            elif failed:
                # A conversation that failed before its row was refreshed still looks unseen.
                log.warning("sync_prune_skipped", reason="conversation_failures", failed=failed)
            else:
                self._enter_phase(log, audit.id, SyncPhase.PRUNING_DELETED)
                tally.pruned = self.repository.prune_conversations(user_id, started_at)
                log.info("sync_conversations_pruned", count=tally.pruned)

            self.repository.set_last_sync_at(user_id, self._clock())
            self._finalize(audit.id, SyncStatus.SUCCESS, tally)
            log.info(
                "sync_cycle_completed",
                conversations_synced=tally.conversations,
                messages_synced=tally.messages,
                attachments_synced=tally.attachments,
                conversations_pruned=tally.pruned,
            )
            return self._result(audit.id, tally, success=True)
        except Exception as exc:  # noqa: BLE001 - recorded on the audit record
            log.exception("sync_cycle_failed", error=str(exc))
            self.repository.finalize_audit(audit.id, SyncStatus.FAILED, error_message=str(exc))
            return SyncResult.failed(str(exc), audit_id=audit.id)
        finally:
            self.cancellations.release(audit.id)
            self.repository.release_sync_lock(user_id, lock_token)

    async def sync_single_conversation(self, user_id: int, remote_conversation_id: str) -> SyncResult:
        """Reconcile one conversation, typically right after the user sent into it.

        Never prunes and does not take the per-user lock.
        """

        started_at = self._clock()
        log = logger.bind(
            user_id=user_id,
            kind=SyncKind.INCREMENTAL.value,
            remote_conversation_id=remote_conversation_id,
        )

        user = self.repository.get_user(user_id)
        if user is None:
            log.warning("sync_user_not_found")
            return SyncResult.failed("User not found")

        audit = self.repository.start_audit(user_id, SyncKind.INCREMENTAL, started_at)
        log = log.bind(audit_id=audit.id)
        tally = _Tally()

        try:
            client = await self._open_client(user)
            self._enter_phase(log, audit.id, SyncPhase.LISTING_LABELS)
            await self._sync_labels(user_id, client)

            self._enter_phase(log, audit.id, SyncPhase.SYNCING_CONVERSATIONS)
            remote = await client.get_conversation(remote_conversation_id)
            label_map = self.repository.label_ids_by_remote(user_id)
            await self._sync_conversation(user_id, client, remote, started_at, label_map, tally)

            self._finalize(audit.id, SyncStatus.SUCCESS, tally)
            log.info(
                "sync_conversation_completed",
                messages_synced=tally.messages,
                attachments_synced=tally.attachments,
            )
            return self._result(audit.id, tally, success=True)
        except Exception as exc:  # noqa: BLE001 - recorded on the audit record
            log.exception("sync_conversation_cycle_failed", error=str(exc))
            self.repository.finalize_audit(audit.id, SyncStatus.FAILED, error_message=str(exc))
            return SyncResult.failed(str(exc), audit_id=audit.id)

    async def _open_client(self, user: User) -> Any:
        client = self.clients.for_user(user)
        await client.authenticate()
        return client

    async def _sync_labels(self, user_id: int, client: Any) -> None:
        created = 0
        for label in await client.list_labels():
            if self.repository.insert_label_if_absent(user_id, label):
                created += 1
        logger.debug("sync_labels_stored", user_id=user_id, created=created)

    async def _sync_conversation(
        self,
        user_id: int,
        client: Any,
        remote: RemoteConversation,
        seen_at: datetime,
        label_map: dict[str, int],
        tally: _Tally,
    ) -> None:
        label_sets = [m.label_ids for m in remote.messages]
        flags = derive_conversation_flags(label_sets)
        fields = dict(
            history_id=remote.history_id,
            snippet=remote.snippet,
            last_message_at=remote.last_message_at or seen_at,
            is_unread=flags.is_unread,
            is_starred=flags.is_starred,
            is_important=flags.is_important,
            is_draft=flags.is_draft,
            last_seen_at=seen_at,
        )

        existing = self.repository.get_conversation(user_id, remote.remote_conversation_id)
        if existing is None:
            conversation = self.repository.create_conversation(user_id, remote.remote_conversation_id, **fields)
            conversation_id = conversation.id
            tally.conversations += 1
        else:
            conversation_id = existing.id
            self.repository.refresh_conversation(conversation_id, **fields)

        remote_labels = union_labels(label_sets)
        unknown = sorted(remote_labels - label_map.keys())
        if unknown:
            logger.debug("sync_labels_unknown", remote_conversation_id=remote.remote_conversation_id, labels=unknown)
        self.repository.replace_conversation_labels(
            conversation_id,
            {label_map[label] for label in remote_labels if label in label_map},
        )

        for message in remote.messages:
            try:
                await self._sync_message(user_id, client, conversation_id, message, tally)
            except Exception as exc:  # noqa: BLE001 - siblings carry on
                logger.exception(
                    "sync_message_failed",
                    user_id=user_id,
                    remote_message_id=message.remote_message_id,
                    error=str(exc),
                )

    async def _sync_message(
        self,
        user_id: int,
        client: Any,
        conversation_id: int,
        remote: RemoteMessage,
        tally: _Tally,
    ) -> None:
        existing = self.repository.get_message(conversation_id, remote.remote_message_id)

        if existing is None:
            body_key = await self._upload_body(user_id, remote)
            message = self.repository.create_message(conversation_id, remote, body_key)
            message_id = message.id
            stored: list[Attachment] = []
            tally.messages += 1
        else:
            message_id = existing.id
            self.repository.update_message_flags(
                message_id,
                is_unread=remote.is_unread,
                is_starred=remote.is_starred,
                is_draft=remote.is_draft,
            )
            if existing.body_key is None and remote.html_body is not None:
                body_key = await self._upload_body(user_id, remote)
                if body_key is not None:
                    self.repository.set_message_body_key(message_id, body_key)
            stored = self.repository.list_attachments(message_id)

        # Gmail may reissue attachment ids on refetch. A stored row whose id is
        # no longer offered absorbs at most one incoming part with the same
        # filename and MIME type.
        stored_ids = {a.remote_attachment_id for a in stored}
        offered_ids = {p.remote_attachment_id for p in remote.attachments}
        reissued = Counter((a.filename, a.mime_type) for a in stored if a.remote_attachment_id not in offered_ids)
        handled: set[str] = set()
        for part in remote.attachments:
            if part.remote_attachment_id in handled:
                continue
            handled.add(part.remote_attachment_id)
            if part.remote_attachment_id in stored_ids:
                continue
            fingerprint = (part.filename, part.mime_type)
            if reissued[fingerprint] > 0:
                reissued[fingerprint] -= 1
                continue
            try:
                await self._sync_attachment(user_id, client, message_id, remote.remote_message_id, part)
            except Exception as exc:  # noqa: BLE001 - the message stands without this attachment
                logger.warning(
                    "sync_attachment_failed",
                    user_id=user_id,
                    remote_message_id=remote.remote_message_id,
                    filename=part.filename,
                    error=str(exc),
                )
                continue
            tally.attachments += 1

    async def _upload_body(self, user_id: int, remote: RemoteMessage) -> str | None:
        if remote.html_body is None:
            return None
        try:
            upload = await self.blobs.put_body(user_id, remote.remote_message_id, remote.html_body)
        except Exception as exc:  # noqa: BLE001 - row is stored without a body and retried next cycle
            logger.warning(
                "sync_body_upload_failed",
                user_id=user_id,
                remote_message_id=remote.remote_message_id,
                error=str(exc),
            )
            return None
        return upload.key

    async def _sync_attachment(
        self,
        user_id: int,
        client: Any,
        message_id: int,
        remote_message_id: str,
        part: RemoteAttachmentPart,
    ) -> None:
        content = await client.get_attachment_bytes(remote_message_id, part.remote_attachment_id)
        upload = await self.blobs.put_attachment(
            user_id,
            remote_message_id,
            part.remote_attachment_id,
            part.filename,
            part.mime_type,
            content.data,
        )
        self.repository.create_attachment(message_id, part, blob_key=upload.key, size=upload.size)

    def _cancel_requested(self, audit_id: int, token: CancellationToken) -> bool:
        if token.is_cancelled:
            return True
        if self.repository.audit_status(audit_id) == SyncStatus.CANCELLED:
            token.cancel()
            return True
        return False

    def _enter_phase(self, log: Any, audit_id: int, phase: SyncPhase) -> None:
        self.repository.set_audit_phase(audit_id, phase)
        log.info("sync_phase_changed", phase=phase.value)

    def _finalize(self, audit_id: int, status: SyncStatus, tally: _Tally) -> None:
        self.repository.finalize_audit(
            audit_id,
            status,
            conversations_synced=tally.conversations,
            messages_synced=tally.messages,
            attachments_synced=tally.attachments,
            conversations_pruned=tally.pruned,
        )

    @staticmethod
    def _result(audit_id: int, tally: _Tally, *, success: bool, cancelled: bool = False) -> SyncResult:
        return SyncResult(
            success=success,
            conversations_synced=tally.conversations,
            messages_synced=tally.messages,
            attachments_synced=tally.attachments,
            conversations_pruned=tally.pruned,
            audit_id=audit_id,
            cancelled=cancelled,
        )
