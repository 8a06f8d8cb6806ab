"""User-facing mailbox operations over the mirrored data.

Reads are served from the metadata store and blob store through the
read-through cache. Writes that change what a read returns invalidate the
affected cache keys. Send, reply and forward go to Gmail directly and then
pull the resulting conversation back with a delayed single-conversation sync
that runs in the background.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from pydantic import TypeAdapter

from gmail_mirror.cache import (
    CacheService,
    conversation_messages_key,
    conversations_key,
    conversations_pattern,
    message_body_key,
)
from gmail_mirror.config import Settings
from gmail_mirror.exceptions import NotFoundError
from gmail_mirror.models import (
    AttachmentDownload,
    Composition,
    ConversationSummary,
    MessageBody,
    MessageView,
    SendResult,
)
from gmail_mirror.storage import user_prefix
from gmail_mirror.store import MailStoreRepository
from gmail_mirror.sync import ReconciliationEngine

logger = structlog.get_logger()

_summaries = TypeAdapter(list[ConversationSummary])
_messages = TypeAdapter(list[MessageView])


class MailboxService:
    """Read and write paths a mail client UI needs.

    Args:
        repository: Metadata store.
        blobs: Blob store holding bodies and attachments.
        clients: Gmail client factory.
        engine: Reconciliation engine used for the post-send resync.
        cache: Read-through cache.
        settings: Application settings. If None, uses default settings.
        sleep: Awaitable sleep used before the post-send resync.
    """

    def __init__(
        self,
        repository: MailStoreRepository,
        blobs: Any,
        clients: Any,
        engine: ReconciliationEngine,
        cache: CacheService,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        from gmail_mirror.config import get_settings

        self.repository = repository
        self.blobs = blobs
        self.clients = clients
        self.engine = engine
        self.cache = cache
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._background: set[asyncio.Task[None]] = set()

    # Reads

    async def list_conversations(
        self,
        user_id: int,
        *,
        label: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ConversationSummary]:
        async def load() -> list[dict[str, Any]]:
            summaries = self.repository.list_conversation_summaries(
                user_id, remote_label_id=label, limit=limit, offset=offset
            )
            return [s.model_dump(mode="json") for s in summaries]

        cached = await self.cache.get_or_set(conversations_key(user_id, label, limit, offset), load)
        return _summaries.validate_python(cached)

    async def get_conversation_messages(self, user_id: int, conversation_id: int) -> list[MessageView]:
        async def load() -> list[dict[str, Any]]:
            return [m.model_dump(mode="json") for m in self.repository.conversation_messages(user_id, conversation_id)]

        cached = await self.cache.get_or_set(conversation_messages_key(user_id, conversation_id), load)
        return _messages.validate_python(cached)

    async def get_message_body(self, user_id: int, message_id: int) -> MessageBody:
        """Fetch a message body from the blob store.

        A message without a stored body, or whose body cannot be read, falls
        back to its snippet. The fallback is cached for a shorter time so a
        body uploaded by a later cycle shows up soon.
        """

        key = message_body_key(user_id, message_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return MessageBody.model_validate(cached)

        message = self.repository.get_owned_message(user_id, message_id)
        if message.body_key is not None:
            try:
                html = await self.blobs.get_text(message.body_key)
            except Exception as exc:  # noqa: BLE001 - fall back to the snippet
                logger.warning("message_body_fetch_failed", message_id=message_id, error=str(exc))
            else:
                body = MessageBody(html_body=html, snippet=message.snippet)
                await self.cache.set(key, body.model_dump(mode="json"), self.settings.message_body_cache_ttl)
                return body

        body = MessageBody(html_body=None, snippet=message.snippet)
        await self.cache.set(key, body.model_dump(mode="json"), self.settings.message_body_fallback_cache_ttl)
        return body

    async def get_attachment_download(self, user_id: int, attachment_id: int) -> AttachmentDownload:
        attachment = self.repository.get_owned_attachment(user_id, attachment_id)
        url = await self.blobs.get_signed_url(attachment.blob_key, self.settings.signed_url_ttl_seconds)
        return AttachmentDownload(download_url=url, filename=attachment.filename, mime_type=attachment.mime_type)

    # Local state changes

    async def mark_conversation_read(self, user_id: int, conversation_id: int) -> None:
        self.repository.mark_conversation_read(user_id, conversation_id)
        await self._invalidate_conversation(user_id, conversation_id)

    async def toggle_conversation_star(self, user_id: int, conversation_id: int) -> bool:
        starred = self.repository.toggle_conversation_star(user_id, conversation_id)
        await self._invalidate_conversation(user_id, conversation_id)
        return starred

    async def mark_message_read(self, user_id: int, message_id: int) -> None:
        conversation_id = self.repository.mark_message_read(user_id, message_id)
        await self._invalidate_conversation(user_id, conversation_id)

    # Outbound mail

    async def send_message(self, user_id: int, composition: Composition) -> SendResult:
        client = await self._client_for(user_id)
        result = await client.send_message(composition)
        await self._after_send(user_id, result)
        return result

    async def reply_to_message(self, user_id: int, message_id: int, body: str, *, reply_all: bool = False) -> SendResult:
        user = self._user(user_id)
        message = self.repository.get_owned_message(user_id, message_id)
        client = await self._client_for(user_id)
        result = await client.reply_to_message(
            message.remote_message_id,
            body,
            reply_all=reply_all,
            self_address=user.email,
        )
        await self._after_send(user_id, result)
        return result

    async def forward_message(
        self,
        user_id: int,
        message_id: int,
        to: list[str],
        *,
        cc: list[str] | None = None,
        body: str = "",
    ) -> SendResult:
        message = self.repository.get_owned_message(user_id, message_id)
        client = await self._client_for(user_id)
        result = await client.forward_message(message.remote_message_id, to, cc=cc, body=body)
        await self._after_send(user_id, result)
        return result

    async def delete_account(self, user_id: int) -> int:
        """Remove every blob and every row belonging to the user; returns deleted blob count."""

        self._user(user_id)
        deleted = await self.blobs.delete_all_under_prefix(user_prefix(user_id))
        self.repository.delete_user(user_id)
        await self.cache.invalidate(conversations_pattern(user_id))
        await self.cache.invalidate(f"conversation:messages:{user_id}:*")
        await self.cache.invalidate(f"message:body:{user_id}:*")
        logger.info("account_deleted", user_id=user_id, blobs_deleted=deleted)
        return deleted

    async def wait_for_background(self) -> None:
        """Wait for pending post-send resyncs."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _user(self, user_id: int) -> Any:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def _client_for(self, user_id: int) -> Any:
        client = self.clients.for_user(self._user(user_id))
        await client.authenticate()
        return client

    async def _after_send(self, user_id: int, result: SendResult) -> None:
        await self.cache.invalidate(conversations_pattern(user_id))
        if not result.remote_conversation_id:
            return
        task = asyncio.create_task(self._resync_after_delay(user_id, result.remote_conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _resync_after_delay(self, user_id: int, remote_conversation_id: str) -> None:
        # Gmail needs a moment before a just-sent message is visible in its thread.
        await self._sleep(self.settings.post_send_sync_delay_seconds)
        try:
            result = await self.engine.sync_single_conversation(user_id, remote_conversation_id)
        except Exception as exc:  # noqa: BLE001 - never surfaces to the sender
            logger.warning(
                "post_send_sync_failed",
                user_id=user_id,
                remote_conversation_id=remote_conversation_id,
                error=str(exc),
            )
            return
        if not result.success:
            logger.warning(
                "post_send_sync_failed",
                user_id=user_id,
                remote_conversation_id=remote_conversation_id,
                error=result.error,
            )
            return

        conversation = self.repository.get_conversation(user_id, remote_conversation_id)
        await self.cache.invalidate(conversations_pattern(user_id))
        if conversation is not None:
            await self.cache.delete(conversation_messages_key(user_id, conversation.id))

    async def _invalidate_conversation(self, user_id: int, conversation_id: int) -> None:
        await self.cache.invalidate(conversations_pattern(user_id))
        await self.cache.delete(conversation_messages_key(user_id, conversation_id))
