"""Gmail API client implementation.

This module provides a per-user client for the Gmail API operations the sync
engine and the mailbox service need.

Notes:
    The Google API client is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    Every call goes through `GmailClient._call`, which translates errors into
    `RemoteApiError`, retries retryable failures with jittered backoff and
    honours a rate-limit gate shared by all clients from the same factory.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from gmail_mirror.config import Settings
from gmail_mirror.exceptions import AuthenticationError, CredentialsMissingError, RemoteApiError
from gmail_mirror.gmail.compose import (
    REFERENCE_HEADERS,
    build_forward,
    build_message,
    build_reply,
    encode_raw,
)
from gmail_mirror.gmail.parsing import (
    decode_body_data,
    extract_plain_body,
    label_to_remote,
    message_to_remote,
    thread_to_conversation,
)
from gmail_mirror.models import (
    AttachmentBytes,
    Composition,
    ConversationListing,
    RemoteConversation,
    RemoteLabel,
    RemoteMessage,
    SendResult,
)
from gmail_mirror.utils import retry_on_failure

if TYPE_CHECKING:
    from google.oauth2.credentials import Credentials

    from gmail_mirror.store.tables import User

logger = structlog.get_logger()

TokenRefreshCallback = Callable[[str, "datetime | None"], None]

# Gmail caps threads.list page size at 500.
_MAX_PAGE_SIZE = 500


class RateLimitGate:
    """Cooldown shared by clients so one rate-limit signal slows every caller."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._until = 0.0

    def trip(self, seconds: float) -> None:
        self._until = max(self._until, self._clock() + seconds)

    def remaining(self) -> float:
        return max(0.0, self._until - self._clock())

    async def wait(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        remaining = self.remaining()
        if remaining > 0:
            logger.info("gmail_rate_limit_cooldown", seconds=round(remaining, 3))
            await sleep(remaining)


def _http_status(err: Exception) -> int | None:
    resp = getattr(err, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def translate_http_error(err: Exception, operation: str) -> RemoteApiError:
    """Map a googleapiclient HttpError onto RemoteApiError."""

    status = _http_status(err)
    reason = str(getattr(err, "reason", "") or err)
    rate_limited = status == 429 or (status == 403 and "rate limit" in reason.lower())
    return RemoteApiError(
        f"{operation} failed (HTTP {status}): {reason}",
        status,
        rate_limited=rate_limited,
    )


class GmailClient:
    """Gmail API client bound to one user's OAuth credentials."""

    def __init__(
        self,
        credentials: Credentials,
        settings: Settings | None = None,
        *,
        on_token_refresh: TokenRefreshCallback | None = None,
        gate: RateLimitGate | None = None,
        service: Any | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize Gmail client.

        Args:
            credentials: google-auth credentials carrying access and refresh token.
            settings: Application settings. If None, uses default settings.
            on_token_refresh: Called with the new token and expiry whenever it changes.
            gate: Shared rate-limit gate. A private gate is used when None.
            service: Pre-built discovery service (tests); built lazily otherwise.
            sleep: Awaitable sleep used for backoff.
        """
        from gmail_mirror.config import get_settings

        self.settings = settings or get_settings()
        self._credentials = credentials
        self._on_token_refresh = on_token_refresh
        self._gate = gate or RateLimitGate()
        self._service = service
        self._sleep = sleep
        self._last_token: str | None = getattr(credentials, "token", None)

    async def authenticate(self) -> None:
        """Build the Gmail discovery service from the stored credentials.

        Raises:
            AuthenticationError: If the service cannot be built.
        """

        if self._service is not None:
            return

        try:
            self._service = await asyncio.to_thread(self._build_service)
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthenticationError(str(exc)) from exc

        logger.debug("gmail_authentication_completed")

    async def refresh_credential(self) -> str:
        """Force an access token refresh and return the new token."""

        from google.auth.exceptions import RefreshError
        from google.auth.transport.requests import Request

        try:
            await asyncio.to_thread(self._credentials.refresh, Request())
        except RefreshError as exc:
            logger.error("gmail_token_refresh_failed", error=str(exc))
            raise AuthenticationError(f"Token refresh failed: {exc}") from exc

        self._notice_token_change()
        return str(self._credentials.token)

    async def list_labels(self) -> list[RemoteLabel]:
        response = await self._call(
            "labels.list",
            lambda: self._service.users().labels().list(userId=self._user_id).execute(),
        )
        labels = (label_to_remote(raw) for raw in response.get("labels", []) or [])
        return [label for label in labels if label is not None]

    async def list_conversations(self, limit: int) -> ConversationListing:
        """List up to `limit` conversations with their messages populated.

        Args:
            limit: Maximum number of conversations to return.

        Returns:
            The conversations plus whether the whole mailbox was observed.
        """

        thread_ids, exhausted = await self._call(
            "threads.list",
            partial(self._list_thread_ids_sync, limit),
        )
        logger.info("gmail_threads_listed", count=len(thread_ids), exhausted=exhausted)

        complete = exhausted
        conversations: list[RemoteConversation] = []
        for thread_id in thread_ids:
            try:
                conversations.append(await self.get_conversation(thread_id))
            except RemoteApiError as exc:
                if exc.status == 404:
                    # Deleted between list and get; absence is accurate.
                    logger.info("gmail_thread_vanished", remote_conversation_id=thread_id)
                    continue
                complete = False
                logger.warning(
                    "gmail_thread_detail_skipped",
                    remote_conversation_id=thread_id,
                    status=exc.status,
                    error=str(exc),
                )

        return ConversationListing(conversations=conversations, complete=complete)

    async def get_conversation(self, remote_conversation_id: str) -> RemoteConversation:
        raw = await self._call(
            "threads.get",
            lambda: self._service.users()
            .threads()
            .get(userId=self._user_id, id=remote_conversation_id, format="full")
            .execute(),
            remote_conversation_id=remote_conversation_id,
        )
        return thread_to_conversation(raw)

    async def get_message_detail(
        self,
        remote_message_id: str,
        *,
        format: str = "full",
        metadata_headers: list[str] | None = None,
    ) -> RemoteMessage:
        raw = await self._get_message_raw(remote_message_id, format, metadata_headers)
        return message_to_remote(raw)

    async def get_attachment_bytes(self, remote_message_id: str, remote_attachment_id: str) -> AttachmentBytes:
        raw = await self._call(
            "attachments.get",
            lambda: self._service.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=remote_message_id, id=remote_attachment_id)
            .execute(),
            remote_message_id=remote_message_id,
        )
        data = decode_body_data(raw.get("data") or "")
        return AttachmentBytes(data=data, size=int(raw.get("size") or len(data)))

    async def send_message(self, composition: Composition) -> SendResult:
        return await self._send(encode_raw(build_message(composition)), thread_id=None)

    async def reply_to_message(
        self,
        remote_message_id: str,
        body: str,
        *,
        reply_all: bool = False,
        self_address: str | None = None,
    ) -> SendResult:
        original = await self.get_message_detail(
            remote_message_id,
            format="metadata",
            metadata_headers=list(REFERENCE_HEADERS),
        )
        msg = build_reply(original.headers, body, reply_all=reply_all, self_address=self_address)
        return await self._send(encode_raw(msg), thread_id=original.remote_conversation_id)

    async def forward_message(
        self,
        remote_message_id: str,
        to: list[str],
        *,
        cc: list[str] | None = None,
        body: str = "",
    ) -> SendResult:
        raw = await self._get_message_raw(remote_message_id, "full", None)
        original = message_to_remote(raw)
        msg = build_forward(
            original.headers,
            original.html_body,
            extract_plain_body(raw.get("payload")),
            to,
            cc=cc,
            body=body,
        )
        return await self._send(encode_raw(msg), thread_id=original.remote_conversation_id)

    @property
    def _user_id(self) -> str:
        return self.settings.gmail_user_id

    async def _get_message_raw(
        self,
        remote_message_id: str,
        format: str,
        metadata_headers: list[str] | None,
    ) -> dict[str, Any]:
        return await self._call(
            "messages.get",
            lambda: self._service.users()
            .messages()
            .get(
                userId=self._user_id,
                id=remote_message_id,
                format=format,
                metadataHeaders=metadata_headers,
            )
            .execute(),
            remote_message_id=remote_message_id,
        )

    async def _send(self, raw: str, *, thread_id: str | None) -> SendResult:
        body: dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id

        # Sends are not idempotent; a retried 5xx could deliver twice.
        response = await self._call(
            "messages.send",
            lambda: self._service.users().messages().send(userId=self._user_id, body=body).execute(),
            retry=False,
        )
        result = SendResult(
            remote_message_id=str(response.get("id") or ""),
            remote_conversation_id=str(response.get("threadId") or thread_id or ""),
        )
        logger.info(
            "gmail_message_sent",
            remote_message_id=result.remote_message_id,
            remote_conversation_id=result.remote_conversation_id,
        )
        return result

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Any],
        *,
        retry: bool = True,
        **context: Any,
    ) -> Any:
        await self._ensure_authenticated()

        from google.auth.exceptions import RefreshError
        from googleapiclient.errors import HttpError

        async def attempt() -> Any:
            await self._gate.wait(self._sleep)
            try:
                result = await asyncio.to_thread(fn)
            except HttpError as exc:
                raise translate_http_error(exc, operation) from exc
            except RefreshError as exc:
                raise AuthenticationError(f"Token refresh failed: {exc}") from exc
            except (RemoteApiError, AuthenticationError):
                raise
            except Exception as exc:  # noqa: BLE001 - transport failures are retryable
                raise RemoteApiError(f"{operation} failed: {exc}") from exc
            self._notice_token_change()
            return result

        attempt.__name__ = operation

        def on_retry(exc: Exception, wait: float) -> None:
            if isinstance(exc, RemoteApiError) and exc.is_rate_limited:
                self._gate.trip(wait)

        try:
            return await retry_on_failure(
                attempt,
                max_retries=self.settings.max_retries if retry else 0,
                delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
                should_retry=lambda exc: isinstance(exc, RemoteApiError) and exc.is_retryable,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RemoteApiError as exc:
            logger.error(
                "gmail_call_failed",
                operation=operation,
                status=exc.status,
                rate_limited=exc.is_rate_limited,
                error=str(exc),
                **context,
            )
            raise

    async def _ensure_authenticated(self) -> None:
        if self._service is None:
            raise AuthenticationError(
                "Gmail client is not authenticated. Call await GmailClient.authenticate() first."
            )

    def _notice_token_change(self) -> None:
        token = getattr(self._credentials, "token", None)
        if not token or token == self._last_token:
            return
        self._last_token = token
        logger.info("gmail_access_token_refreshed")
        if self._on_token_refresh is not None:
            self._on_token_refresh(token, getattr(self._credentials, "expiry", None))

    def _build_service(self) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        import google_auth_httplib2
        import httplib2
        from googleapiclient.discovery import build

        http = google_auth_httplib2.AuthorizedHttp(
            self._credentials,
            http=httplib2.Http(timeout=self.settings.gmail_http_timeout_seconds),
        )
        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", http=http, cache_discovery=False)

    def _list_thread_ids_sync(self, limit: int) -> tuple[list[str], bool]:
        assert self._service is not None
        thread_ids: list[str] = []

        page_token: str | None = None
        while len(thread_ids) < limit:
            per_page = min(_MAX_PAGE_SIZE, limit - len(thread_ids))
            request = (
                self._service.users()
                .threads()
                .list(
                    userId=self._user_id,
                    maxResults=per_page,
                    includeSpamTrash=False,
                    pageToken=page_token,
                )
            )
            response = request.execute()
            for thread in response.get("threads", []) or []:
                if thread.get("id"):
                    thread_ids.append(str(thread["id"]))
            page_token = response.get("nextPageToken")
            if page_token is None:
                return thread_ids[:limit], len(thread_ids) <= limit

        return thread_ids[:limit], False


class GmailClientFactory:
    """Builds per-user clients sharing one rate-limit gate.

    Args:
        settings: Application settings.
        on_token_refresh: Called as (user_id, token, expiry) when a client's token changes.
        gate: Shared gate; a new one is created when None.
    """

    def __init__(
        self,
        settings: Settings,
        on_token_refresh: Callable[[int, str, datetime | None], None] | None = None,
        gate: RateLimitGate | None = None,
    ) -> None:
        self.settings = settings
        self._on_token_refresh = on_token_refresh
        self.gate = gate or RateLimitGate()

    def for_user(self, user: User) -> GmailClient:
        from google.oauth2.credentials import Credentials

        if not user.access_token or not user.refresh_token:
            raise CredentialsMissingError(f"User {user.id} has no stored OAuth tokens")

        credentials = Credentials(
            token=user.access_token,
            refresh_token=user.refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            expiry=user.token_expiry,
        )

        callback: TokenRefreshCallback | None = None
        if self._on_token_refresh is not None:
            callback = partial(self._on_token_refresh, user.id)

        return GmailClient(credentials, self.settings, on_token_refresh=callback, gate=self.gate)
