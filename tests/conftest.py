"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest

from gmail_mirror.exceptions import BlobStoreError, CredentialsMissingError, RemoteApiError
from gmail_mirror.models import (
    AttachmentBytes,
    ConversationListing,
    RemoteAttachmentPart,
    RemoteConversation,
    RemoteLabel,
    RemoteMessage,
    SendResult,
)
from gmail_mirror.storage import BlobUploadResult, attachment_key, body_key


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGmailClient:
    """In-process stand-in for GmailClient."""

    def __init__(self) -> None:
        self.labels: list[RemoteLabel] = [
            RemoteLabel(remote_label_id="INBOX", name="INBOX", kind="system"),
            RemoteLabel(remote_label_id="UNREAD", name="UNREAD", kind="system"),
            RemoteLabel(remote_label_id="STARRED", name="STARRED", kind="system"),
            RemoteLabel(remote_label_id="IMPORTANT", name="IMPORTANT", kind="system"),
            RemoteLabel(remote_label_id="Label_1", name="Receipts", kind="user"),
        ]
        self.conversations: list[RemoteConversation] = []
        self.complete = True
        self.label_error: Exception | None = None
        self.conversation_error: Exception | None = None
        self.attachment_error: Exception | None = None
        self.attachment_calls: list[tuple[str, str]] = []
        self.sent: list[tuple[str, Any]] = []
        self.send_result = SendResult(remote_message_id="sent-1", remote_conversation_id="t1")

    async def authenticate(self) -> None:
        return None

    async def list_labels(self) -> list[RemoteLabel]:
        if self.label_error is not None:
            raise self.label_error
        return list(self.labels)

    async def list_conversations(self, limit: int) -> ConversationListing:
        return ConversationListing(conversations=list(self.conversations)[:limit], complete=self.complete)

    async def get_conversation(self, remote_conversation_id: str) -> RemoteConversation:
        if self.conversation_error is not None:
            raise self.conversation_error
        for conversation in self.conversations:
            if conversation.remote_conversation_id == remote_conversation_id:
                return conversation
        raise RemoteApiError("threads.get failed (HTTP 404): Not Found", 404)

    async def get_attachment_bytes(self, remote_message_id: str, remote_attachment_id: str) -> AttachmentBytes:
        self.attachment_calls.append((remote_message_id, remote_attachment_id))
        if self.attachment_error is not None:
            raise self.attachment_error
        data = f"bytes-of-{remote_attachment_id}".encode()
        return AttachmentBytes(data=data, size=len(data))

    async def send_message(self, composition: Any) -> SendResult:
        self.sent.append(("send", composition))
        return self.send_result

    async def reply_to_message(
        self,
        remote_message_id: str,
        body: str,
        *,
        reply_all: bool = False,
        self_address: str | None = None,
    ) -> SendResult:
        self.sent.append(("reply", (remote_message_id, body, reply_all, self_address)))
        return self.send_result

    async def forward_message(
        self,
        remote_message_id: str,
        to: list[str],
        *,
        cc: list[str] | None = None,
        body: str = "",
    ) -> SendResult:
        self.sent.append(("forward", (remote_message_id, to, cc, body)))
        return self.send_result


class FakeClientFactory:
    def __init__(self, client: FakeGmailClient) -> None:
        self.client = client

    def for_user(self, user: Any) -> FakeGmailClient:
        if not user.access_token or not user.refresh_token:
            raise CredentialsMissingError(f"User {user.id} has no stored OAuth tokens")
        return self.client


class FakeBlobStore:
    """Dict-backed stand-in for BlobStore using the real key layout."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.body_puts: list[str] = []
        self.attachment_puts: list[str] = []
        self.fail_bodies = False
        self.fail_attachments = False
        self.on_put_body: Any = None

    async def put_body(self, user_id: int, remote_message_id: str, html: str) -> BlobUploadResult:
        if self.on_put_body is not None:
            self.on_put_body(user_id, remote_message_id)
        if self.fail_bodies:
            raise BlobStoreError("put_body failed")
        key = body_key(user_id, remote_message_id)
        data = html.encode("utf-8")
        self.objects[key] = data
        self.body_puts.append(key)
        return BlobUploadResult(key=key, size=len(data))

    async def put_attachment(
        self,
        user_id: int,
        remote_message_id: str,
        remote_attachment_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
    ) -> BlobUploadResult:
        if self.fail_attachments:
            raise BlobStoreError("put_attachment failed")
        key = attachment_key(user_id, remote_message_id, remote_attachment_id, filename)
        self.objects[key] = data
        self.attachment_puts.append(key)
        return BlobUploadResult(key=key, size=len(data))

    async def get_text(self, key: str) -> str:
        if key not in self.objects:
            raise BlobStoreError(f"get_object failed for {key}")
        return self.objects[key].decode("utf-8")

    async def get_signed_url(self, key: str, ttl_seconds: int | None = None) -> str:
        return f"https://blobs.example.test/{key}?expires={ttl_seconds}"

    async def delete_all_under_prefix(self, prefix: str) -> int:
        doomed = [key for key in self.objects if key.startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)


def make_message(
    remote_message_id: str,
    remote_conversation_id: str,
    *,
    label_ids: list[str] | None = None,
    html: str | None = "<p>Hello</p>",
    attachments: list[RemoteAttachmentPart] | None = None,
    sent_at: datetime | None = None,
    subject: str = "Quarterly report",
) -> RemoteMessage:
    return RemoteMessage(
        remote_message_id=remote_message_id,
        remote_conversation_id=remote_conversation_id,
        label_ids=label_ids if label_ids is not None else ["INBOX"],
        snippet=f"snippet {remote_message_id}",
        internal_date=sent_at or datetime(2025, 1, 1, 12, 0, 0),
        from_raw="Alice <alice@example.com>",
        to_raw="me@example.com",
        subject=subject,
        headers=[{"name": "Subject", "value": subject}],
        html_body=html,
        attachments=attachments or [],
    )


def make_conversation(remote_conversation_id: str, messages: list[RemoteMessage]) -> RemoteConversation:
    return RemoteConversation(
        remote_conversation_id=remote_conversation_id,
        history_id="100",
        snippet=messages[-1].snippet if messages else None,
        messages=messages,
    )


def make_attachment(remote_attachment_id: str = "att-1", filename: str = "report.pdf") -> RemoteAttachmentPart:
    return RemoteAttachmentPart(
        remote_attachment_id=remote_attachment_id,
        filename=filename,
        mime_type="application/pdf",
        size=42,
    )


@pytest.fixture
def mock_settings():
    """Provide settings with fast retries and no artificial delays."""
    from gmail_mirror.config import Settings

    return Settings(
        database_url="sqlite://",
        log_level="DEBUG",
        debug=True,
        max_retries=2,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        sync_user_delay_seconds=0.0,
        post_send_sync_delay_seconds=0.0,
        redis_url=None,
        cron_secret="s3cret",
    )


@pytest.fixture
def repository(tmp_path):
    """Provide an initialized repository over a file-backed SQLite database."""
    from gmail_mirror.store import MailStoreRepository

    repo = MailStoreRepository.from_url(f"sqlite:///{tmp_path / 'mirror.sqlite3'}")
    repo.initialize()
    yield repo
    repo.engine.dispose()


@pytest.fixture
def user(repository):
    return repository.create_user(
        "me@example.com",
        name="Me",
        access_token="access-token",
        refresh_token="refresh-token",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 9, 0, 0))


@pytest.fixture
def fake_gmail() -> FakeGmailClient:
    return FakeGmailClient()


@pytest.fixture
def fake_blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def engine(repository, fake_blobs, fake_gmail, mock_settings, clock):
    from gmail_mirror.sync import ReconciliationEngine

    return ReconciliationEngine(
        repository,
        fake_blobs,
        FakeClientFactory(fake_gmail),
        mock_settings,
        clock=clock,
    )


@pytest.fixture
def two_conversations() -> list[RemoteConversation]:
    """Two conversations with one message each; the first message has an attachment."""
    return [
        make_conversation(
            "t1",
            [make_message("m1", "t1", label_ids=["INBOX", "UNREAD"], attachments=[make_attachment()])],
        ),
        make_conversation("t2", [make_message("m2", "t2", label_ids=["INBOX", "Label_1"])]),
    ]


@pytest.fixture
def sample_thread_data() -> dict:
    """Provide a Gmail API thread payload (format=full)."""
    import base64

    def encode(text: str) -> str:
        return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")

    return {
        "id": "thread789",
        "historyId": "4242",
        "snippet": "Weekly Newsletter - Python Tips",
        "messages": [
            {
                "id": "msg123456",
                "threadId": "thread789",
                "labelIds": ["INBOX", "UNREAD"],
                "snippet": "Weekly Newsletter - Python Tips",
                "internalDate": "1700000000000",
                "payload": {
                    "mimeType": "multipart/mixed",
                    "headers": [
                        {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                        {"name": "From", "value": "Python <newsletter@python.org>"},
                        {"name": "To", "value": "user@example.com"},
                        {"name": "Cc", "value": "team@example.com"},
                        {"name": "Message-ID", "value": "<abc@python.org>"},
                    ],
                    "parts": [
                        {
                            "mimeType": "multipart/alternative",
                            "parts": [
                                {"mimeType": "text/plain", "body": {"data": encode("Plain tips")}},
                                {"mimeType": "text/html", "body": {"data": encode("<b>HTML tips</b>")}},
                            ],
                        },
                        {
                            "mimeType": "application/pdf",
                            "filename": "tips.pdf",
                            "headers": [
                                {"name": "Content-Disposition", "value": 'attachment; filename="tips.pdf"'}
                            ],
                            "body": {"attachmentId": "ANGjdJ8", "size": 2048},
                        },
                    ],
                },
            }
        ],
    }
