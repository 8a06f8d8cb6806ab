"""Models for Gmail API payloads as consumed by the sync engine.

Gmail returns loosely-typed JSON. The parsing helpers in
`gmail_mirror.gmail.parsing` turn that JSON into these models so that the
engine only ever sees validated, flattened data.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RemoteLabel(BaseModel):
    """A Gmail label (system or user-defined)."""

    remote_label_id: str = Field(description="Gmail label ID")
    name: str = Field(description="Human readable label name")
    kind: str = Field(default="user", description="'system' or 'user'")


class RemoteAttachmentPart(BaseModel):
    """Pointer to an attachment inside a message's MIME tree."""

    remote_attachment_id: str = Field(description="Gmail attachment ID")
    filename: str = Field(description="Filename as supplied by the sender")
    mime_type: str = Field(default="application/octet-stream", description="MIME type of the part")
    size: int = Field(default=0, description="Size reported in the message payload")
    inline: bool = Field(default=False, description="Content-Disposition is inline")


class RemoteMessage(BaseModel):
    """A fully fetched Gmail message."""

    remote_message_id: str = Field(description="Gmail message ID")
    remote_conversation_id: str = Field(description="Gmail thread ID")
    label_ids: list[str] = Field(default_factory=list, description="Gmail label IDs")
    snippet: str = Field(default="", description="Short preview text")
    internal_date: datetime = Field(description="Provider timestamp (naive UTC)")

    from_raw: str = Field(default="", description="Raw From header")
    to_raw: str = Field(default="", description="Raw To header")
    cc_raw: str | None = Field(default=None, description="Raw Cc header")
    bcc_raw: str | None = Field(default=None, description="Raw Bcc header")
    subject: str = Field(default="", description="Subject header")
    headers: list[dict[str, Any]] = Field(default_factory=list, description="Raw header list")

    html_body: str | None = Field(default=None, description="First text/html part, decoded")
    attachments: list[RemoteAttachmentPart] = Field(default_factory=list)

    @property
    def is_unread(self) -> bool:
        return "UNREAD" in self.label_ids

    @property
    def is_starred(self) -> bool:
        return "STARRED" in self.label_ids

    @property
    def is_draft(self) -> bool:
        return "DRAFT" in self.label_ids


class RemoteConversation(BaseModel):
    """A Gmail thread with its messages populated."""

    remote_conversation_id: str = Field(description="Gmail thread ID")
    history_id: str | None = Field(default=None, description="Gmail history cursor")
    snippet: str | None = Field(default=None, description="Thread snippet")
    messages: list[RemoteMessage] = Field(default_factory=list)

    @property
    def last_message_at(self) -> datetime | None:
        if not self.messages:
            return None
        return max(m.internal_date for m in self.messages)


class ConversationListing(BaseModel):
    """Result of listing conversations for one sync cycle.

    `complete` is True only when the listing observed the whole remote
    mailbox: the fetch bound was not hit while more pages remained, and no
    conversation was dropped because of a transient detail fetch failure.
    """

    conversations: list[RemoteConversation] = Field(default_factory=list)
    complete: bool = Field(default=True)


class AttachmentBytes(BaseModel):
    """Decoded attachment content fetched from Gmail."""

    data: bytes
    size: int
