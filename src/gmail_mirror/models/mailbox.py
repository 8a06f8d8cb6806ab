"""View models returned by the mailbox read paths.

These are what the cache stores, so they must round-trip through JSON.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ConversationSummary(BaseModel):
    id: int
    remote_conversation_id: str
    snippet: str | None = None
    last_message_at: datetime
    is_unread: bool = False
    is_starred: bool = False
    is_important: bool = False
    is_draft: bool = False
    message_count: int = 0
    label_ids: list[str] = Field(default_factory=list, description="Remote label IDs")


class AttachmentView(BaseModel):
    id: int
    filename: str
    mime_type: str
    size: int
    inline: bool = False


class MessageView(BaseModel):
    id: int
    remote_message_id: str
    from_raw: str
    to_raw: str
    cc_raw: str | None = None
    bcc_raw: str | None = None
    subject: str
    snippet: str
    sent_at: datetime
    has_body: bool = False
    is_unread: bool = False
    is_starred: bool = False
    attachments: list[AttachmentView] = Field(default_factory=list)


class MessageBody(BaseModel):
    html_body: str | None = None
    snippet: str = ""


class AttachmentDownload(BaseModel):
    download_url: str
    filename: str
    mime_type: str
