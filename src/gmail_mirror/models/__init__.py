"""Data models for Gmail Mirror.

This module contains Pydantic models for data validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from gmail_mirror.models.mailbox import (
    AttachmentDownload,
    AttachmentView,
    ConversationSummary,
    MessageBody,
    MessageView,
)
from gmail_mirror.models.remote import (
    AttachmentBytes,
    ConversationListing,
    RemoteAttachmentPart,
    RemoteConversation,
    RemoteLabel,
    RemoteMessage,
)
from gmail_mirror.utils import utcnow


class SyncKind(str, Enum):
    """Kind of reconciliation cycle."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Audit record status."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncPhase(str, Enum):
    """Phase of a running cycle, recorded on the audit record for progress display."""

    STARTED = "started"
    LISTING_LABELS = "listing_labels"
    LISTING_CONVERSATIONS = "listing_conversations"
    SYNCING_CONVERSATIONS = "syncing_conversations"
    PRUNING_DELETED = "pruning_deleted"
    FINALIZED = "finalized"


class SyncResult(BaseModel):
    """Outcome of one reconciliation cycle."""

    success: bool = Field(description="Whether the cycle completed")
    conversations_synced: int = Field(default=0, description="Conversations created")
    messages_synced: int = Field(default=0, description="Messages created")
    attachments_synced: int = Field(default=0, description="Attachments stored")
    conversations_pruned: int = Field(default=0, description="Local conversations deleted")
    audit_id: Optional[int] = Field(default=None, description="Audit record of the cycle")
    cancelled: bool = Field(default=False, description="Cycle stopped on a cancel request")
    error: Optional[str] = Field(default=None, description="Error message if failed")

    @classmethod
    def failed(cls, error: str, audit_id: int | None = None) -> "SyncResult":
        return cls(success=False, error=error, audit_id=audit_id)


class SyncAuditView(BaseModel):
    """Read-only view of a sync audit record."""

    id: int
    user_id: int
    kind: SyncKind
    status: SyncStatus
    phase: Optional[SyncPhase] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    conversations_synced: int = 0
    messages_synced: int = 0
    attachments_synced: int = 0
    conversations_pruned: int = 0
    error_message: Optional[str] = None


class SyncStatusReport(BaseModel):
    """Sync history for one user, most recent cycle first."""

    last_sync_at: Optional[datetime] = None
    recent_cycles: list[SyncAuditView] = Field(default_factory=list)


class UserSyncOutcome(BaseModel):
    """Per-user entry in a scheduled run summary."""

    user_id: int
    email: str
    success: bool
    conversations_synced: int = 0
    messages_synced: int = 0
    attachments_synced: int = 0
    error: Optional[str] = None


class ScheduledSyncSummary(BaseModel):
    """Summary of a scheduled run across all due users."""

    total_users: int = 0
    success_count: int = 0
    error_count: int = 0
    results: list[UserSyncOutcome] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=utcnow)


class Composition(BaseModel):
    """A new outbound message."""

    to: list[str] = Field(min_length=1, description="Recipient addresses")
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = Field(default="")
    body: str = Field(default="")
    is_html: bool = Field(default=True)


class SendResult(BaseModel):
    """Identifiers Gmail assigned to a sent message."""

    remote_message_id: str
    remote_conversation_id: str


__all__ = [
    "AttachmentBytes",
    "AttachmentDownload",
    "AttachmentView",
    "Composition",
    "ConversationListing",
    "ConversationSummary",
    "MessageBody",
    "MessageView",
    "RemoteAttachmentPart",
    "RemoteConversation",
    "RemoteLabel",
    "RemoteMessage",
    "ScheduledSyncSummary",
    "SendResult",
    "SyncAuditView",
    "SyncKind",
    "SyncPhase",
    "SyncResult",
    "SyncStatus",
    "SyncStatusReport",
    "UserSyncOutcome",
]
