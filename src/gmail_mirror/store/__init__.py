"""Relational metadata store.

Holds conversation, message, attachment and label metadata plus sync
bookkeeping. Message bodies and attachment bytes live in the blob store.
"""

from .repository import MailStoreRepository, create_store_engine
from .tables import (
    Attachment,
    Base,
    Conversation,
    ConversationLabel,
    Label,
    Message,
    SyncAuditRecord,
    User,
)

__all__ = [
    "Attachment",
    "Base",
    "Conversation",
    "ConversationLabel",
    "Label",
    "MailStoreRepository",
    "Message",
    "SyncAuditRecord",
    "User",
    "create_store_engine",
]
