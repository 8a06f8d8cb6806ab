"""Mailbox reconciliation: the sync engine and its entry points."""

from .cancellation import CancellationRegistry, CancellationToken
from .engine import ReconciliationEngine
from .flags import ConversationFlags, derive_conversation_flags, union_labels
from .service import SyncService, verify_trigger_secret

__all__ = [
    "CancellationRegistry",
    "CancellationToken",
    "ConversationFlags",
    "ReconciliationEngine",
    "SyncService",
    "derive_conversation_flags",
    "union_labels",
    "verify_trigger_secret",
]
