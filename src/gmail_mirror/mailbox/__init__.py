"""Mailbox read and write operations served from the mirror."""

from .service import MailboxService

__all__ = ["MailboxService"]
