"""Gmail Mirror - local mirror of a Gmail mailbox.

This package keeps a relational copy of mailbox metadata and a blob store copy
of message bodies and attachments in step with the remote mailbox, so that a
client application can render large mailboxes without calling the Gmail API.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from gmail_mirror.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
