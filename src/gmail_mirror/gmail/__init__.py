"""Gmail API access: client, payload parsing and outbound message composition."""

from .client import GmailClient, GmailClientFactory, RateLimitGate

__all__ = ["GmailClient", "GmailClientFactory", "RateLimitGate"]
