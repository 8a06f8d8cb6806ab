"""Build outbound MIME messages for send, reply and forward.

Gmail's `users.messages.send` takes an RFC 2822 message, base64url encoded,
in the `raw` field. Replies and forwards only stay in the original
conversation when `threadId` is supplied *and* the `In-Reply-To` /
`References` headers continue the original chain, so both are produced here.
"""

from __future__ import annotations

import base64
import html
from email.message import EmailMessage
from email.utils import getaddresses
from typing import Any

from gmail_mirror.gmail.parsing import get_header_value
from gmail_mirror.models import Composition

# Headers requested from Gmail when preparing a reply or forward.
REFERENCE_HEADERS: tuple[str, ...] = (
    "From",
    "To",
    "Cc",
    "Reply-To",
    "Subject",
    "Date",
    "Message-ID",
    "References",
)


def _prefixed_subject(subject: str, prefix: str) -> str:
    stripped = (subject or "").strip()
    if stripped.lower().startswith(prefix.lower()):
        return stripped
    return f"{prefix} {stripped}".strip()


def _reference_chain(headers: list[dict[str, Any]]) -> tuple[str | None, str | None]:
    message_id = get_header_value(headers, "Message-ID") or get_header_value(headers, "Message-Id")
    references = get_header_value(headers, "References")
    if message_id is None:
        return None, references
    chain = f"{references} {message_id}" if references else message_id
    return message_id, chain


def _set_body(msg: EmailMessage, body: str, is_html: bool) -> None:
    if is_html:
        msg.set_content(body, subtype="html")
    else:
        msg.set_content(body)


def build_message(composition: Composition) -> EmailMessage:
    """Build a new message from a composition."""

    msg = EmailMessage()
    msg["To"] = ", ".join(composition.to)
    if composition.cc:
        msg["Cc"] = ", ".join(composition.cc)
    if composition.bcc:
        msg["Bcc"] = ", ".join(composition.bcc)
    msg["Subject"] = composition.subject
    _set_body(msg, composition.body, composition.is_html)
    return msg


def build_reply(
    original_headers: list[dict[str, Any]],
    body: str,
    *,
    reply_all: bool = False,
    self_address: str | None = None,
    is_html: bool = True,
) -> EmailMessage:
    """Build a reply that threads under the original message.

    Args:
        original_headers: Header list of the message being replied to.
        body: Reply body.
        reply_all: Also address the original To/Cc recipients.
        self_address: The mailbox owner's address, excluded from reply-all.
        is_html: Whether `body` is HTML.
    """

    reply_target = get_header_value(original_headers, "Reply-To") or get_header_value(
        original_headers, "From"
    )
    to_addrs = [addr for _, addr in getaddresses([reply_target or ""]) if addr]

    cc_addrs: list[str] = []
    if reply_all:
        others = [
            get_header_value(original_headers, "To") or "",
            get_header_value(original_headers, "Cc") or "",
        ]
        own = (self_address or "").lower()
        seen = {a.lower() for a in to_addrs}
        for _, addr in getaddresses(others):
            if not addr or addr.lower() == own or addr.lower() in seen:
                continue
            seen.add(addr.lower())
            cc_addrs.append(addr)

    msg = EmailMessage()
    msg["To"] = ", ".join(to_addrs)
    if cc_addrs:
        msg["Cc"] = ", ".join(cc_addrs)
    msg["Subject"] = _prefixed_subject(get_header_value(original_headers, "Subject") or "", "Re:")

    in_reply_to, references = _reference_chain(original_headers)
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references

    _set_body(msg, body, is_html)
    return msg


def build_forward(
    original_headers: list[dict[str, Any]],
    original_html: str | None,
    original_text: str | None,
    to: list[str],
    *,
    cc: list[str] | None = None,
    body: str = "",
) -> EmailMessage:
    """Build a forward quoting the original message under the caller's note."""

    quoted = original_html
    if quoted is None:
        quoted = f"<pre>{html.escape(original_text or '')}</pre>"

    banner = "<br>".join(
        html.escape(f"{name}: {value}")
        for name in ("From", "Date", "Subject", "To")
        if (value := get_header_value(original_headers, name))
    )

    msg = EmailMessage()
    msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = _prefixed_subject(get_header_value(original_headers, "Subject") or "", "Fwd:")

    in_reply_to, references = _reference_chain(original_headers)
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references

    content = (
        f"{body}<br><br>---------- Forwarded message ---------<br>{banner}<br><br>{quoted}"
    )
    msg.set_content(content, subtype="html")
    return msg


def encode_raw(msg: EmailMessage) -> str:
    """Encode a message for the `raw` field of users.messages.send."""
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
