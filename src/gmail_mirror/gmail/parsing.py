"""Helpers for parsing Gmail API payloads into internal models."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any

from gmail_mirror.models import RemoteAttachmentPart, RemoteConversation, RemoteLabel, RemoteMessage


def get_header_value(headers: list[dict[str, Any]], name: str) -> str | None:
    """Return the first header value matching `name` (case-insensitive), or None."""

    wanted = name.lower()
    for h in headers or []:
        header_name = h.get("name")
        if isinstance(header_name, str) and header_name.lower() == wanted:
            value = h.get("value")
            return value if isinstance(value, str) and value else None
    return None


def decode_body_data(data: str) -> bytes:
    """Decode Gmail's base64url body data (padding is frequently omitted)."""

    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def extract_html_body(payload: dict[str, Any] | None) -> str | None:
    """Return the first text/html leaf found depth-first, decoded, or None.

    A text/plain sibling listed before the HTML part is ignored.
    """

    if not payload:
        return None

    mime = (payload.get("mimeType") or "").lower()
    data = (payload.get("body") or {}).get("data")
    if mime.startswith("text/html") and data:
        return decode_body_data(data).decode("utf-8", errors="replace")

    for part in payload.get("parts") or []:
        html = extract_html_body(part)
        if html:
            return html

    return None


def extract_plain_body(payload: dict[str, Any] | None) -> str | None:
    """Return the first text/plain leaf found depth-first, decoded, or None."""

    if not payload:
        return None

    mime = (payload.get("mimeType") or "").lower()
    data = (payload.get("body") or {}).get("data")
    if mime.startswith("text/plain") and data:
        return decode_body_data(data).decode("utf-8", errors="replace")

    for part in payload.get("parts") or []:
        text = extract_plain_body(part)
        if text:
            return text

    return None


def _is_inline(part: dict[str, Any]) -> bool:
    disposition = get_header_value(part.get("headers") or [], "Content-Disposition") or ""
    return "inline" in disposition.lower()


def extract_attachment_parts(payload: dict[str, Any] | None) -> list[RemoteAttachmentPart]:
    """Collect every part that has a filename and an attachment id."""

    if not payload:
        return []

    found: list[RemoteAttachmentPart] = []
    body = payload.get("body") or {}
    attachment_id = body.get("attachmentId")
    filename = payload.get("filename")
    if filename and attachment_id:
        found.append(
            RemoteAttachmentPart(
                remote_attachment_id=str(attachment_id),
                filename=str(filename),
                mime_type=payload.get("mimeType") or "application/octet-stream",
                size=int(body.get("size") or 0),
                inline=_is_inline(payload),
            )
        )

    for part in payload.get("parts") or []:
        found.extend(extract_attachment_parts(part))

    return found


def parse_internal_date(value: Any) -> datetime:
    """Convert Gmail's millisecond `internalDate` to a naive UTC datetime."""

    try:
        ms = int(value)
    except (TypeError, ValueError):
        ms = 0
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def message_to_remote(message: dict[str, Any]) -> RemoteMessage:
    """Convert a Gmail API message (format=full) to RemoteMessage."""

    payload = message.get("payload") or {}
    headers = [h for h in payload.get("headers") or [] if isinstance(h, dict)]

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []

    return RemoteMessage(
        remote_message_id=str(message.get("id") or ""),
        remote_conversation_id=str(message.get("threadId") or ""),
        label_ids=[x for x in label_ids if isinstance(x, str)],
        snippet=message.get("snippet") or "",
        internal_date=parse_internal_date(message.get("internalDate")),
        from_raw=get_header_value(headers, "From") or "",
        to_raw=get_header_value(headers, "To") or "",
        cc_raw=get_header_value(headers, "Cc"),
        bcc_raw=get_header_value(headers, "Bcc"),
        subject=get_header_value(headers, "Subject") or "",
        headers=headers,
        html_body=extract_html_body(payload),
        attachments=extract_attachment_parts(payload),
    )


def thread_to_conversation(thread: dict[str, Any]) -> RemoteConversation:
    """Convert a Gmail API thread (format=full) to RemoteConversation."""

    return RemoteConversation(
        remote_conversation_id=str(thread.get("id") or ""),
        history_id=str(thread["historyId"]) if thread.get("historyId") else None,
        snippet=thread.get("snippet"),
        messages=[message_to_remote(m) for m in thread.get("messages") or []],
    )


def label_to_remote(label: dict[str, Any]) -> RemoteLabel | None:
    label_id = label.get("id")
    name = label.get("name")
    if not label_id or not name:
        return None
    return RemoteLabel(
        remote_label_id=str(label_id),
        name=str(name),
        kind=str(label.get("type") or "user").lower(),
    )
