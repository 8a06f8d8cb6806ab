"""Unit tests for Gmail payload parsing helpers."""

import base64
from datetime import datetime

from gmail_mirror.gmail.parsing import (
    extract_attachment_parts,
    extract_html_body,
    get_header_value,
    label_to_remote,
    parse_internal_date,
    thread_to_conversation,
)


def _encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_thread_to_conversation_parses_basic_fields(sample_thread_data) -> None:
    conversation = thread_to_conversation(sample_thread_data)
    message = conversation.messages[0]

    assert conversation.remote_conversation_id == "thread789"
    assert conversation.history_id == "4242"
    assert message.remote_message_id == "msg123456"
    assert message.subject == "Weekly Newsletter - Python Tips"
    assert message.from_raw == "Python <newsletter@python.org>"
    assert message.cc_raw == "team@example.com"
    assert message.bcc_raw is None
    assert message.is_unread is True
    assert message.internal_date == datetime(2023, 11, 14, 22, 13, 20)
    assert conversation.last_message_at == message.internal_date


def test_html_preferred_over_earlier_plain_part(sample_thread_data) -> None:
    payload = sample_thread_data["messages"][0]["payload"]

    assert extract_html_body(payload) == "<b>HTML tips</b>"


def test_no_html_part_returns_none() -> None:
    payload = {
        "mimeType": "multipart/alternative",
        "parts": [{"mimeType": "text/plain", "body": {"data": _encode("only text")}}],
    }

    assert extract_html_body(payload) is None
    assert extract_html_body(None) is None
    assert extract_html_body({}) is None


def test_html_at_top_level() -> None:
    payload = {"mimeType": "text/html", "body": {"data": _encode("<p>hi</p>")}}

    assert extract_html_body(payload) == "<p>hi</p>"


def test_attachment_parts_are_collected(sample_thread_data) -> None:
    parts = extract_attachment_parts(sample_thread_data["messages"][0]["payload"])

    assert len(parts) == 1
    assert parts[0].remote_attachment_id == "ANGjdJ8"
    assert parts[0].filename == "tips.pdf"
    assert parts[0].size == 2048
    assert parts[0].inline is False


def test_inline_part_flagged() -> None:
    payload = {
        "mimeType": "image/png",
        "filename": "logo.png",
        "headers": [{"name": "Content-Disposition", "value": "inline; filename=logo.png"}],
        "body": {"attachmentId": "img1", "size": 10},
    }

    assert extract_attachment_parts(payload)[0].inline is True


def test_get_header_value_is_case_insensitive() -> None:
    headers = [{"name": "message-id", "value": "<x@y>"}, {"name": "Empty", "value": ""}]

    assert get_header_value(headers, "Message-ID") == "<x@y>"
    assert get_header_value(headers, "Empty") is None
    assert get_header_value(headers, "Missing") is None


def test_parse_internal_date_tolerates_garbage() -> None:
    assert parse_internal_date(None) == datetime(1970, 1, 1)


def test_label_to_remote() -> None:
    assert label_to_remote({"id": "Label_9", "name": "Travel"}).kind == "user"
    assert label_to_remote({"id": "INBOX", "name": "INBOX", "type": "system"}).kind == "system"
    assert label_to_remote({"name": "no id"}) is None
