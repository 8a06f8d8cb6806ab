"""Conversation flags derived from the label sets of its messages."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class ConversationFlags:
    is_unread: bool = False
    is_starred: bool = False
    is_important: bool = False
    is_draft: bool = False


def union_labels(label_sets: Iterable[Iterable[str]]) -> set[str]:
    labels: set[str] = set()
    for label_ids in label_sets:
        labels.update(label_ids)
    return labels


def derive_conversation_flags(label_sets: Iterable[Iterable[str]]) -> ConversationFlags:
    """A conversation carries a flag when any one of its messages does."""

    labels = union_labels(label_sets)
    return ConversationFlags(
        is_unread="UNREAD" in labels,
        is_starred="STARRED" in labels,
        is_important="IMPORTANT" in labels,
        is_draft="DRAFT" in labels,
    )
