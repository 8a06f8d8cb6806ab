"""SQLAlchemy-backed repository for mailbox metadata and sync bookkeeping.

Each public method runs in its own short transaction so that a failure while
processing one conversation or message never rolls back work already
committed for its siblings.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import create_engine, delete, event, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gmail_mirror.exceptions import NotFoundError
from gmail_mirror.models import (
    AttachmentView,
    ConversationSummary,
    MessageView,
    RemoteAttachmentPart,
    RemoteLabel,
    RemoteMessage,
    SyncAuditView,
    SyncKind,
    SyncPhase,
    SyncStatus,
)
from gmail_mirror.store.tables import (
    Attachment,
    Base,
    Conversation,
    ConversationLabel,
    Label,
    Message,
    SyncAuditRecord,
    User,
)
from gmail_mirror.utils import utcnow

logger = structlog.get_logger()


def create_store_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections get foreign key enforcement turned on."""

    engine = create_engine(database_url, future=True)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class MailStoreRepository:
    """Repository for the mirrored mailbox metadata."""

    def __init__(self, engine: Engine) -> None:
        """Create a repository.

        Args:
            engine: SQLAlchemy engine bound to the metadata store.
        """

        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "MailStoreRepository":
        return cls(create_store_engine(database_url))

    def initialize(self) -> None:
        """Create any missing tables."""

        Base.metadata.create_all(self.engine)
        logger.info("mail_store_schema_ready", dialect=self.engine.dialect.name)

    # Users

    def create_user(
        self,
        email: str,
        *,
        name: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expiry: datetime | None = None,
    ) -> User:
        user = User(
            email=email,
            name=name,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
        )
        with self._session() as session:
            session.add(user)
            session.commit()
        return user

    def get_user(self, user_id: int) -> User | None:
        with self._session() as session:
            return session.get(User, user_id)

    def get_user_by_email(self, email: str) -> User | None:
        with self._session() as session:
            return session.scalars(select(User).where(User.email == email)).first()

    def update_credentials(
        self,
        user_id: int,
        access_token: str,
        token_expiry: datetime | None = None,
        refresh_token: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"access_token": access_token, "token_expiry": token_expiry}
        if refresh_token is not None:
            values["refresh_token"] = refresh_token
        self._update(update(User).where(User.id == user_id).values(**values))

    def set_last_sync_at(self, user_id: int, when: datetime) -> None:
        self._update(update(User).where(User.id == user_id).values(last_sync_at=when))

    def users_due_for_sync(self, synced_before: datetime) -> list[User]:
        """Users holding credentials whose last sync is older than `synced_before` or missing."""

        stmt = (
            select(User)
            .where(
                User.access_token.is_not(None),
                User.refresh_token.is_not(None),
                or_(User.last_sync_at.is_(None), User.last_sync_at < synced_before),
            )
            .order_by(User.id)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def delete_user(self, user_id: int) -> bool:
        return self._update(delete(User).where(User.id == user_id)) == 1

    def acquire_sync_lock(self, user_id: int, token: str, *, now: datetime, stale_before: datetime) -> bool:
        """Take the per-user sync lock unless a fresh one is held.

        The conditional UPDATE makes acquisition atomic: of two racing
        callers exactly one sees a matched row.
        """

        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(User.sync_lock_token.is_(None), User.sync_locked_at < stale_before),
            )
            .values(sync_lock_token=token, sync_locked_at=now)
        )
        return self._update(stmt) == 1

    def release_sync_lock(self, user_id: int, token: str) -> None:
        self._update(
            update(User)
            .where(User.id == user_id, User.sync_lock_token == token)
            .values(sync_lock_token=None, sync_locked_at=None)
        )

    # Labels

    def insert_label_if_absent(self, user_id: int, label: RemoteLabel) -> bool:
        """Insert a label the first time it is seen. Existing labels are left untouched."""

        with self._session() as session:
            existing = session.scalars(
                select(Label.id).where(
                    Label.user_id == user_id,
                    Label.remote_label_id == label.remote_label_id,
                )
            ).first()
            if existing is not None:
                return False
            session.add(
                Label(
                    user_id=user_id,
                    remote_label_id=label.remote_label_id,
                    name=label.name,
                    kind=label.kind or "user",
                )
            )
            session.commit()
            return True

    def label_ids_by_remote(self, user_id: int) -> dict[str, int]:
        with self._session() as session:
            rows = session.execute(
                select(Label.remote_label_id, Label.id).where(Label.user_id == user_id)
            ).all()
        return {remote_id: local_id for remote_id, local_id in rows}

    def list_labels(self, user_id: int) -> list[Label]:
        with self._session() as session:
            return list(session.scalars(select(Label).where(Label.user_id == user_id).order_by(Label.name)))

    # Conversations

    def get_conversation(self, user_id: int, remote_conversation_id: str) -> Conversation | None:
        with self._session() as session:
            return session.scalars(
                select(Conversation).where(
                    Conversation.user_id == user_id,
                    Conversation.remote_conversation_id == remote_conversation_id,
                )
            ).first()

    def create_conversation(
        self,
        user_id: int,
        remote_conversation_id: str,
        *,
        history_id: str | None,
        snippet: str | None,
        last_message_at: datetime,
        is_unread: bool,
        is_starred: bool,
        is_important: bool,
        is_draft: bool,
        last_seen_at: datetime,
    ) -> Conversation:
        conversation = Conversation(
            user_id=user_id,
            remote_conversation_id=remote_conversation_id,
            history_id=history_id,
            snippet=snippet,
            last_message_at=last_message_at,
            is_unread=is_unread,
            is_starred=is_starred,
            is_important=is_important,
            is_draft=is_draft,
            last_seen_at=last_seen_at,
        )
        with self._session() as session:
            session.add(conversation)
            session.commit()
        return conversation

    def refresh_conversation(
        self,
        conversation_id: int,
        *,
        history_id: str | None,
        snippet: str | None,
        last_message_at: datetime,
        is_unread: bool,
        is_starred: bool,
        is_important: bool,
        is_draft: bool,
        last_seen_at: datetime,
    ) -> None:
        """Overwrite the mutable fields of an existing conversation."""

        self._update(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                history_id=history_id,
                snippet=snippet,
                last_message_at=last_message_at,
                is_unread=is_unread,
                is_starred=is_starred,
                is_important=is_important,
                is_draft=is_draft,
                last_seen_at=last_seen_at,
                updated_at=utcnow(),
            )
        )

    def replace_conversation_labels(self, conversation_id: int, label_ids: set[int]) -> tuple[int, int]:
        """Make the association rows equal `label_ids`; returns (added, removed)."""

        with self._session() as session:
            existing = set(
                session.scalars(
                    select(ConversationLabel.label_id).where(
                        ConversationLabel.conversation_id == conversation_id
                    )
                )
            )
            to_add = label_ids - existing
            to_remove = existing - label_ids
            if to_remove:
                session.execute(
                    delete(ConversationLabel).where(
                        ConversationLabel.conversation_id == conversation_id,
                        ConversationLabel.label_id.in_(to_remove),
                    )
                )
            session.add_all(
                ConversationLabel(conversation_id=conversation_id, label_id=label_id)
                for label_id in sorted(to_add)
            )
            session.commit()
        return len(to_add), len(to_remove)

    def prune_conversations(self, user_id: int, seen_before: datetime) -> int:
        """Delete conversations not observed since `seen_before`; children cascade."""

        stmt = delete(Conversation).where(
            Conversation.user_id == user_id,
            Conversation.last_seen_at < seen_before,
        )
        return self._update(stmt)

    # Messages and attachments

    def get_message(self, conversation_id: int, remote_message_id: str) -> Message | None:
        with self._session() as session:
            return session.scalars(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.remote_message_id == remote_message_id,
                )
            ).first()

    def create_message(self, conversation_id: int, remote: RemoteMessage, body_key: str | None) -> Message:
        message = Message(
            conversation_id=conversation_id,
            remote_message_id=remote.remote_message_id,
            from_raw=remote.from_raw,
            to_raw=remote.to_raw,
            cc_raw=remote.cc_raw,
            bcc_raw=remote.bcc_raw,
            subject=remote.subject,
            snippet=remote.snippet,
            sent_at=remote.internal_date,
            headers=remote.headers,
            body_key=body_key,
            is_unread=remote.is_unread,
            is_starred=remote.is_starred,
            is_draft=remote.is_draft,
        )
        with self._session() as session:
            session.add(message)
            session.commit()
        return message

    def update_message_flags(self, message_id: int, *, is_unread: bool, is_starred: bool, is_draft: bool) -> None:
        self._update(
            update(Message)
            .where(Message.id == message_id)
            .values(is_unread=is_unread, is_starred=is_starred, is_draft=is_draft, updated_at=utcnow())
        )

    def set_message_body_key(self, message_id: int, body_key: str) -> bool:
        """Record a body key on a message that has none; the key is write-once."""

        stmt = (
            update(Message)
            .where(Message.id == message_id, Message.body_key.is_(None))
            .values(body_key=body_key, updated_at=utcnow())
        )
        return self._update(stmt) == 1

    def list_attachments(self, message_id: int) -> list[Attachment]:
        with self._session() as session:
            return list(
                session.scalars(
                    select(Attachment).where(Attachment.message_id == message_id).order_by(Attachment.id)
                )
            )

    def create_attachment(
        self,
        message_id: int,
        part: RemoteAttachmentPart,
        *,
        blob_key: str,
        size: int,
    ) -> Attachment:
        attachment = Attachment(
            message_id=message_id,
            remote_attachment_id=part.remote_attachment_id,
            filename=part.filename,
            mime_type=part.mime_type,
            size=size,
            blob_key=blob_key,
            inline=part.inline,
        )
        with self._session() as session:
            session.add(attachment)
            session.commit()
        return attachment

    # Sync audit records

    def start_audit(self, user_id: int, kind: SyncKind, started_at: datetime) -> SyncAuditRecord:
        record = SyncAuditRecord(
            user_id=user_id,
            kind=kind.value,
            status=SyncStatus.RUNNING.value,
            phase=SyncPhase.STARTED.value,
            started_at=started_at,
        )
        with self._session() as session:
            session.add(record)
            session.commit()
        return record

    def set_audit_phase(self, audit_id: int, phase: SyncPhase) -> None:
        self._update(
            update(SyncAuditRecord)
            .where(SyncAuditRecord.id == audit_id, SyncAuditRecord.status == SyncStatus.RUNNING.value)
            .values(phase=phase.value)
        )

    def audit_status(self, audit_id: int) -> SyncStatus | None:
        with self._session() as session:
            status = session.scalars(
                select(SyncAuditRecord.status).where(SyncAuditRecord.id == audit_id)
            ).first()
        return SyncStatus(status) if status is not None else None

    def finalize_audit(
        self,
        audit_id: int,
        status: SyncStatus,
        *,
        conversations_synced: int = 0,
        messages_synced: int = 0,
        attachments_synced: int = 0,
        conversations_pruned: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Close an audit record. A record already cancelled keeps its cancelled status."""

        with self._session() as session:
            record = session.get(SyncAuditRecord, audit_id)
            if record is None:
                raise NotFoundError(f"Sync audit record {audit_id} not found")
            if record.status == SyncStatus.RUNNING.value:
                record.status = status.value
            record.phase = SyncPhase.FINALIZED.value
            record.completed_at = record.completed_at or utcnow()
            record.conversations_synced = conversations_synced
            record.messages_synced = messages_synced
            record.attachments_synced = attachments_synced
            record.conversations_pruned = conversations_pruned
            record.error_message = error_message
            session.commit()

    def cancel_audit(self, audit_id: int) -> bool:
        """Mark a running record cancelled; returns False if it already finished."""

        with self._session() as session:
            if session.get(SyncAuditRecord, audit_id) is None:
                raise NotFoundError(f"Sync audit record {audit_id} not found")
            result = session.execute(
                update(SyncAuditRecord)
                .where(
                    SyncAuditRecord.id == audit_id,
                    SyncAuditRecord.status == SyncStatus.RUNNING.value,
                )
                .values(status=SyncStatus.CANCELLED.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def get_audit(self, audit_id: int) -> SyncAuditView | None:
        with self._session() as session:
            record = session.get(SyncAuditRecord, audit_id)
            return _audit_view(record) if record is not None else None

    def recent_audits(self, user_id: int, limit: int = 10) -> list[SyncAuditView]:
        stmt = (
            select(SyncAuditRecord)
            .where(SyncAuditRecord.user_id == user_id)
            .order_by(SyncAuditRecord.started_at.desc(), SyncAuditRecord.id.desc())
            .limit(limit)
        )
        with self._session() as session:
            return [_audit_view(record) for record in session.scalars(stmt)]

    # Mailbox read/write paths

    def list_conversation_summaries(
        self,
        user_id: int,
        *,
        remote_label_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ConversationSummary]:
        """Conversations newest first, optionally restricted to one remote label."""

        stmt = select(Conversation).where(Conversation.user_id == user_id)
        if remote_label_id is not None:
            stmt = (
                stmt.join(ConversationLabel, ConversationLabel.conversation_id == Conversation.id)
                .join(Label, Label.id == ConversationLabel.label_id)
                .where(Label.remote_label_id == remote_label_id)
            )
        stmt = stmt.order_by(Conversation.last_message_at.desc(), Conversation.id.desc()).limit(limit).offset(offset)

        with self._session() as session:
            conversations = list(session.scalars(stmt))
            ids = [c.id for c in conversations]
            counts: dict[int, int] = {}
            labels: dict[int, list[str]] = {cid: [] for cid in ids}
            if ids:
                counts = dict(
                    session.execute(
                        select(Message.conversation_id, func.count(Message.id))
                        .where(Message.conversation_id.in_(ids))
                        .group_by(Message.conversation_id)
                    ).all()
                )
                for cid, remote_id in session.execute(
                    select(ConversationLabel.conversation_id, Label.remote_label_id)
                    .join(Label, Label.id == ConversationLabel.label_id)
                    .where(ConversationLabel.conversation_id.in_(ids))
                    .order_by(Label.remote_label_id)
                ).all():
                    labels[cid].append(remote_id)

        return [
            ConversationSummary(
                id=c.id,
                remote_conversation_id=c.remote_conversation_id,
                snippet=c.snippet,
                last_message_at=c.last_message_at,
                is_unread=c.is_unread,
                is_starred=c.is_starred,
                is_important=c.is_important,
                is_draft=c.is_draft,
                message_count=int(counts.get(c.id, 0)),
                label_ids=labels.get(c.id, []),
            )
            for c in conversations
        ]

    def conversation_messages(self, user_id: int, conversation_id: int) -> list[MessageView]:
        """Messages of an owned conversation, oldest first, with attachments."""

        with self._session() as session:
            self._owned_conversation(session, user_id, conversation_id)
            messages = list(
                session.scalars(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.sent_at, Message.id)
                )
            )
            by_message: dict[int, list[AttachmentView]] = {m.id: [] for m in messages}
            if messages:
                for a in session.scalars(
                    select(Attachment)
                    .where(Attachment.message_id.in_(list(by_message)))
                    .order_by(Attachment.id)
                ):
                    by_message[a.message_id].append(
                        AttachmentView(
                            id=a.id,
                            filename=a.filename,
                            mime_type=a.mime_type,
                            size=a.size,
                            inline=a.inline,
                        )
                    )

        return [
            MessageView(
                id=m.id,
                remote_message_id=m.remote_message_id,
                from_raw=m.from_raw,
                to_raw=m.to_raw,
                cc_raw=m.cc_raw,
                bcc_raw=m.bcc_raw,
                subject=m.subject,
                snippet=m.snippet,
                sent_at=m.sent_at,
                has_body=m.body_key is not None,
                is_unread=m.is_unread,
                is_starred=m.is_starred,
                attachments=by_message[m.id],
            )
            for m in messages
        ]

    def get_owned_message(self, user_id: int, message_id: int) -> Message:
        stmt = (
            select(Message)
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Message.id == message_id, Conversation.user_id == user_id)
        )
        with self._session() as session:
            message = session.scalars(stmt).first()
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def get_owned_attachment(self, user_id: int, attachment_id: int) -> Attachment:
        stmt = (
            select(Attachment)
            .join(Message, Message.id == Attachment.message_id)
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Attachment.id == attachment_id, Conversation.user_id == user_id)
        )
        with self._session() as session:
            attachment = session.scalars(stmt).first()
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")
        return attachment

    def mark_conversation_read(self, user_id: int, conversation_id: int) -> None:
        with self._session() as session:
            conversation = self._owned_conversation(session, user_id, conversation_id)
            conversation.is_unread = False
            session.commit()

    def toggle_conversation_star(self, user_id: int, conversation_id: int) -> bool:
        with self._session() as session:
            conversation = self._owned_conversation(session, user_id, conversation_id)
            conversation.is_starred = not conversation.is_starred
            session.commit()
            return conversation.is_starred

    def mark_message_read(self, user_id: int, message_id: int) -> int:
        """Mark an owned message read; returns its conversation id."""

        with self._session() as session:
            message = session.scalars(
                select(Message)
                .join(Conversation, Conversation.id == Message.conversation_id)
                .where(Message.id == message_id, Conversation.user_id == user_id)
            ).first()
            if message is None:
                raise NotFoundError(f"Message {message_id} not found")
            message.is_unread = False
            session.commit()
            return message.conversation_id

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _update(self, stmt: Any) -> int:
        with self._session() as session:
            result = session.execute(stmt.execution_options(synchronize_session=False))
            session.commit()
            return int(result.rowcount or 0)

    def _owned_conversation(self, session: Session, user_id: int, conversation_id: int) -> Conversation:
        conversation = session.get(Conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation


def _audit_view(record: SyncAuditRecord) -> SyncAuditView:
    return SyncAuditView(
        id=record.id,
        user_id=record.user_id,
        kind=SyncKind(record.kind),
        status=SyncStatus(record.status),
        phase=SyncPhase(record.phase) if record.phase else None,
        started_at=record.started_at,
        completed_at=record.completed_at,
        conversations_synced=record.conversations_synced,
        messages_synced=record.messages_synced,
        attachments_synced=record.attachments_synced,
        conversations_pruned=record.conversations_pruned,
        error_message=record.error_message,
    )
