"""
Message store shared by direct conversations and study groups.

A ``MessageStore`` knows how messages, read receipts, edits, pins and
pagination work. Everything thread specific (who may read or write, what a
moderator is, which summary fields to keep fresh) lives in a thread adapter:

    class ThreadAdapter:
        message_model         # ORM class using MessageColumns
        read_model            # ORM class using ReadReceiptColumns
        thread_column         # message attribute holding the thread id
        name                  # label used in log lines

        def load_thread(session, thread_id): ...           # NotFound
        def require_access(session, thread, user_id): ...  # NotAParticipant / NotAMember
        def can_moderate(session, thread, user_id) -> bool
        def prepare_flags(session, thread, sender_id, flags) -> dict
        def on_posted(session, thread, message): ...
        def on_read(session, thread, reader_id): ...
        def refresh_summary(session, thread): ...

Every public method runs as one ``atomic`` unit on the given session.
"""

import math
import logging
from typing import List, Optional

from sqlalchemy import select, func, or_, and_
from sqlalchemy.orm import Session

from campusnet.core.database import atomic, dialect_insert, new_id, utcnow
from campusnet.core.errors import (
    EmptyMessage,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from campusnet.core.storage import attachment_paths, discard_attachments
from campusnet.utils.env_helper import env_int

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = env_int("MAX_PAGE_SIZE", 100)


def validate_page(page: int, page_size: int):
    if page < 1:
        raise ValidationError("page must be 1 or greater.")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}.")


def clean_attachments(attachments) -> list:
    cleaned = []
    for item in attachments or []:
        if hasattr(item, "model_dump"):
            item = item.model_dump()
        if not item.get("url"):
            raise ValidationError("Every attachment needs a url.")
        cleaned.append(
            {
                "url": item["url"],
                "path": item.get("path"),
                "filename": item.get("filename"),
                "mime_type": item.get("mime_type"),
                "size": item.get("size"),
            }
        )
    return cleaned


class MessageStore:
    def __init__(self, adapter):
        self.adapter = adapter
        self.model = adapter.message_model
        self.read_model = adapter.read_model
        self.thread_column = getattr(self.model, adapter.thread_column)

    # Lookups

    def get_message(self, session: Session, message_id: str, thread_id: str = None):
        message = session.get(self.model, message_id)
        if message is None or (thread_id is not None and message.thread_id != thread_id):
            raise NotFound("Message not found.")
        return message

    def _thread_of(self, session: Session, message):
        return self.adapter.load_thread(session, message.thread_id)

    def _require_author_or_moderator(self, session: Session, thread, message, actor_id: str, verb: str):
        self.adapter.require_access(session, thread, actor_id)
        if message.sender_id == actor_id:
            return
        if not self.adapter.can_moderate(session, thread, actor_id):
            raise NotAuthorized(f"You can only {verb} your own messages.")

    # Read receipts

    def _add_reads(self, session: Session, message_ids: List[str], user_id: str):
        """Set-add receipts; rows that already exist are left untouched."""
        if not message_ids:
            return
        now = utcnow()
        stmt = (
            dialect_insert(session, self.read_model)
            .values(
                [
                    {"id": new_id(), "message_id": mid, "user_id": user_id, "read_at": now}
                    for mid in message_ids
                ]
            )
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        session.execute(stmt)

    def newest_message(self, session: Session, thread_id: str):
        return session.execute(
            select(self.model)
            .where(self.thread_column == thread_id)
            .order_by(self.model.created_at.desc(), self.model.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def is_read_by_other(self, session: Session, message) -> bool:
        """True when anyone besides the sender holds a receipt for ``message``."""
        count = session.execute(
            select(func.count())
            .select_from(self.read_model)
            .where(
                self.read_model.message_id == message.id,
                self.read_model.user_id != message.sender_id,
            )
        ).scalar_one()
        return count > 0

    # Operations

    def post(
        self,
        session: Session,
        thread_id: str,
        sender_id: str,
        text: Optional[str] = None,
        attachments=None,
        **flags,
    ):
        text = (text or "").strip()
        attachments = clean_attachments(attachments)
        if not text and not attachments:
            raise EmptyMessage()

        with atomic(session):
            thread = self.adapter.load_thread(session, thread_id)
            self.adapter.require_access(session, thread, sender_id)
            extra = self.adapter.prepare_flags(session, thread, sender_id, flags)

            message = self.model(
                id=new_id(),
                sender_id=sender_id,
                text=text,
                attachments=attachments,
                edit_history=[],
                created_at=utcnow(),
                **{self.adapter.thread_column: thread_id},
                **extra,
            )
            session.add(message)
            session.flush()

            self._add_reads(session, [message.id], sender_id)
            self.adapter.on_posted(session, thread, message)

        logger.info(
            f"message_posted thread={self.adapter.name}:{thread_id} "
            f"message_id={message.id} sender={sender_id} attachments={len(attachments)}"
        )
        return message

    def fetch(
        self,
        session: Session,
        thread_id: str,
        actor_id: str,
        page: int = 1,
        page_size: int = 20,
        before: Optional[str] = None,
    ) -> dict:
        """Newest-first page of a thread; marks what the actor just saw as read."""
        validate_page(page, page_size)

        with atomic(session):
            thread = self.adapter.load_thread(session, thread_id)
            self.adapter.require_access(session, thread, actor_id)

            query = select(self.model).where(self.thread_column == thread_id)

            if before:
                cursor = session.get(self.model, before)
                if cursor is None or cursor.thread_id != thread_id:
                    raise ValidationError("Unknown cursor message.")
                query = query.where(
                    or_(
                        self.model.created_at < cursor.created_at,
                        and_(
                            self.model.created_at == cursor.created_at,
                            self.model.id < cursor.id,
                        ),
                    )
                )

            total = session.execute(
                select(func.count()).select_from(query.subquery())
            ).scalar_one()

            messages = (
                session.execute(
                    query.order_by(self.model.created_at.desc(), self.model.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                .scalars()
                .all()
            )

            unread_ids = [m.id for m in messages if m.sender_id != actor_id]
            self._add_reads(session, unread_ids, actor_id)
            if unread_ids:
                self.adapter.on_read(session, thread, actor_id)

        return {
            "messages": messages,
            "pagination": {
                "total": total,
                "page": page,
                "page_size": page_size,
                "pages": math.ceil(total / page_size) if total else 0,
                "has_more": page * page_size < total,
            },
        }

    def mark_read(self, session: Session, message_id: str, actor_id: str, thread_id: str = None):
        with atomic(session):
            message = self.get_message(session, message_id, thread_id)
            thread = self._thread_of(session, message)
            self.adapter.require_access(session, thread, actor_id)

            if message.sender_id == actor_id:
                raise InvalidState("Cannot mark your own message as read.")

            self._add_reads(session, [message.id], actor_id)
            self.adapter.on_read(session, thread, actor_id)

        return message

    def edit(self, session: Session, message_id: str, actor_id: str, text: str, thread_id: str = None):
        text = (text or "").strip()
        if not text:
            raise EmptyMessage("Please provide text for the message.")

        with atomic(session):
            message = self.get_message(session, message_id, thread_id)
            thread = self._thread_of(session, message)
            self._require_author_or_moderator(session, thread, message, actor_id, "edit")

            # reassign so the JSON column is flagged dirty
            message.edit_history = list(message.edit_history or []) + [
                {"text": message.text, "edited_at": utcnow().isoformat()}
            ]
            message.text = text
            message.edited = True
            session.flush()

            self.adapter.refresh_summary(session, thread)

        logger.info(f"message_edited thread={self.adapter.name} message_id={message_id} actor={actor_id}")
        return message

    def delete(self, session: Session, message_id: str, actor_id: str, blob_store, thread_id: str = None):
        with atomic(session):
            message = self.get_message(session, message_id, thread_id)
            thread = self._thread_of(session, message)
            self._require_author_or_moderator(session, thread, message, actor_id, "delete")

            paths = attachment_paths(message.attachments)
            session.delete(message)
            session.flush()

            self.adapter.refresh_summary(session, thread)

        discard_attachments(blob_store, paths)
        logger.info(f"message_deleted thread={self.adapter.name} message_id={message_id} actor={actor_id}")
        return message_id

    def set_pinned(self, session: Session, message_id: str, actor_id: str, pinned: bool, thread_id: str = None):
        with atomic(session):
            message = self.get_message(session, message_id, thread_id)
            thread = self._thread_of(session, message)
            self.adapter.require_access(session, thread, actor_id)

            if not self.adapter.can_moderate(session, thread, actor_id):
                verb = "pin" if pinned else "unpin"
                raise NotAuthorized(f"Only admins and moderators can {verb} messages.")

            message.is_pinned = pinned

        logger.info(
            f"message_pin_set thread={self.adapter.name} message_id={message_id} pinned={pinned}"
        )
        return message

    def pin(self, session: Session, message_id: str, actor_id: str, thread_id: str = None):
        return self.set_pinned(session, message_id, actor_id, True, thread_id)

    def unpin(self, session: Session, message_id: str, actor_id: str, thread_id: str = None):
        return self.set_pinned(session, message_id, actor_id, False, thread_id)

    def list_pinned(self, session: Session, thread_id: str, actor_id: str) -> list:
        thread = self.adapter.load_thread(session, thread_id)
        self.adapter.require_access(session, thread, actor_id)

        if not hasattr(self.model, "is_pinned"):
            return []
        return (
            session.execute(
                select(self.model)
                .where(self.thread_column == thread_id, self.model.is_pinned.is_(True))
                .order_by(self.model.created_at.desc())
            )
            .scalars()
            .all()
        )
