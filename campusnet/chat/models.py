from sqlalchemy import (
    Column,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from campusnet.core.database import Base, new_id, utcnow
from campusnet.messaging.models import MessageColumns, ReadReceiptColumns


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)

    # Only one direct conversation per user pair
    pair_key = Column(String(130), nullable=True, unique=True)

    # by-id reference to the accepted connection that owns this channel
    connection_id = Column(String(36), nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, default=True)

    last_message_text = Column(Text, nullable=True)
    last_message_sender_id = Column(String(64), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    last_message_read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    participants = relationship(
        "ConversationParticipant",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def participant_ids(self) -> list:
        return sorted(p.user_id for p in self.participants)


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )


class DirectMessage(MessageColumns, Base):
    __tablename__ = "direct_messages"

    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )

    reads = relationship(
        "DirectMessageRead",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DirectMessageRead.read_at",
    )

    __table_args__ = (
        Index("ix_direct_messages_thread_created", "conversation_id", "created_at"),
    )

    @property
    def thread_id(self) -> str:
        return self.conversation_id


class DirectMessageRead(ReadReceiptColumns, Base):
    __tablename__ = "direct_message_reads"

    message_id = Column(
        String(36), ForeignKey("direct_messages.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_direct_message_read"),
    )
