from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    JSON,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from campusnet.core.database import Base, new_id, utcnow
from campusnet.messaging.models import MessageColumns, ReadReceiptColumns


GROUP_ROLES = ("admin", "moderator", "member")
GROUP_VISIBILITIES = ("public", "private")


class StudyGroup(Base):
    __tablename__ = "study_groups"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=False, default="")
    owner_id = Column(String(64), nullable=False, index=True)
    visibility = Column(String(16), nullable=False, default="public")
    tags = Column(JSON, nullable=False, default=list)

    # opaque reference into the academic records service
    course_id = Column(String(64), nullable=True)

    # bumped by every roster mutation; writers claim it with a conditional update
    roster_version = Column(Integer, nullable=False, default=0)

    last_message_text = Column(Text, nullable=True)
    last_message_sender_id = Column(String(64), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_activity_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint("visibility IN ('public', 'private')", name="ck_study_groups_visibility"),
    )

    @property
    def is_private(self) -> bool:
        return self.visibility == "private"


class GroupMembership(Base):
    __tablename__ = "group_memberships"

    id = Column(String(36), primary_key=True, default=new_id)
    group_id = Column(
        String(36), ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(16), nullable=False, default="member")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_membership"),
        CheckConstraint("role IN ('admin', 'moderator', 'member')", name="ck_group_membership_role"),
        Index("ix_group_memberships_group_role", "group_id", "role"),
    )


class GroupInvitation(Base):
    __tablename__ = "group_invitations"

    id = Column(String(36), primary_key=True, default=new_id)
    group_id = Column(
        String(36), ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False, index=True)
    invited_by_id = Column(String(64), nullable=False)
    invited_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_invitation"),
    )


class GroupJoinRequest(Base):
    __tablename__ = "group_join_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    group_id = Column(
        String(36), ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False, index=True)
    message = Column(Text, nullable=False, default="")
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_join_request"),
    )


class GroupMessage(MessageColumns, Base):
    __tablename__ = "group_messages"

    group_id = Column(
        String(36), ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=False
    )
    reply_to_id = Column(
        String(36), ForeignKey("group_messages.id", ondelete="SET NULL"), nullable=True
    )
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_announcement = Column(Boolean, nullable=False, default=False)

    reads = relationship(
        "GroupMessageRead",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="GroupMessageRead.read_at",
    )

    __table_args__ = (
        Index("ix_group_messages_thread_created", "group_id", "created_at"),
    )

    @property
    def thread_id(self) -> str:
        return self.group_id


class GroupMessageRead(ReadReceiptColumns, Base):
    __tablename__ = "group_message_reads"

    message_id = Column(
        String(36), ForeignKey("group_messages.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_group_message_read"),
    )
