from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)

from campusnet.core.database import Base, new_id, utcnow


class Connection(Base):
    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=new_id)

    requester_id = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)

    # "min|max" of the two ids; one row per unordered pair, whatever its status
    pair_key = Column(String(130), nullable=False)

    status = Column(String(16), nullable=False, default="pending")
    message = Column(Text, nullable=False, default="")

    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    last_interaction_at = Column(DateTime(timezone=True), nullable=True)

    # set iff status == "accepted"
    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("pair_key", name="uq_connections_pair"),
        CheckConstraint("requester_id <> recipient_id", name="ck_connections_not_self"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'blocked')",
            name="ck_connections_status",
        ),
        Index("ix_connections_recipient_status", "recipient_id", "status"),
    )

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.recipient_id)

    def other_party(self, user_id: str) -> str:
        return self.recipient_id if user_id == self.requester_id else self.requester_id


class UserStats(Base):
    """Denormalized per-user counters, always recomputed from the ledger."""

    __tablename__ = "user_stats"

    user_id = Column(String(64), primary_key=True)
    connection_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
