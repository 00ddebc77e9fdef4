from sqlalchemy import Column, String, Text, Boolean, DateTime, JSON

from campusnet.core.database import new_id, utcnow


class MessageColumns:
    """Columns shared by direct and group messages."""

    id = Column(String(36), primary_key=True, default=new_id)
    sender_id = Column(String(64), nullable=False, index=True)
    text = Column(Text, nullable=False, default="")

    # [{url, path, filename, mime_type, size}]
    attachments = Column(JSON, nullable=False, default=list)

    edited = Column(Boolean, nullable=False, default=False)
    # [{text, edited_at}], oldest first
    edit_history = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def read_by_user_ids(self) -> set:
        return {r.user_id for r in self.reads}


class ReadReceiptColumns:
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
