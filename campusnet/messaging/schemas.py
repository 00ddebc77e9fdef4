from pydantic import BaseModel, field_validator
from typing import List, Optional
from datetime import datetime


class AttachmentData(BaseModel):
    url: str
    path: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None


class EditRecord(BaseModel):
    text: str
    edited_at: str


class MessageData(BaseModel):
    id: str
    sender_id: str
    sender_username: Optional[str] = None
    text: str
    attachments: List[AttachmentData] = []
    edited: bool = False
    edit_history: List[EditRecord] = []
    read_by: List[str] = []
    created_at: datetime


class PaginationData(BaseModel):
    total: int
    page: int
    page_size: int
    pages: int
    has_more: bool


# Post / edit
class PostMessageModel(BaseModel):
    text: Optional[str] = None
    attachments: List[AttachmentData] = []

    @field_validator("text")
    @classmethod
    def validate_text(cls, text: Optional[str]) -> Optional[str]:
        if text is not None and len(text) > 5000:
            raise ValueError("Message must be at most 5000 characters long.")
        return text


class EditMessageModel(BaseModel):
    text: str


class DeleteMessageResponseModel(BaseModel):
    message_deleted: bool
    id: str


def message_fields(message, usernames: dict) -> dict:
    """Common payload fields of a direct or group message."""
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "sender_username": usernames.get(message.sender_id),
        "text": message.text,
        "attachments": message.attachments or [],
        "edited": message.edited,
        "edit_history": message.edit_history or [],
        "read_by": sorted(message.read_by_user_ids()),
        "created_at": message.created_at,
    }
