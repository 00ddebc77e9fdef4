from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import List, Optional

from campusnet.messaging.schemas import MessageData, PaginationData


# Direct conversations
class CreateDirectConversationModel(BaseModel):
    receiver_id: str


class CreateDirectConversationResponseModel(BaseModel):
    conversation_id: str
    is_new: bool


# Get Conversations
class ConversationData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    connection_id: Optional[str] = None
    is_active: bool
    last_message_text: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_read: bool = False
    created_at: datetime
    updated_at: datetime


class ConversationItem(BaseModel):
    conversation: ConversationData
    other_user_id: Optional[str] = None
    other_username: Optional[str] = None
    unread_count: int = 0


class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationItem]


class GetConversationResponseModel(BaseModel):
    conversation: ConversationData
    participant_ids: List[str]


# Messages
class DirectMessageData(MessageData):
    conversation_id: str


class SendMessageResponseModel(BaseModel):
    message: DirectMessageData


class GetMessagesResponseModel(BaseModel):
    messages: List[DirectMessageData]
    pagination: PaginationData
