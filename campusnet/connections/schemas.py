from pydantic import BaseModel, ConfigDict, field_validator
from typing import List, Optional, Literal
from datetime import datetime


class ConnectionData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str
    recipient_id: str
    status: str
    message: str = ""
    requested_at: datetime
    responded_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    conversation_id: Optional[str] = None


# send connection request
class ConnectionRequestModel(BaseModel):
    message: Optional[str] = None

    @field_validator("message")
    @classmethod
    def validate_message(cls, message: Optional[str]) -> Optional[str]:
        if message is not None and len(message) > 500:
            raise ValueError("Message must be at most 500 characters long.")
        return message


class ConnectionRequestResponseModel(BaseModel):
    message: str
    connection: ConnectionData


# respond to a connection request
class RespondToConnectionModel(BaseModel):
    decision: Literal["accept", "reject"]


class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    is_active: bool
    created_at: datetime


class RespondToConnectionResponseModel(BaseModel):
    connection: ConnectionData
    conversation: Optional[ConversationSummary] = None


# remove connection
class RemoveConnectionResponseModel(BaseModel):
    connection_removed: bool
    id: str


# pending requests
class ConnectionRequestItem(BaseModel):
    connection: ConnectionData
    user_id: str
    username: Optional[str] = None


class ConnectionRequestsResponseModel(BaseModel):
    received: List[ConnectionRequestItem]
    sent: List[ConnectionRequestItem]


# my connections
class ConnectionItem(BaseModel):
    id: str
    user_id: str
    username: Optional[str] = None
    connected_since: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    conversation_id: Optional[str] = None


class MyConnectionsResponseModel(BaseModel):
    count: int
    connection_count: int
    connections: List[ConnectionItem]


# status between two users
class ConnectionStatusResponseModel(BaseModel):
    status: Literal[
        "none", "pending_sent", "pending_received", "accepted", "rejected", "blocked"
    ]
    connection_id: Optional[str] = None
