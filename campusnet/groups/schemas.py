from pydantic import BaseModel, ConfigDict, field_validator
from typing import List, Optional, Literal, Union
from datetime import datetime

from campusnet.messaging.schemas import MessageData, PaginationData, PostMessageModel


class GroupData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str = ""
    owner_id: str
    visibility: Literal["public", "private"]
    tags: List[str] = []
    course_id: Optional[str] = None
    last_message_text: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime


# Create / update
class CreateGroupModel(BaseModel):
    name: str
    description: Optional[str] = None
    visibility: Literal["public", "private"] = "public"
    # a list, or a comma separated string
    tags: Optional[Union[List[str], str]] = None
    course_id: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, name: str) -> str:
        if len(name.strip()) > 120:
            raise ValueError("Group name must be at most 120 characters long.")
        return name


class UpdateGroupModel(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    visibility: Optional[Literal["public", "private"]] = None
    tags: Optional[Union[List[str], str]] = None
    course_id: Optional[str] = None


class GroupResponseModel(BaseModel):
    message: str
    group: GroupData


class DeleteGroupResponseModel(BaseModel):
    group_deleted: bool
    id: str


# Listings
class GroupListItem(BaseModel):
    group: GroupData
    role: Optional[str] = None
    members_count: int
    has_invitation: bool = False
    has_join_request: bool = False


class MyGroupsResponseModel(BaseModel):
    count: int
    groups: List[GroupListItem]


class GroupPageResponseModel(BaseModel):
    groups: List[GroupListItem]
    pagination: PaginationData


# Details
class MemberData(BaseModel):
    user_id: str
    username: Optional[str] = None
    role: str
    joined_at: datetime


class InvitationData(BaseModel):
    user_id: str
    username: Optional[str] = None
    invited_by_id: str
    invited_at: datetime


class JoinRequestData(BaseModel):
    user_id: str
    username: Optional[str] = None
    message: str
    requested_at: datetime


class GroupDetailsResponseModel(BaseModel):
    group: GroupData
    role: Optional[str] = None
    members_count: int
    members: List[MemberData]
    invitations: List[InvitationData]
    join_requests: List[JoinRequestData]
    has_invitation: bool
    has_join_request: bool


class MyInvitationItem(BaseModel):
    group: GroupData
    invited_by_id: str
    invited_at: datetime


class MyInvitationsResponseModel(BaseModel):
    invitations: List[MyInvitationItem]


# Membership
class JoinGroupModel(BaseModel):
    message: Optional[str] = None

    @field_validator("message")
    @classmethod
    def validate_message(cls, message: Optional[str]) -> Optional[str]:
        if message is not None and len(message) > 500:
            raise ValueError("Message must be at most 500 characters long.")
        return message


class JoinGroupResponseModel(BaseModel):
    group_id: str
    status: Literal["joined", "requested"]


class MembershipActionResponseModel(BaseModel):
    message: str
    group_id: str
    user_id: str


class UpdateRoleModel(BaseModel):
    role: Literal["admin", "moderator", "member"]


class UpdateRoleResponseModel(BaseModel):
    message: str
    member: MemberData


class LeaveGroupResponseModel(BaseModel):
    group_id: str
    was_group_deleted: bool


# Messages
class PostGroupMessageModel(PostMessageModel):
    reply_to_id: Optional[str] = None
    is_announcement: bool = False


class GroupMessageData(MessageData):
    group_id: str
    reply_to_id: Optional[str] = None
    is_pinned: bool = False
    is_announcement: bool = False


class GroupMessageResponseModel(BaseModel):
    message: GroupMessageData


class GroupMessagesResponseModel(BaseModel):
    messages: List[GroupMessageData]
    pagination: PaginationData


class PinnedMessagesResponseModel(BaseModel):
    messages: List[GroupMessageData]
