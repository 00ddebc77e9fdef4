from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from campusnet.core.database import get_db
from campusnet.core.dependencies import get_current_user_id
from campusnet.core.errors import NotFound
from campusnet.core.identity import get_profiles
from campusnet.core.storage import get_blob_store
from campusnet.messaging.schemas import (
    EditMessageModel,
    DeleteMessageResponseModel,
    message_fields,
)

from . import registry, membership
from .threads import group_messages
from .schemas import (
    GroupData,
    CreateGroupModel,
    UpdateGroupModel,
    GroupResponseModel,
    DeleteGroupResponseModel,
    GroupListItem,
    MyGroupsResponseModel,
    GroupPageResponseModel,
    MemberData,
    InvitationData,
    JoinRequestData,
    GroupDetailsResponseModel,
    MyInvitationItem,
    MyInvitationsResponseModel,
    JoinGroupModel,
    JoinGroupResponseModel,
    MembershipActionResponseModel,
    UpdateRoleModel,
    UpdateRoleResponseModel,
    LeaveGroupResponseModel,
    PostGroupMessageModel,
    GroupMessageResponseModel,
    GroupMessagesResponseModel,
    PinnedMessagesResponseModel,
)


router = APIRouter()


def group_message_payload(message, usernames: dict) -> dict:
    return {
        **message_fields(message, usernames),
        "group_id": message.group_id,
        "reply_to_id": message.reply_to_id,
        "is_pinned": message.is_pinned,
        "is_announcement": message.is_announcement,
    }


def list_item(item: dict) -> GroupListItem:
    return GroupListItem(
        group=GroupData.model_validate(item["group"]),
        role=item.get("role"),
        members_count=item["members_count"],
        has_invitation=item.get("has_invitation", False),
        has_join_request=item.get("has_join_request", False),
    )


# Groups


@router.post("", response_model=GroupResponseModel, status_code=201)
def create_group(
    data: CreateGroupModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Create a study group. The creator becomes its only admin.

    **Input**
    - `name`: Required
    - `description`, `tags`, `course_id`: Optional
    - `visibility`: `public` (anyone may join) or `private` (invite or request)

    **Errors**
    - `400 ValidationError`: Missing name or bad visibility
    """
    group = registry.create_group(
        db,
        current_user_id,
        data.name,
        description=data.description,
        visibility=data.visibility,
        tags=data.tags,
        course_id=data.course_id,
    )
    return {"message": "Study group created successfully.", "group": group}


@router.get("", response_model=MyGroupsResponseModel, status_code=200)
def get_my_groups(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Groups the authenticated user belongs to, most recently active first."""
    items = [list_item(item) for item in registry.list_my_groups(db, current_user_id)]
    return {"count": len(items), "groups": items}


@router.get("/available", response_model=GroupPageResponseModel, status_code=200)
def get_available_groups(
    page: int = Query(1),
    page_size: int = Query(10),
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Public groups the authenticated user has not joined yet."""
    result = registry.list_available_groups(db, current_user_id, page=page, page_size=page_size)
    return {
        "groups": [list_item(item) for item in result["groups"]],
        "pagination": result["pagination"],
    }


@router.get("/search", response_model=GroupPageResponseModel, status_code=200)
def search_groups(
    q: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    page: int = Query(1),
    page_size: int = Query(10),
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Search groups by name/description text and by tag.

    Private groups only show up for their members.

    **Errors**
    - `400`: Neither `q` nor `tag` given
    """
    result = registry.search_groups(
        db, current_user_id, q=q, tag=tag, page=page, page_size=page_size
    )
    return {
        "groups": [list_item(item) for item in result["groups"]],
        "pagination": result["pagination"],
    }


@router.get("/invitations", response_model=MyInvitationsResponseModel, status_code=200)
def get_my_invitations(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Pending invitations sent to the authenticated user."""
    rows = registry.list_my_invitations(db, current_user_id)
    return {
        "invitations": [
            MyInvitationItem(
                group=GroupData.model_validate(row["group"]),
                invited_by_id=row["invitation"].invited_by_id,
                invited_at=row["invitation"].invited_at,
            )
            for row in rows
        ]
    }


@router.get("/{group_id}", response_model=GroupDetailsResponseModel, status_code=200)
def get_group(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Group details.

    Members see the member list. Admins and moderators also see pending
    invitations and join requests.

    **Errors**
    - `403`: Private group and you are neither a member nor invited
    - `404`: No such group
    """
    details = registry.get_group_details(db, group_id, current_user_id)

    user_ids = (
        [m.user_id for m in details["members"]]
        + [i.user_id for i in details["invitations"]]
        + [r.user_id for r in details["join_requests"]]
    )
    usernames = profiles.get_usernames(user_ids)

    return {
        **details,
        "members": [
            MemberData(
                user_id=m.user_id, username=usernames.get(m.user_id), role=m.role, joined_at=m.joined_at
            )
            for m in details["members"]
        ],
        "invitations": [
            InvitationData(
                user_id=i.user_id,
                username=usernames.get(i.user_id),
                invited_by_id=i.invited_by_id,
                invited_at=i.invited_at,
            )
            for i in details["invitations"]
        ],
        "join_requests": [
            JoinRequestData(
                user_id=r.user_id,
                username=usernames.get(r.user_id),
                message=r.message,
                requested_at=r.requested_at,
            )
            for r in details["join_requests"]
        ],
    }


@router.put("/{group_id}", response_model=GroupResponseModel, status_code=200)
def update_group(
    group_id: str,
    data: UpdateGroupModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Update group fields. Admins and moderators only."""
    group = registry.update_group(
        db,
        group_id,
        current_user_id,
        name=data.name,
        description=data.description,
        visibility=data.visibility,
        tags=data.tags,
        course_id=data.course_id,
    )
    return {"message": "Study group updated successfully.", "group": group}


@router.delete("/{group_id}", response_model=DeleteGroupResponseModel, status_code=200)
def delete_group(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """
    Delete a group with its members, invitations, requests and messages.

    **Errors**
    - `403`: Only admins can delete a group
    - `404`: No such group
    """
    deleted_id = registry.delete_group(db, group_id, current_user_id, blob_store)
    return {"group_deleted": True, "id": deleted_id}


# Membership


@router.post("/{group_id}/join", response_model=JoinGroupResponseModel, status_code=200)
def join_group(
    group_id: str,
    data: Optional[JoinGroupModel] = None,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Join a public group, or ask to join a private one.

    **Returns**
    - `status`: `joined` for public groups, `requested` for private ones

    **Errors**
    - `400`: Already a member, already requested, or holding an invitation
    """
    message = data.message if data else None
    return membership.join(db, group_id, current_user_id, message)


@router.post(
    "/{group_id}/invitations/accept",
    response_model=MembershipActionResponseModel,
    status_code=200,
)
def accept_invitation(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Accept an invitation and join the group as a member."""
    membership.accept_invite(db, group_id, current_user_id)
    return {"message": "Invitation accepted.", "group_id": group_id, "user_id": current_user_id}


@router.post(
    "/{group_id}/invitations/decline",
    response_model=MembershipActionResponseModel,
    status_code=200,
)
def decline_invitation(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Decline an invitation."""
    membership.decline_invite(db, group_id, current_user_id)
    return {"message": "Invitation declined.", "group_id": group_id, "user_id": current_user_id}


@router.post(
    "/{group_id}/invitations/{user_id}",
    response_model=MembershipActionResponseModel,
    status_code=200,
)
def invite_user(
    group_id: str,
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Invite a user to the group. Any member may invite.

    **Errors**
    - `400`: Inviting yourself, or the user is already a member, invited or
      waiting on a join request
    - `403`: You are not a member
    - `404`: No such group or user
    """
    if user_id != current_user_id and not profiles.exists(user_id):
        raise NotFound("User not found.")

    membership.invite(db, group_id, current_user_id, user_id)
    return {"message": "Invitation sent.", "group_id": group_id, "user_id": user_id}


@router.post(
    "/{group_id}/requests/{user_id}/approve",
    response_model=MembershipActionResponseModel,
    status_code=200,
)
def approve_join_request(
    group_id: str,
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Approve a pending join request. Admins and moderators only."""
    membership.approve_join_request(db, group_id, current_user_id, user_id)
    return {"message": "Join request approved.", "group_id": group_id, "user_id": user_id}


@router.post(
    "/{group_id}/requests/{user_id}/reject",
    response_model=MembershipActionResponseModel,
    status_code=200,
)
def reject_join_request(
    group_id: str,
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Reject a pending join request. Admins and moderators only."""
    membership.reject_join_request(db, group_id, current_user_id, user_id)
    return {"message": "Join request rejected.", "group_id": group_id, "user_id": user_id}


@router.put(
    "/{group_id}/members/{user_id}/role",
    response_model=UpdateRoleResponseModel,
    status_code=200,
)
def update_member_role(
    group_id: str,
    user_id: str,
    data: UpdateRoleModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Change a member's role. Admins only.

    **Errors**
    - `400 LastAdminGuard`: Demoting the only admin
    - `403`: You are not an admin
    - `404`: The user is not a member
    """
    updated = membership.update_role(db, group_id, current_user_id, user_id, data.role)
    return {
        "message": "Member role updated.",
        "member": MemberData(
            user_id=updated.user_id,
            username=profiles.get_username(updated.user_id),
            role=updated.role,
            joined_at=updated.joined_at,
        ),
    }


@router.delete(
    "/{group_id}/members/{user_id}",
    response_model=LeaveGroupResponseModel,
    status_code=200,
)
def remove_member(
    group_id: str,
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Remove a member. Admins and moderators only; moderators cannot remove admins.

    **Errors**
    - `400`: Removing yourself (use leave)
    - `403 InsufficientRole`: A moderator tried to remove an admin
    """
    return membership.remove_member(db, group_id, current_user_id, user_id)


@router.post("/{group_id}/leave", response_model=LeaveGroupResponseModel, status_code=200)
def leave_group(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """
    Leave a group. The last member leaving deletes the group.

    **Errors**
    - `400 LastAdminGuard`: You are the only admin and others remain
    """
    return membership.leave(db, group_id, current_user_id, blob_store)


# Messages


@router.get(
    "/{group_id}/messages", response_model=GroupMessagesResponseModel, status_code=200
)
def get_group_messages(
    group_id: str,
    page: int = Query(1),
    page_size: int = Query(20),
    before: Optional[str] = Query(None),
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Group messages, newest first. Members only. Returned messages are marked read."""
    result = group_messages.fetch(
        db, group_id, current_user_id, page=page, page_size=page_size, before=before
    )
    usernames = profiles.get_usernames(m.sender_id for m in result["messages"])
    return {
        "messages": [group_message_payload(m, usernames) for m in result["messages"]],
        "pagination": result["pagination"],
    }


@router.post(
    "/{group_id}/messages", response_model=GroupMessageResponseModel, status_code=201
)
def post_group_message(
    group_id: str,
    data: PostGroupMessageModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Post a message to the group.

    **Input**
    - `text` and/or `attachments`
    - `reply_to_id`: A message of the same group
    - `is_announcement`: Honoured for admins and moderators only

    **Errors**
    - `400 EmptyMessage`: No text and no attachments
    - `403 NotAMember`: You are not a member
    """
    message = group_messages.post(
        db,
        group_id,
        current_user_id,
        text=data.text,
        attachments=data.attachments,
        reply_to_id=data.reply_to_id,
        is_announcement=data.is_announcement,
    )
    return {"message": group_message_payload(message, profiles.get_usernames([current_user_id]))}


@router.get(
    "/{group_id}/messages/pinned",
    response_model=PinnedMessagesResponseModel,
    status_code=200,
)
def get_pinned_messages(
    group_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Pinned messages of the group, newest first."""
    messages = group_messages.list_pinned(db, group_id, current_user_id)
    usernames = profiles.get_usernames(m.sender_id for m in messages)
    return {"messages": [group_message_payload(m, usernames) for m in messages]}


@router.put(
    "/{group_id}/messages/{message_id}",
    response_model=GroupMessageResponseModel,
    status_code=200,
)
def edit_group_message(
    group_id: str,
    message_id: str,
    data: EditMessageModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Edit a message. Its sender, admins and moderators may edit."""
    message = group_messages.edit(db, message_id, current_user_id, data.text, thread_id=group_id)
    return {"message": group_message_payload(message, profiles.get_usernames([message.sender_id]))}


@router.delete(
    "/{group_id}/messages/{message_id}",
    response_model=DeleteMessageResponseModel,
    status_code=200,
)
def delete_group_message(
    group_id: str,
    message_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """Delete a message. Its sender, admins and moderators may delete."""
    deleted_id = group_messages.delete(
        db, message_id, current_user_id, blob_store, thread_id=group_id
    )
    return {"message_deleted": True, "id": deleted_id}


@router.post(
    "/{group_id}/messages/{message_id}/pin",
    response_model=GroupMessageResponseModel,
    status_code=200,
)
def pin_message(
    group_id: str,
    message_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Pin a message. Admins and moderators only. Pinning twice is a no-op."""
    message = group_messages.pin(db, message_id, current_user_id, thread_id=group_id)
    return {"message": group_message_payload(message, profiles.get_usernames([message.sender_id]))}


@router.post(
    "/{group_id}/messages/{message_id}/unpin",
    response_model=GroupMessageResponseModel,
    status_code=200,
)
def unpin_message(
    group_id: str,
    message_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Unpin a message. Admins and moderators only."""
    message = group_messages.unpin(db, message_id, current_user_id, thread_id=group_id)
    return {"message": group_message_payload(message, profiles.get_usernames([message.sender_id]))}
