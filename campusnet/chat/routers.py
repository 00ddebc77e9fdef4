from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from campusnet.core.database import get_db
from campusnet.core.dependencies import get_current_user_id
from campusnet.core.identity import get_profiles
from campusnet.core.storage import get_blob_store
from campusnet.messaging.schemas import (
    PostMessageModel,
    EditMessageModel,
    DeleteMessageResponseModel,
    message_fields,
)

from . import services
from .threads import direct_messages
from .schemas import (
    CreateDirectConversationModel,
    CreateDirectConversationResponseModel,
    ConversationData,
    ConversationItem,
    GetConversationsResponseModel,
    GetConversationResponseModel,
    SendMessageResponseModel,
    GetMessagesResponseModel,
)


router = APIRouter()


def direct_message_payload(message, usernames: dict) -> dict:
    return {**message_fields(message, usernames), "conversation_id": message.conversation_id}


@router.post(
    "/conversations/direct",
    response_model=CreateDirectConversationResponseModel,
    status_code=200,
)
def get_or_create_direct_conversation(
    data: CreateDirectConversationModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Get or create the direct (1-on-1) conversation with a connected user.

    This endpoint is used when a user starts a chat from outside an existing
    conversation (e.g. clicking "Message" on a connection's profile). The
    conversation is normally opened when the connection is accepted; this
    returns it, or reopens it if it went missing.

    **Input**
    - `receiver_id`: Id of the connected user to message

    **Returns**
    - `conversation_id`: Id of the direct conversation
    - `is_new`: Whether the conversation was newly created

    **Errors**
    - 400: Attempt to message yourself
    - 403: Users are not connected
    """
    return services.get_or_create_direct_conversation(db, current_user_id, data.receiver_id)


@router.get(
    "/conversations",
    response_model=GetConversationsResponseModel,
    status_code=200,
)
def get_conversations(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Retrieve all conversations for the authenticated user.

    The result is typically used to populate the chat sidebar or inbox view,
    most recent activity first.

    **Returns**
    - `conversations`: List of items
        - `conversation`: Conversation record with its last message summary
        - `other_user_id` / `other_username`: The other participant
        - `unread_count`: Messages from the other participant not yet read
    """
    items = services.list_conversations(db, current_user_id)
    usernames = profiles.get_usernames(item["other_user_id"] for item in items)

    return {
        "conversations": [
            ConversationItem(
                conversation=ConversationData.model_validate(item["conversation"]),
                other_user_id=item["other_user_id"],
                other_username=usernames.get(item["other_user_id"]),
                unread_count=item["unread_count"],
            )
            for item in items
        ]
    }


@router.get(
    "/conversations/{conversation_id}",
    response_model=GetConversationResponseModel,
    status_code=200,
)
def get_conversation(
    conversation_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    A single conversation the authenticated user takes part in.

    **Errors**
    - 403: User is not a participant
    - 404: Conversation does not exist
    """
    conversation = services.get_conversation(db, conversation_id, current_user_id)
    return {
        "conversation": conversation,
        "participant_ids": conversation.participant_ids(),
    }


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponseModel,
    status_code=201,
)
def send_message(
    conversation_id: str,
    data: PostMessageModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Send a message to a conversation.

    Messages are always sent to conversations, never directly to users.

    **Input**
    - `text`: Message text (optional if attachments are given)
    - `attachments`: References returned by `POST /attachments`

    **Errors**
    - 400: Empty message, or the conversation is no longer active
    - 403: User is not a participant in the conversation
    - 404: Conversation not found
    """
    message = direct_messages.post(
        db, conversation_id, current_user_id, text=data.text, attachments=data.attachments
    )
    usernames = profiles.get_usernames([current_user_id])
    return {"message": direct_message_payload(message, usernames)}


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=GetMessagesResponseModel,
    status_code=200,
)
def get_messages(
    conversation_id: str,
    page: int = Query(1),
    page_size: int = Query(20),
    before: Optional[str] = Query(None),
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Retrieve a page of messages, newest first.

    Messages from the other participant that are returned here are marked
    as read by the authenticated user.

    **Query Parameters**
    - `page`, `page_size`: Page window
    - `before`: Only messages older than this message id

    **Errors**
    - 403: User is not a participant in the conversation
    - 404: Conversation does not exist
    """
    result = direct_messages.fetch(
        db, conversation_id, current_user_id, page=page, page_size=page_size, before=before
    )
    usernames = profiles.get_usernames(m.sender_id for m in result["messages"])

    return {
        "messages": [direct_message_payload(m, usernames) for m in result["messages"]],
        "pagination": result["pagination"],
    }


@router.put(
    "/messages/{message_id}",
    response_model=SendMessageResponseModel,
    status_code=200,
)
def edit_message(
    message_id: str,
    data: EditMessageModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Edit one of your own messages. The previous text is kept in `edit_history`."""
    message = direct_messages.edit(db, message_id, current_user_id, data.text)
    return {"message": direct_message_payload(message, profiles.get_usernames([message.sender_id]))}


@router.delete(
    "/messages/{message_id}",
    response_model=DeleteMessageResponseModel,
    status_code=200,
)
def delete_message(
    message_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """Delete one of your own messages together with its attachments."""
    deleted_id = direct_messages.delete(db, message_id, current_user_id, blob_store)
    return {"message_deleted": True, "id": deleted_id}


@router.put(
    "/messages/{message_id}/read",
    response_model=SendMessageResponseModel,
    status_code=200,
)
def mark_message_read(
    message_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Mark a single message from the other participant as read.

    **Errors**
    - 400: The message is your own
    - 403: User is not a participant in the conversation
    - 404: Message not found
    """
    message = direct_messages.mark_read(db, message_id, current_user_id)
    return {"message": direct_message_payload(message, profiles.get_usernames([message.sender_id]))}
