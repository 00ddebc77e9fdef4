"""
Direct conversation provisioning.

A conversation lives and dies with the accepted connection of its two
participants. Neither function here commits: callers run them inside the
``atomic`` unit that also changes the connection, so the pair is created or
removed together or not at all.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from campusnet.core.database import new_id
from campusnet.core.storage import attachment_paths
from campusnet.chat.models import (
    Conversation,
    ConversationParticipant,
    DirectMessage,
    DirectMessageRead,
)

logger = logging.getLogger(__name__)


def find_conversation_by_pair(session: Session, key: str) -> Optional[Conversation]:
    return session.execute(
        select(Conversation).where(Conversation.pair_key == key)
    ).scalar_one_or_none()


def create_conversation_for_connection(session: Session, connection) -> Tuple[Conversation, bool]:
    """
    Get or create the channel for ``connection``'s participant pair.

    Returns ``(conversation, is_new)``. An existing conversation for the same
    pair is reactivated and relinked instead of duplicated.
    """
    conversation = find_conversation_by_pair(session, connection.pair_key)

    if conversation is not None:
        conversation.is_active = True
        conversation.connection_id = connection.id
        connection.conversation_id = conversation.id
        logger.info(
            f"conversation_reused conversation_id={conversation.id} connection_id={connection.id}"
        )
        return conversation, False

    conversation = Conversation(
        id=new_id(),
        pair_key=connection.pair_key,
        connection_id=connection.id,
        is_active=True,
        participants=[
            ConversationParticipant(user_id=connection.requester_id),
            ConversationParticipant(user_id=connection.recipient_id),
        ],
    )
    session.add(conversation)
    session.flush()

    connection.conversation_id = conversation.id
    logger.info(
        f"conversation_created conversation_id={conversation.id} connection_id={connection.id}"
    )
    return conversation, True


def delete_conversation(session: Session, conversation_id: str) -> list:
    """
    Delete a conversation with its participants, messages and receipts.

    Returns the storage paths of the deleted attachments; they are only safe
    to discard once the surrounding unit has committed.
    """
    if session.get(Conversation, conversation_id) is None:
        return []

    message_ids = select(DirectMessage.id).where(DirectMessage.conversation_id == conversation_id)

    paths = []
    for attachments in session.execute(
        select(DirectMessage.attachments).where(DirectMessage.conversation_id == conversation_id)
    ).scalars():
        paths.extend(attachment_paths(attachments))

    session.execute(delete(DirectMessageRead).where(DirectMessageRead.message_id.in_(message_ids)))
    deleted = session.execute(
        delete(DirectMessage).where(DirectMessage.conversation_id == conversation_id)
    ).rowcount
    session.execute(
        delete(ConversationParticipant).where(ConversationParticipant.conversation_id == conversation_id)
    )
    session.execute(delete(Conversation).where(Conversation.id == conversation_id))

    logger.info(f"conversation_deleted conversation_id={conversation_id} messages={deleted}")
    return paths
