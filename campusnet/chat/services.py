import logging

from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session

from campusnet.core.database import atomic, pair_key
from campusnet.core.errors import NotAuthorized, SelfReference
from campusnet.chat.models import (
    Conversation,
    ConversationParticipant,
    DirectMessage,
    DirectMessageRead,
)
from campusnet.chat.provisioner import create_conversation_for_connection
from campusnet.chat.threads import direct_messages
from campusnet.connections.models import Connection

logger = logging.getLogger(__name__)


def get_or_create_direct_conversation(session: Session, actor_id: str, other_id: str) -> dict:
    """Open (or reopen) the channel of an accepted connection."""

    if actor_id == other_id:
        raise SelfReference("You cannot message yourself.")

    with atomic(session):
        connection = session.execute(
            select(Connection).where(
                Connection.pair_key == pair_key(actor_id, other_id),
                Connection.status == "accepted",
            )
        ).scalar_one_or_none()

        if connection is None:
            raise NotAuthorized("You can only message users you are connected with.")

        conversation, is_new = create_conversation_for_connection(session, connection)
        conversation_id = conversation.id

    return {"conversation_id": conversation_id, "is_new": is_new}


def get_conversation(session: Session, conversation_id: str, actor_id: str) -> Conversation:
    conversation = direct_messages.adapter.load_thread(session, conversation_id)
    direct_messages.adapter.require_access(session, conversation, actor_id)
    return conversation


def unread_count(session: Session, conversation_id: str, user_id: str) -> int:
    already_read = (
        select(DirectMessageRead.id)
        .where(
            and_(
                DirectMessageRead.message_id == DirectMessage.id,
                DirectMessageRead.user_id == user_id,
            )
        )
        .exists()
    )
    return session.execute(
        select(func.count())
        .select_from(DirectMessage)
        .where(
            DirectMessage.conversation_id == conversation_id,
            DirectMessage.sender_id != user_id,
            ~already_read,
        )
    ).scalar_one()


def list_conversations(session: Session, actor_id: str) -> list:
    """Every conversation the actor takes part in, most recent activity first."""
    conversations = (
        session.execute(
            select(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
            .where(ConversationParticipant.user_id == actor_id)
            .order_by(
                func.coalesce(Conversation.last_message_at, Conversation.updated_at).desc()
            )
        )
        .scalars()
        .all()
    )

    results = []
    for conversation in conversations:
        others = [uid for uid in conversation.participant_ids() if uid != actor_id]
        results.append(
            {
                "conversation": conversation,
                "other_user_id": others[0] if others else None,
                "unread_count": unread_count(session, conversation.id, actor_id),
            }
        )
    return results
