import logging

from sqlalchemy.orm import Session

from campusnet.core.database import utcnow
from campusnet.core.errors import InvalidState, NotAParticipant, NotFound
from campusnet.chat.models import Conversation, DirectMessage, DirectMessageRead
from campusnet.connections.models import Connection
from campusnet.messaging.store import MessageStore

logger = logging.getLogger(__name__)


class DirectThreads:
    """Conversations between connected users. Nobody moderates them."""

    name = "direct"
    message_model = DirectMessage
    read_model = DirectMessageRead
    thread_column = "conversation_id"

    def load_thread(self, session: Session, thread_id: str) -> Conversation:
        conversation = session.get(Conversation, thread_id)
        if conversation is None:
            raise NotFound("Conversation not found.")
        return conversation

    def require_access(self, session: Session, conversation: Conversation, user_id: str):
        if user_id not in conversation.participant_ids():
            raise NotAParticipant()

    def can_moderate(self, session: Session, conversation: Conversation, user_id: str) -> bool:
        return False

    def prepare_flags(self, session: Session, conversation: Conversation, sender_id: str, flags: dict) -> dict:
        if not conversation.is_active:
            raise InvalidState("This conversation is no longer active.")
        unknown = {k for k, v in flags.items() if v}
        if unknown:
            logger.debug(f"direct_message_flags_ignored flags={sorted(unknown)}")
        return {}

    def on_posted(self, session: Session, conversation: Conversation, message: DirectMessage):
        conversation.last_message_text = message.text
        conversation.last_message_sender_id = message.sender_id
        conversation.last_message_at = message.created_at
        conversation.last_message_read = False
        conversation.updated_at = utcnow()

        if conversation.connection_id:
            connection = session.get(Connection, conversation.connection_id)
            if connection is not None:
                connection.last_interaction_at = message.created_at

    def on_read(self, session: Session, conversation: Conversation, reader_id: str):
        if (
            conversation.last_message_sender_id
            and conversation.last_message_sender_id != reader_id
            and not conversation.last_message_read
        ):
            self.refresh_summary(session, conversation)

    def refresh_summary(self, session: Session, conversation: Conversation):
        newest = direct_messages.newest_message(session, conversation.id)
        if newest is None:
            conversation.last_message_text = None
            conversation.last_message_sender_id = None
            conversation.last_message_at = None
            conversation.last_message_read = False
            return

        conversation.last_message_text = newest.text
        conversation.last_message_sender_id = newest.sender_id
        conversation.last_message_at = newest.created_at
        conversation.last_message_read = direct_messages.is_read_by_other(session, newest)


direct_messages = MessageStore(DirectThreads())
