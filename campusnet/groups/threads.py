import logging

from sqlalchemy.orm import Session

from campusnet.core.database import utcnow
from campusnet.core.errors import NotAMember, NotFound, ValidationError
from campusnet.groups import permissions
from campusnet.groups.models import StudyGroup, GroupMessage, GroupMessageRead
from campusnet.messaging.store import MessageStore

logger = logging.getLogger(__name__)


class GroupThreads:
    """Study group chat. Admins and moderators moderate."""

    name = "group"
    message_model = GroupMessage
    read_model = GroupMessageRead
    thread_column = "group_id"

    def load_thread(self, session: Session, thread_id: str) -> StudyGroup:
        group = session.get(StudyGroup, thread_id)
        if group is None:
            raise NotFound("Study group not found.")
        return group

    def require_access(self, session: Session, group: StudyGroup, user_id: str):
        if not permissions.is_member(session, group.id, user_id):
            raise NotAMember("You must be a member of this study group to access its messages.")

    def can_moderate(self, session: Session, group: StudyGroup, user_id: str) -> bool:
        return permissions.can_moderate(session, group.id, user_id)

    def prepare_flags(self, session: Session, group: StudyGroup, sender_id: str, flags: dict) -> dict:
        extra = {}

        reply_to_id = flags.get("reply_to_id")
        if reply_to_id:
            parent = session.get(GroupMessage, reply_to_id)
            if parent is None or parent.group_id != group.id:
                raise ValidationError("The message you are replying to is not in this group.")
            extra["reply_to_id"] = reply_to_id

        if flags.get("is_announcement"):
            if self.can_moderate(session, group, sender_id):
                extra["is_announcement"] = True
            else:
                # plain members posting an announcement get a normal message
                logger.info(f"announcement_flag_dropped group_id={group.id} sender={sender_id}")

        return extra

    def on_posted(self, session: Session, group: StudyGroup, message: GroupMessage):
        group.last_message_text = message.text
        group.last_message_sender_id = message.sender_id
        group.last_message_at = message.created_at
        group.last_activity_at = utcnow()

    def on_read(self, session: Session, group: StudyGroup, reader_id: str):
        pass

    def refresh_summary(self, session: Session, group: StudyGroup):
        newest = group_messages.newest_message(session, group.id)
        group.last_message_text = newest.text if newest else None
        group.last_message_sender_id = newest.sender_id if newest else None
        group.last_message_at = newest.created_at if newest else None


group_messages = MessageStore(GroupThreads())
