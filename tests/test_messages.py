"""Message store behaviour for direct conversations and study groups."""
import pytest
from sqlalchemy import select, func

from campusnet.chat import services as chat_services
from campusnet.chat.models import Conversation, DirectMessageRead
from campusnet.chat.threads import direct_messages
from campusnet.connections import services as connection_services
from campusnet.core.errors import (
    EmptyMessage,
    InvalidState,
    NotAMember,
    NotAParticipant,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from campusnet.groups import membership, registry
from campusnet.groups.models import StudyGroup
from campusnet.groups.threads import group_messages
from campusnet.messaging.attachments import upload_attachment


@pytest.fixture()
def conversation_id(db):
    connection = connection_services.request_connection(db, "alice", "bob")
    result = connection_services.respond_to_connection(db, connection.id, "bob", "accept")
    return result["conversation"].id


@pytest.fixture()
def group_id(db):
    group_id = registry.create_group(db, "alice", "Algorithms").id
    membership.join_public_group(db, group_id, "bob")
    membership.join_public_group(db, group_id, "carol")
    membership.update_role(db, group_id, "alice", "carol", "moderator")
    return group_id


class TestDirectMessages:
    def test_post_seeds_sender_receipt_and_summary(self, db, conversation_id):
        message = direct_messages.post(db, conversation_id, "alice", "  hi bob  ")

        assert message.text == "hi bob"
        assert message.read_by_user_ids() == {"alice"}

        conversation = db.get(Conversation, conversation_id)
        assert conversation.last_message_text == "hi bob"
        assert conversation.last_message_sender_id == "alice"
        assert conversation.last_message_read is False

    def test_empty_message_is_rejected(self, db, conversation_id):
        with pytest.raises(EmptyMessage):
            direct_messages.post(db, conversation_id, "alice", "   ")

    def test_attachment_only_message_is_allowed(self, db, conversation_id):
        message = direct_messages.post(
            db, conversation_id, "alice", attachments=[{"url": "https://blobs.test/x", "path": "x"}]
        )

        assert message.text == ""
        assert message.attachments[0]["url"] == "https://blobs.test/x"

    def test_outsider_cannot_post_or_read(self, db, conversation_id):
        with pytest.raises(NotAParticipant):
            direct_messages.post(db, conversation_id, "carol", "hey")
        with pytest.raises(NotAParticipant):
            direct_messages.fetch(db, conversation_id, "carol")

    def test_unknown_conversation(self, db):
        with pytest.raises(NotFound):
            direct_messages.post(db, "missing", "alice", "hey")

    def test_inactive_conversation_rejects_posts(self, db, conversation_id):
        db.get(Conversation, conversation_id).is_active = False
        db.commit()

        with pytest.raises(InvalidState):
            direct_messages.post(db, conversation_id, "alice", "anyone?")

    def test_fetch_marks_read_once(self, db, conversation_id):
        direct_messages.post(db, conversation_id, "alice", "one")
        direct_messages.post(db, conversation_id, "alice", "two")

        assert chat_services.unread_count(db, conversation_id, "bob") == 2

        direct_messages.fetch(db, conversation_id, "bob")
        direct_messages.fetch(db, conversation_id, "bob")

        receipts = db.execute(
            select(func.count()).select_from(DirectMessageRead).where(DirectMessageRead.user_id == "bob")
        ).scalar_one()
        assert receipts == 2
        assert chat_services.unread_count(db, conversation_id, "bob") == 0
        assert db.get(Conversation, conversation_id).last_message_read is True

    def test_sender_fetching_does_not_flip_read_flag(self, db, conversation_id):
        direct_messages.post(db, conversation_id, "alice", "one")

        direct_messages.fetch(db, conversation_id, "alice")

        assert db.get(Conversation, conversation_id).last_message_read is False

    def test_pages_are_newest_first_with_cursor(self, db, conversation_id):
        ids = [direct_messages.post(db, conversation_id, "alice", f"m{i}").id for i in range(5)]

        first = direct_messages.fetch(db, conversation_id, "bob", page_size=2)
        assert [m.id for m in first["messages"]] == [ids[4], ids[3]]
        assert first["pagination"] == {
            "total": 5,
            "page": 1,
            "page_size": 2,
            "pages": 3,
            "has_more": True,
        }

        older = direct_messages.fetch(db, conversation_id, "bob", page_size=10, before=ids[3])
        assert [m.id for m in older["messages"]] == [ids[2], ids[1], ids[0]]
        assert older["pagination"]["has_more"] is False

    def test_bad_page_size(self, db, conversation_id):
        with pytest.raises(ValidationError):
            direct_messages.fetch(db, conversation_id, "bob", page_size=0)

    def test_mark_read_own_message_is_invalid(self, db, conversation_id):
        message = direct_messages.post(db, conversation_id, "alice", "mine")

        with pytest.raises(InvalidState):
            direct_messages.mark_read(db, message.id, "alice")

        direct_messages.mark_read(db, message.id, "bob")
        direct_messages.mark_read(db, message.id, "bob")
        assert direct_messages.get_message(db, message.id).read_by_user_ids() == {"alice", "bob"}

    def test_edit_keeps_history(self, db, conversation_id):
        message = direct_messages.post(db, conversation_id, "alice", "frist")

        edited = direct_messages.edit(db, message.id, "alice", "first")

        assert edited.text == "first"
        assert edited.edited is True
        assert [h["text"] for h in edited.edit_history] == ["frist"]
        assert db.get(Conversation, conversation_id).last_message_text == "first"

    def test_only_sender_edits_or_deletes(self, db, conversation_id, blob_store):
        message = direct_messages.post(db, conversation_id, "alice", "mine")

        with pytest.raises(NotAuthorized):
            direct_messages.edit(db, message.id, "bob", "yours")
        with pytest.raises(NotAuthorized):
            direct_messages.delete(db, message.id, "bob", blob_store)
        with pytest.raises(EmptyMessage):
            direct_messages.edit(db, message.id, "alice", "  ")

    def test_delete_discards_attachments_and_refreshes_summary(self, db, conversation_id, blob_store):
        reference = upload_attachment(blob_store, "alice", "my notes.pdf", "application/pdf", b"%PDF")
        direct_messages.post(db, conversation_id, "alice", "first")
        second = direct_messages.post(db, conversation_id, "alice", "second", attachments=[reference])

        direct_messages.delete(db, second.id, "alice", blob_store)

        assert blob_store.deleted == [reference["path"]]
        assert db.get(Conversation, conversation_id).last_message_text == "first"

    def test_direct_messages_cannot_be_pinned(self, db, conversation_id):
        message = direct_messages.post(db, conversation_id, "alice", "pin me")

        with pytest.raises(NotAuthorized):
            direct_messages.pin(db, message.id, "alice")

    def test_list_conversations_with_unread_counts(self, db, conversation_id):
        direct_messages.post(db, conversation_id, "alice", "ping")

        items = chat_services.list_conversations(db, "bob")

        assert len(items) == 1
        assert items[0]["other_user_id"] == "alice"
        assert items[0]["unread_count"] == 1
        assert chat_services.list_conversations(db, "carol") == []


class TestGroupMessages:
    def test_members_only(self, db, group_id):
        with pytest.raises(NotAMember):
            group_messages.post(db, group_id, "dave", "let me in")
        with pytest.raises(NotAMember):
            group_messages.fetch(db, group_id, "dave")

    def test_post_updates_group_activity(self, db, group_id):
        message = group_messages.post(db, group_id, "bob", "study tonight?")

        group = db.get(StudyGroup, group_id)
        assert group.last_message_text == "study tonight?"
        assert group.last_message_sender_id == "bob"
        assert message.read_by_user_ids() == {"bob"}

    def test_announcement_flag_dropped_for_members(self, db, group_id):
        plain = group_messages.post(db, group_id, "bob", "hear ye", is_announcement=True)
        real = group_messages.post(db, group_id, "carol", "exam moved", is_announcement=True)

        assert plain.is_announcement is False
        assert real.is_announcement is True

    def test_reply_must_stay_in_group(self, db, group_id):
        other_group = registry.create_group(db, "bob", "Other").id
        foreign = group_messages.post(db, other_group, "bob", "elsewhere")
        parent = group_messages.post(db, group_id, "alice", "question")

        reply = group_messages.post(db, group_id, "bob", "answer", reply_to_id=parent.id)
        assert reply.reply_to_id == parent.id

        with pytest.raises(ValidationError):
            group_messages.post(db, group_id, "bob", "wrong thread", reply_to_id=foreign.id)

    def test_fetch_marks_read_for_every_member(self, db, group_id):
        message = group_messages.post(db, group_id, "alice", "hello all")

        group_messages.fetch(db, group_id, "bob")
        group_messages.fetch(db, group_id, "carol")
        group_messages.fetch(db, group_id, "bob")

        refreshed = group_messages.get_message(db, message.id)
        db.refresh(refreshed)
        assert refreshed.read_by_user_ids() == {"alice", "bob", "carol"}

    def test_moderator_edits_and_deletes_others(self, db, group_id, blob_store):
        message = group_messages.post(db, group_id, "bob", "spam")

        edited = group_messages.edit(db, message.id, "carol", "[removed]", thread_id=group_id)
        assert edited.text == "[removed]"

        with pytest.raises(NotAuthorized):
            other = group_messages.post(db, group_id, "carol", "mod note")
            group_messages.delete(db, other.id, "bob", blob_store, thread_id=group_id)

        group_messages.delete(db, message.id, "alice", blob_store, thread_id=group_id)
        with pytest.raises(NotFound):
            group_messages.get_message(db, message.id)

    def test_message_must_belong_to_thread(self, db, group_id):
        other_group = registry.create_group(db, "alice", "Other").id
        message = group_messages.post(db, other_group, "alice", "hi")

        with pytest.raises(NotFound):
            group_messages.edit(db, message.id, "alice", "moved", thread_id=group_id)

    def test_pin_is_moderated_and_idempotent(self, db, group_id):
        message = group_messages.post(db, group_id, "bob", "useful link")

        with pytest.raises(NotAuthorized):
            group_messages.pin(db, message.id, "bob")

        group_messages.pin(db, message.id, "carol")
        group_messages.pin(db, message.id, "alice")
        assert [m.id for m in group_messages.list_pinned(db, group_id, "bob")] == [message.id]

        group_messages.unpin(db, message.id, "carol")
        group_messages.unpin(db, message.id, "carol")
        assert group_messages.list_pinned(db, group_id, "bob") == []

    def test_deleting_parent_keeps_reply(self, db, group_id, blob_store):
        parent = group_messages.post(db, group_id, "alice", "question")
        reply = group_messages.post(db, group_id, "bob", "answer", reply_to_id=parent.id)

        group_messages.delete(db, parent.id, "alice", blob_store)

        kept = group_messages.get_message(db, reply.id)
        db.refresh(kept)
        assert kept.reply_to_id is None


class TestAttachments:
    def test_upload_returns_reference(self, blob_store):
        reference = upload_attachment(blob_store, "alice", "lab report.pdf", "application/pdf", b"data")

        assert reference["filename"] == "lab-report.pdf"
        assert reference["mime_type"] == "application/pdf"
        assert reference["size"] == 4
        assert reference["path"] in blob_store.files

    def test_empty_upload_is_rejected(self, blob_store):
        with pytest.raises(ValidationError):
            upload_attachment(blob_store, "alice", "empty.txt", "text/plain", b"")
