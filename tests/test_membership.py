"""Group registry and the membership state machine."""
import pytest
from sqlalchemy import select, func

from campusnet.core.errors import (
    Conflict,
    InsufficientRole,
    InvalidState,
    LastAdminGuard,
    NotAMember,
    NotAuthorized,
    NotFound,
    SelfReference,
    ValidationError,
)
from campusnet.groups import membership, permissions, registry
from campusnet.groups.models import (
    GroupInvitation,
    GroupJoinRequest,
    GroupMembership,
    GroupMessage,
    GroupMessageRead,
    StudyGroup,
)
from campusnet.groups.threads import group_messages


def count(db, model, *where):
    return db.execute(select(func.count()).select_from(model).where(*where)).scalar_one()


@pytest.fixture()
def public_group(db):
    return registry.create_group(db, "alice", "Linear Algebra", tags=["math", " Math ", "", "exam"]).id


@pytest.fixture()
def private_group(db):
    return registry.create_group(db, "alice", "Thesis Circle", visibility="private").id


class TestRegistry:
    def test_creator_is_sole_admin(self, db, public_group):
        group = db.get(StudyGroup, public_group)

        assert group.tags == ["math", "exam"]
        assert group.roster_version == 0
        assert permissions.get_role(db, public_group, "alice") == "admin"
        assert permissions.count_members(db, public_group) == 1

    def test_name_is_required(self, db):
        with pytest.raises(ValidationError):
            registry.create_group(db, "alice", "   ")

    def test_update_requires_moderator(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")

        with pytest.raises(NotAuthorized):
            registry.update_group(db, public_group, "bob", name="Mine now")

        membership.update_role(db, public_group, "alice", "bob", "moderator")
        group = registry.update_group(db, public_group, "bob", description="Weekly sessions")
        assert group.description == "Weekly sessions"

    def test_opening_private_group_admits_pending_requests(self, db, private_group):
        membership.request_join(db, private_group, "bob")
        membership.invite(db, private_group, "alice", "carol")

        registry.update_group(db, private_group, "alice", name="Thesis Circle")
        db.expire_all()
        assert db.get(StudyGroup, private_group).roster_version == 2

        registry.update_group(db, private_group, "alice", visibility="public")

        db.expire_all()
        assert db.get(StudyGroup, private_group).roster_version == 3
        assert permissions.get_role(db, private_group, "bob") == "member"
        assert count(db, GroupJoinRequest, GroupJoinRequest.group_id == private_group) == 0
        assert count(db, GroupInvitation, GroupInvitation.user_id == "carol") == 1

        with pytest.raises(InvalidState):
            membership.join(db, private_group, "bob")
        assert membership.join(db, private_group, "dave")["status"] == "joined"

    def test_closing_public_group_keeps_roster(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")

        registry.update_group(db, public_group, "alice", visibility="private")

        db.expire_all()
        assert db.get(StudyGroup, public_group).roster_version == 2
        assert permissions.is_member(db, public_group, "bob")
        assert membership.join(db, public_group, "carol")["status"] == "requested"

    def test_private_details_hidden_from_outsiders(self, db, private_group):
        with pytest.raises(NotAuthorized):
            registry.get_group_details(db, private_group, "bob")

        membership.invite(db, private_group, "alice", "bob")
        details = registry.get_group_details(db, private_group, "bob")

        assert details["has_invitation"] is True
        assert details["members"] == []

    def test_moderators_see_pending_rows(self, db, private_group):
        membership.invite(db, private_group, "alice", "bob")
        membership.request_join(db, private_group, "carol")

        details = registry.get_group_details(db, private_group, "alice")

        assert [i.user_id for i in details["invitations"]] == ["bob"]
        assert [r.user_id for r in details["join_requests"]] == ["carol"]
        assert details["join_requests"][0].message == membership.DEFAULT_JOIN_MESSAGE

    def test_available_groups_excludes_joined_and_private(self, db, public_group, private_group):
        other = registry.create_group(db, "carol", "Chemistry").id

        page = registry.list_available_groups(db, "bob")
        assert {item["group"].id for item in page["groups"]} == {public_group, other}

        membership.join_public_group(db, other, "bob")
        page = registry.list_available_groups(db, "bob")
        assert [item["group"].id for item in page["groups"]] == [public_group]
        assert page["pagination"]["total"] == 1

    def test_search_by_text_and_tag(self, db, public_group, private_group):
        by_text = registry.search_groups(db, "bob", q="algebra")
        by_tag = registry.search_groups(db, "bob", tag="EXAM")
        partial = registry.search_groups(db, "bob", tag="exa")
        hidden = registry.search_groups(db, "bob", q="thesis")
        own = registry.search_groups(db, "alice", q="thesis")

        assert [i["group"].id for i in by_text["groups"]] == [public_group]
        assert [i["group"].id for i in by_tag["groups"]] == [public_group]
        assert partial["groups"] == []
        assert hidden["groups"] == []
        assert [i["group"].id for i in own["groups"]] == [private_group]

    def test_search_needs_a_parameter(self, db):
        with pytest.raises(ValidationError):
            registry.search_groups(db, "bob")

    def test_delete_is_admin_only_and_cascades(self, db, public_group, blob_store):
        membership.join_public_group(db, public_group, "bob")
        membership.update_role(db, public_group, "alice", "bob", "moderator")
        group_messages.post(
            db, public_group, "bob", "notes", attachments=[{"url": "u", "path": "bob/0-notes.pdf"}]
        )

        with pytest.raises(NotAuthorized):
            registry.delete_group(db, public_group, "bob", blob_store)

        registry.delete_group(db, public_group, "alice", blob_store)

        assert db.get(StudyGroup, public_group) is None
        assert count(db, GroupMembership) == 0
        assert count(db, GroupMessage) == 0
        assert count(db, GroupMessageRead) == 0
        assert blob_store.deleted == ["bob/0-notes.pdf"]


class TestInvitations:
    def test_invite_and_accept(self, db, private_group):
        membership.invite(db, private_group, "alice", "bob")
        assert [row["group"].id for row in registry.list_my_invitations(db, "bob")] == [private_group]

        membership.accept_invite(db, private_group, "bob")

        assert permissions.get_role(db, private_group, "bob") == "member"
        assert count(db, GroupInvitation) == 0

    def test_decline_removes_invitation(self, db, private_group):
        membership.invite(db, private_group, "alice", "bob")
        membership.decline_invite(db, private_group, "bob")

        assert count(db, GroupInvitation) == 0
        assert not permissions.is_member(db, private_group, "bob")

    def test_accept_without_invitation(self, db, private_group):
        with pytest.raises(NotFound):
            membership.accept_invite(db, private_group, "bob")

    def test_inviter_must_be_member(self, db, private_group):
        with pytest.raises(NotAMember):
            membership.invite(db, private_group, "carol", "bob")

    def test_invite_rules(self, db, private_group):
        with pytest.raises(SelfReference):
            membership.invite(db, private_group, "alice", "alice")

        membership.invite(db, private_group, "alice", "bob")
        with pytest.raises(InvalidState):
            membership.invite(db, private_group, "alice", "bob")

        membership.request_join(db, private_group, "carol")
        with pytest.raises(InvalidState):
            membership.invite(db, private_group, "alice", "carol")

    def test_invite_unknown_group(self, db):
        with pytest.raises(NotFound):
            membership.invite(db, "missing", "alice", "bob")


class TestJoining:
    def test_join_dispatches_on_visibility(self, db, public_group, private_group):
        assert membership.join(db, public_group, "bob")["status"] == "joined"
        assert membership.join(db, private_group, "bob", "please")["status"] == "requested"

        assert permissions.is_member(db, public_group, "bob")
        request = db.execute(select(GroupJoinRequest)).scalar_one()
        assert request.message == "please"

    def test_request_join_rules(self, db, public_group, private_group):
        with pytest.raises(InvalidState):
            membership.request_join(db, public_group, "bob")
        with pytest.raises(InvalidState):
            membership.join_public_group(db, private_group, "bob")

        membership.request_join(db, private_group, "bob")
        with pytest.raises(InvalidState):
            membership.request_join(db, private_group, "bob")

        membership.invite(db, private_group, "alice", "carol")
        with pytest.raises(InvalidState):
            membership.request_join(db, private_group, "carol")

        with pytest.raises(InvalidState):
            membership.request_join(db, private_group, "alice")

    def test_approve_and_reject(self, db, private_group):
        membership.request_join(db, private_group, "bob")
        membership.request_join(db, private_group, "carol")

        with pytest.raises(NotAuthorized):
            membership.approve_join_request(db, private_group, "dave", "bob")

        membership.approve_join_request(db, private_group, "alice", "bob")
        membership.reject_join_request(db, private_group, "alice", "carol")

        assert permissions.get_role(db, private_group, "bob") == "member"
        assert not permissions.is_member(db, private_group, "carol")
        assert count(db, GroupJoinRequest) == 0

        with pytest.raises(NotFound):
            membership.approve_join_request(db, private_group, "alice", "carol")

    def test_members_may_not_approve(self, db, private_group):
        membership.request_join(db, private_group, "bob")
        membership.invite(db, private_group, "alice", "carol")
        membership.accept_invite(db, private_group, "carol")

        with pytest.raises(NotAuthorized):
            membership.approve_join_request(db, private_group, "carol", "bob")


class TestRolesAndRemoval:
    def test_last_admin_cannot_be_demoted(self, db, public_group):
        with pytest.raises(LastAdminGuard):
            membership.update_role(db, public_group, "alice", "alice", "member")

    def test_only_admins_change_roles(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")
        membership.join_public_group(db, public_group, "carol")
        membership.update_role(db, public_group, "alice", "bob", "moderator")

        with pytest.raises(NotAuthorized):
            membership.update_role(db, public_group, "bob", "carol", "moderator")

    def test_role_must_be_known(self, db, public_group):
        with pytest.raises(ValidationError):
            membership.update_role(db, public_group, "alice", "alice", "owner")

    def test_moderator_cannot_remove_admin(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")
        membership.update_role(db, public_group, "alice", "bob", "moderator")

        with pytest.raises(InsufficientRole):
            membership.remove_member(db, public_group, "bob", "alice")

    def test_moderator_removes_member(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")
        membership.join_public_group(db, public_group, "carol")
        membership.update_role(db, public_group, "alice", "bob", "moderator")

        result = membership.remove_member(db, public_group, "bob", "carol")

        assert result["was_group_deleted"] is False
        assert not permissions.is_member(db, public_group, "carol")

    def test_remove_self_is_invalid(self, db, public_group):
        with pytest.raises(InvalidState):
            membership.remove_member(db, public_group, "alice", "alice")

    def test_plain_member_cannot_remove(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")
        membership.join_public_group(db, public_group, "carol")

        with pytest.raises(NotAuthorized):
            membership.remove_member(db, public_group, "bob", "carol")


class TestLeave:
    def test_last_admin_cannot_leave_others_behind(self, db, public_group, blob_store):
        membership.join_public_group(db, public_group, "bob")

        with pytest.raises(LastAdminGuard):
            membership.leave(db, public_group, "alice", blob_store)

    def test_member_leaves(self, db, public_group, blob_store):
        membership.join_public_group(db, public_group, "bob")

        result = membership.leave(db, public_group, "bob", blob_store)

        assert result["was_group_deleted"] is False
        assert permissions.count_members(db, public_group) == 1

    def test_last_member_leaving_deletes_group(self, db, public_group, blob_store):
        membership.join_public_group(db, public_group, "bob")
        group_messages.post(db, public_group, "bob", "bye")
        membership.leave(db, public_group, "bob", blob_store)

        result = membership.leave(db, public_group, "alice", blob_store)

        assert result["was_group_deleted"] is True
        assert db.get(StudyGroup, public_group) is None
        assert count(db, GroupMessage) == 0

    def test_non_member_cannot_leave(self, db, public_group, blob_store):
        with pytest.raises(InvalidState):
            membership.leave(db, public_group, "bob", blob_store)

    def test_promote_then_leave(self, db, blob_store):
        group_id = registry.create_group(db, "alice", "Physics").id
        membership.join_public_group(db, group_id, "bob")
        membership.join_public_group(db, group_id, "carol")
        membership.update_role(db, group_id, "alice", "bob", "admin")

        result = membership.leave(db, group_id, "alice", blob_store)

        assert result["was_group_deleted"] is False
        assert permissions.get_role(db, group_id, "bob") == "admin"
        assert permissions.count_members(db, group_id) == 2


class TestConcurrency:
    def test_roster_version_advances_on_every_mutation(self, db, public_group):
        membership.join_public_group(db, public_group, "bob")
        membership.update_role(db, public_group, "alice", "bob", "moderator")

        db.expire_all()
        assert db.get(StudyGroup, public_group).roster_version == 2

    def test_concurrent_demotions_leave_one_admin(self, db, session_factory, public_group, monkeypatch):
        membership.join_public_group(db, public_group, "bob")
        membership.update_role(db, public_group, "alice", "bob", "admin")

        real_claim = registry.claim_roster
        raced = []

        def claim_after_competitor(session, group):
            if not raced:
                raced.append(group.id)
                other = session_factory()
                try:
                    # bob demotes alice while alice is demoting bob
                    membership.update_role(other, public_group, "bob", "alice", "member")
                finally:
                    other.close()
            return real_claim(session, group)

        monkeypatch.setattr(registry, "claim_roster", claim_after_competitor)

        with pytest.raises(Conflict):
            membership.update_role(db, public_group, "alice", "bob", "member")

        db.expire_all()
        assert permissions.count_members(db, public_group, role="admin") == 1
        assert permissions.get_role(db, public_group, "bob") == "admin"

    def test_concurrent_join_and_leave_is_serialized(self, db, session_factory, public_group, monkeypatch):
        real_claim = registry.claim_roster
        raced = []

        def claim_after_competitor(session, group):
            if not raced:
                raced.append(group.id)
                other = session_factory()
                try:
                    membership.join_public_group(other, public_group, "carol")
                finally:
                    other.close()
            return real_claim(session, group)

        membership.join_public_group(db, public_group, "bob")
        monkeypatch.setattr(registry, "claim_roster", claim_after_competitor)

        with pytest.raises(Conflict):
            membership.leave(db, public_group, "bob", None)

        db.expire_all()
        assert permissions.is_member(db, public_group, "bob")
        assert permissions.is_member(db, public_group, "carol")

    def test_join_request_racing_visibility_change_is_conflict(
        self, db, session_factory, private_group, monkeypatch
    ):
        real_claim = registry.claim_roster
        raced = []

        def claim_after_competitor(session, group):
            if not raced:
                raced.append(group.id)
                other = session_factory()
                try:
                    registry.update_group(other, private_group, "alice", visibility="public")
                finally:
                    other.close()
            return real_claim(session, group)

        monkeypatch.setattr(registry, "claim_roster", claim_after_competitor)

        with pytest.raises(Conflict):
            membership.request_join(db, private_group, "bob")

        db.expire_all()
        assert count(db, GroupJoinRequest) == 0
        assert db.get(StudyGroup, private_group).visibility == "public"

    def test_join_rereads_visibility_inside_its_unit(self, db, session_factory, private_group, monkeypatch):
        real_claim = registry.claim_roster
        raced = []

        def claim_after_competitor(session, group):
            if not raced:
                raced.append(group.id)
                other = session_factory()
                try:
                    registry.update_group(other, private_group, "alice", visibility="public")
                finally:
                    other.close()
            return real_claim(session, group)

        monkeypatch.setattr(registry, "claim_roster", claim_after_competitor)

        with pytest.raises(Conflict):
            membership.join(db, private_group, "bob")

        assert membership.join(db, private_group, "bob") == {
            "group_id": private_group,
            "status": "joined",
        }
