"""
Membership engine.

Per (group, user) the state machine is

    NONE -> INVITED | REQUESTED -> MEMBER(role) -> NONE

and the three states live in three tables (memberships, invitations, join
requests) that must never disagree. Every mutation

1. re-reads the group and the roles it depends on inside its transaction,
2. claims the group's roster version with a conditional update, so a
   concurrent writer that read the same roster gets ``Conflict``,
3. applies the change.
"""

import logging

from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from campusnet.core.database import atomic, utcnow
from campusnet.core.errors import (
    InsufficientRole,
    InvalidState,
    LastAdminGuard,
    NotAMember,
    NotAuthorized,
    NotFound,
    SelfReference,
    ValidationError,
)
from campusnet.core.storage import discard_attachments
from campusnet.groups import permissions, registry
from campusnet.groups.models import (
    GROUP_ROLES,
    GroupMembership,
    GroupInvitation,
    GroupJoinRequest,
    StudyGroup,
)

logger = logging.getLogger(__name__)

DEFAULT_JOIN_MESSAGE = "I would like to join this study group"


def _get_invitation(session: Session, group_id: str, user_id: str):
    return session.execute(
        select(GroupInvitation).where(
            GroupInvitation.group_id == group_id, GroupInvitation.user_id == user_id
        )
    ).scalar_one_or_none()


def _get_join_request(session: Session, group_id: str, user_id: str):
    return session.execute(
        select(GroupJoinRequest).where(
            GroupJoinRequest.group_id == group_id, GroupJoinRequest.user_id == user_id
        )
    ).scalar_one_or_none()


def _add_member(session: Session, group: StudyGroup, user_id: str, role: str = "member") -> GroupMembership:
    # a member has no pending invitation or join request
    session.execute(
        delete(GroupInvitation).where(
            GroupInvitation.group_id == group.id, GroupInvitation.user_id == user_id
        )
    )
    session.execute(
        delete(GroupJoinRequest).where(
            GroupJoinRequest.group_id == group.id, GroupJoinRequest.user_id == user_id
        )
    )

    membership = GroupMembership(group_id=group.id, user_id=user_id, role=role, joined_at=utcnow())
    session.add(membership)
    group.last_activity_at = utcnow()
    session.flush()
    return membership


def _require_member(session: Session, group_id: str, user_id: str, message: str = None) -> GroupMembership:
    membership = permissions.get_membership(session, group_id, user_id)
    if membership is None:
        raise NotAMember(message)
    return membership


# Invitations


def invite(session: Session, group_id: str, inviter_id: str, invitee_id: str) -> GroupInvitation:
    if inviter_id == invitee_id:
        raise SelfReference("You cannot invite yourself.")

    with atomic(session):
        group = registry.get_group(session, group_id)
        _require_member(session, group_id, inviter_id, "You must be a member to invite others to the group.")

        if permissions.is_member(session, group_id, invitee_id):
            raise InvalidState("User is already a member of this study group.")
        if _get_invitation(session, group_id, invitee_id) is not None:
            raise InvalidState("User has already been invited to this group.")
        if _get_join_request(session, group_id, invitee_id) is not None:
            raise InvalidState("User has already requested to join; approve the request instead.")

        registry.claim_roster(session, group)
        invitation = GroupInvitation(
            group_id=group_id, user_id=invitee_id, invited_by_id=inviter_id, invited_at=utcnow()
        )
        session.add(invitation)

    logger.info(f"group_invitation_sent group_id={group_id} invitee={invitee_id} by={inviter_id}")
    return invitation


def accept_invite(session: Session, group_id: str, user_id: str) -> GroupMembership:
    with atomic(session):
        group = registry.get_group(session, group_id)
        invitation = _get_invitation(session, group_id, user_id)
        if invitation is None:
            raise NotFound("You do not have an invitation to this group.")
        if permissions.is_member(session, group_id, user_id):
            raise InvalidState("You are already a member of this study group.")

        registry.claim_roster(session, group)
        membership = _add_member(session, group, user_id)

    logger.info(f"group_invitation_accepted group_id={group_id} user={user_id}")
    return membership


def decline_invite(session: Session, group_id: str, user_id: str):
    with atomic(session):
        group = registry.get_group(session, group_id)
        invitation = _get_invitation(session, group_id, user_id)
        if invitation is None:
            raise NotFound("You do not have an invitation to this group.")

        registry.claim_roster(session, group)
        session.delete(invitation)

    logger.info(f"group_invitation_declined group_id={group_id} user={user_id}")


# Joining


def _check_can_join(session: Session, group_id: str, user_id: str):
    if permissions.is_member(session, group_id, user_id):
        raise InvalidState("You are already a member of this study group.")
    if _get_join_request(session, group_id, user_id) is not None:
        raise InvalidState("You already have a pending request to join this group.")
    if _get_invitation(session, group_id, user_id) is not None:
        raise InvalidState("You have an invitation to this group; accept it instead.")


def _request_join(session: Session, group: StudyGroup, user_id: str, message: str = None) -> GroupJoinRequest:
    if not group.is_private:
        raise InvalidState("This group is public; join it directly.")
    _check_can_join(session, group.id, user_id)

    registry.claim_roster(session, group)
    join_request = GroupJoinRequest(
        group_id=group.id,
        user_id=user_id,
        message=(message or "").strip() or DEFAULT_JOIN_MESSAGE,
        requested_at=utcnow(),
    )
    session.add(join_request)
    return join_request


def _join_public(session: Session, group: StudyGroup, user_id: str) -> GroupMembership:
    if group.is_private:
        raise InvalidState("This group is private; request to join instead.")
    _check_can_join(session, group.id, user_id)

    registry.claim_roster(session, group)
    return _add_member(session, group, user_id)


def request_join(session: Session, group_id: str, user_id: str, message: str = None) -> GroupJoinRequest:
    with atomic(session):
        group = registry.get_group(session, group_id)
        join_request = _request_join(session, group, user_id, message)

    logger.info(f"group_join_requested group_id={group_id} user={user_id}")
    return join_request


def join_public_group(session: Session, group_id: str, user_id: str) -> GroupMembership:
    with atomic(session):
        group = registry.get_group(session, group_id)
        membership = _join_public(session, group, user_id)

    logger.info(f"group_joined group_id={group_id} user={user_id}")
    return membership


def join(session: Session, group_id: str, user_id: str, message: str = None) -> dict:
    """Single entry point: join public groups, request to join private ones."""
    with atomic(session):
        group = registry.get_group(session, group_id)
        if group.is_private:
            _request_join(session, group, user_id, message)
            status = "requested"
        else:
            _join_public(session, group, user_id)
            status = "joined"

    logger.info(f"group_join group_id={group_id} user={user_id} status={status}")
    return {"group_id": group_id, "status": status}


def _resolve_join_request(session: Session, group_id: str, approver_id: str, user_id: str, approve: bool):
    verb = "approve" if approve else "reject"

    with atomic(session):
        group = registry.get_group(session, group_id)
        if not permissions.can_moderate(session, group_id, approver_id):
            raise NotAuthorized(f"You do not have permission to {verb} join requests.")

        join_request = _get_join_request(session, group_id, user_id)
        if join_request is None:
            raise NotFound("This user has not requested to join the group.")

        registry.claim_roster(session, group)
        if approve:
            result = _add_member(session, group, user_id)
        else:
            session.delete(join_request)
            result = None

    logger.info(f"group_join_request_{verb}d group_id={group_id} user={user_id} by={approver_id}")
    return result


def approve_join_request(session: Session, group_id: str, approver_id: str, user_id: str) -> GroupMembership:
    return _resolve_join_request(session, group_id, approver_id, user_id, approve=True)


def reject_join_request(session: Session, group_id: str, approver_id: str, user_id: str):
    _resolve_join_request(session, group_id, approver_id, user_id, approve=False)


# Roles and removal


def update_role(session: Session, group_id: str, actor_id: str, target_id: str, new_role: str) -> GroupMembership:
    if new_role not in GROUP_ROLES:
        raise ValidationError("Please provide a valid role (admin, moderator, or member).")

    with atomic(session):
        group = registry.get_group(session, group_id)
        if not permissions.is_admin(session, group_id, actor_id):
            raise NotAuthorized("Only group admins can update member roles.")

        membership = permissions.get_membership(session, group_id, target_id)
        if membership is None:
            raise NotFound("This user is not a member of the group.")

        if (
            membership.role == "admin"
            and new_role != "admin"
            and permissions.count_members(session, group_id, role="admin") == 1
        ):
            raise LastAdminGuard("Cannot demote the last admin. Promote another member to admin first.")

        registry.claim_roster(session, group)
        old_role = membership.role
        membership.role = new_role

    logger.info(
        f"group_role_updated group_id={group_id} target={target_id} "
        f"from={old_role} to={new_role} by={actor_id}"
    )
    return membership


def remove_member(session: Session, group_id: str, actor_id: str, target_id: str) -> dict:
    if actor_id == target_id:
        raise InvalidState("Use the leave group API to remove yourself.")

    with atomic(session):
        group = registry.get_group(session, group_id)
        actor_role = permissions.get_role(session, group_id, actor_id)
        if actor_role not in permissions.MODERATOR_ROLES:
            raise NotAuthorized("You do not have permission to remove members.")

        membership = permissions.get_membership(session, group_id, target_id)
        if membership is None:
            raise NotFound("This user is not a member of the group.")

        if membership.role == "admin" and actor_role != "admin":
            raise InsufficientRole("Moderators cannot remove admins.")

        registry.claim_roster(session, group)
        session.delete(membership)

    logger.info(f"group_member_removed group_id={group_id} target={target_id} by={actor_id}")
    return {"group_id": group_id, "was_group_deleted": False}


def leave(session: Session, group_id: str, user_id: str, blob_store) -> dict:
    """
    Leave a group.

    The last member leaving deletes the group with everything in it. The
    last admin cannot leave while others remain.
    """
    paths = []

    with atomic(session):
        group = registry.get_group(session, group_id)
        membership = permissions.get_membership(session, group_id, user_id)
        if membership is None:
            raise InvalidState("You are not a member of this group.")

        total = permissions.count_members(session, group_id)
        admins = permissions.count_members(session, group_id, role="admin")

        if total > 1 and membership.role == "admin" and admins == 1:
            raise LastAdminGuard("You are the last admin. Promote another member to admin before leaving.")

        registry.claim_roster(session, group)

        if total == 1:
            paths = registry.purge_group(session, group_id)
            was_deleted = True
        else:
            session.delete(membership)
            was_deleted = False

    discard_attachments(blob_store, paths)
    logger.info(f"group_left group_id={group_id} user={user_id} group_deleted={was_deleted}")
    return {"group_id": group_id, "was_group_deleted": was_deleted}
