"""
Role predicates for study groups.

Every call reads the membership row from the database. Nothing here is
memoized, so a role change committed by another request is visible to the
very next check.
"""

from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from campusnet.groups.models import GroupMembership

MODERATOR_ROLES = ("admin", "moderator")


def get_membership(session: Session, group_id: str, user_id: str) -> Optional[GroupMembership]:
    return session.execute(
        select(GroupMembership)
        .where(GroupMembership.group_id == group_id, GroupMembership.user_id == user_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_role(session: Session, group_id: str, user_id: str) -> Optional[str]:
    return session.execute(
        select(GroupMembership.role).where(
            GroupMembership.group_id == group_id, GroupMembership.user_id == user_id
        )
    ).scalar_one_or_none()


def is_member(session: Session, group_id: str, user_id: str) -> bool:
    return get_role(session, group_id, user_id) is not None


def can_moderate(session: Session, group_id: str, user_id: str) -> bool:
    return get_role(session, group_id, user_id) in MODERATOR_ROLES


def is_admin(session: Session, group_id: str, user_id: str) -> bool:
    return get_role(session, group_id, user_id) == "admin"


def count_members(session: Session, group_id: str, role: str = None) -> int:
    query = select(func.count()).select_from(GroupMembership).where(
        GroupMembership.group_id == group_id
    )
    if role is not None:
        query = query.where(GroupMembership.role == role)
    return session.execute(query).scalar_one()
