"""
Study group registry: group records, their listings and the full-cascade
delete. Roster changes live in ``membership``.
"""

import json
import math
import logging
from typing import Optional

from sqlalchemy import String, cast, select, update, delete, func, or_
from sqlalchemy.orm import Session

from campusnet.core.database import atomic, new_id, utcnow
from campusnet.core.errors import Conflict, NotAuthorized, NotFound, ValidationError
from campusnet.core.storage import attachment_paths, discard_attachments
from campusnet.groups import permissions
from campusnet.groups.models import (
    GROUP_VISIBILITIES,
    StudyGroup,
    GroupMembership,
    GroupInvitation,
    GroupJoinRequest,
    GroupMessage,
    GroupMessageRead,
)
from campusnet.messaging.store import validate_page

logger = logging.getLogger(__name__)


def normalize_tags(tags) -> list:
    """Accept a list or a comma separated string; trim, drop empties, keep order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")

    seen = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag.lower() not in [t.lower() for t in seen]:
            seen.append(tag)
    return seen


def _validate_fields(name: Optional[str] = None, visibility: Optional[str] = None):
    if name is not None and not name.strip():
        raise ValidationError("Please provide a group name.")
    if visibility is not None and visibility not in GROUP_VISIBILITIES:
        raise ValidationError("visibility must be 'public' or 'private'.")


def get_group(session: Session, group_id: str) -> StudyGroup:
    group = session.execute(
        select(StudyGroup)
        .where(StudyGroup.id == group_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if group is None:
        raise NotFound("Study group not found.")
    return group


def claim_roster(session: Session, group: StudyGroup):
    """
    Conditional write on the group's roster version.

    Succeeds only if nobody changed the roster since ``group`` was read in
    this transaction; otherwise the caller's checks ran on stale data.
    """
    result = session.execute(
        update(StudyGroup)
        .where(StudyGroup.id == group.id, StudyGroup.roster_version == group.roster_version)
        .values(roster_version=StudyGroup.roster_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"roster_claim_lost group_id={group.id} observed={group.roster_version}")
        raise Conflict("Group membership changed by a concurrent request; please retry.")
    session.expire(group, ["roster_version"])


def members_count(session: Session, group_id: str) -> int:
    return permissions.count_members(session, group_id)


def create_group(
    session: Session,
    creator_id: str,
    name: str,
    description: str = None,
    visibility: str = "public",
    tags=None,
    course_id: str = None,
) -> StudyGroup:
    _validate_fields(name=name or "", visibility=visibility)

    with atomic(session):
        now = utcnow()
        group = StudyGroup(
            id=new_id(),
            name=name.strip(),
            description=(description or "").strip(),
            owner_id=creator_id,
            visibility=visibility,
            tags=normalize_tags(tags),
            course_id=course_id,
            roster_version=0,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        session.add(group)
        session.flush()

        session.add(
            GroupMembership(group_id=group.id, user_id=creator_id, role="admin", joined_at=now)
        )

    logger.info(f"group_created group_id={group.id} owner={creator_id} visibility={visibility}")
    return group


def _open_pending_requests(session: Session, group: StudyGroup) -> list:
    """Turn every pending join request into a membership. Does not commit."""
    requests = (
        session.execute(select(GroupJoinRequest).where(GroupJoinRequest.group_id == group.id))
        .scalars()
        .all()
    )
    now = utcnow()
    for join_request in requests:
        session.add(
            GroupMembership(group_id=group.id, user_id=join_request.user_id, role="member", joined_at=now)
        )
        session.delete(join_request)
    if requests:
        group.last_activity_at = now
    return [r.user_id for r in requests]


def update_group(
    session: Session,
    group_id: str,
    actor_id: str,
    name: str = None,
    description: str = None,
    visibility: str = None,
    tags=None,
    course_id: str = None,
) -> StudyGroup:
    """
    Update group fields. Admins and moderators only.

    A visibility change is a roster change: it claims the roster version,
    and opening a private group admits everyone with a pending join request.
    """
    _validate_fields(name=name, visibility=visibility)
    admitted = []

    with atomic(session):
        group = get_group(session, group_id)

        if not permissions.can_moderate(session, group_id, actor_id):
            raise NotAuthorized("You do not have permission to update this study group.")

        if visibility is not None and visibility != group.visibility:
            claim_roster(session, group)
            if visibility == "public":
                admitted = _open_pending_requests(session, group)
            group.visibility = visibility

        if name is not None:
            group.name = name.strip()
        if description is not None:
            group.description = description.strip()
        if tags is not None:
            group.tags = normalize_tags(tags)
        if course_id is not None:
            group.course_id = course_id or None
        group.updated_at = utcnow()

    logger.info(f"group_updated group_id={group_id} by={actor_id} admitted={len(admitted)}")
    return group


def purge_group(session: Session, group_id: str) -> list:
    """
    Delete a group and every record hanging off it. Does not commit.

    Returns the attachment storage paths of the deleted messages.
    """
    paths = []
    for attachments in session.execute(
        select(GroupMessage.attachments).where(GroupMessage.group_id == group_id)
    ).scalars():
        paths.extend(attachment_paths(attachments))

    message_ids = select(GroupMessage.id).where(GroupMessage.group_id == group_id)
    session.execute(delete(GroupMessageRead).where(GroupMessageRead.message_id.in_(message_ids)))
    session.execute(
        update(GroupMessage)
        .where(GroupMessage.group_id == group_id)
        .values(reply_to_id=None)
        .execution_options(synchronize_session=False)
    )
    session.execute(delete(GroupMessage).where(GroupMessage.group_id == group_id))
    session.execute(delete(GroupJoinRequest).where(GroupJoinRequest.group_id == group_id))
    session.execute(delete(GroupInvitation).where(GroupInvitation.group_id == group_id))
    session.execute(delete(GroupMembership).where(GroupMembership.group_id == group_id))
    session.execute(delete(StudyGroup).where(StudyGroup.id == group_id))

    logger.info(f"group_purged group_id={group_id} attachments={len(paths)}")
    return paths


def delete_group(session: Session, group_id: str, actor_id: str, blob_store) -> str:
    with atomic(session):
        group = get_group(session, group_id)

        if not permissions.is_admin(session, group_id, actor_id):
            raise NotAuthorized("Only group admins can delete the study group.")

        claim_roster(session, group)
        paths = purge_group(session, group_id)

    discard_attachments(blob_store, paths)
    logger.info(f"group_deleted group_id={group_id} by={actor_id}")
    return group_id


def _pending_flags(session: Session, group_id: str, user_id: str) -> dict:
    invited = session.execute(
        select(GroupInvitation.id).where(
            GroupInvitation.group_id == group_id, GroupInvitation.user_id == user_id
        )
    ).first()
    requested = session.execute(
        select(GroupJoinRequest.id).where(
            GroupJoinRequest.group_id == group_id, GroupJoinRequest.user_id == user_id
        )
    ).first()
    return {"has_invitation": invited is not None, "has_join_request": requested is not None}


def get_group_details(session: Session, group_id: str, actor_id: str) -> dict:
    """
    Group record plus the parts of the roster the actor may see.

    Private groups are visible to members and invitees only. Members see the
    member list; admins and moderators also see pending invitations and
    join requests.
    """
    group = get_group(session, group_id)
    role = permissions.get_role(session, group_id, actor_id)
    flags = _pending_flags(session, group_id, actor_id)

    if group.is_private and role is None and not flags["has_invitation"]:
        raise NotAuthorized("You do not have access to this private study group.")

    details = {
        "group": group,
        "role": role,
        "members_count": members_count(session, group_id),
        "members": [],
        "invitations": [],
        "join_requests": [],
        **flags,
    }

    if role is not None:
        details["members"] = (
            session.execute(
                select(GroupMembership)
                .where(GroupMembership.group_id == group_id)
                .order_by(GroupMembership.joined_at)
            )
            .scalars()
            .all()
        )

    if role in permissions.MODERATOR_ROLES:
        details["invitations"] = (
            session.execute(
                select(GroupInvitation)
                .where(GroupInvitation.group_id == group_id)
                .order_by(GroupInvitation.invited_at)
            )
            .scalars()
            .all()
        )
        details["join_requests"] = (
            session.execute(
                select(GroupJoinRequest)
                .where(GroupJoinRequest.group_id == group_id)
                .order_by(GroupJoinRequest.requested_at)
            )
            .scalars()
            .all()
        )

    return details


def list_my_groups(session: Session, actor_id: str) -> list:
    rows = session.execute(
        select(StudyGroup, GroupMembership.role)
        .join(GroupMembership, GroupMembership.group_id == StudyGroup.id)
        .where(GroupMembership.user_id == actor_id)
        .order_by(StudyGroup.last_activity_at.desc())
    ).all()

    return [
        {"group": group, "role": role, "members_count": members_count(session, group.id)}
        for group, role in rows
    ]


def _page(items: list, total: int, page: int, page_size: int) -> dict:
    return {
        "groups": items,
        "pagination": {
            "total": total,
            "page": page,
            "page_size": page_size,
            "pages": math.ceil(total / page_size) if total else 0,
            "has_more": page * page_size < total,
        },
    }


def list_available_groups(session: Session, actor_id: str, page: int = 1, page_size: int = 10) -> dict:
    """Public groups the actor has not joined yet, most active first."""
    validate_page(page, page_size)

    is_member = (
        select(GroupMembership.id)
        .where(GroupMembership.group_id == StudyGroup.id, GroupMembership.user_id == actor_id)
        .exists()
    )
    query = select(StudyGroup).where(StudyGroup.visibility == "public", ~is_member)

    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    groups = (
        session.execute(
            query.order_by(StudyGroup.last_activity_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )

    items = [
        {
            "group": group,
            "role": None,
            "members_count": members_count(session, group.id),
            **_pending_flags(session, group.id, actor_id),
        }
        for group in groups
    ]
    return _page(items, total, page, page_size)


def search_groups(
    session: Session,
    actor_id: str,
    q: str = None,
    tag: str = None,
    page: int = 1,
    page_size: int = 10,
) -> dict:
    """Public groups, plus private ones the actor belongs to, by text and tag."""
    if not (q and q.strip()) and not (tag and tag.strip()):
        raise ValidationError("Please provide at least one search parameter.")
    validate_page(page, page_size)

    my_group_ids = select(GroupMembership.group_id).where(GroupMembership.user_id == actor_id)
    query = select(StudyGroup).where(
        or_(StudyGroup.visibility == "public", StudyGroup.id.in_(my_group_ids))
    )
    if q and q.strip():
        pattern = f"%{q.strip()}%"
        query = query.where(
            or_(StudyGroup.name.ilike(pattern), StudyGroup.description.ilike(pattern))
        )
    if tag and tag.strip():
        # tags are stored as a serialized JSON list; match one whole element
        element = json.dumps(tag.strip().lower())
        query = query.where(
            func.lower(cast(StudyGroup.tags, String), type_=String).contains(element, autoescape=True)
        )

    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    groups = (
        session.execute(
            query.order_by(StudyGroup.last_activity_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )

    items = [
        {
            "group": group,
            "role": permissions.get_role(session, group.id, actor_id),
            "members_count": members_count(session, group.id),
        }
        for group in groups
    ]
    return _page(items, total, page, page_size)


def list_my_invitations(session: Session, actor_id: str) -> list:
    rows = session.execute(
        select(GroupInvitation, StudyGroup)
        .join(StudyGroup, StudyGroup.id == GroupInvitation.group_id)
        .where(GroupInvitation.user_id == actor_id)
        .order_by(GroupInvitation.invited_at.desc())
    ).all()
    return [{"invitation": invitation, "group": group} for invitation, group in rows]
