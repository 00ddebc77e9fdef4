"""
Connection ledger.

One row per unordered user pair (``pair_key`` is unique), whatever its
status. Accepting a request and provisioning the pair's conversation happen
in one unit; so do removing the connection and tearing the conversation
down. Connection counters are recomputed afterwards, outside that unit.
"""

import logging
from typing import Iterable

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session

from campusnet.core.database import atomic, new_id, pair_key, utcnow
from campusnet.core.errors import (
    AlreadyResolved,
    Conflict,
    DuplicateRelationship,
    InvalidState,
    NotAuthorized,
    NotFound,
    SelfReference,
    ValidationError,
)
from campusnet.core.storage import discard_attachments
from campusnet.chat.models import Conversation
from campusnet.chat.provisioner import create_conversation_for_connection, delete_conversation
from campusnet.connections.models import Connection, UserStats

logger = logging.getLogger(__name__)

DECISIONS = ("accept", "reject")


def get_connection(session: Session, connection_id: str) -> Connection:
    connection = session.get(Connection, connection_id)
    if connection is None:
        raise NotFound("Connection request not found.")
    return connection


def find_connection_between(session: Session, user_a: str, user_b: str):
    return session.execute(
        select(Connection).where(Connection.pair_key == pair_key(user_a, user_b))
    ).scalar_one_or_none()


def request_connection(session: Session, requester_id: str, recipient_id: str, message: str = None) -> Connection:
    if requester_id == recipient_id:
        raise SelfReference("You cannot send a connection request to yourself.")

    with atomic(session):
        if find_connection_between(session, requester_id, recipient_id) is not None:
            raise DuplicateRelationship()

        connection = Connection(
            id=new_id(),
            requester_id=requester_id,
            recipient_id=recipient_id,
            pair_key=pair_key(requester_id, recipient_id),
            status="pending",
            message=(message or "").strip(),
            requested_at=utcnow(),
        )
        session.add(connection)
        # a concurrent request for the same pair fails the unique pair_key here
        session.flush()

    logger.info(
        f"connection_requested connection_id={connection.id} "
        f"requester={requester_id} recipient={recipient_id}"
    )
    return connection


def _resolve(session: Session, connection: Connection, new_status: str, now) -> None:
    """Conditional pending -> ``new_status`` write; losing a race is a Conflict."""
    values = {"status": new_status, "responded_at": now}
    if new_status == "accepted":
        values["last_interaction_at"] = now

    result = session.execute(
        update(Connection)
        .where(Connection.id == connection.id, Connection.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("This connection request was answered by a concurrent request.")
    session.refresh(connection)


def respond_to_connection(session: Session, connection_id: str, actor_id: str, decision: str) -> dict:
    if decision not in DECISIONS:
        raise ValidationError("decision must be 'accept' or 'reject'.")

    with atomic(session):
        connection = get_connection(session, connection_id)

        if connection.recipient_id != actor_id:
            raise NotAuthorized(f"You are not authorized to {decision} this connection request.")

        if connection.status != "pending":
            raise AlreadyResolved(f"This connection request is already {connection.status}.")

        now = utcnow()
        conversation = None

        if decision == "accept":
            _resolve(session, connection, "accepted", now)
            conversation, _ = create_conversation_for_connection(session, connection)
        else:
            _resolve(session, connection, "rejected", now)

    logger.info(
        f"connection_{decision}ed connection_id={connection.id} "
        f"conversation_id={conversation.id if conversation else None}"
    )

    if decision == "accept":
        sync_connection_counts(session, [connection.requester_id, connection.recipient_id])

    return {"connection": connection, "conversation": conversation}


def remove_connection(session: Session, connection_id: str, actor_id: str, blob_store) -> str:
    with atomic(session):
        connection = get_connection(session, connection_id)

        if not connection.involves(actor_id):
            raise NotAuthorized("You are not authorized to remove this connection.")

        if connection.status != "accepted":
            raise InvalidState("Can only remove accepted connections.")

        parties = [connection.requester_id, connection.recipient_id]

        # the conversation may be linked either way round
        conversation_ids = set(
            session.execute(
                select(Conversation.id).where(
                    or_(
                        Conversation.connection_id == connection.id,
                        Conversation.pair_key == connection.pair_key,
                    )
                )
            ).scalars()
        )
        if connection.conversation_id:
            conversation_ids.add(connection.conversation_id)

        paths = []
        for conversation_id in conversation_ids:
            paths.extend(delete_conversation(session, conversation_id))

        session.delete(connection)

    logger.info(
        f"connection_removed connection_id={connection_id} by={actor_id} "
        f"conversations={len(conversation_ids)}"
    )

    discard_attachments(blob_store, paths)
    sync_connection_counts(session, parties)
    return connection_id


def sync_connection_counts(session: Session, user_ids: Iterable[str]) -> dict:
    """
    Recompute the denormalized connection counters for ``user_ids``.

    Counters are overwritten with the ledger's count, so running this twice,
    or after a retried request, never drifts.
    """
    counts = {}
    with atomic(session):
        for user_id in set(user_ids):
            count = session.execute(
                select(func.count())
                .select_from(Connection)
                .where(
                    Connection.status == "accepted",
                    or_(Connection.requester_id == user_id, Connection.recipient_id == user_id),
                )
            ).scalar_one()

            stats = session.get(UserStats, user_id)
            if stats is None:
                stats = UserStats(user_id=user_id)
                session.add(stats)
            stats.connection_count = count
            counts[user_id] = count

    return counts


def get_connection_count(session: Session, user_id: str) -> int:
    stats = session.get(UserStats, user_id)
    return stats.connection_count if stats else 0


def list_connection_requests(session: Session, actor_id: str) -> dict:
    def pending(column):
        return (
            session.execute(
                select(Connection)
                .where(column == actor_id, Connection.status == "pending")
                .order_by(Connection.requested_at.desc())
            )
            .scalars()
            .all()
        )

    return {
        "received": pending(Connection.recipient_id),
        "sent": pending(Connection.requester_id),
    }


def list_connections(session: Session, actor_id: str) -> list:
    return (
        session.execute(
            select(Connection)
            .where(
                Connection.status == "accepted",
                or_(Connection.requester_id == actor_id, Connection.recipient_id == actor_id),
            )
            .order_by(Connection.responded_at.desc())
        )
        .scalars()
        .all()
    )


def get_connection_status(session: Session, actor_id: str, other_id: str) -> dict:
    if actor_id == other_id:
        raise SelfReference()

    connection = find_connection_between(session, actor_id, other_id)
    if connection is None:
        status = "none"
    elif connection.status == "pending":
        status = "pending_sent" if connection.requester_id == actor_id else "pending_received"
    else:
        status = connection.status

    return {"status": status, "connection_id": connection.id if connection else None}
