from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from campusnet.core.database import get_db
from campusnet.core.dependencies import get_current_user_id
from campusnet.core.errors import NotFound
from campusnet.core.identity import get_profiles
from campusnet.core.storage import get_blob_store

from . import services
from .schemas import (
    ConnectionData,
    ConnectionRequestModel,
    ConnectionRequestResponseModel,
    RespondToConnectionModel,
    RespondToConnectionResponseModel,
    RemoveConnectionResponseModel,
    ConnectionRequestItem,
    ConnectionRequestsResponseModel,
    ConnectionItem,
    MyConnectionsResponseModel,
    ConnectionStatusResponseModel,
)


router = APIRouter()


@router.post(
    "/request/{user_id}", response_model=ConnectionRequestResponseModel, status_code=201
)
def send_connection_request(
    user_id: str,
    data: ConnectionRequestModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Send a connection request to another user.

    **Input**
    - `user_id`: The id of the user to connect with.
    - `message`: Optional note shown to the recipient.

    **Process**
    1. Prevent requests to yourself.
    2. Validate that the target user exists.
    3. Reject the request if any connection already exists between the pair,
       in either direction and whatever its status.
    4. Create a new `pending` connection.

    **Errors**
    - `400 SelfReference`: Attempt to connect with yourself.
    - `400 DuplicateRelationship`: A request or connection already exists.
    - `404`: No user with that id.
    - `409`: A concurrent request for the same pair won.
    """
    if user_id != current_user_id and not profiles.exists(user_id):
        raise NotFound("User not found.")

    connection = services.request_connection(db, current_user_id, user_id, data.message)

    return {
        "message": "Connection request sent.",
        "connection": connection,
    }


@router.put(
    "/{connection_id}/respond",
    response_model=RespondToConnectionResponseModel,
    status_code=200,
)
def respond_to_connection_request(
    connection_id: str,
    data: RespondToConnectionModel,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Accept or reject a pending connection request.

    Only the recipient may answer. Accepting also opens the pair's direct
    conversation; both happen together or not at all.

    **Returns**
    - `connection`: The updated connection.
    - `conversation`: The conversation opened on accept, otherwise `null`.

    **Errors**
    - `403`: You are not the recipient.
    - `404`: No such request.
    - `400 AlreadyResolved`: The request was already answered.
    - `409`: A concurrent answer won.
    """
    return services.respond_to_connection(db, connection_id, current_user_id, data.decision)


@router.delete(
    "/{connection_id}", response_model=RemoveConnectionResponseModel, status_code=200
)
def remove_connection(
    connection_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """
    Remove an accepted connection.

    Deletes the connection together with its conversation and every message
    in it. Attachments are removed from storage afterwards.

    **Errors**
    - `403`: You are not part of this connection.
    - `404`: No such connection.
    - `400 InvalidState`: Only accepted connections can be removed.
    """
    removed_id = services.remove_connection(db, connection_id, current_user_id, blob_store)
    return {"connection_removed": True, "id": removed_id}


@router.get("/requests", response_model=ConnectionRequestsResponseModel, status_code=200)
def get_connection_requests(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """Pending requests sent to and by the authenticated user, newest first."""
    requests = services.list_connection_requests(db, current_user_id)

    other_ids = [c.requester_id for c in requests["received"]] + [
        c.recipient_id for c in requests["sent"]
    ]
    usernames = profiles.get_usernames(other_ids)

    def item(connection, other_id):
        return ConnectionRequestItem(
            connection=ConnectionData.model_validate(connection),
            user_id=other_id,
            username=usernames.get(other_id),
        )

    return {
        "received": [item(c, c.requester_id) for c in requests["received"]],
        "sent": [item(c, c.recipient_id) for c in requests["sent"]],
    }


@router.get("", response_model=MyConnectionsResponseModel, status_code=200)
def get_my_connections(
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    profiles=Depends(get_profiles),
):
    """
    Accepted connections of the authenticated user.

    Each item shows the other user, when the connection was accepted, the
    last interaction and the id of the pair's conversation.
    """
    connections = services.list_connections(db, current_user_id)
    usernames = profiles.get_usernames(c.other_party(current_user_id) for c in connections)

    items = []
    for connection in connections:
        other_id = connection.other_party(current_user_id)
        items.append(
            ConnectionItem(
                id=connection.id,
                user_id=other_id,
                username=usernames.get(other_id),
                connected_since=connection.responded_at,
                last_interaction_at=connection.last_interaction_at,
                conversation_id=connection.conversation_id,
            )
        )

    return {
        "count": len(items),
        "connection_count": services.get_connection_count(db, current_user_id),
        "connections": items,
    }


@router.get(
    "/status/{user_id}", response_model=ConnectionStatusResponseModel, status_code=200
)
def get_connection_status(
    user_id: str,
    current_user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Where the authenticated user stands with `user_id`."""
    return services.get_connection_status(db, current_user_id, user_id)
