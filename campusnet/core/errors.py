"""
Typed failures for every business rule.

Each error carries a stable ``kind`` (what clients branch on), a human
readable message and the HTTP status it maps to at the boundary. Services
raise these; ``register_error_handlers`` turns them into JSON responses of
the form ``{"detail": ..., "kind": ...}``.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    status_code = 400
    kind = "DomainError"
    default_message = "Request could not be completed."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


# Base kinds


class NotFound(DomainError):
    status_code = 404
    kind = "NotFound"
    default_message = "Resource not found."


class NotAuthorized(DomainError):
    status_code = 403
    kind = "NotAuthorized"
    default_message = "You are not allowed to perform this action."


class InvalidState(DomainError):
    status_code = 400
    kind = "InvalidState"
    default_message = "Operation is not valid in the current state."


class Conflict(DomainError):
    status_code = 409
    kind = "Conflict"
    default_message = "The resource was changed by a concurrent request; re-read and retry."


class ValidationError(DomainError):
    status_code = 400
    kind = "ValidationError"
    default_message = "Invalid input."


# Specific kinds


class DuplicateRelationship(InvalidState):
    kind = "DuplicateRelationship"
    default_message = "Connection request already exists or you are already connected."


class AlreadyResolved(InvalidState):
    kind = "AlreadyResolved"
    default_message = "This connection request has already been answered."


class LastAdminGuard(InvalidState):
    kind = "LastAdminGuard"
    default_message = "Cannot remove the last admin. Promote another member to admin first."


class SelfReference(ValidationError):
    kind = "SelfReference"
    default_message = "You cannot target yourself."


class EmptyMessage(ValidationError):
    kind = "EmptyMessage"
    default_message = "Please provide text or attachments."


class InsufficientRole(NotAuthorized):
    kind = "InsufficientRole"
    default_message = "Your role does not allow this action."


class NotAParticipant(NotAuthorized):
    kind = "NotAParticipant"
    default_message = "You are not a participant in this conversation."


class NotAMember(NotAuthorized):
    kind = "NotAMember"
    default_message = "You must be a member of this group."


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        f"domain_error kind={exc.kind} status={exc.status_code} "
        f"path={request.url.path} detail={exc.message}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _describe(error: dict) -> str:
    loc = [str(part) for part in error.get("loc", ())]
    # the first entry names the request part ("body", "query", ...)
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    return f"{'.'.join(loc)}: {error.get('msg')}" if loc else str(error.get("msg"))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError("; ".join(_describe(e) for e in exc.errors()))
    return await domain_error_handler(request, error)


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
