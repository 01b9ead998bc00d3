"""
Knowledge Hub - Shared Route Helpers

Acting-user resolution and the mapping of service errors to HTTP responses.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from services.content_models import Actor, Role
from services.errors import (
    AuthorizationError, DuplicateError, InvalidStateError, InvalidTransitionError,
    KnowledgeHubError, NotFoundError, RegistryFault, ValidationError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (InvalidTransitionError, 409),
    (InvalidStateError, 409),
    (RegistryFault, 503),
]


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None)
) -> Actor:
    """The acting user, from the X-User-Id and X-User-Role headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    role = x_user_role or Role.CONSULTANT.value
    if role not in [r.value for r in Role]:
        raise HTTPException(status_code=400, detail=f"Unknown role '{role}'")
    return Actor(id=x_user_id, role=role)


def http_error(error: KnowledgeHubError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    logger.error("Unhandled service error: %s", error)
    return HTTPException(status_code=500, detail=error.to_dict())
