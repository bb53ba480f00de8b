"""
Caller identity and error translation for API endpoints.

Identity comes from trusted upstream headers set by the authenticating proxy:
`X-Actor-Id` and `X-Actor-Role`. The core services are permission-agnostic;
endpoints use the actor context to decide staff-only actions before calling
them.
"""

import logging
from typing import NoReturn, Optional

from fastapi import Depends, Header, HTTPException, status

from core.exceptions import (
    BusyError,
    CapExceededError,
    ConflictError,
    CoreFacilityError,
    InvalidPolicyError,
    InvalidRangeError,
    InvalidTransitionError,
    NoPolicyFoundError,
    NotFoundError,
    PolicyLockedError,
    RuleViolationError,
    SlotUnavailableError,
)

logger = logging.getLogger(__name__)

STAFF_ROLES = frozenset({"staff", "admin"})

# First match wins, so subclasses come before their bases
_STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SlotUnavailableError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (PolicyLockedError, status.HTTP_409_CONFLICT),
    (BusyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RuleViolationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CapExceededError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NoPolicyFoundError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidPolicyError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidRangeError, status.HTTP_400_BAD_REQUEST),
]


class ActorContext:
    """Caller identity forwarded by the upstream proxy."""

    def __init__(self, actor_id: int, role: str):
        self.actor_id = actor_id
        self.role = role

    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def __repr__(self) -> str:
        return f"ActorContext(actor_id={self.actor_id}, role='{self.role}')"


def get_actor(
    x_actor_id: Optional[int] = Header(None),
    x_actor_role: str = Header("user"),
) -> ActorContext:
    """Read the caller identity; requests without X-Actor-Id are rejected."""
    if x_actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "missing_actor", "message": "X-Actor-Id header is required"},
        )
    return ActorContext(actor_id=x_actor_id, role=x_actor_role.lower())


def require_staff(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not actor.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Staff role required"},
        )
    return actor


def status_for(error: CoreFacilityError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def raise_http_error(error: CoreFacilityError) -> NoReturn:
    """Translate a domain error into an HTTPException with its structured detail."""
    status_code = status_for(error)
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        logger.warning(f"Request gave up on lock contention: {error.message}")
    raise HTTPException(status_code=status_code, detail=error.to_detail()) from error
