"""
Reservation API endpoints.

Handles booking, cancellation, check-in/check-out and no-show marking.
Staff-only options (admin override, fee waiver) are decided here; the
reservation service itself does not check roles.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.dependencies import ActorContext, get_actor, raise_http_error, require_staff
from api.responses import ReservationResponse
from core.database import get_db
from core.exceptions import CoreFacilityError
from services import ReservationService

logger = logging.getLogger(__name__)

router = APIRouter()


class ReservationCreateRequest(BaseModel):
    """Request model for booking a product."""
    product_id: int
    account_id: int
    user_id: Optional[int] = Field(None, description="Defaults to the calling actor")
    start_at: datetime
    end_at: datetime
    admin_override: bool = Field(False, description="Staff only: skip rule, slot and capacity checks")


class ReservationCancelRequest(BaseModel):
    """Request model for cancelling a reservation."""
    waive_fee: bool = Field(False, description="Staff only: skip the late-cancellation fee")
    reason: Optional[str] = Field(None, max_length=1000)


class ReservationTimeRequest(BaseModel):
    """Optional explicit time for check-in, check-out and no-show marking."""
    at: Optional[datetime] = None


def _internal_error(action: str, reservation_id: Optional[int], db: Session, e: Exception) -> HTTPException:
    logger.exception(f"Failed to {action} reservation {reservation_id}: {e}")
    db.rollback()
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "internal_error", "message": f"Failed to {action} reservation"},
    )


@router.post(
    "",
    summary="Request a reservation",
    status_code=status.HTTP_201_CREATED,
    response_model=ReservationResponse,
)
def create_reservation(
    request: ReservationCreateRequest,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Book [start_at, end_at) on a product.

    Returns 409 with nearby windows when the slot is unavailable, 409 with the
    conflicting reservations when capacity is exceeded, and 422 naming the
    violated rule for duration, lead-time, advance-window or account limits.
    """
    if request.admin_override and not actor.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Only staff can override booking rules"},
        )
    try:
        reservation = ReservationService.request_reservation(
            db,
            product_id=request.product_id,
            account_id=request.account_id,
            user_id=request.user_id or actor.actor_id,
            start_at=request.start_at,
            end_at=request.end_at,
            admin_override=request.admin_override,
            actor_id=actor.actor_id,
        )
        return ReservationResponse.model_validate(reservation)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("create", None, db, e)


@router.post(
    "/{reservation_id}/cancel",
    summary="Cancel a reservation",
    response_model=ReservationResponse,
)
def cancel_reservation(
    reservation_id: int,
    request: Optional[ReservationCancelRequest] = None,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Cancel a confirmed reservation.

    Inside the cancellation cutoff the product's cancellation fee is charged
    unless a staff caller waives it. Cancelling twice returns the cancelled
    reservation.
    """
    request = request or ReservationCancelRequest()
    if request.waive_fee and not actor.is_staff():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Only staff can waive cancellation fees"},
        )
    try:
        reservation = ReservationService.cancel_reservation(
            db,
            reservation_id,
            actor_id=actor.actor_id,
            waive_fee=request.waive_fee,
            reason=request.reason,
        )
        return ReservationResponse.model_validate(reservation)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("cancel", reservation_id, db, e)


@router.post(
    "/{reservation_id}/start",
    summary="Check in to a reservation",
    response_model=ReservationResponse,
)
def start_reservation(
    reservation_id: int,
    request: Optional[ReservationTimeRequest] = None,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Record the actual start of a confirmed reservation."""
    try:
        reservation = ReservationService.start_reservation(
            db, reservation_id, at=request.at if request else None
        )
        return ReservationResponse.model_validate(reservation)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("start", reservation_id, db, e)


@router.post(
    "/{reservation_id}/end",
    summary="Check out of a reservation",
    response_model=ReservationResponse,
)
def end_reservation(
    reservation_id: int,
    request: Optional[ReservationTimeRequest] = None,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Record the actual end of a reservation and complete its order detail."""
    try:
        reservation = ReservationService.end_reservation(
            db, reservation_id, at=request.at if request else None
        )
        return ReservationResponse.model_validate(reservation)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("end", reservation_id, db, e)


@router.post(
    "/{reservation_id}/missed",
    summary="Mark a reservation as a no-show",
    response_model=ReservationResponse,
)
def mark_reservation_missed(
    reservation_id: int,
    request: Optional[ReservationTimeRequest] = None,
    actor: ActorContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """Mark a confirmed reservation missed once its grace period has passed (staff only)."""
    try:
        reservation = ReservationService.mark_missed(
            db, reservation_id, at=request.at if request else None
        )
        return ReservationResponse.model_validate(reservation)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("mark missed", reservation_id, db, e)
