"""
Order detail API endpoints.

Handles completion (pricing) of order details.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.dependencies import ActorContext, raise_http_error, require_staff
from api.responses import OrderDetailResponse
from core.database import get_db
from core.exceptions import CoreFacilityError
from services import OrderService
from shared_types.billing import Usage

logger = logging.getLogger(__name__)

router = APIRouter()


class CompleteOrderDetailRequest(BaseModel):
    """Request model for completing an order detail with measured usage."""
    minutes: Optional[int] = Field(None, ge=0, description="Measured duration")
    quantity: Optional[int] = Field(None, ge=0, description="Measured quantity")
    at: Optional[datetime] = Field(None, description="Completion time (default now)")

    def usage(self) -> Optional[Usage]:
        if self.minutes is None and self.quantity is None:
            return None
        return Usage(minutes=self.minutes, quantity=self.quantity)


@router.post(
    "/{order_detail_id}/complete",
    summary="Complete an order detail",
    response_model=OrderDetailResponse,
)
def complete_order_detail(
    order_detail_id: int,
    request: Optional[CompleteOrderDetailRequest] = None,
    actor: ActorContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    Complete an in-process order detail: resolve its price policy and freeze the cost.

    Returns 422 when no policy applies or a usage cap rejects the usage.
    Returns 409 when the detail belongs to a reservation that is still
    confirmed or in progress; those are completed by checking out.
    """
    request = request or CompleteOrderDetailRequest()
    try:
        detail = OrderService.complete_order_detail(
            db, order_detail_id, actual_usage=request.usage(), at=request.at
        )
        return OrderDetailResponse.model_validate(detail)
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to complete order detail {order_detail_id}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Failed to complete order detail"},
        )
