"""
Product API endpoints.

Exposes the bookable windows computed by the schedule rule engine.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from api.dependencies import ActorContext, get_actor, raise_http_error
from api.responses import TimeWindowResponse, WindowListResponse
from core.database import get_db
from core.exceptions import CoreFacilityError, NotFoundError
from models import Product
from services import ScheduleRuleService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{product_id}/windows",
    summary="List bookable windows",
    response_model=WindowListResponse,
)
def list_windows(
    product_id: int,
    start: datetime = Query(..., description="Range start"),
    end: datetime = Query(..., description="Range end (exclusive)"),
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Get the disjoint bookable windows of a product over [start, end).

    Windows reflect schedule rules and exceptions only; existing reservations
    are not subtracted.
    """
    try:
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
        windows = ScheduleRuleService.available_windows(db, product, start, end)
        return WindowListResponse(
            product_id=product_id,
            windows=[
                TimeWindowResponse(start=w.start, end=w.end, capacity=w.capacity) for w in windows
            ],
        )
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to list windows for product {product_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Failed to list windows"},
        )
