"""
Account billing API endpoints.

Handles on-demand journal runs and statement generation (staff only). The
same operations run nightly and monthly through the billing scheduler.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.dependencies import ActorContext, raise_http_error, require_staff
from api.responses import JournalRowResponse, JournalRunResponse, StatementResponse
from core.database import get_db
from core.exceptions import CoreFacilityError
from services import JournalService, StatementService
from utils.datetime_utils import facility_now

logger = logging.getLogger(__name__)

router = APIRouter()


class JournalRunRequest(BaseModel):
    """Request model for a journal run."""
    as_of: Optional[date] = Field(None, description="Journal details fulfilled on or before this date (default today)")


class StatementCreateRequest(BaseModel):
    """Request model for generating a statement."""
    period_start: date
    period_end: date


@router.post(
    "/{account_id}/journal",
    summary="Journal an account's completed order details",
    response_model=JournalRunResponse,
)
def run_journal(
    account_id: int,
    request: Optional[JournalRunRequest] = None,
    actor: ActorContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """Journal every complete, unjournaled order detail of the account. Safe to repeat."""
    as_of = (request.as_of if request else None) or facility_now().date()
    try:
        rows = JournalService.run_journal_batch(db, account_id, as_of, actor_id=actor.actor_id)
        return JournalRunResponse(
            account_id=account_id,
            row_count=len(rows),
            total_cents=sum(row.amount_cents for row in rows),
            rows=[JournalRowResponse.model_validate(row) for row in rows],
        )
    except CoreFacilityError as e:
        raise_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to run journal for account {account_id}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Failed to run journal"},
        )


@router.post(
    "/{account_id}/statements",
    summary="Generate a statement",
    response_model=StatementResponse,
)
def create_statement(
    account_id: int,
    request: StatementCreateRequest,
    actor: ActorContext = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    Close the account's unstatemented journal rows for the period into a statement.

    Repeating the call with nothing new returns the latest statement for the
    period; 404 when the period has nothing to bill and no statement.
    """
    try:
        statement = StatementService.generate_statement(
            db, account_id, request.period_start, request.period_end, actor_id=actor.actor_id
        )
    except CoreFacilityError as e:
        raise_http_error(e)
    except Exception as e:
        logger.exception(f"Failed to generate statement for account {account_id}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Failed to generate statement"},
        )

    if statement is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "nothing_to_bill",
                "message": f"Account {account_id} has nothing to bill for {request.period_start} - {request.period_end}",
            },
        )
    return StatementResponse.model_validate(statement)
