"""
Shared response models for API endpoints.

This module contains Pydantic response models that are shared across
multiple API endpoints to ensure consistency and reduce duplication.
All money fields are integer cents.
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ReservationResponse(BaseModel):
    """Response model for a reservation."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    order_detail_id: int
    reserve_start_at: datetime
    reserve_end_at: datetime
    actual_start_at: Optional[datetime] = None
    actual_end_at: Optional[datetime] = None
    status: str
    is_admin_override: bool
    canceled_at: Optional[datetime] = None
    missed_at: Optional[datetime] = None


class OrderDetailResponse(BaseModel):
    """Response model for an order detail and its frozen cost."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    product_id: int
    account_id: int
    state: str
    quantity: int
    duration_minutes: Optional[int] = None
    price_policy_id: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    actual_cost_cents: Optional[int] = None
    actual_subsidy_cents: Optional[int] = None
    net_cost_cents: Optional[int] = None
    billed_quantity: Optional[int] = None
    is_cancellation_fee: bool
    fulfilled_at: Optional[datetime] = None
    problem_description: Optional[str] = None
    journal_id: Optional[int] = None


class TimeWindowResponse(BaseModel):
    """Response model for a bookable window."""
    start: datetime
    end: datetime
    capacity: int


class WindowListResponse(BaseModel):
    """Response model for a product's windows over a range."""
    product_id: int
    windows: List[TimeWindowResponse]


class JournalRowResponse(BaseModel):
    """Response model for a journal row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    journal_id: Optional[int] = None
    order_detail_id: int
    account_id: int
    amount_cents: int
    description: str
    journal_date: date
    is_voided: bool
    is_reversal: bool
    statement_id: Optional[int] = None


class JournalRunResponse(BaseModel):
    """Response model for a journal run."""
    account_id: int
    row_count: int
    total_cents: int
    rows: List[JournalRowResponse]


class StatementResponse(BaseModel):
    """Response model for a statement."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    statement_number: str
    period_start: date
    period_end: date
    total_cents: int
    row_count: int
    payment_status: str
    paid_at: Optional[datetime] = None
    created_at: datetime
