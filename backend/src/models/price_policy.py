"""
Price policy model: a versioned rate definition for a (product, price group) pair.

Policies are effective-dated. Once a policy's window has begun and an order
detail has been priced against it, the policy is locked: corrections are made
by expiring it and creating a new version, never by editing it.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


RATE_TYPES = ('hourly', 'duration_bracket', 'unit', 'tiered_unit')
CHARGE_FOR = ('reservation', 'usage', 'overage')
CAP_PERIODS = ('week', 'month', 'year')
CAP_MODES = ('reject', 'fallback')


# Rate table schema validation models
class DurationBracket(BaseModel):
    """Flat amount for durations up to and including `up_to_minutes`."""
    up_to_minutes: int = Field(..., gt=0)
    amount_cents: int = Field(..., ge=0)


class UnitTier(BaseModel):
    """Marginal per-unit rate for units up to and including `up_to` (null = unbounded)."""
    up_to: Optional[int] = Field(default=None, gt=0)
    rate_cents: int = Field(..., ge=0)


class RateTable(BaseModel):
    """Schema for the `rate_table` JSON column."""
    brackets: List[DurationBracket] = Field(default_factory=list)
    tiers: List[UnitTier] = Field(default_factory=list)


class PricePolicy(Base):
    """
    Price policy entity.

    Rate types:
    - 'hourly': unit_rate_cents per hour, usage rounded up to billing_increment_minutes
    - 'duration_bracket': flat amount of the bracket containing the duration
    - 'unit': unit_rate_cents per unit
    - 'tiered_unit': graduated marginal tiers from rate_table.tiers
    """

    __tablename__ = "price_policies"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the policy."""

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    """Reference to the priced product."""

    price_group_id: Mapped[int] = mapped_column(ForeignKey("price_groups.id"))
    """Reference to the price group this policy applies to."""

    start_date: Mapped[date] = mapped_column(Date)
    """First date the policy is effective (inclusive)."""

    expire_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    """Last date the policy is effective (inclusive). Null = open-ended."""

    can_purchase: Mapped[bool] = mapped_column(Boolean, default=True)
    """False blocks the group from ordering the product (the policy is skipped)."""

    rate_type: Mapped[str] = mapped_column(String(30))
    """Valid values: 'hourly', 'duration_bracket', 'unit', 'tiered_unit'."""

    unit_rate_cents: Mapped[int] = mapped_column(default=0)
    """Per-hour rate (duration types) or per-unit rate ('unit'). Also prorates past the last bracket."""

    minimum_cost_cents: Mapped[int] = mapped_column(default=0)
    """Floor applied to the base cost of non-zero usage."""

    billing_increment_minutes: Mapped[int] = mapped_column(default=1)
    """Duration usage is rounded up to a multiple of this before rating."""

    rate_table: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    """
    JSON column with brackets/tiers (matches RateTable Pydantic model):
    {
        "brackets": [{"up_to_minutes": 60, "amount_cents": 5000}, ...],
        "tiers": [{"up_to": 10, "rate_cents": 500}, {"up_to": null, "rate_cents": 400}]
    }
    """

    subsidy_basis_points: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Percentage subsidy in basis points (5000 = 50%). Exclusive with subsidy_amount_cents."""

    subsidy_amount_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Fixed subsidy per order detail. Exclusive with subsidy_basis_points."""

    cancellation_fee_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Flat fee for cancelling after the cutoff."""

    cancellation_fee_basis_points: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Fee for cancelling after the cutoff, as a share of the full reservation's net cost."""

    charge_for: Mapped[str] = mapped_column(String(20), default='reservation')
    """
    Which window instrument usage is billed on:
    - 'reservation': the reserved duration
    - 'usage': the actual check-in/check-out duration
    - 'overage': the reserved duration, or the actual one if longer
    """

    charge_for_missed: Mapped[bool] = mapped_column(Boolean, default=False)
    """Whether no-shows are billed at the reserved duration."""

    usage_cap: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Maximum billable minutes (duration types) or units per account and cap period."""

    cap_period: Mapped[str] = mapped_column(String(10), default='month')
    """Valid values: 'week', 'month', 'year'."""

    cap_mode: Mapped[str] = mapped_column(String(10), default='reject')
    """'reject' raises CapExceededError; 'fallback' bills the excess at fallback_rate_cents."""

    fallback_rate_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Rate for usage beyond the cap (per hour or per unit, matching unit_rate_cents)."""

    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    """Optional administrative note."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the policy was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the policy was last updated."""

    # Relationships
    product = relationship("Product", back_populates="price_policies")
    """Relationship to the Product entity."""

    price_group = relationship("PriceGroup")
    """Relationship to the PriceGroup entity."""

    __table_args__ = (
        Index('idx_price_policies_lookup', 'product_id', 'price_group_id', 'start_date'),
    )

    def get_validated_rate_table(self) -> RateTable:
        """Get rate table with schema validation."""
        return RateTable.model_validate(self.rate_table or {})

    def __repr__(self) -> str:
        return f"<PricePolicy(id={self.id}, product_id={self.product_id}, group_id={self.price_group_id}, {self.start_date}..{self.expire_date})>"
