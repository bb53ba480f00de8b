"""
Facility model representing a core research facility.

A facility owns products (instruments, items, services), facility-specific
price groups and accounts. Per-facility scheduling and pricing rules live in
the validated `settings` JSON column.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.config import (
    DEFAULT_CANCELLATION_CUTOFF_HOURS,
    DEFAULT_MISSED_GRACE_MINUTES,
    MAX_SCHEDULE_HORIZON_DAYS,
)
from core.constants import MAX_STRING_LENGTH
from core.database import Base


# Settings schema validation models
class BookingSettings(BaseModel):
    """Schema for facility booking settings (product fields override these)."""
    cancellation_cutoff_hours: int = Field(default=DEFAULT_CANCELLATION_CUTOFF_HOURS, ge=0, le=24 * 30, description="Cancellations at or after (start - cutoff) may incur the policy's cancellation fee.")
    missed_grace_minutes: int = Field(default=DEFAULT_MISSED_GRACE_MINUTES, ge=0, le=24 * 60, description="Minutes after start without check-in before a reservation can be marked missed.")
    max_advance_days: int = Field(default=90, ge=1, le=MAX_SCHEDULE_HORIZON_DAYS, description="How far ahead users may book.")
    lead_time_minutes: int = Field(default=0, ge=0, description="Minimum notice before a reservation may start.")


class PricingSettings(BaseModel):
    """Schema for facility pricing settings."""
    price_group_priority: List[int] = Field(
        default_factory=list,
        description="Price group ids in resolution priority order (first wins). Groups not listed rank after listed ones by display_order, then id.",
    )


class FacilitySettings(BaseModel):
    """Schema for all facility settings."""
    booking_settings: BookingSettings = Field(default_factory=BookingSettings)
    pricing_settings: PricingSettings = Field(default_factory=PricingSettings)


class Facility(Base):
    """
    Core facility entity.

    Each facility has:
    - Products offered to internal and external users
    - Facility-specific price groups and their resolution priority
    - Statement numbering sequence
    """

    __tablename__ = "facilities"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the facility."""

    name: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH))
    """Human-readable name of the facility."""

    abbreviation: Mapped[str] = mapped_column(String(50), unique=True)
    """Short code used in journal references (e.g., "NMR")."""

    is_active: Mapped[bool] = mapped_column(default=True)
    """Inactive facilities accept no new orders."""

    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    """
    JSON column containing all facility settings with validated schema.

    Structure (matches FacilitySettings Pydantic model):
    {
        "booking_settings": {
            "cancellation_cutoff_hours": 24,
            "missed_grace_minutes": 15,
            "max_advance_days": 90,
            "lead_time_minutes": 0
        },
        "pricing_settings": {
            "price_group_priority": [3, 1, 2]
        }
    }
    """

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the facility was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the facility was last updated."""

    # Relationships
    products = relationship("Product", back_populates="facility")
    """Products offered by this facility."""

    price_groups = relationship("PriceGroup", back_populates="facility")
    """Facility-specific price groups (global groups have no facility)."""

    def get_validated_settings(self) -> FacilitySettings:
        """Get settings with schema validation."""
        return FacilitySettings.model_validate(self.settings or {})

    def __repr__(self) -> str:
        return f"<Facility(id={self.id}, abbreviation='{self.abbreviation}')>"


def price_group_priority(facility: Optional[Facility]) -> List[int]:
    """Configured price-group priority for a facility (empty if none)."""
    if facility is None:
        return []
    return facility.get_validated_settings().pricing_settings.price_group_priority
