"""
Product model representing a bookable or orderable facility offering.

Products are a sealed set of kinds (instrument, item, service, timed service)
stored in one table. Kind-specific behavior is dispatched through
`shared_types.product_kinds`; the scheduling columns are only meaningful for
schedulable kinds.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_DESCRIPTION_LENGTH, MAX_STRING_LENGTH
from core.database import Base
from shared_types.product_kinds import ProductCapabilities, capabilities_for


class Product(Base):
    """
    Product entity (instrument, item, service or timed service).

    Scheduling fields left null fall back to the owning facility's
    booking settings.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the product."""

    facility_id: Mapped[int] = mapped_column(ForeignKey("facilities.id"))
    """Reference to the facility that offers this product."""

    kind: Mapped[str] = mapped_column(String(50))
    """Product kind. Valid values: 'instrument', 'item', 'service', 'timed_service'."""

    name: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH))
    """Display name of the product."""

    description: Mapped[Optional[str]] = mapped_column(String(MAX_DESCRIPTION_LENGTH), nullable=True)
    """Optional description shown to users."""

    is_archived: Mapped[bool] = mapped_column(default=False)
    """Archived products stay for history but accept no new orders or reservations."""

    # Scheduling (schedulable kinds only)
    reserve_interval_minutes: Mapped[int] = mapped_column(default=15)
    """Scheduling granularity. Reservation durations must be a multiple of this."""

    min_reserve_minutes: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Minimum reservation duration (null = one interval)."""

    max_reserve_minutes: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Maximum reservation duration (null = unlimited)."""

    lead_time_minutes: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Minimum notice before a reservation may start (null = facility default)."""

    max_advance_days: Mapped[Optional[int]] = mapped_column(nullable=True)
    """How far ahead reservations may start (null = facility default)."""

    cancellation_cutoff_hours: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Hours before start after which cancellation may incur a fee (null = facility default)."""

    max_concurrent_per_account: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Maximum active upcoming reservations one account may hold (null = unlimited)."""

    capacity: Mapped[int] = mapped_column(default=1)
    """Default capacity for schedule rules created without an explicit capacity."""

    relay_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    """
    Opaque power-relay/control configuration owned by the hardware integration.
    Stored and returned as-is; nothing in scheduling or billing reads it.
    """

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the product was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the product was last updated."""

    # Relationships
    facility = relationship("Facility", back_populates="products")
    """Relationship to the owning Facility."""

    schedule_rules = relationship("ScheduleRule", back_populates="product")
    """Recurring availability rules (including superseded ones)."""

    schedule_exceptions = relationship("ScheduleException", back_populates="product")
    """Blackouts and capacity overrides."""

    price_policies = relationship("PricePolicy", back_populates="product")
    """Versioned price policies for this product."""

    __table_args__ = (
        Index('idx_products_facility_kind', 'facility_id', 'kind'),
    )

    @property
    def capabilities(self) -> ProductCapabilities:
        return capabilities_for(self.kind)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, kind='{self.kind}', name='{self.name}')>"
