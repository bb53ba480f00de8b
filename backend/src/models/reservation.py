"""
Reservation model representing a booked interval on a schedulable product.

Each reservation is owned by exactly one order detail. Reservations change
only through the transitions in `shared_types.states` and are kept forever
for audit; cancellation and no-show are statuses, not deletions.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base
from utils.datetime_utils import minutes_between


class Reservation(Base):
    """
    Reservation entity for the interval [reserve_start_at, reserve_end_at).

    The actual usage window is recorded on check-in/check-out and may be
    later, shorter or longer than the reserved one.
    """

    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the reservation."""

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    """Reference to the reserved product."""

    order_detail_id: Mapped[int] = mapped_column(ForeignKey("order_details.id"), unique=True)
    """The order detail that owns this reservation (1:1)."""

    reserve_start_at: Mapped[datetime] = mapped_column(DateTime)
    """Reserved start (inclusive)."""

    reserve_end_at: Mapped[datetime] = mapped_column(DateTime)
    """Reserved end (exclusive)."""

    actual_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Recorded check-in time."""

    actual_end_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Recorded check-out time."""

    status: Mapped[str] = mapped_column(String(20))
    """Valid values: 'requested', 'confirmed', 'in_progress', 'completed', 'cancelled', 'missed'."""

    is_admin_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    """True if staff booked this reservation bypassing rules and capacity."""

    created_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor who created the reservation (identity is owned by an external system)."""

    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Timestamp when the reservation was cancelled."""

    canceled_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor who cancelled the reservation."""

    canceled_reason: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Optional cancellation note."""

    missed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Timestamp when the reservation was marked as a no-show."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the reservation was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the reservation was last updated."""

    # Relationships
    product = relationship("Product")
    """Relationship to the Product entity."""

    order_detail = relationship("OrderDetail", back_populates="reservation")
    """Relationship to the owning OrderDetail."""

    __table_args__ = (
        Index('idx_reservations_product_window', 'product_id', 'reserve_start_at', 'reserve_end_at'),
        Index('idx_reservations_product_status', 'product_id', 'status'),
    )

    @property
    def reserved_minutes(self) -> int:
        return minutes_between(self.reserve_start_at, self.reserve_end_at)

    def __repr__(self) -> str:
        return f"<Reservation(id={self.id}, product_id={self.product_id}, {self.reserve_start_at}-{self.reserve_end_at}, status='{self.status}')>"
