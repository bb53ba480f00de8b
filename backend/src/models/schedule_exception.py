"""
Schedule exception model for one-off blackouts and capacity overrides.

Exceptions take precedence over recurring schedule rules for their window:
a blackout removes time, a capacity exception opens time (or changes the
capacity of time already open).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base


EXCEPTION_BLACKOUT = 'blackout'
EXCEPTION_CAPACITY = 'capacity'


class ScheduleException(Base):
    """
    Blackout or capacity override for a specific [start_at, end_at) window.

    Overlapping exceptions are allowed. A blackout wins over any capacity
    exception covering the same instant; among overlapping capacity
    exceptions, the largest capacity applies.
    """

    __tablename__ = "schedule_exceptions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the exception."""

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    """Reference to the product the exception applies to."""

    exception_type: Mapped[str] = mapped_column(String(20))
    """Valid values: 'blackout', 'capacity'."""

    start_at: Mapped[datetime] = mapped_column(DateTime)
    """Start of the exception window (inclusive)."""

    end_at: Mapped[datetime] = mapped_column(DateTime)
    """End of the exception window (exclusive)."""

    capacity: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Capacity for 'capacity' exceptions. Ignored for blackouts."""

    reason: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Optional note (e.g., "Annual service visit")."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the exception was created."""

    # Relationships
    product = relationship("Product", back_populates="schedule_exceptions")
    """Relationship to the Product entity."""

    __table_args__ = (
        Index('idx_schedule_exceptions_product_window', 'product_id', 'start_at', 'end_at'),
    )

    @property
    def is_blackout(self) -> bool:
        return self.exception_type == EXCEPTION_BLACKOUT

    def __repr__(self) -> str:
        return f"<ScheduleException(product_id={self.product_id}, type='{self.exception_type}', {self.start_at}-{self.end_at})>"
