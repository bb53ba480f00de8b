"""
Schedule rule model for recurring product availability.

A rule opens a product for booking on matching dates between start_time and
end_time. Rules are never edited once created: a change end-dates the old
rule and inserts a replacement (see ScheduleRuleService.supersede_rule), so
reservations made under the old rule keep a valid history.
"""

from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


DAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


class ScheduleRule(Base):
    """
    Recurring availability window for a product.

    Multiple rules per product and day are allowed. Where rules overlap, the
    covered time takes the largest capacity among them. An end_time at or
    before start_time means the window runs past midnight into the next day.
    """

    __tablename__ = "schedule_rules"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the rule."""

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    """Reference to the product this rule opens for booking."""

    day_of_week: Mapped[Optional[int]] = mapped_column(nullable=True)
    """
    Day of the week (0=Monday, 1=Tuesday, ..., 6=Sunday).
    Null means the rule applies every day within its date range.
    """

    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    """First date the rule applies (inclusive). Null = no lower bound."""

    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    """Last date the rule applies (inclusive). Null = open-ended."""

    start_time: Mapped[time] = mapped_column(Time)
    """Start time of the window."""

    end_time: Mapped[time] = mapped_column(Time)
    """End time of the window."""

    capacity: Mapped[int] = mapped_column(default=1)
    """Number of reservations allowed to overlap at any instant."""

    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When this rule was replaced. Superseded rules still apply up to their end_date."""

    superseded_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("schedule_rules.id"), nullable=True)
    """The replacement rule, if superseded."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the rule was created."""

    # Relationships
    product = relationship("Product", back_populates="schedule_rules")
    """Relationship to the Product entity."""

    __table_args__ = (
        Index('idx_schedule_rules_product_dates', 'product_id', 'start_date', 'end_date'),
    )

    def applies_on(self, d: date) -> bool:
        """Whether the rule opens time on the given date."""
        if self.start_date is not None and d < self.start_date:
            return False
        if self.end_date is not None and d > self.end_date:
            return False
        return self.day_of_week is None or d.weekday() == self.day_of_week

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time <= self.start_time

    @property
    def day_name(self) -> str:
        """Get the day name for display."""
        if self.day_of_week is None:
            return 'Every day'
        return DAY_NAMES[self.day_of_week]

    def __repr__(self) -> str:
        return f"<ScheduleRule(product_id={self.product_id}, day={self.day_name}, {self.start_time}-{self.end_time}, capacity={self.capacity})>"
