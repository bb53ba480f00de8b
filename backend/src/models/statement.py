"""
Statement model: a closed, periodic grouping of journal rows for one account.

Statements are numbered sequentially per year ({YYYY}-{NNNNN}). Their member
rows are fixed at creation; only the payment outcome fields change later.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base


PAYMENT_STATUSES = ('unpaid', 'paid', 'failed')


class Statement(Base):
    """Statement entity."""

    __tablename__ = "statements"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the statement."""

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    """Account the statement bills."""

    statement_number: Mapped[str] = mapped_column(String(20), unique=True)
    """Sequential number (e.g., "2024-00001")."""

    period_start: Mapped[date] = mapped_column(Date)
    """First journal date covered (inclusive)."""

    period_end: Mapped[date] = mapped_column(Date)
    """Last journal date covered (inclusive)."""

    total_cents: Mapped[int] = mapped_column()
    """Sum of member row amounts (reversal rows included)."""

    row_count: Mapped[int] = mapped_column()
    """Number of member rows."""

    created_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor that generated the statement (null for scheduled runs)."""

    payment_status: Mapped[str] = mapped_column(String(20), default='unpaid')
    """Valid values: 'unpaid', 'paid', 'failed'."""

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the gateway reported a successful charge."""

    payment_reference: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Gateway transaction reference."""

    payment_message: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Gateway message for the last settlement attempt."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the statement was generated."""

    # Relationships
    account = relationship("Account")
    """Relationship to the billed Account."""

    rows = relationship("JournalRow", back_populates="statement", order_by="JournalRow.id")
    """Member journal rows."""

    __table_args__ = (
        Index('idx_statements_account_period', 'account_id', 'period_start', 'period_end'),
    )

    def __repr__(self) -> str:
        return f"<Statement(id={self.id}, number='{self.statement_number}', total_cents={self.total_cents})>"
