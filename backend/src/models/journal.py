"""
Journal models: batch headers and immutable journal rows.

A journal row records that one order detail's net cost has been recognized
in accounting. Rows are append-only: corrections void the active row and add
a negative reversal row; nothing is ever deleted or edited in place apart from
the void fields and statement assignment.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base


class Journal(Base):
    """Header for one journaling run against one account."""

    __tablename__ = "journals"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the journal."""

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    """Account whose order details this journal claimed."""

    journal_date: Mapped[date] = mapped_column(Date)
    """Accounting date of the rows (the batch's as-of date)."""

    reference: Mapped[str] = mapped_column(String(100), unique=True)
    """Reference exported to the ledger (e.g., "J-1-20240315-7")."""

    created_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor that ran the batch (null for scheduled runs)."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the journal was created."""

    # Relationships
    rows = relationship("JournalRow", back_populates="journal", order_by="JournalRow.id")
    """Rows created by this run (reversal rows belong to no journal)."""

    def __repr__(self) -> str:
        return f"<Journal(id={self.id}, account_id={self.account_id}, reference='{self.reference}')>"


class JournalRow(Base):
    """
    Journal row entity.

    Invariant: at most one active charge row per order detail, i.e. a row
    that is neither voided nor a reversal. Enforced by the partial unique
    index below as a backstop to the claim in JournalService.

    Reversal rows are corrections, not charges. They stay non-voided, so a
    detail that was reversed and journaled again has three rows: the voided
    original, its negative reversal and the new active charge.
    """

    __tablename__ = "journal_rows"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the row."""

    journal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("journals.id"), nullable=True)
    """Journal that created this row. Null for reversal rows."""

    order_detail_id: Mapped[int] = mapped_column(ForeignKey("order_details.id"))
    """Order detail whose cost this row recognizes."""

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    """Account charged."""

    amount_cents: Mapped[int] = mapped_column()
    """Amount recognized. Negative for reversal rows."""

    description: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH))
    """Line description (product and usage)."""

    journal_date: Mapped[date] = mapped_column(Date)
    """Accounting date used to select rows into a statement period."""

    is_voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    """Whether the row has been voided by a reversal."""

    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Timestamp when the row was voided."""

    void_reason: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Why the row was voided."""

    voided_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor who voided the row."""

    is_reversal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    """True for the negative row appended by a reversal."""

    reverses_row_id: Mapped[Optional[int]] = mapped_column(ForeignKey("journal_rows.id"), nullable=True)
    """The voided row a reversal row offsets."""

    statement_id: Mapped[Optional[int]] = mapped_column(ForeignKey("statements.id"), nullable=True)
    """Statement that closed over this row. Set once, never changed."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the row was created."""

    # Relationships
    journal = relationship("Journal", back_populates="rows")
    """Relationship to the Journal header (if any)."""

    order_detail = relationship("OrderDetail")
    """Relationship to the OrderDetail entity."""

    statement = relationship("Statement", back_populates="rows")
    """Relationship to the closing Statement (if any)."""

    __table_args__ = (
        # One active, non-reversal row per order detail
        Index(
            'uq_journal_rows_active_order_detail',
            'order_detail_id',
            unique=True,
            sqlite_where=text('is_voided = 0 AND is_reversal = 0'),
            postgresql_where=text('is_voided = false AND is_reversal = false'),
        ),
        Index('idx_journal_rows_statement_claim', 'account_id', 'statement_id', 'journal_date'),
    )

    def __repr__(self) -> str:
        return f"<JournalRow(id={self.id}, order_detail_id={self.order_detail_id}, amount_cents={self.amount_cents})>"
