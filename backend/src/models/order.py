"""
Order and order detail models.

An order groups line items for one account and orderer. The order detail is
the billable line item: it carries the product, the usage to price, its
lifecycle state and, once complete, the frozen cost.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_DESCRIPTION_LENGTH
from core.database import Base


class Order(Base):
    """Cart-like grouping of order details for one account."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the order."""

    facility_id: Mapped[int] = mapped_column(ForeignKey("facilities.id"))
    """Facility fulfilling the order."""

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    """Account billed for the order."""

    user_id: Mapped[int] = mapped_column()
    """Orderer (identity is owned by an external system)."""

    created_by_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Actor who placed the order (staff may order on behalf of a user)."""

    ordered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the order was placed. Null while the order is still a cart."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the order was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the order was last updated."""

    # Relationships
    account = relationship("Account")
    """Relationship to the billed Account."""

    details = relationship("OrderDetail", back_populates="order", order_by="OrderDetail.id")
    """Line items."""

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, account_id={self.account_id}, user_id={self.user_id})>"


class OrderDetail(Base):
    """
    Billable line item.

    States: 'new', 'inprocess', 'complete', 'cancelled', 'problem'.
    The actual/subsidy/net costs are frozen on completion and never
    recomputed from later policy changes.
    """

    __tablename__ = "order_details"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the order detail."""

    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    """Reference to the parent order."""

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    """Reference to the ordered product."""

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    """Billed account (copied from the order so journaling can claim by account)."""

    quantity: Mapped[int] = mapped_column(default=1)
    """Ordered quantity (quantity-rated products)."""

    duration_minutes: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Ordered duration (duration-rated products without a reservation)."""

    state: Mapped[str] = mapped_column(String(20), default='new')
    """Valid values: 'new', 'inprocess', 'complete', 'cancelled', 'problem'."""

    price_policy_id: Mapped[Optional[int]] = mapped_column(ForeignKey("price_policies.id"), nullable=True)
    """Policy the frozen cost was computed from."""

    estimated_cost_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Net cost estimate at order time (informational, never billed)."""

    actual_cost_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Frozen base cost."""

    actual_subsidy_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Frozen subsidy."""

    net_cost_cents: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Frozen net cost (actual - subsidy). This is what gets journaled."""

    billed_quantity: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Minutes or units counted toward the usage cap."""

    is_cancellation_fee: Mapped[bool] = mapped_column(default=False)
    """True if the frozen cost is a cancellation or no-show fee."""

    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the detail was completed. Determines the usage period for caps."""

    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the detail was cancelled."""

    problem_description: Mapped[Optional[str]] = mapped_column(String(MAX_DESCRIPTION_LENGTH), nullable=True)
    """Why the detail was flagged as a problem."""

    problem_resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the last problem was resolved."""

    journal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("journals.id"), nullable=True)
    """Journal that claimed this detail. Set exactly once per billing cycle."""

    journaled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the detail was journaled."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the detail was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the detail was last updated."""

    # Relationships
    order = relationship("Order", back_populates="details")
    """Relationship to the parent Order."""

    product = relationship("Product")
    """Relationship to the Product entity."""

    account = relationship("Account")
    """Relationship to the billed Account."""

    price_policy = relationship("PricePolicy")
    """Relationship to the PricePolicy used for the frozen cost."""

    reservation = relationship("Reservation", back_populates="order_detail", uselist=False)
    """Owned reservation (schedulable products only)."""

    __table_args__ = (
        Index('idx_order_details_journal_claim', 'account_id', 'state', 'journal_id'),
        Index('idx_order_details_cap_usage', 'account_id', 'product_id', 'state', 'fulfilled_at'),
    )

    @property
    def is_priced(self) -> bool:
        return self.net_cost_cents is not None

    def __repr__(self) -> str:
        return f"<OrderDetail(id={self.id}, product_id={self.product_id}, state='{self.state}')>"
