"""
Account model representing a financial entity billed for usage.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base


ACCOUNT_TYPES = ('chart_string', 'purchase_order', 'credit_card')


class Account(Base):
    """
    Account entity (chart string, purchase order or credit card).

    Price groups attach to an account through PriceGroupMember rows, either
    directly or through the users who order against it.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the account."""

    account_number: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH), unique=True)
    """Institution-issued account number."""

    account_type: Mapped[str] = mapped_column(String(30))
    """Valid values: 'chart_string', 'purchase_order', 'credit_card'."""

    description: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Optional label."""

    owner_user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Owning user (identity is owned by an external system)."""

    facility_id: Mapped[Optional[int]] = mapped_column(ForeignKey("facilities.id"), nullable=True)
    """Facility this account is limited to. Null = usable at every facility."""

    suspended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """When the account was suspended. Suspended accounts cannot place orders."""

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    """Expiration. Expired accounts cannot place orders."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the account was created."""

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the account was last updated."""

    # Relationships
    price_group_members = relationship("PriceGroupMember", back_populates="account")
    """Direct price-group memberships of this account."""

    __table_args__ = (
        Index('idx_accounts_facility', 'facility_id'),
    )

    def is_usable(self, at: datetime, facility_id: Optional[int] = None) -> bool:
        """Whether the account can be charged for work at `at` in the given facility."""
        if self.suspended_at is not None and self.suspended_at <= at:
            return False
        if self.expires_at is not None and self.expires_at <= at:
            return False
        if facility_id is not None and self.facility_id is not None and self.facility_id != facility_id:
            return False
        return True

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, number='{self.account_number}', type='{self.account_type}')>"
