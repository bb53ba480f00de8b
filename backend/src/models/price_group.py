"""
Price group models.

A price group is a user/account category (internal, external, a named
department) that selects which price policies apply. Membership is recorded
per account or per user.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base


class PriceGroup(Base):
    """
    Price group entity.

    Facility-specific groups have a facility_id; global groups have none.
    Resolution priority is configured per facility in
    `pricing_settings.price_group_priority`; `display_order` orders the
    groups the facility did not list.
    """

    __tablename__ = "price_groups"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the price group."""

    name: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH))
    """Display name (e.g., "Internal", "External Academic")."""

    facility_id: Mapped[Optional[int]] = mapped_column(ForeignKey("facilities.id"), nullable=True)
    """Owning facility. Null for global groups."""

    is_internal: Mapped[bool] = mapped_column(default=True)
    """Whether members are internal to the institution."""

    display_order: Mapped[int] = mapped_column(default=0)
    """Fallback ordering for groups not listed in the facility's priority."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the group was created."""

    # Relationships
    facility = relationship("Facility", back_populates="price_groups")
    """Relationship to the owning Facility (if any)."""

    members = relationship("PriceGroupMember", back_populates="price_group")
    """Account and user memberships."""

    def __repr__(self) -> str:
        return f"<PriceGroup(id={self.id}, name='{self.name}')>"


class PriceGroupMember(Base):
    """
    Membership of an account or a user in a price group.

    Exactly one of account_id / user_id is set.
    """

    __tablename__ = "price_group_members"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the membership."""

    price_group_id: Mapped[int] = mapped_column(ForeignKey("price_groups.id", ondelete="CASCADE"))
    """Reference to the price group."""

    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    """Member account (account memberships)."""

    user_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Member user (user memberships; identity is owned by an external system)."""

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    """Timestamp when the membership was created."""

    # Relationships
    price_group = relationship("PriceGroup", back_populates="members")
    """Relationship to the PriceGroup entity."""

    account = relationship("Account", back_populates="price_group_members")
    """Relationship to the member Account (if any)."""

    __table_args__ = (
        CheckConstraint(
            '(account_id IS NULL) <> (user_id IS NULL)',
            name='ck_price_group_members_one_member',
        ),
        Index('idx_price_group_members_account', 'account_id'),
        Index('idx_price_group_members_user', 'user_id'),
    )
