"""
Shared types for pricing and billing.

`Usage` describes what is being priced; `CostBreakdown` is what the cost
calculator returns. All amounts are integer cents.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Usage:
    """
    Billable usage: a duration in minutes (instruments, timed services) or a
    quantity (items, services).
    """
    minutes: Optional[int] = None
    quantity: Optional[int] = None

    def __post_init__(self) -> None:
        if self.minutes is None and self.quantity is None:
            raise ValueError("Usage requires minutes or quantity")
        if self.minutes is not None and self.minutes < 0:
            raise ValueError("minutes must be >= 0")
        if self.quantity is not None and self.quantity < 0:
            raise ValueError("quantity must be >= 0")


@dataclass(frozen=True)
class CostBreakdown:
    """
    Result of a cost computation.

    base_cents - subsidy_cents == net_cents always holds; net is never negative.
    `billable` is the usage amount priced at the standard rate and
    `fallback_quantity` the amount priced at the cap fallback rate.
    """
    base_cents: int
    subsidy_cents: int
    net_cents: int
    billable: int = 0
    fallback_quantity: int = 0
    is_cancellation_fee: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_cents": self.base_cents,
            "subsidy_cents": self.subsidy_cents,
            "net_cents": self.net_cents,
            "billable": self.billable,
            "fallback_quantity": self.fallback_quantity,
            "is_cancellation_fee": self.is_cancellation_fee,
        }


@dataclass(frozen=True)
class ChargeResult:
    """Outcome reported by the payment gateway collaborator."""
    success: bool
    reference: Optional[str] = None
    message: Optional[str] = None
