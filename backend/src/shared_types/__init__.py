"""
Shared type definitions for the core facility backend.

This module contains dataclasses and types that are used across multiple services.
"""

from shared_types.availability import TimeWindow
from shared_types.billing import ChargeResult, CostBreakdown, Usage
from shared_types.product_kinds import ProductKind, RatingStrategy
from shared_types.states import OrderDetailState, ReservationStatus

__all__ = [
    "TimeWindow",
    "ChargeResult",
    "CostBreakdown",
    "Usage",
    "ProductKind",
    "RatingStrategy",
    "OrderDetailState",
    "ReservationStatus",
]
