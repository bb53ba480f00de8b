"""
Services package for shared business logic.

This package contains service classes that encapsulate the scheduling,
pricing and billing logic shared across API endpoints and batch tasks.
"""

from .schedule_rule_service import ScheduleRuleService
from .price_policy_service import PricePolicyService
from .cost_calculator import CostCalculator
from .order_service import OrderService
from .reservation_service import ReservationService
from .journal_service import JournalService
from .statement_service import StatementService
from .notification_service import NotificationService

__all__ = [
    "ScheduleRuleService",
    "PricePolicyService",
    "CostCalculator",
    "OrderService",
    "ReservationService",
    "JournalService",
    "StatementService",
    "NotificationService",
]
