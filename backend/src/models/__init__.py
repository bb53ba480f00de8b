# Package initialization
# Import all models to ensure relationships are properly established
from .facility import Facility, FacilitySettings, BookingSettings, PricingSettings
from .product import Product
from .schedule_rule import ScheduleRule
from .schedule_exception import ScheduleException
from .account import Account
from .price_group import PriceGroup, PriceGroupMember
from .price_policy import PricePolicy, RateTable
from .order import Order, OrderDetail
from .reservation import Reservation
from .journal import Journal, JournalRow
from .statement import Statement

__all__ = [
    "Facility",
    "FacilitySettings",
    "BookingSettings",
    "PricingSettings",
    "Product",
    "ScheduleRule",
    "ScheduleException",
    "Account",
    "PriceGroup",
    "PriceGroupMember",
    "PricePolicy",
    "RateTable",
    "Order",
    "OrderDetail",
    "Reservation",
    "Journal",
    "JournalRow",
    "Statement",
]
