"""
Payment gateway collaborator interface.

Card and purchase-order settlement happens outside this system. The gateway
receives a charge amount and the account and reports the outcome; statement
settlement records that outcome and nothing more.
"""

from typing import Protocol

from models import Account
from shared_types.billing import ChargeResult


class PaymentGateway(Protocol):
    """Charges an account through an external payment processor."""

    def charge(self, amount_cents: int, account: Account) -> ChargeResult:
        ...
