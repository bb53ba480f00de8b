"""
Cost calculator: pure monetary computation for a resolved price policy.

All arithmetic is done in Decimal cents. The only rounding step is the
quantization of the net cost (ROUND_HALF_UP); the base is quantized for
display and the subsidy is derived as base - net, so the three amounts
always add up.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from core.constants import BASIS_POINTS_PER_WHOLE
from core.exceptions import CapExceededError
from models import PricePolicy
from shared_types.billing import CostBreakdown, Usage

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = Decimal(60)
ONE_CENT = Decimal(1)
DURATION_RATE_TYPES = ('hourly', 'duration_bracket')
QUANTITY_RATE_TYPES = ('unit', 'tiered_unit')


def _round_cents(amount: Decimal) -> int:
    return int(amount.quantize(ONE_CENT, rounding=ROUND_HALF_UP))


def _ceil_to_increment(minutes: int, increment: int) -> int:
    if increment <= 1 or minutes == 0:
        return minutes
    return -(-minutes // increment) * increment


class CostCalculator:
    """
    Stateless cost computations.

    Callers resolve the policy and read prior usage; nothing here touches the
    database.
    """

    @staticmethod
    def billable_quantity(policy: PricePolicy, usage: Usage) -> int:
        """
        Usage amount as counted for rating and caps: minutes rounded up to the
        billing increment for duration rates, units otherwise.

        Raises:
            ValueError: If the usage kind does not match the policy's rate type
        """
        if policy.rate_type in DURATION_RATE_TYPES:
            if usage.minutes is None:
                raise ValueError(f"Policy {policy.id} rates by duration but usage has no minutes")
            return _ceil_to_increment(usage.minutes, policy.billing_increment_minutes or 1)
        if policy.rate_type in QUANTITY_RATE_TYPES:
            if usage.quantity is None:
                raise ValueError(f"Policy {policy.id} rates by quantity but usage has no quantity")
            return usage.quantity
        raise ValueError(f"Unknown rate type: {policy.rate_type}")

    @staticmethod
    def compute_cost(policy: PricePolicy, usage: Usage, prior_usage: int = 0) -> CostBreakdown:
        """
        Compute base, subsidy and net cost for `usage` under `policy`.

        Args:
            policy: Resolved price policy
            usage: Duration or quantity to price
            prior_usage: Billable usage already committed in the policy's cap
                period (same unit as the billable quantity). Ignored if the
                policy has no cap.

        Returns:
            CostBreakdown with integer cents

        Raises:
            CapExceededError: If the cap would be exceeded and cap_mode is 'reject'
            ValueError: If the usage kind does not match the policy's rate type
        """
        quantity = CostCalculator.billable_quantity(policy, usage)
        standard, fallback = CostCalculator._split_at_cap(policy, quantity, prior_usage)

        base = CostCalculator._rate(policy, standard)
        if fallback:
            base += CostCalculator._fallback_rate(policy, fallback)
        if quantity > 0 and base < policy.minimum_cost_cents:
            base = Decimal(policy.minimum_cost_cents)

        net, base_cents = CostCalculator._apply_subsidy(policy, base)
        return CostBreakdown(
            base_cents=base_cents,
            subsidy_cents=base_cents - net,
            net_cents=net,
            billable=standard,
            fallback_quantity=fallback,
        )

    @staticmethod
    def compute_cancellation_cost(policy: PricePolicy, reserved_usage: Usage) -> CostBreakdown:
        """
        Fee for a late cancellation: the flat fee if configured, otherwise the
        configured share (basis points) of the full reservation's net cost.
        Caps are not applied to the reference cost and the fee uses no cap
        quota. Returns a zero breakdown if the policy charges no fee.
        """
        if policy.cancellation_fee_cents is not None:
            fee = policy.cancellation_fee_cents
        elif policy.cancellation_fee_basis_points is not None:
            full = CostCalculator.estimate_cost(policy, reserved_usage)
            fee = _round_cents(
                Decimal(full.net_cents) * policy.cancellation_fee_basis_points / BASIS_POINTS_PER_WHOLE
            )
        else:
            fee = 0
        return CostBreakdown(base_cents=fee, subsidy_cents=0, net_cents=fee, is_cancellation_fee=True)

    @staticmethod
    def estimate_cost(policy: PricePolicy, usage: Usage) -> CostBreakdown:
        """Cost of `usage` ignoring the usage cap (order-time estimates, fee references)."""
        quantity = CostCalculator.billable_quantity(policy, usage)
        base = CostCalculator._rate(policy, quantity)
        if quantity > 0 and base < policy.minimum_cost_cents:
            base = Decimal(policy.minimum_cost_cents)
        net, base_cents = CostCalculator._apply_subsidy(policy, base)
        return CostBreakdown(base_cents=base_cents, subsidy_cents=base_cents - net, net_cents=net, billable=quantity)

    @staticmethod
    def _split_at_cap(policy: PricePolicy, quantity: int, prior_usage: int) -> Tuple[int, int]:
        """Split quantity into (standard, fallback) parts, or raise in reject mode."""
        cap: Optional[int] = policy.usage_cap
        if cap is None or prior_usage + quantity <= cap:
            return quantity, 0
        excess = min(quantity, prior_usage + quantity - cap)
        if policy.cap_mode == 'fallback':
            logger.info(
                f"Policy {policy.id}: {excess} of {quantity} over cap {cap} (prior {prior_usage}), billing at fallback rate"
            )
            return quantity - excess, excess
        raise CapExceededError(
            f"Usage of {quantity} would exceed the cap of {cap} (already used {prior_usage})",
            cap=cap,
            prior_usage=prior_usage,
            requested=quantity,
            excess=excess,
        )

    @staticmethod
    def _rate(policy: PricePolicy, quantity: int) -> Decimal:
        """Unrounded base cost in cents for `quantity` at the policy's standard rates."""
        if quantity <= 0:
            return Decimal(0)
        if policy.rate_type == 'hourly':
            return Decimal(quantity) * policy.unit_rate_cents / MINUTES_PER_HOUR
        if policy.rate_type == 'duration_bracket':
            return CostCalculator._bracket_cost(policy, quantity)
        if policy.rate_type == 'unit':
            return Decimal(quantity) * policy.unit_rate_cents
        if policy.rate_type == 'tiered_unit':
            return CostCalculator._tiered_cost(policy, quantity)
        raise ValueError(f"Unknown rate type: {policy.rate_type}")

    @staticmethod
    def _bracket_cost(policy: PricePolicy, minutes: int) -> Decimal:
        brackets = sorted(policy.get_validated_rate_table().brackets, key=lambda b: b.up_to_minutes)
        if not brackets:
            return Decimal(minutes) * policy.unit_rate_cents / MINUTES_PER_HOUR
        for bracket in brackets:
            if minutes <= bracket.up_to_minutes:
                return Decimal(bracket.amount_cents)
        last = brackets[-1]
        # Past the last bracket: its amount plus the excess prorated at the unit rate
        overflow = minutes - last.up_to_minutes
        return Decimal(last.amount_cents) + Decimal(overflow) * policy.unit_rate_cents / MINUTES_PER_HOUR

    @staticmethod
    def _tiered_cost(policy: PricePolicy, units: int) -> Decimal:
        tiers = sorted(
            policy.get_validated_rate_table().tiers,
            key=lambda t: (t.up_to is None, t.up_to or 0),
        )
        total = Decimal(0)
        counted = 0
        for tier in tiers:
            upper = units if tier.up_to is None else min(units, tier.up_to)
            if upper > counted:
                total += Decimal(upper - counted) * tier.rate_cents
                counted = upper
            if counted >= units:
                return total
        # Units beyond the last bounded tier use the flat unit rate
        return total + Decimal(units - counted) * policy.unit_rate_cents

    @staticmethod
    def _fallback_rate(policy: PricePolicy, quantity: int) -> Decimal:
        rate = policy.fallback_rate_cents if policy.fallback_rate_cents is not None else policy.unit_rate_cents
        if policy.rate_type in DURATION_RATE_TYPES:
            return Decimal(quantity) * rate / MINUTES_PER_HOUR
        return Decimal(quantity) * rate

    @staticmethod
    def _apply_subsidy(policy: PricePolicy, base: Decimal) -> Tuple[int, int]:
        """Return (net_cents, base_cents); net is floored at zero and rounded once."""
        if policy.subsidy_basis_points:
            net = base - base * policy.subsidy_basis_points / BASIS_POINTS_PER_WHOLE
        elif policy.subsidy_amount_cents:
            net = base - policy.subsidy_amount_cents
        else:
            net = base
        net = max(net, Decimal(0))
        return _round_cents(net), _round_cents(base)
