"""
Price policy service: policy resolution and guarded policy administration.

Resolution order is explicit configuration: the facility's
`pricing_settings.price_group_priority` list comes first, in list order;
groups the facility did not list follow by display_order, then id. Among
policies of the same group, the latest start date wins, then the highest id.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.constants import BASIS_POINTS_PER_WHOLE
from core.exceptions import InvalidPolicyError, NoPolicyFoundError, NotFoundError, PolicyLockedError
from models import OrderDetail, PriceGroup, PriceGroupMember, PricePolicy, Product
from models.facility import price_group_priority
from models.price_policy import CAP_MODES, CAP_PERIODS, CHARGE_FOR, RATE_TYPES, RateTable
from utils.datetime_utils import facility_now

logger = logging.getLogger(__name__)

# Fields that identify a policy version; they never change after creation
_IDENTITY_FIELDS = ('product_id', 'price_group_id')

_MUTABLE_FIELDS = (
    'start_date', 'expire_date', 'can_purchase', 'rate_type', 'unit_rate_cents',
    'minimum_cost_cents', 'billing_increment_minutes', 'rate_table',
    'subsidy_basis_points', 'subsidy_amount_cents', 'cancellation_fee_cents',
    'cancellation_fee_basis_points', 'charge_for', 'charge_for_missed', 'usage_cap',
    'cap_period', 'cap_mode', 'fallback_rate_cents', 'note',
)


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


class PricePolicyService:
    """
    Service class for price policy resolution and administration.
    """

    @staticmethod
    def candidate_group_ids(db: Session, product: Product, account_id: int, user_id: Optional[int] = None) -> List[int]:
        """
        Price groups held by the account or the orderer that can price this
        product (global groups or groups of the product's facility).
        """
        membership_filter = PriceGroupMember.account_id == account_id
        if user_id is not None:
            membership_filter = or_(membership_filter, PriceGroupMember.user_id == user_id)

        rows = db.query(PriceGroup.id).join(
            PriceGroupMember, PriceGroupMember.price_group_id == PriceGroup.id
        ).filter(
            membership_filter,
            or_(PriceGroup.facility_id.is_(None), PriceGroup.facility_id == product.facility_id),
        ).distinct().all()
        return sorted(row[0] for row in rows)

    @staticmethod
    def group_rank(priority: Sequence[int], group: PriceGroup) -> Tuple[int, int, int]:
        """Sort key for a price group; lower ranks win."""
        if group.id in priority:
            return (0, priority.index(group.id), 0)
        return (1, group.display_order, group.id)

    @staticmethod
    def resolve(
        db: Session,
        product: Product,
        account_id: int,
        as_of: Union[date, datetime],
        user_id: Optional[int] = None,
    ) -> PricePolicy:
        """
        Select the single applicable policy for (product, account, as_of).

        Args:
            db: Database session
            product: Product being priced
            account_id: Billed account
            as_of: Date the usage happened (datetimes are truncated to the date)
            user_id: Orderer, whose own group memberships also count

        Returns:
            The winning PricePolicy

        Raises:
            NoPolicyFoundError: If no purchasable policy is effective on as_of
        """
        on_date = _as_date(as_of)
        group_ids = PricePolicyService.candidate_group_ids(db, product, account_id, user_id)

        candidates: List[PricePolicy] = []
        if group_ids:
            candidates = db.query(PricePolicy).filter(
                PricePolicy.product_id == product.id,
                PricePolicy.price_group_id.in_(group_ids),
                PricePolicy.start_date <= on_date,
                or_(PricePolicy.expire_date.is_(None), PricePolicy.expire_date >= on_date),
                PricePolicy.can_purchase.is_(True),
            ).all()

        if not candidates:
            raise NoPolicyFoundError(
                f"No price policy for product {product.id} and account {account_id} on {on_date}",
                product_id=product.id,
                account_id=account_id,
                as_of=on_date.isoformat(),
                price_group_ids=group_ids,
            )

        priority = price_group_priority(product.facility)
        ranks = {
            group.id: PricePolicyService.group_rank(priority, group)
            for group in db.query(PriceGroup).filter(
                PriceGroup.id.in_(sorted({p.price_group_id for p in candidates}))
            ).all()
        }
        candidates.sort(key=lambda p: (ranks[p.price_group_id], -p.start_date.toordinal(), -p.id))
        return candidates[0]

    @staticmethod
    def is_locked(db: Session, policy: PricePolicy, today: Optional[date] = None) -> bool:
        """A policy is locked once it has started and any order detail was priced with it."""
        today = today or facility_now().date()
        if policy.start_date > today:
            return False
        priced = db.query(OrderDetail.id).filter(OrderDetail.price_policy_id == policy.id).first()
        return priced is not None

    @staticmethod
    def create_policy(db: Session, product_id: int, price_group_id: int, start_date: date, rate_type: str, **fields: Any) -> PricePolicy:
        """
        Create a policy version.

        Raises:
            NotFoundError: If the product or price group does not exist
            InvalidPolicyError: If the definition is malformed
        """
        if not db.query(Product.id).filter(Product.id == product_id).first():
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
        if not db.query(PriceGroup.id).filter(PriceGroup.id == price_group_id).first():
            raise NotFoundError(f"Price group {price_group_id} not found", price_group_id=price_group_id)

        unknown = set(fields) - set(_MUTABLE_FIELDS)
        if unknown:
            raise InvalidPolicyError(f"Unknown policy fields: {sorted(unknown)}", fields=sorted(unknown))

        policy = PricePolicy(
            product_id=product_id,
            price_group_id=price_group_id,
            start_date=start_date,
            rate_type=rate_type,
            **fields,
        )
        PricePolicyService._apply_defaults(policy)
        PricePolicyService.validate(policy)
        db.add(policy)
        db.commit()
        db.refresh(policy)
        logger.info(f"Created price policy {policy.id} for product {product_id}, group {price_group_id} from {start_date}")
        return policy

    @staticmethod
    def update_policy(db: Session, policy_id: int, **changes: Any) -> PricePolicy:
        """
        Edit a policy that is not yet locked.

        Raises:
            NotFoundError: If the policy does not exist
            PolicyLockedError: If the policy has started and priced an order detail
            InvalidPolicyError: If the change is not allowed or the result is malformed
        """
        policy = db.query(PricePolicy).filter(PricePolicy.id == policy_id).with_for_update().first()
        if not policy:
            raise NotFoundError(f"Price policy {policy_id} not found", policy_id=policy_id)
        if PricePolicyService.is_locked(db, policy):
            db.rollback()
            raise PolicyLockedError(
                f"Price policy {policy_id} is in effect and has priced orders; expire it and create a new version",
                policy_id=policy_id,
            )

        for field in changes:
            if field in _IDENTITY_FIELDS or field not in _MUTABLE_FIELDS:
                db.rollback()
                raise InvalidPolicyError(f"Field '{field}' cannot be changed", field=field)
        for field, value in changes.items():
            setattr(policy, field, value)

        try:
            PricePolicyService.validate(policy)
        except InvalidPolicyError:
            db.rollback()
            raise
        db.commit()
        logger.info(f"Updated price policy {policy_id}: {sorted(changes)}")
        return policy

    @staticmethod
    def expire_policy(db: Session, policy_id: int, expire_date: date) -> PricePolicy:
        """
        End a policy's effective window. Allowed on locked policies as long as
        the expiry does not reach back before today.

        Raises:
            NotFoundError: If the policy does not exist
            InvalidPolicyError: If expire_date is before the start date
            PolicyLockedError: If a locked policy would be expired retroactively
        """
        policy = db.query(PricePolicy).filter(PricePolicy.id == policy_id).with_for_update().first()
        if not policy:
            raise NotFoundError(f"Price policy {policy_id} not found", policy_id=policy_id)
        if expire_date < policy.start_date:
            db.rollback()
            raise InvalidPolicyError(
                f"Expire date {expire_date} is before start date {policy.start_date}",
                policy_id=policy_id,
            )
        today = facility_now().date()
        if expire_date < today and PricePolicyService.is_locked(db, policy, today):
            db.rollback()
            raise PolicyLockedError(
                f"Price policy {policy_id} has priced orders and cannot be expired before today",
                policy_id=policy_id,
                expire_date=expire_date.isoformat(),
            )
        policy.expire_date = expire_date
        db.commit()
        logger.info(f"Expired price policy {policy_id} on {expire_date}")
        return policy

    @staticmethod
    def _apply_defaults(policy: PricePolicy) -> None:
        # Column defaults only apply at flush; validation needs them now
        defaults: Dict[str, Any] = {
            'can_purchase': True,
            'unit_rate_cents': 0,
            'minimum_cost_cents': 0,
            'billing_increment_minutes': 1,
            'rate_table': {},
            'charge_for': 'reservation',
            'charge_for_missed': False,
            'cap_period': 'month',
            'cap_mode': 'reject',
        }
        for field, value in defaults.items():
            if getattr(policy, field) is None:
                setattr(policy, field, value)

    @staticmethod
    def validate(policy: PricePolicy) -> None:
        """
        Raises:
            InvalidPolicyError: If any part of the definition is malformed
        """
        def fail(message: str, **context: Any) -> None:
            raise InvalidPolicyError(message, **context)

        if policy.rate_type not in RATE_TYPES:
            fail(f"Unknown rate type: {policy.rate_type}", rate_type=policy.rate_type)
        if policy.charge_for not in CHARGE_FOR:
            fail(f"Unknown charge_for: {policy.charge_for}", charge_for=policy.charge_for)
        if policy.cap_period not in CAP_PERIODS:
            fail(f"Unknown cap period: {policy.cap_period}", cap_period=policy.cap_period)
        if policy.cap_mode not in CAP_MODES:
            fail(f"Unknown cap mode: {policy.cap_mode}", cap_mode=policy.cap_mode)
        if policy.expire_date is not None and policy.expire_date < policy.start_date:
            fail("Expire date is before start date")
        for field in ('unit_rate_cents', 'minimum_cost_cents', 'subsidy_amount_cents',
                      'cancellation_fee_cents', 'fallback_rate_cents'):
            value = getattr(policy, field)
            if value is not None and value < 0:
                fail(f"{field} must not be negative", field=field)
        if policy.billing_increment_minutes < 1:
            fail("billing_increment_minutes must be at least 1")
        for field in ('subsidy_basis_points', 'cancellation_fee_basis_points'):
            value = getattr(policy, field)
            if value is not None and not 0 <= value <= BASIS_POINTS_PER_WHOLE:
                fail(f"{field} must be between 0 and {BASIS_POINTS_PER_WHOLE}", field=field)
        if policy.subsidy_basis_points is not None and policy.subsidy_amount_cents is not None:
            fail("Set either subsidy_basis_points or subsidy_amount_cents, not both")
        if policy.cancellation_fee_cents is not None and policy.cancellation_fee_basis_points is not None:
            fail("Set either cancellation_fee_cents or cancellation_fee_basis_points, not both")
        if policy.usage_cap is not None and policy.usage_cap < 1:
            fail("usage_cap must be at least 1")

        try:
            table = RateTable.model_validate(policy.rate_table or {})
        except ValidationError as e:
            raise InvalidPolicyError(f"Malformed rate table: {e.errors()}") from e

        if policy.rate_type == 'duration_bracket':
            if not table.brackets:
                fail("duration_bracket policies need at least one bracket")
            brackets = sorted(table.brackets, key=lambda b: b.up_to_minutes)
            for previous, current in zip(brackets, brackets[1:]):
                if current.up_to_minutes == previous.up_to_minutes:
                    fail(f"Duplicate bracket at {current.up_to_minutes} minutes")
                # Cost must not drop as duration grows
                if current.amount_cents < previous.amount_cents:
                    fail(
                        f"Bracket amounts must not decrease ({previous.up_to_minutes}m: "
                        f"{previous.amount_cents} > {current.up_to_minutes}m: {current.amount_cents})"
                    )
        if policy.rate_type == 'tiered_unit':
            if not table.tiers:
                fail("tiered_unit policies need at least one tier")
            unbounded = [t for t in table.tiers if t.up_to is None]
            if len(unbounded) > 1:
                fail("Only one unbounded tier is allowed")
            bounds = sorted(t.up_to for t in table.tiers if t.up_to is not None)
            if len(bounds) != len(set(bounds)):
                fail("Tier bounds must be distinct")
