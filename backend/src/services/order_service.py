"""
Order service: order detail lifecycle and cost freezing.

Completing a detail resolves its price policy, computes the cost (reading
prior usage for caps from committed details only) and freezes the result on
the detail. Frozen costs are never recomputed from later policy changes;
adjustments go through the problem state.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.exceptions import (
    CoreFacilityError, InvalidTransitionError, NoPolicyFoundError, NotFoundError,
)
from core.locks import cap_lock_key, get_lock_registry, lock_row
from models import Account, Order, OrderDetail, PricePolicy, Product, Reservation
from services.cost_calculator import CostCalculator
from services.notification_service import (
    ORDER_DETAIL_COMPLETED, ORDER_DETAIL_PROBLEM, NotificationService,
)
from services.price_policy_service import PricePolicyService
from shared_types.billing import CostBreakdown, Usage
from shared_types.product_kinds import RatingStrategy
from shared_types.states import ACTIVE_RESERVATION_STATUSES, OrderDetailState, ensure_order_detail_transition
from utils.datetime_utils import facility_now, minutes_between, period_bounds, to_facility_naive

logger = logging.getLogger(__name__)


class OrderService:
    """
    Service class for order and order detail operations.
    """

    @staticmethod
    def get_order_detail(db: Session, order_detail_id: int) -> OrderDetail:
        detail = db.query(OrderDetail).filter(OrderDetail.id == order_detail_id).first()
        if not detail:
            raise NotFoundError(f"Order detail {order_detail_id} not found", order_detail_id=order_detail_id)
        return detail

    @staticmethod
    def ensure_account_usable(account: Optional[Account], account_id: int, at: datetime, facility_id: int) -> Account:
        """
        Raises:
            NotFoundError: If the account does not exist
            CoreFacilityError: If the account is suspended, expired or limited to another facility
        """
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
        if not account.is_usable(at, facility_id):
            raise CoreFacilityError(
                f"Account {account_id} cannot be charged (suspended, expired or limited to another facility)",
                account_id=account_id,
            )
        return account

    @staticmethod
    def create_order(
        db: Session,
        account_id: int,
        user_id: int,
        facility_id: int,
        items: List[Dict[str, Any]],
        created_by_user_id: Optional[int] = None,
    ) -> Order:
        """
        Create an order with one 'new' detail per item.

        Each item is a dict with `product_id` and either `quantity` (default 1)
        or `duration_minutes` (timed services). Schedulable products are booked
        through ReservationService.request_reservation instead.

        Raises:
            NotFoundError: If the account or a product does not exist
            CoreFacilityError: If the account cannot be charged or an item is invalid
        """
        now = facility_now()
        account = db.query(Account).filter(Account.id == account_id).first()
        OrderService.ensure_account_usable(account, account_id, now, facility_id)
        if not items:
            raise CoreFacilityError("An order needs at least one item")

        order = Order(facility_id=facility_id, account_id=account_id, user_id=user_id,
                      created_by_user_id=created_by_user_id or user_id)
        db.add(order)
        db.flush()

        for item in items:
            product = db.query(Product).filter(Product.id == item['product_id']).first()
            if not product:
                db.rollback()
                raise NotFoundError(f"Product {item['product_id']} not found", product_id=item['product_id'])
            if product.facility_id != facility_id or product.is_archived:
                db.rollback()
                raise CoreFacilityError(
                    f"Product {product.id} is not orderable at facility {facility_id}",
                    product_id=product.id,
                )
            if product.capabilities.schedulable:
                db.rollback()
                raise CoreFacilityError(
                    f"Product {product.id} is booked through reservations, not ordered directly",
                    product_id=product.id,
                )
            detail = OrderDetail(
                order_id=order.id,
                product_id=product.id,
                account_id=account_id,
                quantity=item.get('quantity', 1),
                duration_minutes=item.get('duration_minutes'),
                state=OrderDetailState.NEW.value,
            )
            detail.product = product
            detail.order = order
            detail.estimated_cost_cents = OrderService.estimate_net_cost(db, detail, now)
            db.add(detail)

        db.commit()
        db.refresh(order)
        logger.info(f"Created order {order.id} for account {account_id} with {len(items)} item(s)")
        return order

    @staticmethod
    def place_order(db: Session, order_id: int, at: Optional[datetime] = None) -> Order:
        """
        Submit an order: every 'new' detail moves to 'inprocess'.

        Raises:
            NotFoundError: If the order does not exist
            InvalidTransitionError: If the order was already placed
        """
        order = db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        if order.ordered_at is not None:
            raise InvalidTransitionError(f"Order {order_id} was already placed", entity="order", entity_id=order_id)

        order.ordered_at = to_facility_naive(at) or facility_now()
        for detail in order.details:
            if detail.state == OrderDetailState.NEW.value:
                ensure_order_detail_transition(detail.state, OrderDetailState.INPROCESS, detail.id)
                detail.state = OrderDetailState.INPROCESS.value
        db.commit()
        logger.info(f"Placed order {order_id}")
        return order

    @staticmethod
    def complete_order_detail(
        db: Session,
        order_detail_id: int,
        actual_usage: Optional[Usage] = None,
        at: Optional[datetime] = None,
    ) -> OrderDetail:
        """
        Complete an in-process detail: price it and freeze the cost.

        Args:
            db: Database session
            order_detail_id: Detail to complete
            actual_usage: Measured usage. For reservations this overrides the
                recorded check-in/check-out window; for other products it
                overrides the ordered quantity or duration.
            at: Completion time (default now)

        Returns:
            The completed OrderDetail

        Raises:
            NotFoundError: If the detail does not exist
            InvalidTransitionError: If the detail is not in process or its
                reservation is still confirmed or in progress
            NoPolicyFoundError: If no price policy applies (detail unchanged)
            CapExceededError: If the usage cap rejects the usage (detail unchanged)
            BusyError: If the cap lock cannot be acquired
        """
        completed_at = to_facility_naive(at) or facility_now()
        detail = OrderService.get_order_detail(db, order_detail_id)
        if detail.state == OrderDetailState.PROBLEM.value:
            raise InvalidTransitionError(
                f"Order detail {order_detail_id} is under review; resolve the problem instead",
                entity="order_detail",
                entity_id=order_detail_id,
                current=detail.state,
                target=OrderDetailState.COMPLETE.value,
            )

        with get_lock_registry().hold(cap_lock_key(detail.account_id, detail.product_id)):
            lock_row(db, Account, detail.account_id)
            detail = lock_row(db, OrderDetail, order_detail_id)
            try:
                OrderService.ensure_reservation_closed(detail)
                ensure_order_detail_transition(detail.state, OrderDetailState.COMPLETE, detail.id)
                policy, breakdown = OrderService.price_detail(db, detail, completed_at, actual_usage)
            except CoreFacilityError:
                db.rollback()
                raise
            OrderService._freeze(detail, policy, breakdown, completed_at)
            db.commit()

        logger.info(
            f"Completed order detail {detail.id}: base={breakdown.base_cents} "
            f"subsidy={breakdown.subsidy_cents} net={breakdown.net_cents} (policy {policy.id})"
        )
        NotificationService.publish(ORDER_DETAIL_COMPLETED, OrderService.event_payload(detail))
        return detail

    @staticmethod
    def price_detail(
        db: Session,
        detail: OrderDetail,
        completed_at: datetime,
        actual_usage: Optional[Usage] = None,
    ) -> Tuple[PricePolicy, CostBreakdown]:
        """
        Resolve the policy and compute the cost of a detail without changing it.

        Must be called inside the detail's cap lock so prior usage cannot
        change between the read and the freeze.

        Returns:
            (PricePolicy, CostBreakdown)

        Raises:
            NoPolicyFoundError: If no price policy applies
            CapExceededError: If the usage cap rejects the usage
        """
        product = detail.product
        reservation = detail.reservation
        usage_at = OrderService.usage_date(detail, completed_at)
        policy = PricePolicyService.resolve(
            db, product, detail.account_id, usage_at, user_id=detail.order.user_id
        )
        usage = OrderService.usage_for(detail, policy, reservation, actual_usage)

        prior = 0
        if policy.usage_cap is not None:
            period_start, period_end = period_bounds(completed_at.date(), policy.cap_period)
            prior = OrderService.get_usage_to_date(
                db, detail.account_id, detail.product_id, period_start, period_end, exclude_detail_id=detail.id
            )
        breakdown = CostCalculator.compute_cost(policy, usage, prior_usage=prior)
        return policy, breakdown

    @staticmethod
    def usage_date(detail: OrderDetail, completed_at: datetime) -> datetime:
        """When the usage happened: reservation start (actual if checked in), else completion."""
        reservation = detail.reservation
        if reservation is not None:
            return reservation.actual_start_at or reservation.reserve_start_at
        return completed_at

    @staticmethod
    def usage_for(
        detail: OrderDetail,
        policy: PricePolicy,
        reservation: Optional[Reservation],
        actual_usage: Optional[Usage] = None,
    ) -> Usage:
        """
        Usage to price for a detail.

        Reservations are billed per the policy's charge_for: the reserved
        window, the actual window, or whichever is longer ('overage').
        """
        if reservation is not None:
            reserved = reservation.reserved_minutes
            actual: Optional[int] = None
            if actual_usage is not None and actual_usage.minutes is not None:
                actual = actual_usage.minutes
            elif reservation.actual_start_at and reservation.actual_end_at:
                actual = minutes_between(reservation.actual_start_at, reservation.actual_end_at)

            if policy.charge_for == 'usage' and actual is not None:
                minutes = actual
            elif policy.charge_for == 'overage' and actual is not None:
                minutes = max(reserved, actual)
            else:
                minutes = reserved
            return Usage(minutes=minutes)

        if actual_usage is not None:
            return actual_usage
        if detail.product.capabilities.rating == RatingStrategy.DURATION:
            return Usage(minutes=detail.duration_minutes or 0)
        return Usage(quantity=detail.quantity)

    @staticmethod
    def get_usage_to_date(
        db: Session,
        account_id: int,
        product_id: int,
        period_start: datetime,
        period_end: datetime,
        exclude_detail_id: Optional[int] = None,
    ) -> int:
        """
        Billable usage an account has committed on a product in [period_start, period_end).

        Counts complete details only; fees and in-flight details never count.
        """
        query = db.query(func.coalesce(func.sum(OrderDetail.billed_quantity), 0)).filter(
            OrderDetail.account_id == account_id,
            OrderDetail.product_id == product_id,
            OrderDetail.state == OrderDetailState.COMPLETE.value,
            OrderDetail.is_cancellation_fee.is_(False),
            OrderDetail.fulfilled_at >= period_start,
            OrderDetail.fulfilled_at < period_end,
        )
        if exclude_detail_id is not None:
            query = query.filter(OrderDetail.id != exclude_detail_id)
        return int(query.scalar() or 0)

    @staticmethod
    def cancel_order_detail(db: Session, order_detail_id: int, at: Optional[datetime] = None) -> OrderDetail:
        """
        Cancel a detail. Details with an active reservation are cancelled
        through ReservationService.cancel_reservation so fees apply.

        Raises:
            NotFoundError: If the detail does not exist
            InvalidTransitionError: If the detail cannot be cancelled
        """
        detail = OrderService.get_order_detail(db, order_detail_id)
        reservation = detail.reservation
        if reservation is not None and reservation.status in ACTIVE_RESERVATION_STATUSES:
            raise InvalidTransitionError(
                f"Order detail {order_detail_id} has an active reservation; cancel the reservation instead",
                entity="order_detail",
                entity_id=order_detail_id,
                reservation_id=reservation.id,
            )
        OrderService.apply_cancel(detail, to_facility_naive(at) or facility_now())
        db.commit()
        logger.info(f"Cancelled order detail {order_detail_id}")
        return detail

    @staticmethod
    def apply_cancel(detail: OrderDetail, at: datetime) -> None:
        """Move a detail to 'cancelled' without committing."""
        ensure_order_detail_transition(detail.state, OrderDetailState.CANCELLED, detail.id)
        detail.state = OrderDetailState.CANCELLED.value
        detail.canceled_at = at

    @staticmethod
    def apply_fee(detail: OrderDetail, policy: PricePolicy, fee: CostBreakdown, at: datetime) -> None:
        """Complete a detail with a cancellation/no-show charge frozen on it, without committing."""
        ensure_order_detail_transition(detail.state, OrderDetailState.COMPLETE, detail.id)
        OrderService._freeze(detail, policy, fee, at)

    @staticmethod
    def mark_problem(db: Session, order_detail_id: int, description: str) -> OrderDetail:
        """
        Flag a detail for review. Journaled details must be reversed first.

        Raises:
            NotFoundError: If the detail does not exist
            InvalidTransitionError: If the detail is terminal or already journaled
        """
        detail = OrderService.get_order_detail(db, order_detail_id)
        if detail.journal_id is not None:
            raise InvalidTransitionError(
                f"Order detail {order_detail_id} is journaled; reverse it before flagging",
                entity="order_detail",
                entity_id=order_detail_id,
                journal_id=detail.journal_id,
            )
        OrderService.apply_problem(detail, description)
        db.commit()
        logger.info(f"Order detail {order_detail_id} flagged as problem: {description}")
        NotificationService.publish(ORDER_DETAIL_PROBLEM, OrderService.event_payload(detail))
        return detail

    @staticmethod
    def apply_problem(detail: OrderDetail, description: str) -> None:
        ensure_order_detail_transition(detail.state, OrderDetailState.PROBLEM, detail.id)
        detail.state = OrderDetailState.PROBLEM.value
        detail.problem_description = description

    @staticmethod
    def resolve_problem(
        db: Session,
        order_detail_id: int,
        actual_cost_cents: Optional[int] = None,
        subsidy_cents: int = 0,
        reprice: bool = False,
        actual_usage: Optional[Usage] = None,
        at: Optional[datetime] = None,
    ) -> OrderDetail:
        """
        Close a review and return the detail to 'complete'.

        With `actual_cost_cents` the cost is overridden manually. With
        `reprice` (or if the detail was never priced) it is priced again
        as on completion. Otherwise the previously frozen cost stands.

        Raises:
            NotFoundError: If the detail does not exist
            InvalidTransitionError: If the detail is not in 'problem' or its
                reservation is still confirmed or in progress
            CoreFacilityError: If the override is invalid
            NoPolicyFoundError: If re-pricing finds no policy
            CapExceededError: If re-pricing is rejected by the cap
        """
        resolved_at = to_facility_naive(at) or facility_now()
        detail = OrderService.get_order_detail(db, order_detail_id)

        with get_lock_registry().hold(cap_lock_key(detail.account_id, detail.product_id)):
            lock_row(db, Account, detail.account_id)
            detail = lock_row(db, OrderDetail, order_detail_id)
            if detail.state != OrderDetailState.PROBLEM.value:
                db.rollback()
                raise InvalidTransitionError(
                    f"Order detail {order_detail_id} is not under review",
                    entity="order_detail",
                    entity_id=order_detail_id,
                    current=detail.state,
                )

            try:
                OrderService.ensure_reservation_closed(detail)
            except InvalidTransitionError:
                db.rollback()
                raise

            if actual_cost_cents is not None:
                if actual_cost_cents < 0 or not 0 <= subsidy_cents <= actual_cost_cents:
                    db.rollback()
                    raise CoreFacilityError(
                        "Override requires 0 <= subsidy <= cost",
                        actual_cost_cents=actual_cost_cents,
                        subsidy_cents=subsidy_cents,
                    )
                detail.actual_cost_cents = actual_cost_cents
                detail.actual_subsidy_cents = subsidy_cents
                detail.net_cost_cents = actual_cost_cents - subsidy_cents
                detail.fulfilled_at = detail.fulfilled_at or resolved_at
                detail.state = OrderDetailState.COMPLETE.value
                logger.info(f"Order detail {order_detail_id} resolved with manual cost {actual_cost_cents}")
            elif reprice or not detail.is_priced:
                try:
                    policy, breakdown = OrderService.price_detail(
                        db, detail, detail.fulfilled_at or resolved_at, actual_usage
                    )
                except CoreFacilityError:
                    db.rollback()
                    raise
                OrderService._freeze(detail, policy, breakdown, detail.fulfilled_at or resolved_at)
                logger.info(f"Order detail {order_detail_id} re-priced: net={breakdown.net_cents}")
            else:
                detail.state = OrderDetailState.COMPLETE.value
                logger.info(f"Order detail {order_detail_id} resolved with its frozen cost")

            detail.problem_resolved_at = resolved_at
            db.commit()
        return detail

    @staticmethod
    def ensure_reservation_closed(detail: OrderDetail) -> None:
        """Refuse pricing while the detail's reservation is confirmed or in progress."""
        reservation = detail.reservation
        if reservation is not None and reservation.status in ACTIVE_RESERVATION_STATUSES:
            raise InvalidTransitionError(
                f"Order detail {detail.id} belongs to reservation {reservation.id} which is still {reservation.status}; "
                "end, cancel or mark the reservation missed instead",
                entity="order_detail",
                entity_id=detail.id,
                current=detail.state,
                target=OrderDetailState.COMPLETE.value,
                reservation_id=reservation.id,
            )

    @staticmethod
    def event_payload(detail: OrderDetail) -> Dict[str, Any]:
        return {
            "order_detail_id": detail.id,
            "order_id": detail.order_id,
            "account_id": detail.account_id,
            "product_id": detail.product_id,
            "state": detail.state,
            "net_cost_cents": detail.net_cost_cents,
        }

    @staticmethod
    def _freeze(detail: OrderDetail, policy: PricePolicy, breakdown: CostBreakdown, at: datetime) -> None:
        detail.price_policy_id = policy.id
        detail.actual_cost_cents = breakdown.base_cents
        detail.actual_subsidy_cents = breakdown.subsidy_cents
        detail.net_cost_cents = breakdown.net_cents
        detail.billed_quantity = breakdown.billable + breakdown.fallback_quantity
        detail.is_cancellation_fee = breakdown.is_cancellation_fee
        detail.fulfilled_at = at
        detail.state = OrderDetailState.COMPLETE.value

    @staticmethod
    def estimate_net_cost(db: Session, detail: OrderDetail, at: datetime) -> Optional[int]:
        """Net cost estimate, or None if no policy applies yet."""
        try:
            policy = PricePolicyService.resolve(db, detail.product, detail.account_id, at, user_id=detail.order.user_id)
            usage = OrderService.usage_for(detail, policy, detail.reservation)
            return CostCalculator.estimate_cost(policy, usage).net_cents
        except NoPolicyFoundError:
            logger.info(f"No price policy yet for product {detail.product_id}, account {detail.account_id}; no estimate")
            return None
