"""
Reservation service: booking, cancellation, check-in/out and no-shows.

Reservation commits are serialized per product. The availability check,
the capacity check and the insert all happen while holding the product's
lock (plus a row lock on the product for multi-process deployments), so no
two requests can both see a slot as free and both claim it. Requests on
different products never share a lock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from core.exceptions import (
    ConflictError, CoreFacilityError, InvalidRangeError, InvalidTransitionError, NoPolicyFoundError,
    NotFoundError, RuleViolationError, SchedulingError, SlotUnavailableError,
)
from core.locks import call_with_busy_retry, get_lock_registry, lock_row, product_lock_key
from models import Account, Order, OrderDetail, Product, Reservation
from services.cost_calculator import CostCalculator
from services.notification_service import (
    RESERVATION_CANCELLED, RESERVATION_COMPLETED, RESERVATION_CONFIRMED, RESERVATION_MISSED,
    NotificationService,
)
from services.order_service import OrderService
from services.price_policy_service import PricePolicyService
from services.schedule_rule_service import ScheduleRuleService
from shared_types.availability import TimeWindow
from shared_types.billing import CostBreakdown, Usage
from shared_types.states import (
    ACTIVE_RESERVATION_STATUSES, OrderDetailState, ReservationStatus,
    ensure_order_detail_transition, ensure_reservation_transition,
)
from utils.datetime_utils import facility_now, minutes_between, to_facility_naive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingRules:
    """Effective booking rules for a product (product fields over facility defaults)."""
    interval_minutes: int
    min_minutes: int
    max_minutes: Optional[int]
    lead_time_minutes: int
    max_advance_days: int
    cancellation_cutoff_hours: int
    missed_grace_minutes: int
    max_concurrent_per_account: Optional[int]


def peak_overlap(intervals: Sequence[Tuple[datetime, datetime]], start: datetime, end: datetime) -> int:
    """
    Maximum number of half-open intervals covering any instant of [start, end).
    Intervals that merely touch do not overlap.
    """
    events: List[Tuple[datetime, int]] = []
    for s, e in intervals:
        s, e = max(s, start), min(e, end)
        if s < e:
            events.append((s, 1))
            events.append((e, -1))
    # Ends sort before starts at the same instant
    events.sort(key=lambda ev: (ev[0], ev[1]))
    current = peak = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return peak


class ReservationService:
    """
    Service class for reservation operations.

    The core trusts its caller's authorization decision: whether an actor may
    override rules or waive fees is decided by the API layer.
    """

    @staticmethod
    def booking_rules(product: Product) -> BookingRules:
        settings = product.facility.get_validated_settings().booking_settings
        interval = product.reserve_interval_minutes or 1

        def pick(value: Optional[int], default: int) -> int:
            return default if value is None else value

        return BookingRules(
            interval_minutes=interval,
            min_minutes=pick(product.min_reserve_minutes, interval),
            max_minutes=product.max_reserve_minutes,
            lead_time_minutes=pick(product.lead_time_minutes, settings.lead_time_minutes),
            max_advance_days=pick(product.max_advance_days, settings.max_advance_days),
            cancellation_cutoff_hours=pick(product.cancellation_cutoff_hours, settings.cancellation_cutoff_hours),
            missed_grace_minutes=settings.missed_grace_minutes,
            max_concurrent_per_account=product.max_concurrent_per_account,
        )

    @staticmethod
    def get_reservation(db: Session, reservation_id: int) -> Reservation:
        reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found", reservation_id=reservation_id)
        return reservation

    @staticmethod
    def request_reservation(
        db: Session,
        product_id: int,
        account_id: int,
        user_id: int,
        start_at: datetime,
        end_at: datetime,
        admin_override: bool = False,
        actor_id: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> Reservation:
        """
        Book [start_at, end_at) on a product.

        Creates the order, an in-process order detail and a confirmed
        reservation in one transaction. Lock contention is retried a bounded
        number of times before BusyError surfaces.

        Args:
            db: Database session
            product_id: Product to reserve
            account_id: Account billed for the reservation
            user_id: User the reservation is for
            start_at: Requested start
            end_at: Requested end (exclusive)
            admin_override: Skip rule, slot and capacity checks (staff double-booking)
            actor_id: Who made the request (defaults to user_id)
            at: Current time for rule checks (default now)

        Returns:
            The confirmed Reservation

        Raises:
            InvalidRangeError: If start_at or end_at is missing, or end_at is not after start_at
            NotFoundError: If the product or account does not exist
            SchedulingError: If the product cannot be reserved
            RuleViolationError: If duration, lead time, advance window or account limit is violated
            SlotUnavailableError: If the window is not fully inside available time
            ConflictError: If the window would exceed capacity
            BusyError: If the product stays locked through all retries
        """
        return call_with_busy_retry(
            lambda: ReservationService._request_reservation(
                db, product_id, account_id, user_id, start_at, end_at, admin_override, actor_id, at,
            ),
            label=f"Reservation request on product {product_id}",
        )

    @staticmethod
    def _request_reservation(
        db: Session,
        product_id: int,
        account_id: int,
        user_id: int,
        start_at: datetime,
        end_at: datetime,
        admin_override: bool,
        actor_id: Optional[int],
        at: Optional[datetime],
    ) -> Reservation:
        now = to_facility_naive(at) or facility_now()
        start = to_facility_naive(start_at)
        end = to_facility_naive(end_at)
        if start is None or end is None or end <= start:
            raise InvalidRangeError("Reservation end must be after start", range_start=start, range_end=end)

        product = db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
        if not product.capabilities.schedulable:
            raise SchedulingError(f"Product {product_id} ({product.kind}) is not reservable", product_id=product_id)
        if product.is_archived:
            raise SchedulingError(f"Product {product_id} is archived", product_id=product_id)
        account = db.query(Account).filter(Account.id == account_id).first()
        OrderService.ensure_account_usable(account, account_id, now, product.facility_id)

        actor = actor_id if actor_id is not None else user_id
        with get_lock_registry().hold(product_lock_key(product_id)):
            lock_row(db, Product, product_id)
            try:
                if not admin_override:
                    rules = ReservationService.booking_rules(product)
                    ReservationService._check_rules(db, product, rules, account_id, start, end, now)
                    windows = ReservationService._check_slot(db, product, start, end)
                    ReservationService._check_capacity(db, product_id, windows, start, end)

                reservation = ReservationService._create_booking(
                    db, product, account_id, user_id, actor, start, end, admin_override, now,
                )
            except CoreFacilityError:
                db.rollback()
                raise
            db.commit()

        if admin_override:
            logger.warning(
                f"Admin override by actor {actor}: reservation {reservation.id} on product {product_id} "
                f"{start} - {end} booked without rule, slot or capacity checks"
            )
        logger.info(f"Confirmed reservation {reservation.id} on product {product_id}: {start} - {end}")
        NotificationService.publish(RESERVATION_CONFIRMED, ReservationService.event_payload(reservation))
        return reservation

    @staticmethod
    def _check_rules(
        db: Session,
        product: Product,
        rules: BookingRules,
        account_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> None:
        """
        Raises:
            RuleViolationError: On the first violated booking rule
        """
        duration = minutes_between(start, end)
        start_offset = start.hour * 60 + start.minute
        if duration % rules.interval_minutes or start_offset % rules.interval_minutes or start.second or start.microsecond:
            raise RuleViolationError(
                f"Reservations must start and end on {rules.interval_minutes}-minute boundaries",
                rule="interval",
                interval_minutes=rules.interval_minutes,
            )
        if duration < rules.min_minutes:
            raise RuleViolationError(
                f"Reservation of {duration} minutes is shorter than the minimum of {rules.min_minutes}",
                rule="min_duration",
                min_minutes=rules.min_minutes,
                requested_minutes=duration,
            )
        if rules.max_minutes is not None and duration > rules.max_minutes:
            raise RuleViolationError(
                f"Reservation of {duration} minutes is longer than the maximum of {rules.max_minutes}",
                rule="max_duration",
                max_minutes=rules.max_minutes,
                requested_minutes=duration,
            )
        earliest = now + timedelta(minutes=rules.lead_time_minutes)
        if start < earliest:
            raise RuleViolationError(
                f"Reservations must start at or after {earliest}",
                rule="lead_time",
                lead_time_minutes=rules.lead_time_minutes,
                earliest_start=earliest,
            )
        latest = now + timedelta(days=rules.max_advance_days)
        if start > latest:
            raise RuleViolationError(
                f"Reservations may be made at most {rules.max_advance_days} days ahead",
                rule="max_advance",
                max_advance_days=rules.max_advance_days,
                latest_start=latest,
            )
        if rules.max_concurrent_per_account is not None:
            active = db.query(Reservation).join(
                OrderDetail, OrderDetail.id == Reservation.order_detail_id
            ).filter(
                Reservation.product_id == product.id,
                OrderDetail.account_id == account_id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
                Reservation.reserve_end_at > now,
            ).count()
            if active >= rules.max_concurrent_per_account:
                raise RuleViolationError(
                    f"Account {account_id} already holds {active} upcoming reservation(s) on this product",
                    rule="max_concurrent",
                    limit=rules.max_concurrent_per_account,
                    active=active,
                )

    @staticmethod
    def _check_slot(db: Session, product: Product, start: datetime, end: datetime) -> List[TimeWindow]:
        """
        Return the available windows covering [start, end).

        Raises:
            SlotUnavailableError: If any part of the request lies outside available time
        """
        windows = ScheduleRuleService.available_windows(db, product, start, end).to_list()
        cursor = start
        for window in windows:
            if window.start > cursor:
                break
            cursor = max(cursor, window.end)
        if cursor < end:
            nearby = ScheduleRuleService.nearby_windows(db, product, start, end)
            raise SlotUnavailableError(
                f"Product {product.id} is not available for the whole of {start} - {end}",
                requested_start=start,
                requested_end=end,
                nearby_windows=[w.to_dict() for w in nearby],
            )
        return windows

    @staticmethod
    def _check_capacity(db: Session, product_id: int, windows: Sequence[TimeWindow], start: datetime, end: datetime) -> None:
        """
        Raises:
            ConflictError: If any covered segment is already at capacity
        """
        existing = db.query(Reservation).filter(
            Reservation.product_id == product_id,
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            Reservation.reserve_start_at < end,
            Reservation.reserve_end_at > start,
        ).order_by(Reservation.reserve_start_at, Reservation.id).all()
        if not existing:
            return

        intervals = [(r.reserve_start_at, r.reserve_end_at) for r in existing]
        for window in windows:
            segment = window.clip(start, end)
            if segment is None:
                continue
            if peak_overlap(intervals, segment.start, segment.end) + 1 > segment.capacity:
                conflicts = [
                    {"reservation_id": r.id, "start": r.reserve_start_at, "end": r.reserve_end_at}
                    for r in existing
                    if segment.overlaps(r.reserve_start_at, r.reserve_end_at)
                ]
                raise ConflictError(
                    f"Product {product_id} is fully booked during {segment.start} - {segment.end}",
                    capacity=segment.capacity,
                    conflicts=conflicts,
                )

    @staticmethod
    def _create_booking(
        db: Session,
        product: Product,
        account_id: int,
        user_id: int,
        actor_id: int,
        start: datetime,
        end: datetime,
        admin_override: bool,
        now: datetime,
    ) -> Reservation:
        order = Order(
            facility_id=product.facility_id,
            account_id=account_id,
            user_id=user_id,
            created_by_user_id=actor_id,
            ordered_at=now,
        )
        db.add(order)
        db.flush()

        detail = OrderDetail(
            order_id=order.id,
            product_id=product.id,
            account_id=account_id,
            quantity=1,
            duration_minutes=minutes_between(start, end),
            state=OrderDetailState.NEW.value,
        )
        detail.order = order
        detail.product = product
        db.add(detail)
        db.flush()
        ensure_order_detail_transition(detail.state, OrderDetailState.INPROCESS, detail.id)
        detail.state = OrderDetailState.INPROCESS.value

        reservation = Reservation(
            product_id=product.id,
            order_detail_id=detail.id,
            reserve_start_at=start,
            reserve_end_at=end,
            status=ReservationStatus.REQUESTED.value,
            is_admin_override=admin_override,
            created_by_user_id=actor_id,
        )
        reservation.order_detail = detail
        db.add(reservation)
        db.flush()
        ensure_reservation_transition(reservation.status, ReservationStatus.CONFIRMED, reservation.id)
        reservation.status = ReservationStatus.CONFIRMED.value

        detail.estimated_cost_cents = OrderService.estimate_net_cost(db, detail, start)
        return reservation

    @staticmethod
    def cancel_reservation(
        db: Session,
        reservation_id: int,
        actor_id: Optional[int] = None,
        waive_fee: bool = False,
        at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Reservation:
        """
        Cancel a confirmed reservation.

        At or after (start - cancellation cutoff) the policy's cancellation fee
        applies: a positive fee completes the order detail with the fee frozen,
        otherwise the detail is cancelled. Cancelling an already-cancelled
        reservation returns it unchanged.

        Args:
            db: Database session
            reservation_id: Reservation to cancel
            actor_id: Who cancelled
            waive_fee: Skip the late-cancellation fee (callers decide who may)
            at: Cancellation time (default now)
            reason: Optional note

        Raises:
            NotFoundError: If the reservation does not exist
            InvalidTransitionError: If the reservation is not confirmed
        """
        now = to_facility_naive(at) or facility_now()
        reservation = ReservationService.get_reservation(db, reservation_id)
        if reservation.status == ReservationStatus.CANCELLED.value:
            return reservation

        fee: Optional[CostBreakdown] = None
        with get_lock_registry().hold(product_lock_key(reservation.product_id)):
            reservation = lock_row(db, Reservation, reservation_id)
            if reservation.status == ReservationStatus.CANCELLED.value:
                db.rollback()
                return reservation
            ensure_reservation_transition(reservation.status, ReservationStatus.CANCELLED, reservation.id)

            detail = reservation.order_detail
            rules = ReservationService.booking_rules(reservation.product)
            cutoff = reservation.reserve_start_at - timedelta(hours=rules.cancellation_cutoff_hours)
            is_late = now >= cutoff

            if is_late and not waive_fee:
                fee = ReservationService._charge_detail(
                    db, reservation, detail, now,
                    lambda policy: CostCalculator.compute_cancellation_cost(
                        policy, Usage(minutes=reservation.reserved_minutes)
                    ),
                    reason="late cancellation",
                )
            else:
                OrderService.apply_cancel(detail, now)

            reservation.status = ReservationStatus.CANCELLED.value
            reservation.canceled_at = now
            reservation.canceled_by_user_id = actor_id
            reservation.canceled_reason = reason
            db.commit()

        if is_late and waive_fee:
            logger.warning(f"Late cancellation fee waived for reservation {reservation_id} by actor {actor_id}")
        logger.info(
            f"Cancelled reservation {reservation_id} ({'late' if is_late else 'before cutoff'}), "
            f"fee={fee.net_cents if fee else 0}"
        )
        NotificationService.publish(RESERVATION_CANCELLED, ReservationService.event_payload(reservation))
        return reservation

    @staticmethod
    def start_reservation(db: Session, reservation_id: int, at: Optional[datetime] = None) -> Reservation:
        """
        Check in: confirmed -> in_progress, recording the actual start.

        Raises:
            NotFoundError: If the reservation does not exist
            InvalidTransitionError: If the reservation is not confirmed
        """
        now = to_facility_naive(at) or facility_now()
        reservation = ReservationService.get_reservation(db, reservation_id)
        with get_lock_registry().hold(product_lock_key(reservation.product_id)):
            reservation = lock_row(db, Reservation, reservation_id)
            ensure_reservation_transition(reservation.status, ReservationStatus.IN_PROGRESS, reservation.id)
            reservation.status = ReservationStatus.IN_PROGRESS.value
            reservation.actual_start_at = now
            db.commit()
        logger.info(f"Reservation {reservation_id} started at {now}")
        return reservation

    @staticmethod
    def end_reservation(db: Session, reservation_id: int, at: Optional[datetime] = None) -> Reservation:
        """
        Check out: in_progress -> completed, then complete and price the order detail.

        The reservation stays completed even if pricing fails; the detail then
        remains in process until a policy exists and it is completed again.
        A detail that is no longer in process (flagged for review, or already
        completed) is left as it is.

        Raises:
            NotFoundError: If the reservation does not exist
            InvalidTransitionError: If the reservation is not in progress
            NoPolicyFoundError: If the detail cannot be priced
            CapExceededError: If the usage cap rejects the usage
        """
        now = to_facility_naive(at) or facility_now()
        reservation = ReservationService.get_reservation(db, reservation_id)
        with get_lock_registry().hold(product_lock_key(reservation.product_id)):
            reservation = lock_row(db, Reservation, reservation_id)
            ensure_reservation_transition(reservation.status, ReservationStatus.COMPLETED, reservation.id)
            reservation.status = ReservationStatus.COMPLETED.value
            reservation.actual_end_at = max(now, reservation.actual_start_at or now)
            db.commit()
        logger.info(f"Reservation {reservation_id} ended at {reservation.actual_end_at}")
        NotificationService.publish(RESERVATION_COMPLETED, ReservationService.event_payload(reservation))

        detail = reservation.order_detail
        if detail.state != OrderDetailState.INPROCESS.value:
            logger.info(f"Order detail {detail.id} is {detail.state}; not pricing it on check-out of reservation {reservation_id}")
            return reservation
        OrderService.complete_order_detail(db, detail.id, at=now)
        return reservation

    @staticmethod
    def mark_missed(db: Session, reservation_id: int, at: Optional[datetime] = None) -> Reservation:
        """
        Record a no-show: confirmed -> missed once the grace period after start has passed.

        If the resolved policy charges for missed reservations, the detail is
        completed at the reserved-duration cost; otherwise it is cancelled.

        Raises:
            NotFoundError: If the reservation does not exist
            InvalidTransitionError: If the reservation is not confirmed or the grace period has not passed
        """
        now = to_facility_naive(at) or facility_now()
        reservation = ReservationService.get_reservation(db, reservation_id)
        with get_lock_registry().hold(product_lock_key(reservation.product_id)):
            reservation = lock_row(db, Reservation, reservation_id)
            ensure_reservation_transition(reservation.status, ReservationStatus.MISSED, reservation.id)
            rules = ReservationService.booking_rules(reservation.product)
            deadline = reservation.reserve_start_at + timedelta(minutes=rules.missed_grace_minutes)
            if now < deadline:
                db.rollback()
                raise InvalidTransitionError(
                    f"Reservation {reservation_id} cannot be marked missed before {deadline}",
                    entity="reservation",
                    entity_id=reservation_id,
                    current=reservation.status,
                    target=ReservationStatus.MISSED.value,
                    grace_deadline=deadline,
                )

            detail = reservation.order_detail

            def no_show_charge(policy: Any) -> CostBreakdown:
                if not policy.charge_for_missed:
                    return CostBreakdown(base_cents=0, subsidy_cents=0, net_cents=0, is_cancellation_fee=True)
                full = CostCalculator.estimate_cost(policy, Usage(minutes=reservation.reserved_minutes))
                return CostBreakdown(
                    base_cents=full.base_cents,
                    subsidy_cents=full.subsidy_cents,
                    net_cents=full.net_cents,
                    is_cancellation_fee=True,
                )

            ReservationService._charge_detail(db, reservation, detail, now, no_show_charge, reason="no-show")
            reservation.status = ReservationStatus.MISSED.value
            reservation.missed_at = now
            db.commit()

        logger.info(f"Reservation {reservation_id} marked missed")
        NotificationService.publish(RESERVATION_MISSED, ReservationService.event_payload(reservation))
        return reservation

    @staticmethod
    def mark_missed_reservations(db: Session, at: Optional[datetime] = None) -> List[int]:
        """
        Mark every confirmed reservation past its grace deadline as missed.

        Safe to re-run: reservations already handled are no longer confirmed.
        A failure on one reservation is logged and does not stop the sweep.

        Returns:
            IDs of reservations marked missed in this run
        """
        now = to_facility_naive(at) or facility_now()
        candidates = db.query(Reservation).filter(
            Reservation.status == ReservationStatus.CONFIRMED.value,
            Reservation.reserve_start_at <= now,
        ).order_by(Reservation.reserve_start_at, Reservation.id).all()

        marked: List[int] = []
        for reservation in candidates:
            rules = ReservationService.booking_rules(reservation.product)
            if now < reservation.reserve_start_at + timedelta(minutes=rules.missed_grace_minutes):
                continue
            try:
                ReservationService.mark_missed(db, reservation.id, at=now)
                marked.append(reservation.id)
            except InvalidTransitionError as e:
                # Checked in or cancelled since the query ran
                db.rollback()
                logger.info(f"Skipping reservation {reservation.id} in no-show sweep: {e.message}")
            except Exception as e:
                db.rollback()
                logger.exception(f"Failed to mark reservation {reservation.id} missed: {e}")

        if marked:
            logger.info(f"No-show sweep marked {len(marked)} reservation(s) missed")
        return marked

    @staticmethod
    def _charge_detail(
        db: Session,
        reservation: Reservation,
        detail: OrderDetail,
        now: datetime,
        compute: Any,
        reason: str,
    ) -> Optional[CostBreakdown]:
        """
        Apply a cancellation or no-show charge to a detail without committing.

        A positive charge completes the detail with it frozen; a zero charge
        cancels the detail. If no policy applies, the detail goes to 'problem'
        so staff can price it; the reservation transition still proceeds.
        """
        try:
            policy = PricePolicyService.resolve(
                db, reservation.product, detail.account_id, reservation.reserve_start_at,
                user_id=detail.order.user_id,
            )
        except NoPolicyFoundError:
            logger.warning(f"No price policy for {reason} of reservation {reservation.id}; flagging order detail {detail.id}")
            OrderService.apply_problem(detail, f"No price policy to compute the {reason} charge")
            return None

        charge: CostBreakdown = compute(policy)
        if charge.net_cents > 0:
            OrderService.apply_fee(detail, policy, charge, now)
            return charge
        OrderService.apply_cancel(detail, now)
        return None

    @staticmethod
    def event_payload(reservation: Reservation) -> Dict[str, Any]:
        return {
            "reservation_id": reservation.id,
            "product_id": reservation.product_id,
            "order_detail_id": reservation.order_detail_id,
            "start": reservation.reserve_start_at.isoformat(),
            "end": reservation.reserve_end_at.isoformat(),
            "status": reservation.status,
            "is_admin_override": reservation.is_admin_override,
        }
