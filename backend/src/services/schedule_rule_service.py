"""
Schedule rule service: bookable windows from recurring rules and exceptions.

`available_windows` is the read path used by the reservation scheduler. It
is a pure function of the product's rules and exceptions: all state is
fetched up front and the returned WindowSequence walks it date by date each
time it is iterated.
"""

import logging
from datetime import date as date_type, datetime, time, timedelta
from typing import Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.config import MAX_SCHEDULE_HORIZON_DAYS
from core.exceptions import InvalidRangeError, InvalidTransitionError, NotFoundError, SchedulingError
from core.locks import get_lock_registry, product_lock_key
from models import Product, ScheduleException, ScheduleRule
from models.schedule_exception import EXCEPTION_BLACKOUT, EXCEPTION_CAPACITY
from shared_types.availability import TimeWindow
from utils.datetime_utils import day_bounds, facility_now, to_facility_naive

logger = logging.getLogger(__name__)


# (start, end, capacity) for rules; (start, end, capacity or None) for exceptions
_Interval = Tuple[datetime, datetime, int]


class WindowSequence:
    """
    Lazy, restartable sequence of disjoint available windows ordered by start.

    Iterating computes one date at a time; iterating again starts over from
    the same pre-fetched rule state.
    """

    def __init__(
        self,
        range_start: datetime,
        range_end: datetime,
        rules: Sequence[ScheduleRule],
        exceptions: Sequence[ScheduleException],
    ):
        self.range_start = range_start
        self.range_end = range_end
        self._rules = list(rules)
        self._blackouts = [
            (e.start_at, e.end_at) for e in exceptions if e.is_blackout
        ]
        self._overrides = [
            (e.start_at, e.end_at, e.capacity or 0)
            for e in exceptions if not e.is_blackout
        ]

    def __iter__(self) -> Iterator[TimeWindow]:
        pending: Optional[TimeWindow] = None
        current = self.range_start.date()
        last = self.range_end.date()
        while current <= last:
            for window in self._windows_for_date(current):
                if pending is not None and pending.end == window.start and pending.capacity == window.capacity:
                    pending = TimeWindow(pending.start, window.end, pending.capacity)
                    continue
                if pending is not None:
                    yield pending
                pending = window
            current += timedelta(days=1)
        if pending is not None:
            yield pending

    def to_list(self) -> List[TimeWindow]:
        return list(self)

    def _rule_intervals(self, d: date_type) -> List[_Interval]:
        """Rule intervals touching date d (including overnight rules from the day before)."""
        intervals: List[_Interval] = []
        for rule in self._rules:
            for start_day in (d - timedelta(days=1), d):
                if not rule.applies_on(start_day):
                    continue
                start = datetime.combine(start_day, rule.start_time)
                end_day = start_day + timedelta(days=1) if rule.crosses_midnight else start_day
                end = datetime.combine(end_day, rule.end_time)
                intervals.append((start, end, rule.capacity))
        return intervals

    def _windows_for_date(self, d: date_type) -> List[TimeWindow]:
        day_start, day_end = day_bounds(d)
        slice_start = max(day_start, self.range_start)
        slice_end = min(day_end, self.range_end)
        if slice_end <= slice_start:
            return []

        rules = _clip_all(self._rule_intervals(d), slice_start, slice_end)
        overrides = _clip_all(self._overrides, slice_start, slice_end)
        blackouts = [
            (max(s, slice_start), min(e, slice_end))
            for s, e in self._blackouts if s < slice_end and slice_start < e
        ]
        if not rules and not overrides:
            return []

        points = {slice_start, slice_end}
        for s, e, _ in rules + overrides:
            points.update((s, e))
        for s, e in blackouts:
            points.update((s, e))
        boundaries = sorted(points)

        windows: List[TimeWindow] = []
        for seg_start, seg_end in zip(boundaries, boundaries[1:]):
            capacity = _capacity_at(seg_start, rules, overrides, blackouts)
            if capacity <= 0:
                continue
            if windows and windows[-1].end == seg_start and windows[-1].capacity == capacity:
                windows[-1] = TimeWindow(windows[-1].start, seg_end, capacity)
            else:
                windows.append(TimeWindow(seg_start, seg_end, capacity))
        return windows


def _clip_all(intervals: Sequence[_Interval], start: datetime, end: datetime) -> List[_Interval]:
    return [
        (max(s, start), min(e, end), cap)
        for s, e, cap in intervals if s < end and start < e
    ]


def _capacity_at(
    instant: datetime,
    rules: Sequence[_Interval],
    overrides: Sequence[_Interval],
    blackouts: Sequence[Tuple[datetime, datetime]],
) -> int:
    """Capacity of the elementary segment starting at `instant`."""
    if any(s <= instant < e for s, e in blackouts):
        return 0
    override_caps = [cap for s, e, cap in overrides if s <= instant < e]
    if override_caps:
        return max(override_caps)
    rule_caps = [cap for s, e, cap in rules if s <= instant < e]
    return max(rule_caps) if rule_caps else 0


class ScheduleRuleService:
    """
    Service class for schedule rules and exceptions.

    Rule and exception writes are administrative; the scheduler only reads
    through `available_windows`.
    """

    @staticmethod
    def available_windows(
        db: Session,
        product: Product,
        range_start: datetime,
        range_end: datetime,
    ) -> WindowSequence:
        """
        Compute the bookable windows of a product over [range_start, range_end).

        Args:
            db: Database session
            product: Product to compute windows for
            range_start: Start of the query range
            range_end: End of the query range (exclusive)

        Returns:
            WindowSequence of disjoint windows ordered by start

        Raises:
            InvalidRangeError: If a bound is missing, or the range is empty, inverted or longer than the horizon
        """
        start = to_facility_naive(range_start)
        end = to_facility_naive(range_end)
        if start is None or end is None or end <= start:
            raise InvalidRangeError(
                "Range end must be after range start",
                range_start=start,
                range_end=end,
            )
        if end - start > timedelta(days=MAX_SCHEDULE_HORIZON_DAYS):
            raise InvalidRangeError(
                f"Range exceeds the maximum horizon of {MAX_SCHEDULE_HORIZON_DAYS} days",
                range_start=start,
                range_end=end,
                max_days=MAX_SCHEDULE_HORIZON_DAYS,
            )

        # Overnight rules starting the day before the range can reach into it
        first_day = start.date() - timedelta(days=1)
        last_day = end.date()
        rules = db.query(ScheduleRule).filter(
            ScheduleRule.product_id == product.id,
            or_(ScheduleRule.start_date.is_(None), ScheduleRule.start_date <= last_day),
            or_(ScheduleRule.end_date.is_(None), ScheduleRule.end_date >= first_day),
        ).order_by(ScheduleRule.id).all()
        exceptions = db.query(ScheduleException).filter(
            ScheduleException.product_id == product.id,
            ScheduleException.start_at < end,
            ScheduleException.end_at > start,
        ).order_by(ScheduleException.start_at, ScheduleException.id).all()

        return WindowSequence(start, end, rules, exceptions)

    @staticmethod
    def nearby_windows(
        db: Session,
        product: Product,
        around_start: datetime,
        around_end: datetime,
        limit: int = 5,
    ) -> List[TimeWindow]:
        """Windows on the requested day and the day after, for error context."""
        day_start, _ = day_bounds(around_start.date())
        _, next_day_end = day_bounds(around_end.date() + timedelta(days=1))
        windows = ScheduleRuleService.available_windows(db, product, day_start, next_day_end)
        result: List[TimeWindow] = []
        for window in windows:
            result.append(window)
            if len(result) >= limit:
                break
        return result

    @staticmethod
    def create_rule(
        db: Session,
        product_id: int,
        start_time: time,
        end_time: time,
        day_of_week: Optional[int] = None,
        start_date: Optional[date_type] = None,
        end_date: Optional[date_type] = None,
        capacity: Optional[int] = None,
    ) -> ScheduleRule:
        """
        Create a recurring availability rule.

        Raises:
            NotFoundError: If the product does not exist
            SchedulingError: If the rule definition is invalid
        """
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)

        ScheduleRuleService._validate_rule(
            product, start_time, end_time, day_of_week, start_date, end_date, capacity
        )

        rule = ScheduleRule(
            product_id=product_id,
            day_of_week=day_of_week,
            start_date=start_date,
            end_date=end_date,
            start_time=start_time,
            end_time=end_time,
            capacity=capacity if capacity is not None else product.capacity,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        logger.info(f"Created schedule rule {rule.id} for product {product_id}: {rule.day_name} {start_time}-{end_time}")
        return rule

    @staticmethod
    def supersede_rule(
        db: Session,
        rule_id: int,
        effective_date: date_type,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
        capacity: Optional[int] = None,
        end_date: Optional[date_type] = None,
    ) -> ScheduleRule:
        """
        Replace a rule from `effective_date` on.

        The old rule is end-dated the day before `effective_date` and linked to
        its replacement; its times and capacity are never modified. Fields not
        given are carried over from the old rule.

        Raises:
            NotFoundError: If the rule does not exist
            InvalidTransitionError: If the rule was already superseded
            SchedulingError: If the replacement is invalid
        """
        old = db.query(ScheduleRule).filter(ScheduleRule.id == rule_id).first()
        if not old:
            raise NotFoundError(f"Schedule rule {rule_id} not found", rule_id=rule_id)
        product = old.product

        with get_lock_registry().hold(product_lock_key(product.id)):
            if old.superseded_at is not None:
                raise InvalidTransitionError(
                    f"Schedule rule {rule_id} was already superseded",
                    entity="schedule_rule",
                    entity_id=rule_id,
                    superseded_by_id=old.superseded_by_id,
                )
            if old.end_date is not None and effective_date > old.end_date:
                raise SchedulingError(
                    f"Effective date {effective_date} is after the rule's end date {old.end_date}",
                    rule_id=rule_id,
                )

            replacement_end = end_date if end_date is not None else old.end_date
            new_start_time = start_time or old.start_time
            new_end_time = end_time or old.end_time
            new_capacity = capacity if capacity is not None else old.capacity
            ScheduleRuleService._validate_rule(
                product, new_start_time, new_end_time, old.day_of_week,
                effective_date, replacement_end, new_capacity,
            )

            replacement = ScheduleRule(
                product_id=old.product_id,
                day_of_week=old.day_of_week,
                start_date=effective_date,
                end_date=replacement_end,
                start_time=new_start_time,
                end_time=new_end_time,
                capacity=new_capacity,
            )
            db.add(replacement)
            db.flush()

            old.end_date = effective_date - timedelta(days=1)
            old.superseded_at = facility_now()
            old.superseded_by_id = replacement.id
            db.commit()

        logger.info(f"Superseded schedule rule {rule_id} with rule {replacement.id} effective {effective_date}")
        return replacement

    @staticmethod
    def create_exception(
        db: Session,
        product_id: int,
        exception_type: str,
        start_at: datetime,
        end_at: datetime,
        capacity: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> ScheduleException:
        """
        Create a blackout or capacity exception.

        Raises:
            NotFoundError: If the product does not exist
            InvalidRangeError: If start_at or end_at is missing, or end_at is not after start_at
            SchedulingError: If the type or capacity is invalid
        """
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)

        start = to_facility_naive(start_at)
        end = to_facility_naive(end_at)
        if start is None or end is None or end <= start:
            raise InvalidRangeError("Exception end must be after start", range_start=start, range_end=end)
        if exception_type not in (EXCEPTION_BLACKOUT, EXCEPTION_CAPACITY):
            raise SchedulingError(f"Unknown exception type: {exception_type}", exception_type=exception_type)
        if exception_type == EXCEPTION_CAPACITY and (capacity is None or capacity < 1):
            raise SchedulingError(
                "Capacity exceptions require a capacity of at least 1 (use a blackout to close time)",
                capacity=capacity,
            )

        exception = ScheduleException(
            product_id=product_id,
            exception_type=exception_type,
            start_at=start,
            end_at=end,
            capacity=capacity if exception_type == EXCEPTION_CAPACITY else None,
            reason=reason,
        )
        db.add(exception)
        db.commit()
        db.refresh(exception)
        logger.info(f"Created {exception_type} exception {exception.id} for product {product_id}: {start} - {end}")
        return exception

    @staticmethod
    def list_active_rules(db: Session, product_id: int, on_date: Optional[date_type] = None) -> List[ScheduleRule]:
        """Rules that have not been superseded and have not ended before `on_date` (default today)."""
        on_date = on_date or facility_now().date()
        return db.query(ScheduleRule).filter(
            ScheduleRule.product_id == product_id,
            ScheduleRule.superseded_at.is_(None),
            or_(ScheduleRule.end_date.is_(None), ScheduleRule.end_date >= on_date),
        ).order_by(ScheduleRule.day_of_week, ScheduleRule.start_time, ScheduleRule.id).all()

    @staticmethod
    def _validate_rule(
        product: Product,
        start_time: time,
        end_time: time,
        day_of_week: Optional[int],
        start_date: Optional[date_type],
        end_date: Optional[date_type],
        capacity: Optional[int],
    ) -> None:
        if not product.capabilities.schedulable:
            raise SchedulingError(
                f"Product {product.id} ({product.kind}) is not schedulable",
                product_id=product.id,
            )
        if day_of_week is not None and not 0 <= day_of_week <= 6:
            raise SchedulingError(f"day_of_week must be 0-6, got {day_of_week}", day_of_week=day_of_week)
        if start_time == end_time:
            raise SchedulingError("Rule start and end times must differ", start_time=str(start_time))
        if start_date is not None and end_date is not None and end_date < start_date:
            raise SchedulingError(
                f"Rule end date {end_date} is before start date {start_date}",
                start_date=str(start_date),
                end_date=str(end_date),
            )
        if capacity is not None and capacity < 1:
            raise SchedulingError(f"Rule capacity must be at least 1, got {capacity}", capacity=capacity)
