"""
Unit tests for window computation from schedule rules and exceptions.

Rules and exceptions are built in memory; WindowSequence never touches the
database.
"""

from datetime import date, datetime, time, timedelta

import pytest

from models import ScheduleException, ScheduleRule
from models.schedule_exception import EXCEPTION_BLACKOUT, EXCEPTION_CAPACITY
from services.schedule_rule_service import WindowSequence
from shared_types.availability import TimeWindow

MONDAY = date(2030, 1, 7)
TUESDAY = MONDAY + timedelta(days=1)


def at(d: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(d, time(hour, minute))


def rule(start: time, end: time, day_of_week=0, capacity: int = 1, **fields) -> ScheduleRule:
    return ScheduleRule(
        product_id=1, day_of_week=day_of_week, start_time=start, end_time=end, capacity=capacity, **fields
    )


def blackout(start: datetime, end: datetime) -> ScheduleException:
    return ScheduleException(product_id=1, exception_type=EXCEPTION_BLACKOUT, start_at=start, end_at=end)


def capacity_exception(start: datetime, end: datetime, capacity: int) -> ScheduleException:
    return ScheduleException(
        product_id=1, exception_type=EXCEPTION_CAPACITY, start_at=start, end_at=end, capacity=capacity
    )


def windows(start: datetime, end: datetime, rules=(), exceptions=()):
    return WindowSequence(start, end, rules, exceptions).to_list()


class TestRuleWindows:
    """Windows produced by recurring rules alone."""

    def test_weekly_rule_opens_only_its_day(self):
        """A Monday rule yields one window on Monday and nothing on Tuesday."""
        result = windows(at(MONDAY, 0), at(TUESDAY + timedelta(days=1), 0), [rule(time(9), time(17))])

        assert result == [TimeWindow(at(MONDAY, 9), at(MONDAY, 17), 1)]

    def test_every_day_rule(self):
        """A rule without a weekday applies every day."""
        result = windows(at(MONDAY, 0), at(MONDAY + timedelta(days=3), 0), [rule(time(9), time(10), day_of_week=None)])

        assert [w.start.date() for w in result] == [MONDAY + timedelta(days=i) for i in range(3)]

    def test_range_clips_windows(self):
        """Windows are clipped to the query range."""
        result = windows(at(MONDAY, 10), at(MONDAY, 11), [rule(time(9), time(17))])

        assert result == [TimeWindow(at(MONDAY, 10), at(MONDAY, 11), 1)]

    def test_overlapping_rules_take_max_capacity(self):
        """Where rules overlap, the larger capacity applies."""
        result = windows(
            at(MONDAY, 0), at(TUESDAY, 0),
            [rule(time(9), time(17), capacity=1), rule(time(12), time(14), capacity=3)],
        )

        assert result == [
            TimeWindow(at(MONDAY, 9), at(MONDAY, 12), 1),
            TimeWindow(at(MONDAY, 12), at(MONDAY, 14), 3),
            TimeWindow(at(MONDAY, 14), at(MONDAY, 17), 1),
        ]

    def test_adjacent_rules_with_same_capacity_coalesce(self):
        """Touching rules of equal capacity form one window."""
        result = windows(at(MONDAY, 0), at(TUESDAY, 0), [rule(time(9), time(12)), rule(time(12), time(17))])

        assert result == [TimeWindow(at(MONDAY, 9), at(MONDAY, 17), 1)]

    def test_overnight_rule_spans_midnight(self):
        """A rule ending at or before its start time runs into the next day."""
        result = windows(at(MONDAY, 0), at(TUESDAY, 12), [rule(time(22), time(2))])

        assert result == [TimeWindow(at(MONDAY, 22), at(TUESDAY, 2), 1)]

    def test_overnight_rule_from_previous_day_reaches_into_range(self):
        """Querying Tuesday morning still sees the tail of Monday's overnight rule."""
        result = windows(at(TUESDAY, 0), at(TUESDAY, 12), [rule(time(22), time(2))])

        assert result == [TimeWindow(at(TUESDAY, 0), at(TUESDAY, 2), 1)]

    def test_rule_date_bounds(self):
        """Rules do not apply outside their start and end dates."""
        bounded = rule(time(9), time(17), start_date=MONDAY + timedelta(days=7))

        assert windows(at(MONDAY, 0), at(TUESDAY, 0), [bounded]) == []
        assert len(windows(at(MONDAY, 0) + timedelta(days=7), at(TUESDAY, 0) + timedelta(days=7), [bounded])) == 1

    def test_sequence_is_restartable(self):
        """Iterating twice yields the same windows."""
        sequence = WindowSequence(at(MONDAY, 0), at(MONDAY, 0) + timedelta(days=14), [rule(time(9), time(17))], [])

        assert list(sequence) == list(sequence)
        assert len(list(sequence)) == 2


class TestExceptions:
    """Blackouts and capacity exceptions layered over rules."""

    def test_blackout_splits_window(self):
        result = windows(
            at(MONDAY, 0), at(TUESDAY, 0),
            [rule(time(9), time(17))],
            [blackout(at(MONDAY, 12), at(MONDAY, 13))],
        )

        assert result == [
            TimeWindow(at(MONDAY, 9), at(MONDAY, 12), 1),
            TimeWindow(at(MONDAY, 13), at(MONDAY, 17), 1),
        ]

    def test_capacity_exception_overrides_rule(self):
        result = windows(
            at(MONDAY, 0), at(TUESDAY, 0),
            [rule(time(9), time(17))],
            [capacity_exception(at(MONDAY, 10), at(MONDAY, 11), 2)],
        )

        assert result == [
            TimeWindow(at(MONDAY, 9), at(MONDAY, 10), 1),
            TimeWindow(at(MONDAY, 10), at(MONDAY, 11), 2),
            TimeWindow(at(MONDAY, 11), at(MONDAY, 17), 1),
        ]

    def test_capacity_exception_can_open_time(self):
        """A capacity exception outside any rule opens that time."""
        result = windows(
            at(TUESDAY, 0), at(TUESDAY, 23),
            [rule(time(9), time(17))],
            [capacity_exception(at(TUESDAY, 10), at(TUESDAY, 11), 1)],
        )

        assert result == [TimeWindow(at(TUESDAY, 10), at(TUESDAY, 11), 1)]

    def test_blackout_beats_capacity_exception(self):
        result = windows(
            at(MONDAY, 0), at(TUESDAY, 0),
            [rule(time(9), time(17))],
            [
                capacity_exception(at(MONDAY, 9), at(MONDAY, 17), 4),
                blackout(at(MONDAY, 9), at(MONDAY, 12)),
            ],
        )

        assert result == [TimeWindow(at(MONDAY, 12), at(MONDAY, 17), 4)]

    def test_multi_day_blackout(self):
        every_day = rule(time(9), time(17), day_of_week=None)
        result = windows(
            at(MONDAY, 0), at(MONDAY, 0) + timedelta(days=3),
            [every_day],
            [blackout(at(MONDAY, 0), at(TUESDAY, 23))],
        )

        assert [w.start.date() for w in result] == [MONDAY + timedelta(days=2)]


class TestTimeWindow:
    """TimeWindow value semantics."""

    def test_end_must_follow_start(self):
        with pytest.raises(ValueError):
            TimeWindow(at(MONDAY, 10), at(MONDAY, 10))

    def test_touching_windows_do_not_overlap(self):
        window = TimeWindow(at(MONDAY, 10), at(MONDAY, 11))

        assert not window.overlaps(at(MONDAY, 11), at(MONDAY, 12))
        assert window.overlaps(at(MONDAY, 10, 30), at(MONDAY, 11, 30))

    def test_clip(self):
        window = TimeWindow(at(MONDAY, 9), at(MONDAY, 17), 2)

        assert window.clip(at(MONDAY, 16), at(MONDAY, 18)) == TimeWindow(at(MONDAY, 16), at(MONDAY, 17), 2)
        assert window.clip(at(MONDAY, 17), at(MONDAY, 18)) is None
