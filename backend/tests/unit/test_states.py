"""
Unit tests for reservation and order detail lifecycle transitions.
"""

import pytest

from core.exceptions import InvalidTransitionError
from shared_types.product_kinds import RatingStrategy, capabilities_for
from shared_types.states import (
    OrderDetailState, ReservationStatus, ensure_order_detail_transition, ensure_reservation_transition,
)


class TestReservationTransitions:

    @pytest.mark.parametrize("target", [
        ReservationStatus.IN_PROGRESS, ReservationStatus.CANCELLED, ReservationStatus.MISSED,
    ])
    def test_confirmed_can_move(self, target):
        ensure_reservation_transition("confirmed", target, 1)

    @pytest.mark.parametrize("current", ["completed", "cancelled", "missed"])
    def test_terminal_states_are_final(self, current):
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_reservation_transition(current, ReservationStatus.CONFIRMED, 5)

        detail = exc_info.value.to_detail()
        assert detail["current"] == current
        assert detail["entity_id"] == 5

    def test_in_progress_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransitionError):
            ensure_reservation_transition("in_progress", ReservationStatus.CANCELLED, 1)


class TestOrderDetailTransitions:

    def test_problem_resolves_to_complete(self):
        ensure_order_detail_transition("problem", OrderDetailState.COMPLETE, 1)

    def test_complete_can_be_flagged(self):
        ensure_order_detail_transition("complete", OrderDetailState.PROBLEM, 1)

    def test_complete_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransitionError):
            ensure_order_detail_transition("complete", OrderDetailState.CANCELLED, 1)

    def test_cancelled_is_final(self):
        with pytest.raises(InvalidTransitionError):
            ensure_order_detail_transition("cancelled", OrderDetailState.INPROCESS, 1)


class TestProductKinds:

    def test_instrument_is_schedulable_duration(self):
        assert capabilities_for("instrument").schedulable
        assert capabilities_for("instrument").rating == RatingStrategy.DURATION

    def test_timed_service_is_not_schedulable(self):
        assert not capabilities_for("timed_service").schedulable
        assert capabilities_for("timed_service").rating == RatingStrategy.DURATION

    def test_item_rates_by_quantity(self):
        assert capabilities_for("item").rating == RatingStrategy.QUANTITY

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            capabilities_for("bundle")
