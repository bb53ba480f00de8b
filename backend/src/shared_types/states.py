"""
Lifecycle states and allowed transitions for reservations and order details.
"""

from enum import Enum
from typing import Dict, FrozenSet

from core.exceptions import InvalidTransitionError


class ReservationStatus(str, Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"


# Reservations that occupy capacity
ACTIVE_RESERVATION_STATUSES = (ReservationStatus.CONFIRMED.value, ReservationStatus.IN_PROGRESS.value)

RESERVATION_TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.REQUESTED: frozenset({ReservationStatus.CONFIRMED}),
    ReservationStatus.CONFIRMED: frozenset({
        ReservationStatus.IN_PROGRESS,
        ReservationStatus.CANCELLED,
        ReservationStatus.MISSED,
    }),
    ReservationStatus.IN_PROGRESS: frozenset({ReservationStatus.COMPLETED}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.MISSED: frozenset(),
}


class OrderDetailState(str, Enum):
    NEW = "new"
    INPROCESS = "inprocess"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    PROBLEM = "problem"


ORDER_DETAIL_TRANSITIONS: Dict[OrderDetailState, FrozenSet[OrderDetailState]] = {
    OrderDetailState.NEW: frozenset({
        OrderDetailState.INPROCESS,
        OrderDetailState.CANCELLED,
        OrderDetailState.PROBLEM,
    }),
    OrderDetailState.INPROCESS: frozenset({
        OrderDetailState.COMPLETE,
        OrderDetailState.CANCELLED,
        OrderDetailState.PROBLEM,
    }),
    # Complete details can still be flagged before they are journaled
    OrderDetailState.COMPLETE: frozenset({OrderDetailState.PROBLEM}),
    OrderDetailState.CANCELLED: frozenset(),
    # Resolution puts a reviewed detail back to complete
    OrderDetailState.PROBLEM: frozenset({OrderDetailState.COMPLETE, OrderDetailState.CANCELLED}),
}


def ensure_reservation_transition(current: str, target: ReservationStatus, reservation_id: int) -> None:
    """
    Raises:
        InvalidTransitionError: If the reservation cannot move from current to target
    """
    allowed = RESERVATION_TRANSITIONS[ReservationStatus(current)]
    if target not in allowed:
        raise InvalidTransitionError(
            f"Reservation {reservation_id} cannot move from {current} to {target.value}",
            entity="reservation",
            entity_id=reservation_id,
            current=current,
            target=target.value,
        )


def ensure_order_detail_transition(current: str, target: OrderDetailState, order_detail_id: int) -> None:
    """
    Raises:
        InvalidTransitionError: If the order detail cannot move from current to target
    """
    allowed = ORDER_DETAIL_TRANSITIONS[OrderDetailState(current)]
    if target not in allowed:
        raise InvalidTransitionError(
            f"Order detail {order_detail_id} cannot move from {current} to {target.value}",
            entity="order_detail",
            entity_id=order_detail_id,
            current=current,
            target=target.value,
        )
