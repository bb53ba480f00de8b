"""
Lifecycle event publishing.

Delivery (email, chat, dashboards) belongs to an external collaborator that
implements NotificationSink. Publishing never affects the outcome of the
operation that triggered it: failures are logged and reported as False.
"""

import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


# Event types
RESERVATION_CONFIRMED = "reservation.confirmed"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_MISSED = "reservation.missed"
RESERVATION_COMPLETED = "reservation.completed"
ORDER_DETAIL_COMPLETED = "order_detail.completed"
ORDER_DETAIL_PROBLEM = "order_detail.problem"
JOURNAL_CREATED = "journal.created"
STATEMENT_GENERATED = "statement.generated"
STATEMENT_SETTLED = "statement.settled"


class NotificationSink(Protocol):
    """Receiver of lifecycle events."""

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes events to the application log."""

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {event_type}: {payload}")


_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    global _sink
    if _sink is None:
        _sink = LoggingNotificationSink()
    return _sink


def set_notification_sink(sink: Optional[NotificationSink]) -> None:
    """Install a sink (None restores the logging default)."""
    global _sink
    _sink = sink


class NotificationService:
    """Service for publishing lifecycle events to the configured sink."""

    @staticmethod
    def publish(event_type: str, payload: Dict[str, Any]) -> bool:
        """
        Publish an event. Call only after the triggering transaction committed.

        Returns:
            True if the sink accepted the event, False otherwise
        """
        try:
            get_notification_sink().publish(event_type, payload)
            return True
        except Exception as e:
            logger.exception(f"Failed to publish {event_type} event: {e}")
            return False
