"""
Domain exceptions for scheduling, pricing and billing.

Services raise these; the API layer translates them into HTTP responses.
Each error carries enough structured context for the caller to decide the
next action (pick another slot, escalate to staff, retry).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional


class CoreFacilityError(Exception):
    """Base class for all domain errors."""

    code = "core_facility_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        """Structured error payload (JSON-serializable)."""
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.context.items():
            detail[key] = _serialize(value)
        return detail


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


class NotFoundError(CoreFacilityError):
    code = "not_found"


class InvalidRangeError(CoreFacilityError):
    """Malformed or over-long date range query."""
    code = "invalid_range"


class InvalidTransitionError(CoreFacilityError):
    """Requested state change is not allowed from the current state."""
    code = "invalid_transition"


# Scheduling

class SchedulingError(CoreFacilityError):
    code = "scheduling_error"


class SlotUnavailableError(SchedulingError):
    """Requested window is not covered by the product's available windows."""
    code = "slot_unavailable"

    def __init__(self, message: str, requested_start: datetime, requested_end: datetime,
                 nearby_windows: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            message,
            requested_start=requested_start,
            requested_end=requested_end,
            nearby_windows=nearby_windows or [],
        )


class ConflictError(SchedulingError):
    """Request overlaps existing reservations beyond the product's capacity."""
    code = "conflict"

    def __init__(self, message: str, capacity: int, conflicts: List[Dict[str, Any]]):
        super().__init__(message, capacity=capacity, conflicts=conflicts)
        self.capacity = capacity
        self.conflicts = conflicts


class RuleViolationError(SchedulingError):
    """Duration, lead-time, advance-window or per-account limit violated."""
    code = "rule_violation"

    def __init__(self, message: str, rule: str, **context: Any):
        super().__init__(message, rule=rule, **context)
        self.rule = rule


# Pricing and billing

class NoPolicyFoundError(CoreFacilityError):
    """No price policy applies; completion is blocked until one is created."""
    code = "no_policy_found"


class PolicyLockedError(CoreFacilityError):
    """Policy has started and has priced order details; it cannot change."""
    code = "policy_locked"


class InvalidPolicyError(CoreFacilityError):
    """Price policy definition is malformed (rate table, subsidy, cap settings)."""
    code = "invalid_policy"


class CapExceededError(CoreFacilityError):
    """Usage would push the account over the policy's cap (reject mode)."""
    code = "cap_exceeded"

    def __init__(self, message: str, cap: int, prior_usage: int, requested: int, excess: int):
        super().__init__(message, cap=cap, prior_usage=prior_usage, requested=requested, excess=excess)
        self.cap = cap
        self.prior_usage = prior_usage
        self.requested = requested
        self.excess = excess


# Concurrency

class BusyError(CoreFacilityError):
    """Lock could not be acquired within the timeout; the caller may retry."""
    code = "busy"
