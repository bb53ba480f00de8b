"""
Shared types for availability-related functionality.

This module contains shared data classes used by the schedule rule engine
and the reservation scheduler.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TimeWindow:
    """
    A bookable window [start, end) and the number of concurrent reservations it allows.

    Windows produced by the schedule rule engine are disjoint and ordered by start.
    """
    start: datetime
    end: datetime
    capacity: int = 1

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end} must be after start {self.start}")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test; touching windows do not overlap."""
        return self.start < end and start < self.end

    def clip(self, start: datetime, end: datetime) -> Optional["TimeWindow"]:
        """Intersection with [start, end), or None if they do not overlap."""
        if not self.overlaps(start, end):
            return None
        return TimeWindow(max(self.start, start), min(self.end, end), self.capacity)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "capacity": self.capacity,
        }
