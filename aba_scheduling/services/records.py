# aba_scheduling/services/records.py
"""
Immutable values the engine reads through its stores.

Stores convert ORM rows into these records, so engine components never
hold live database objects and can be fed in-memory fakes in tests.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Optional

from aba_scheduling.models.schedule_event import ScheduleEventType
from aba_scheduling.models.therapy_session import SessionStatus


class DisruptionType(str, Enum):
    SESSION_CANCELLED = ScheduleEventType.SESSION_CANCELLED.value
    SESSION_RESCHEDULED = ScheduleEventType.SESSION_RESCHEDULED.value
    STAFF_UNAVAILABLE = ScheduleEventType.STAFF_UNAVAILABLE.value


DISRUPTION_EVENT_TYPES = frozenset(ScheduleEventType(t.value) for t in DisruptionType)


@dataclass(frozen=True)
class SessionRecord:
    id: int
    client_id: str
    staff_id: Optional[str]
    start_time: datetime
    end_time: datetime
    status: SessionStatus = SessionStatus.SCHEDULED
    location: Optional[str] = None
    notes: Optional[str] = None
    rescheduled_from_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status != SessionStatus.CANCELLED

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600


@dataclass(frozen=True)
class AvailabilityRecord:
    staff_id: str
    day_of_week: int  # 0=Sunday
    start_time: time
    end_time: time
    effective_date: date
    end_date: Optional[date] = None
    is_active: bool = True

    def is_effective_on(self, on_date: date) -> bool:
        if not self.is_active:
            return False
        if on_date < self.effective_date:
            return False
        return self.end_date is None or on_date <= self.end_date


@dataclass(frozen=True)
class DisruptionEvent:
    """One entry of the audit log, disruption or not."""

    event_type: ScheduleEventType
    timestamp: datetime
    session_id: Optional[int] = None
    client_id: Optional[str] = None
    staff_id: Optional[str] = None
    reason: Optional[str] = None
    id: Optional[int] = None
    created_by: Optional[str] = None
    old_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_disruption(self) -> bool:
        return self.event_type in DISRUPTION_EVENT_TYPES

    @property
    def disruption_type(self) -> Optional[DisruptionType]:
        if not self.is_disruption:
            return None
        return DisruptionType(self.event_type.value)
