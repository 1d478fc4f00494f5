# aba_scheduling/services/conflict_service.py
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import List, Optional

from aba_scheduling.config import SchedulingRules
from aba_scheduling.errors import ValidationError
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.availability_service import AvailabilityIndex
from aba_scheduling.services.calendar import DAY_NAMES, day_of_week, overlaps
from aba_scheduling.services.records import SessionRecord
from aba_scheduling.stores.protocols import SessionStore

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    STAFF_DOUBLE_BOOKED = "staff_double_booked"
    CLIENT_DOUBLE_BOOKED = "client_double_booked"
    STAFF_UNAVAILABLE = "staff_unavailable"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    INSUFFICIENT_BREAK = "insufficient_break"


@dataclass(frozen=True)
class Conflict:
    conflict_type: ConflictType
    description: str
    conflicting_session_id: Optional[int] = None
    suggested_resolution: Optional[str] = None


def _validate_window(client_id: str, start: datetime, end: datetime) -> None:
    if not client_id:
        raise ValidationError("client_id is required")
    if start is None or end is None:
        raise ValidationError("start and end are required")
    if end <= start:
        raise ValidationError("end must be after start")


class ConflictDetector:
    """
    Decides whether a candidate booking collides with existing bookings
    or falls outside availability and business rules.

    Every check runs and all conflicts are reported; an empty list means
    the slot was bookable at the moment of the check. That is not a
    reservation: callers re-run the check inside the transaction that
    persists the booking.
    """

    def __init__(
        self,
        sessions: SessionStore,
        availability: AvailabilityIndex,
        rules: SchedulingRules,
    ):
        self.sessions = sessions
        self.availability = availability
        self.rules = rules

    def check_conflicts(
        self,
        client_id: str,
        staff_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int] = None,
    ) -> List[Conflict]:
        _validate_window(client_id, start, end)

        conflicts: List[Conflict] = []

        # Without an assigned staff member only the client-side and
        # business-hours checks can be evaluated.
        if staff_id is not None:
            conflicts.extend(self._staff_double_bookings(staff_id, start, end, exclude_session_id))
        conflicts.extend(self._client_double_bookings(client_id, start, end, exclude_session_id))
        if staff_id is not None:
            conflicts.extend(self._staff_availability(staff_id, start, end))
        conflicts.extend(self.business_hours_conflicts(start, end))

        if conflicts:
            logger.debug(
                "check_conflicts client=%s staff=%s %s-%s -> %s",
                client_id,
                staff_id,
                start.isoformat(),
                end.isoformat(),
                [c.conflict_type.value for c in conflicts],
            )
        return conflicts

    def _overlapping(
        self,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int],
        **scope,
    ) -> List[SessionRecord]:
        found = self.sessions.find_overlapping(start, end, exclude_id=exclude_session_id, **scope)
        # Stores may over-return; the half-open test and status filter are authoritative here.
        return [
            s
            for s in found
            if s.is_active
            and s.id != exclude_session_id
            and overlaps(s.start_time, s.end_time, start, end)
        ]

    def _staff_double_bookings(
        self,
        staff_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int],
    ) -> List[Conflict]:
        return [
            Conflict(
                conflict_type=ConflictType.STAFF_DOUBLE_BOOKED,
                description=(
                    f"Staff member {staff_id} already has session {s.id} "
                    f"from {s.start_time:%Y-%m-%d %H:%M} to {s.end_time:%H:%M}"
                ),
                conflicting_session_id=s.id,
                suggested_resolution="Select a different time slot or staff member",
            )
            for s in self._overlapping(start, end, exclude_session_id, staff_id=staff_id)
            if s.staff_id == staff_id
        ]

    def _client_double_bookings(
        self,
        client_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int],
    ) -> List[Conflict]:
        return [
            Conflict(
                conflict_type=ConflictType.CLIENT_DOUBLE_BOOKED,
                description=(
                    f"Client {client_id} already has session {s.id} "
                    f"from {s.start_time:%Y-%m-%d %H:%M} to {s.end_time:%H:%M}"
                ),
                conflicting_session_id=s.id,
                suggested_resolution="Select a different time slot",
            )
            for s in self._overlapping(start, end, exclude_session_id, client_id=client_id)
            if s.client_id == client_id
        ]

    def _staff_availability(self, staff_id: str, start: datetime, end: datetime) -> List[Conflict]:
        if self.availability.covers(staff_id, start, end):
            return []
        return [
            Conflict(
                conflict_type=ConflictType.STAFF_UNAVAILABLE,
                description=(
                    f"Staff member {staff_id} is not available on "
                    f"{DAY_NAMES[day_of_week(start.date())]} {start:%H:%M}-{end:%H:%M}"
                ),
                suggested_resolution="Select a time when the staff member is available",
            )
        ]

    def business_hours_conflicts(self, start: datetime, end: datetime) -> List[Conflict]:
        rules = self.rules
        conflicts: List[Conflict] = []

        if day_of_week(start.date()) not in rules.business_days:
            allowed = ", ".join(DAY_NAMES[d] for d in rules.business_days)
            conflicts.append(
                Conflict(
                    conflict_type=ConflictType.OUTSIDE_BUSINESS_HOURS,
                    description=f"Sessions can only be scheduled on business days ({allowed})",
                    suggested_resolution="Schedule the session on a business day",
                )
            )

        within_window = (
            start.date() == end.date()
            and start.time() >= rules.business_start
            and end.time() <= rules.business_end
        )
        if not within_window:
            conflicts.append(
                Conflict(
                    conflict_type=ConflictType.OUTSIDE_BUSINESS_HOURS,
                    description=(
                        "Session must be within business hours "
                        f"({rules.business_start:%H:%M} - {rules.business_end:%H:%M})"
                    ),
                    suggested_resolution=(
                        f"Schedule the session between {rules.business_start:%H:%M} "
                        f"and {rules.business_end:%H:%M}"
                    ),
                )
            )
        return conflicts

    def validate_session_window(self, start: datetime, end: datetime, now: datetime) -> None:
        """
        Creation-time invariants of a session: exact configured duration,
        business-day start, not in the past. Raises ValidationError listing
        every violation.
        """
        problems: List[str] = []
        if end <= start:
            problems.append("end must be after start")
        elif end - start != timedelta(hours=self.rules.session_duration_hours):
            problems.append(
                f"Session duration must be exactly {self.rules.session_duration_hours} hours"
            )
        if day_of_week(start.date()) not in self.rules.business_days:
            problems.append("Session must start on a business day")
        if start < now:
            problems.append("Session cannot be scheduled in the past")

        if problems:
            raise ValidationError("; ".join(problems))

    def check_staff_workload(
        self,
        staff_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int] = None,
    ) -> List[Conflict]:
        """
        Daily session cap and minimum break for one staff member.

        These are workload rules, not collisions: back-to-back sessions
        never show up in `check_conflicts`, only here. Cancelled and
        no-show sessions do not count toward the day.
        """
        if not staff_id:
            return []
        if end <= start:
            raise ValidationError("end must be after start")

        rules = self.rules
        day_start = datetime.combine(start.date(), time.min)
        same_day = [
            s
            for s in self.sessions.find_overlapping(
                day_start,
                day_start + timedelta(days=1),
                staff_id=staff_id,
                exclude_id=exclude_session_id,
            )
            if s.is_active
            and s.status != SessionStatus.NO_SHOW
            and s.id != exclude_session_id
            and s.staff_id == staff_id
            and s.start_time.date() == start.date()
        ]

        conflicts: List[Conflict] = []
        if rules.max_sessions_per_day > 0 and len(same_day) >= rules.max_sessions_per_day:
            conflicts.append(
                Conflict(
                    conflict_type=ConflictType.DAILY_LIMIT_REACHED,
                    description=(
                        f"Staff member {staff_id} already has {len(same_day)} sessions on "
                        f"{start:%Y-%m-%d} (maximum {rules.max_sessions_per_day} per day)"
                    ),
                    suggested_resolution="Select a different staff member or schedule on a different day",
                )
            )

        min_break = timedelta(minutes=rules.min_break_minutes)
        for s in same_day:
            gap = max(start - s.end_time, s.start_time - end)
            # Negative gaps are overlaps; check_conflicts reports those
            if timedelta(0) <= gap < min_break:
                conflicts.append(
                    Conflict(
                        conflict_type=ConflictType.INSUFFICIENT_BREAK,
                        description=(
                            f"Only {int(gap.total_seconds() // 60)} minutes between session {s.id} "
                            f"and the proposed session (minimum {rules.min_break_minutes} minutes)"
                        ),
                        conflicting_session_id=s.id,
                        suggested_resolution="Allow more time between sessions",
                    )
                )
        return conflicts
