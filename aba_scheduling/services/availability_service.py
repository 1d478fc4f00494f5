# aba_scheduling/services/availability_service.py
from datetime import date, datetime, time
from typing import List, Tuple

from aba_scheduling.services.calendar import day_of_week
from aba_scheduling.services.records import AvailabilityRecord
from aba_scheduling.stores.protocols import AvailabilityStore


class AvailabilityIndex:
    """
    Read-only view over recurring staff availability.

    A slot is authoritative for a date only when it is active, its
    weekday matches and effective_date <= date <= end_date (or no
    end_date). Store errors propagate to the caller.
    """

    def __init__(self, store: AvailabilityStore):
        self.store = store

    def slots_for(self, staff_id: str, on_date: date) -> List[AvailabilityRecord]:
        dow = day_of_week(on_date)
        slots = self.store.list_active_slots(staff_id, dow, on_date)
        # Re-apply every predicate; a store may filter coarsely.
        return [
            s
            for s in slots
            if s.staff_id == staff_id and s.day_of_week == dow and s.is_effective_on(on_date)
        ]

    def is_available(
        self,
        staff_id: str,
        on_date: date,
        start_time: time,
        end_time: time,
    ) -> bool:
        """True when one slot fully covers [start_time, end_time) on that date."""
        if end_time <= start_time:
            return False
        return any(
            s.start_time <= start_time and end_time <= s.end_time
            for s in self.slots_for(staff_id, on_date)
        )

    def covers(self, staff_id: str, start: datetime, end: datetime) -> bool:
        """Datetime form of is_available; sessions spanning midnight never fit."""
        if start.date() != end.date():
            return False
        return self.is_available(staff_id, start.date(), start.time(), end.time())

    def windows_for(self, staff_id: str, on_date: date) -> List[Tuple[time, time]]:
        """Distinct (start, end) slot windows for `on_date`, earliest first."""
        return sorted({(s.start_time, s.end_time) for s in self.slots_for(staff_id, on_date)})
