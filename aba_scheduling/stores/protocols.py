# aba_scheduling/stores/protocols.py
"""
Read (and commit) interfaces the engine is constructed with.

Anything that satisfies these protocols can back the engine: the
SQLAlchemy stores in `aba_scheduling.stores.sql`, or in-memory fakes.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import ContextManager, Iterable, List, Optional, Protocol

from aba_scheduling.models.schedule_event import ScheduleEventType
from aba_scheduling.services.records import (
    AvailabilityRecord,
    DisruptionEvent,
    SessionRecord,
)


class SessionStore(Protocol):
    def get(self, session_id: int) -> Optional[SessionRecord]:
        ...

    def find_overlapping(
        self,
        start: datetime,
        end: datetime,
        *,
        staff_id: Optional[str] = None,
        client_id: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> List[SessionRecord]:
        """Non-cancelled sessions whose [start, end) overlaps the given one."""
        ...

    def list_by_date_range(self, start: datetime, end: datetime) -> List[SessionRecord]:
        """Sessions (any status) starting within [start, end]."""
        ...

    def list_by_client(self, client_id: str) -> List[SessionRecord]:
        ...

    def list_by_staff(self, staff_id: str) -> List[SessionRecord]:
        ...

    def list_replacements(self, session_ids: Iterable[int]) -> List[SessionRecord]:
        """Sessions whose `rescheduled_from_id` is one of `session_ids`."""
        ...


class AvailabilityStore(Protocol):
    def list_active_slots(
        self,
        staff_id: str,
        day_of_week: int,
        on_date: date,
    ) -> List[AvailabilityRecord]:
        ...


class EventLog(Protocol):
    def list_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        event_types: Optional[Iterable[ScheduleEventType]] = None,
        session_id: Optional[int] = None,
        client_id: Optional[str] = None,
        staff_id: Optional[str] = None,
    ) -> List[DisruptionEvent]:
        """Events with timestamp in [start, end], oldest first."""
        ...


class RescheduleCommitter(Protocol):
    """
    Transactional boundary supplied by the caller.

    Everything run inside `transaction()` is committed together, or
    rolled back when an exception escapes the block. The block is
    serialized against other commits from its first read, so a conflict
    check run inside it still holds when the write lands.
    """

    def transaction(self) -> ContextManager[None]:
        ...

    def supersede(
        self,
        original: SessionRecord,
        *,
        staff_id: str,
        start: datetime,
        end: datetime,
        reason: Optional[str] = None,
    ) -> SessionRecord:
        """Persist the replacement session and mark `original` cancelled."""
        ...
