# aba_scheduling/models/schedule_event.py
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String

from aba_scheduling.models.base import Base


class ScheduleEventType(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_RESCHEDULED = "session_rescheduled"
    STAFF_UNAVAILABLE = "staff_unavailable"


class ScheduleEvent(Base):
    """
    Append-only audit log of schedule changes.

    The engine only reads this table; rows are written by the persistence
    layer when it commits a booking, cancellation or reschedule.
    """

    __tablename__ = "schedule_events"

    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(String(32), nullable=False, index=True)

    session_id = Column(Integer, nullable=True, index=True)
    client_id = Column(String(64), nullable=True, index=True)
    staff_id = Column(String(64), nullable=True, index=True)

    reason = Column(String, nullable=True)

    # Snapshot of the changed fields, e.g. {"start_time": "..."}
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
