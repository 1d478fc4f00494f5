# aba_scheduling/models/therapy_session.py
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from aba_scheduling.models.base import Base


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class TherapySession(Base):
    """
    A scheduled therapy engagement between a client and a staff member (RBT).

    Rows are never deleted: cancelling or rescheduling is a status change,
    and a replacement session points back at the one it supersedes through
    `rescheduled_from_id`.
    """

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_staff_time", "staff_id", "start_time", "end_time"),
        Index("ix_sessions_client_time", "client_id", "start_time", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)

    client_id = Column(String(64), nullable=False, index=True)

    # Empty until the booking workflow auto-assigns someone
    staff_id = Column(String(64), nullable=True, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    # Store status as a simple string; SessionStatus is still used in Python
    status = Column(
        String(32),
        nullable=False,
        default=SessionStatus.SCHEDULED.value,
    )

    location = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    rescheduled_from_id = Column(
        Integer,
        ForeignKey("sessions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.now,
        onupdate=datetime.now,
        nullable=False,
    )

    rescheduled_from = relationship("TherapySession", remote_side=[id], backref="replacements")
