# aba_scheduling/models/availability_slot.py
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String, Time

from aba_scheduling.models.base import Base


class AvailabilitySlot(Base):
    """
    Recurring weekly availability window for one staff member.

    Example: "Available Mondays 09:00–15:00 from March onwards"
    is one row with day_of_week=1 and no end_date.
    """

    __tablename__ = "availability_slots"

    id = Column(Integer, primary_key=True, index=True)

    staff_id = Column(String(64), nullable=False, index=True)

    # 0=Sunday ... 6=Saturday
    day_of_week = Column(Integer, nullable=False, index=True)

    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    effective_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.now, nullable=False)
