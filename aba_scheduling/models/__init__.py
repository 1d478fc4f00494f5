# aba_scheduling/models/__init__.py
from aba_scheduling.models.base import Base  # noqa: F401

from aba_scheduling.models.therapy_session import TherapySession, SessionStatus  # noqa: F401
from aba_scheduling.models.availability_slot import AvailabilitySlot  # noqa: F401
from aba_scheduling.models.schedule_event import ScheduleEvent, ScheduleEventType  # noqa: F401
