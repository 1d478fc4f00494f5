# aba_scheduling/schemas/scheduling.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ConflictCheckRequest(BaseModel):
    client_id: str = Field(min_length=1)
    staff_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    exclude_session_id: Optional[int] = None

    @model_validator(mode="after")
    def check_end_after_start(self) -> "ConflictCheckRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CommitRescheduleRequest(BaseModel):
    staff_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    reason: Optional[str] = None
    # Reference "now"; defaults to the server clock
    as_of: Optional[datetime] = None

    @model_validator(mode="after")
    def check_end_after_start(self) -> "CommitRescheduleRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ImpactRequest(BaseModel):
    new_start: datetime
    new_staff_id: Optional[str] = None
    as_of: Optional[datetime] = None


class UnavailabilityRequest(BaseModel):
    staff_id: str = Field(min_length=1)
    start: datetime
    end: datetime
    candidate_staff_ids: List[str] = Field(default_factory=list)
    as_of: Optional[datetime] = None

    @model_validator(mode="after")
    def check_end_after_start(self) -> "UnavailabilityRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self
