# aba_scheduling/routers/rescheduling.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from aba_scheduling.errors import SchedulingError, error_to_http
from aba_scheduling.schemas.scheduling import (
    CommitRescheduleRequest,
    ImpactRequest,
    UnavailabilityRequest,
)
from aba_scheduling.services.rescheduling_service import SlotChoice
from aba_scheduling.services.scheduling_engine import SchedulingEngine, get_engine

router = APIRouter(prefix="/rescheduling", tags=["rescheduling"])


@router.post("/unavailability")
def plan_unavailability(
    payload: UnavailabilityRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Staff member reports unavailability: list the sessions they would miss
    and the replacement options for each one. Nothing is committed.
    """
    try:
        return engine.plan_unavailability_response(
            payload.staff_id,
            payload.start,
            payload.end,
            as_of=payload.as_of,
            candidate_staff_ids=payload.candidate_staff_ids,
        )
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/{session_id}/options")
def rescheduling_options(
    session_id: int,
    as_of: Optional[datetime] = Query(default=None),
    exclude_staff_ids: List[str] = Query(default=[]),
    candidate_staff_ids: List[str] = Query(default=[]),
    allow_different_staff: bool = True,
    limit: Optional[int] = Query(default=None, ge=1),
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.find_rescheduling_options(
            session_id,
            as_of=as_of,
            exclude_staff_ids=exclude_staff_ids,
            allow_different_staff=allow_different_staff,
            candidate_staff_ids=candidate_staff_ids,
            limit=limit,
        )
    except SchedulingError as e:
        raise error_to_http(e)


@router.post("/{session_id}/commit")
def commit_reschedule(
    session_id: int,
    payload: CommitRescheduleRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Book the chosen candidate and supersede the original session.

    409 means the slot was taken after the options were generated; fetch
    fresh options and try once more.
    """
    choice = SlotChoice(
        staff_id=payload.staff_id,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )
    try:
        return engine.commit_reschedule(
            session_id,
            choice,
            as_of=payload.as_of,
            reason=payload.reason,
        )
    except SchedulingError as e:
        raise error_to_http(e)


@router.post("/{session_id}/impact")
def rescheduling_impact(
    session_id: int,
    payload: ImpactRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.analyze_rescheduling_impact(
            session_id,
            payload.new_start,
            payload.new_staff_id,
            as_of=payload.as_of,
        )
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/{session_id}/freed-slot")
def freed_slot_opportunities(
    session_id: int,
    as_of: Optional[datetime] = Query(default=None),
    limit: int = Query(default=5, ge=1),
    engine: SchedulingEngine = Depends(get_engine),
):
    """Other clients of the same staff member who could take this session's slot."""
    try:
        return engine.find_alternative_opportunities(session_id, as_of=as_of, limit=limit)
    except SchedulingError as e:
        raise error_to_http(e)
