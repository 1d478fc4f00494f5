# aba_scheduling/routers/scheduling.py
from fastapi import APIRouter, Depends

from aba_scheduling.errors import SchedulingError, error_to_http
from aba_scheduling.schemas.scheduling import ConflictCheckRequest
from aba_scheduling.services.scheduling_engine import SchedulingEngine, get_engine

router = APIRouter(prefix="/scheduling", tags=["scheduling"])


@router.post("/conflicts")
def check_conflicts(
    payload: ConflictCheckRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Check a candidate booking against existing sessions, staff
    availability and business hours.

    An empty list means the slot was free at the time of the check; it is
    not a reservation. Workload findings (daily cap, short breaks) are
    reported separately and do not make the slot conflicting.
    """
    try:
        conflicts = engine.check_conflicts(
            payload.client_id,
            payload.staff_id,
            payload.start_time,
            payload.end_time,
            exclude_session_id=payload.exclude_session_id,
        )
        workload = engine.check_staff_workload(
            payload.staff_id,
            payload.start_time,
            payload.end_time,
            exclude_session_id=payload.exclude_session_id,
        )
    except SchedulingError as e:
        raise error_to_http(e)

    return {
        "has_conflicts": bool(conflicts),
        "conflicts": conflicts,
        "workload": workload,
    }
