# aba_scheduling/routers/continuity.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from aba_scheduling.errors import SchedulingError, error_to_http
from aba_scheduling.services.scheduling_engine import SchedulingEngine, get_engine

router = APIRouter(prefix="/continuity", tags=["continuity"])


@router.get("/{client_id}/scores")
def get_scores(
    client_id: str,
    reference_date: Optional[datetime] = Query(default=None),
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.get_continuity_scores(client_id, reference_date or datetime.now())
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/{client_id}/pairings")
def get_pairings(
    client_id: str,
    start: datetime,
    end: datetime,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.compute_pairing_frequencies(client_id, start, end)
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/{client_id}/report")
def get_report(
    client_id: str,
    start: datetime,
    end: datetime,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.generate_continuity_report(client_id, start, end)
    except SchedulingError as e:
        raise error_to_http(e)
