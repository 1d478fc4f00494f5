# aba_scheduling/routers/disruptions.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from aba_scheduling.errors import SchedulingError, error_to_http
from aba_scheduling.services.disruption_service import AuditEntityType
from aba_scheduling.services.scheduling_engine import SchedulingEngine, get_engine

router = APIRouter(prefix="/disruptions", tags=["disruptions"])


@router.get("/report")
def frequency_report(
    start: datetime,
    end: datetime,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.generate_disruption_frequency_report(start, end)
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/clients/{client_id}")
def client_profile(
    client_id: str,
    start: datetime,
    end: datetime,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.generate_client_disruption_profile(client_id, start, end)
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/staff/{staff_id}")
def staff_profile(
    staff_id: str,
    start: datetime,
    end: datetime,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.generate_staff_disruption_profile(staff_id, start, end)
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/audit/{entity_type}/{entity_id}")
def audit_trail(
    entity_type: AuditEntityType,
    entity_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.get_audit_trail(entity_type, entity_id, start, end)
    except SchedulingError as e:
        raise error_to_http(e)


@router.get("/cancellations")
def cancellation_stats(
    start: datetime,
    end: datetime,
    staff_id: Optional[str] = Query(default=None),
    client_id: Optional[str] = Query(default=None),
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        return engine.get_cancellation_stats(start, end, staff_id=staff_id, client_id=client_id)
    except SchedulingError as e:
        raise error_to_http(e)
