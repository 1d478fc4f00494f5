# aba_scheduling/stores/sql.py
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Iterable, Iterator, List, Optional

from sqlalchemy import or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aba_scheduling.errors import ConcurrencyConflict, DataAccessError
from aba_scheduling.models.availability_slot import AvailabilitySlot
from aba_scheduling.models.schedule_event import ScheduleEvent, ScheduleEventType
from aba_scheduling.models.therapy_session import SessionStatus, TherapySession
from aba_scheduling.services.records import (
    AvailabilityRecord,
    DisruptionEvent,
    SessionRecord,
)

logger = logging.getLogger(__name__)


@contextmanager
def _data_access(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Data access failed during %s: %s", operation, e)
        raise DataAccessError(f"{operation} failed: {e}") from e


def session_to_record(row: TherapySession) -> SessionRecord:
    try:
        status = SessionStatus(row.status)
    except ValueError as e:
        raise DataAccessError(f"Session {row.id} has unknown status {row.status!r}") from e

    return SessionRecord(
        id=row.id,
        client_id=row.client_id,
        staff_id=row.staff_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=status,
        location=row.location,
        notes=row.notes,
        rescheduled_from_id=row.rescheduled_from_id,
        created_at=row.created_at,
    )


def event_to_record(row: ScheduleEvent) -> DisruptionEvent:
    try:
        event_type = ScheduleEventType(row.event_type)
    except ValueError as e:
        raise DataAccessError(
            f"ScheduleEvent {row.id} has unknown type {row.event_type!r}"
        ) from e

    return DisruptionEvent(
        id=row.id,
        event_type=event_type,
        timestamp=row.created_at,
        session_id=row.session_id,
        client_id=row.client_id,
        staff_id=row.staff_id,
        reason=row.reason,
        created_by=row.created_by,
        old_values=row.old_values or {},
        new_values=row.new_values or {},
    )


class SqlSessionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: int) -> Optional[SessionRecord]:
        with _data_access("session lookup"):
            row = self.db.get(TherapySession, session_id)
        return session_to_record(row) if row else None

    def find_overlapping(
        self,
        start: datetime,
        end: datetime,
        *,
        staff_id: Optional[str] = None,
        client_id: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> List[SessionRecord]:
        query = self.db.query(TherapySession).filter(
            TherapySession.status != SessionStatus.CANCELLED.value,
            TherapySession.start_time < end,
            TherapySession.end_time > start,
        )
        if staff_id is not None:
            query = query.filter(TherapySession.staff_id == staff_id)
        if client_id is not None:
            query = query.filter(TherapySession.client_id == client_id)
        if exclude_id is not None:
            query = query.filter(TherapySession.id != exclude_id)

        with _data_access("overlap scan"):
            rows = query.order_by(TherapySession.start_time.asc(), TherapySession.id.asc()).all()
        return [session_to_record(r) for r in rows]

    def list_by_date_range(self, start: datetime, end: datetime) -> List[SessionRecord]:
        with _data_access("session range listing"):
            rows = (
                self.db.query(TherapySession)
                .filter(TherapySession.start_time >= start, TherapySession.start_time <= end)
                .order_by(TherapySession.start_time.asc(), TherapySession.id.asc())
                .all()
            )
        return [session_to_record(r) for r in rows]

    def list_by_client(self, client_id: str) -> List[SessionRecord]:
        with _data_access("client session listing"):
            rows = (
                self.db.query(TherapySession)
                .filter_by(client_id=client_id)
                .order_by(TherapySession.start_time.asc(), TherapySession.id.asc())
                .all()
            )
        return [session_to_record(r) for r in rows]

    def list_by_staff(self, staff_id: str) -> List[SessionRecord]:
        with _data_access("staff session listing"):
            rows = (
                self.db.query(TherapySession)
                .filter_by(staff_id=staff_id)
                .order_by(TherapySession.start_time.asc(), TherapySession.id.asc())
                .all()
            )
        return [session_to_record(r) for r in rows]

    def list_replacements(self, session_ids: Iterable[int]) -> List[SessionRecord]:
        ids = list(session_ids)
        if not ids:
            return []
        with _data_access("replacement lookup"):
            rows = (
                self.db.query(TherapySession)
                .filter(TherapySession.rescheduled_from_id.in_(ids))
                .order_by(TherapySession.created_at.asc(), TherapySession.id.asc())
                .all()
            )
        return [session_to_record(r) for r in rows]


class SqlAvailabilityStore:
    def __init__(self, db: Session):
        self.db = db

    def list_active_slots(
        self,
        staff_id: str,
        day_of_week: int,
        on_date: date,
    ) -> List[AvailabilityRecord]:
        with _data_access("availability lookup"):
            rows = (
                self.db.query(AvailabilitySlot)
                .filter(
                    AvailabilitySlot.staff_id == staff_id,
                    AvailabilitySlot.day_of_week == day_of_week,
                    AvailabilitySlot.is_active.is_(True),
                    AvailabilitySlot.effective_date <= on_date,
                    or_(AvailabilitySlot.end_date.is_(None), AvailabilitySlot.end_date >= on_date),
                )
                .order_by(AvailabilitySlot.start_time.asc())
                .all()
            )
        return [
            AvailabilityRecord(
                staff_id=r.staff_id,
                day_of_week=r.day_of_week,
                start_time=r.start_time,
                end_time=r.end_time,
                effective_date=r.effective_date,
                end_date=r.end_date,
                is_active=r.is_active,
            )
            for r in rows
        ]


class SqlEventLog:
    def __init__(self, db: Session):
        self.db = db

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
        query = self.db.query(ScheduleEvent)
        if start is not None:
            query = query.filter(ScheduleEvent.created_at >= start)
        if end is not None:
            query = query.filter(ScheduleEvent.created_at <= end)
        if event_types is not None:
            query = query.filter(ScheduleEvent.event_type.in_([t.value for t in event_types]))
        if session_id is not None:
            query = query.filter(ScheduleEvent.session_id == session_id)
        if client_id is not None:
            query = query.filter(ScheduleEvent.client_id == client_id)
        if staff_id is not None:
            query = query.filter(ScheduleEvent.staff_id == staff_id)

        with _data_access("event log read"):
            rows = query.order_by(ScheduleEvent.created_at.asc(), ScheduleEvent.id.asc()).all()
        return [event_to_record(r) for r in rows]


SERIALIZATION_FAILURE = "40001"


def _is_serialization_failure(e: SQLAlchemyError) -> bool:
    orig = getattr(e, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == SERIALIZATION_FAILURE


class SqlRescheduleCommitter:
    """
    Commits a reschedule atomically: the replacement session, the
    cancellation of the original and the audit event land together.

    `transaction()` takes the write lock before the conflict re-check
    runs: `BEGIN IMMEDIATE` on SQLite, SERIALIZABLE isolation elsewhere.
    A competing commit either waits for this one and then sees its rows,
    or fails with a serialization error that surfaces as
    ConcurrencyConflict.
    """

    def __init__(
        self,
        db: Session,
        created_by: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.created_by = created_by
        self.clock = clock

    def _begin_locked(self) -> None:
        # Only reads ran on this session so far; end that transaction so
        # the locked one starts fresh.
        if self.db.in_transaction():
            self.db.rollback()

        if self.db.get_bind().dialect.name == "sqlite":
            self.db.execute(text("BEGIN IMMEDIATE"))
        else:
            self.db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            self._begin_locked()
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            if _is_serialization_failure(e):
                logger.warning("Reschedule commit lost a serialization race: %s", e)
                raise ConcurrencyConflict() from e
            raise DataAccessError(f"reschedule commit failed: {e}") from e
        except DataAccessError as e:
            self.db.rollback()
            # Store reads inside the block wrap the driver error
            if isinstance(e.__cause__, SQLAlchemyError) and _is_serialization_failure(e.__cause__):
                raise ConcurrencyConflict() from e
            raise
        except Exception:
            self.db.rollback()
            raise

    def supersede(
        self,
        original: SessionRecord,
        *,
        staff_id: str,
        start: datetime,
        end: datetime,
        reason: Optional[str] = None,
    ) -> SessionRecord:
        row = self.db.get(TherapySession, original.id)
        if row is None:
            raise DataAccessError(f"Session {original.id} disappeared before commit")

        now = self.clock()
        replacement = TherapySession(
            client_id=row.client_id,
            staff_id=staff_id,
            start_time=start,
            end_time=end,
            status=SessionStatus.SCHEDULED.value,
            location=row.location,
            notes=row.notes,
            rescheduled_from_id=row.id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(replacement)

        old_values = {
            "start_time": row.start_time.isoformat(),
            "end_time": row.end_time.isoformat(),
            "staff_id": row.staff_id,
            "status": row.status,
        }
        row.status = SessionStatus.CANCELLED.value
        row.updated_at = now
        self.db.flush()

        self.db.add(
            ScheduleEvent(
                event_type=ScheduleEventType.SESSION_RESCHEDULED.value,
                session_id=row.id,
                client_id=row.client_id,
                staff_id=row.staff_id,
                reason=reason,
                old_values=old_values,
                new_values={
                    "session_id": replacement.id,
                    "start_time": start.isoformat(),
                    "end_time": end.isoformat(),
                    "staff_id": staff_id,
                },
                created_by=self.created_by,
                created_at=now,
            )
        )
        self.db.flush()
        self.db.refresh(replacement)
        return session_to_record(replacement)
