# tests/test_db_basic.py
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.orm import Session

from aba_scheduling.db.session import engine, SessionLocal
from aba_scheduling.models import Base, SessionStatus, TherapySession


def test_db_can_create_schema():
    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        result = conn.execute(text("SELECT 1"))
        assert result.scalar() == 1


def test_replacement_session_links_back_to_original():
    Base.metadata.create_all(bind=engine)

    db: Session = SessionLocal()
    try:
        db.query(TherapySession).delete()
        db.commit()

        original = TherapySession(
            client_id="C-db-basic",
            staff_id="S1",
            start_time=datetime(2025, 3, 3, 9),
            end_time=datetime(2025, 3, 3, 12),
        )
        db.add(original)
        db.commit()
        db.refresh(original)

        assert original.id is not None
        assert original.status == SessionStatus.SCHEDULED.value
        assert original.created_at is not None

        replacement = TherapySession(
            client_id="C-db-basic",
            staff_id="S2",
            start_time=datetime(2025, 3, 4, 9),
            end_time=datetime(2025, 3, 4, 12),
            rescheduled_from_id=original.id,
        )
        db.add(replacement)
        db.commit()

        fetched = db.query(TherapySession).filter_by(staff_id="S2").first()
        assert fetched.rescheduled_from is not None
        assert fetched.rescheduled_from.id == original.id
        assert [r.id for r in original.replacements] == [fetched.id]
    finally:
        db.close()
