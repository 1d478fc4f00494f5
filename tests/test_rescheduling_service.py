# tests/test_rescheduling_service.py
from datetime import date, datetime, timedelta

import pytest

from aba_scheduling.errors import ConcurrencyConflict, SessionNotFoundError, ValidationError
from aba_scheduling.models.schedule_event import ScheduleEventType
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.rescheduling_service import RescheduleState, SlotChoice

from fakes import FakeWorld

AS_OF = datetime(2025, 3, 1, 8)  # Saturday before the disrupted week
MONDAY_9 = datetime(2025, 3, 3, 9)


def _world():
    """
    C1 has a history of 6 sessions with S1 and 2 with S2 in February and
    one upcoming session with S1 on Monday 2025-03-03 09:00-12:00.
    """
    world = FakeWorld(clock=lambda: datetime(2025, 3, 1, 9))
    world.staff_available("S1")
    world.staff_available("S2")

    history = [date(2025, 2, d) for d in (3, 4, 5, 6, 7, 10)]
    for day in history:
        start = datetime.combine(day, MONDAY_9.time())
        world.sessions.add("C1", "S1", start, start + timedelta(hours=3), status=SessionStatus.COMPLETED)
    for day in (date(2025, 2, 11), date(2025, 2, 12)):
        start = datetime.combine(day, MONDAY_9.time())
        world.sessions.add("C1", "S2", start, start + timedelta(hours=3), status=SessionStatus.COMPLETED)

    target = world.sessions.add("C1", "S1", MONDAY_9, MONDAY_9 + timedelta(hours=3))
    return world, target


def test_options_prefer_original_staff_and_soonest_slot():
    world, target = _world()

    result = world.engine.find_rescheduling_options(target.id, as_of=AS_OF)

    assert result.state == RescheduleState.CANDIDATES_GENERATED
    assert len(result.options) == world.rules.max_options
    first = result.options[0]
    assert first.rank == 1
    assert first.same_staff
    assert first.staff_id == "S1"
    # the original 09:00 slot itself is not offered back
    assert first.start_time == datetime(2025, 3, 3, 10)
    assert first.notifications == ["Client/Guardian", "Assigned staff (S1)"]
    assert [o.rank for o in result.options] == list(range(1, len(result.options) + 1))
    assert result.searched_from == date(2025, 3, 3)


def test_options_never_conflict():
    world, target = _world()
    world.sessions.add("C9", "S1", datetime(2025, 3, 3, 13), datetime(2025, 3, 3, 16))
    world.sessions.add("C1", "S2", datetime(2025, 3, 4, 9), datetime(2025, 3, 4, 12))

    result = world.engine.find_rescheduling_options(target.id, as_of=AS_OF, limit=50)

    assert result.options
    for option in result.options:
        assert world.engine.check_conflicts(
            "C1", option.staff_id, option.start_time, option.end_time, exclude_session_id=target.id
        ) == []


def test_excluding_original_staff_falls_back_to_continuity_ranking():
    world, target = _world()

    result = world.engine.find_rescheduling_options(target.id, as_of=AS_OF, exclude_staff_ids=["S1"])

    assert {o.staff_id for o in result.options} == {"S2"}
    assert not result.options[0].same_staff
    assert result.options[0].continuity_score > 0
    assert "New staff (S2)" in result.options[0].notifications
    assert result.staff_considered == ["S2"]


def test_suggested_staff_without_history_are_searched_last():
    world, target = _world()
    world.staff_available("S3")

    result = world.engine.optimizer.find_rescheduling_options(
        target.id,
        as_of=AS_OF,
        exclude_staff_ids=["S1", "S2"],
        candidate_staff_ids=["S3"],
    )

    assert {o.staff_id for o in result.options} == {"S3"}
    assert result.options[0].continuity_score == 0.0
    assert result.options[0].reason.startswith("S3 is available")


def test_no_candidates_requires_manual_review():
    world, target = _world()

    result = world.engine.find_rescheduling_options(
        target.id, as_of=AS_OF, exclude_staff_ids=["S1"], allow_different_staff=False
    )

    assert result.state == RescheduleState.MANUAL_REVIEW_REQUIRED
    assert result.requires_manual_review
    assert result.options == []
    assert result.message


def test_staff_with_no_availability_requires_manual_review():
    world = FakeWorld()
    target = world.sessions.add("C1", "S1", MONDAY_9, MONDAY_9 + timedelta(hours=3))

    result = world.engine.find_rescheduling_options(target.id, as_of=AS_OF)

    assert result.state == RescheduleState.MANUAL_REVIEW_REQUIRED


def test_finished_or_missing_sessions_cannot_be_rescheduled():
    world, _ = _world()
    done = world.sessions.add(
        "C1", "S1", datetime(2025, 2, 24, 9), datetime(2025, 2, 24, 12), status=SessionStatus.COMPLETED
    )

    with pytest.raises(ValidationError):
        world.engine.find_rescheduling_options(done.id, as_of=AS_OF)
    with pytest.raises(SessionNotFoundError):
        world.engine.find_rescheduling_options(999, as_of=AS_OF)


def test_commit_supersedes_original():
    world, target = _world()
    option = world.engine.find_rescheduling_options(target.id, as_of=AS_OF).options[0]

    outcome = world.engine.commit_reschedule(target.id, option, as_of=AS_OF, reason="Staff sick")

    assert outcome.state == RescheduleState.RESCHEDULED
    assert outcome.new_session.rescheduled_from_id == target.id
    assert outcome.new_session.start_time == option.start_time
    assert world.sessions.get(target.id).status == SessionStatus.CANCELLED
    assert world.committer.commits == 1

    events = world.events.list_events(session_id=target.id)
    assert [e.event_type for e in events] == [ScheduleEventType.SESSION_RESCHEDULED]
    assert events[0].reason == "Staff sick"

    with pytest.raises(ValidationError, match="already been rescheduled"):
        world.engine.commit_reschedule(target.id, option, as_of=AS_OF)


def test_commit_raises_when_slot_was_taken_meanwhile():
    world, target = _world()
    option = world.engine.find_rescheduling_options(target.id, as_of=AS_OF).options[0]

    def competing_booking():
        world.sessions.add("C7", option.staff_id, option.start_time, option.end_time)

    world.committer.before_commit = competing_booking

    with pytest.raises(ConcurrencyConflict) as excinfo:
        world.engine.commit_reschedule(target.id, option, as_of=AS_OF)

    assert excinfo.value.conflicts
    assert world.committer.rollbacks == 1
    assert world.committer.commits == 0
    assert world.sessions.get(target.id).status == SessionStatus.SCHEDULED
    assert world.sessions.list_replacements([target.id]) == []


def test_commit_validates_candidate_window():
    world, target = _world()
    short = SlotChoice(staff_id="S1", start_time=datetime(2025, 3, 4, 9), end_time=datetime(2025, 3, 4, 11))

    with pytest.raises(ValidationError):
        world.engine.commit_reschedule(target.id, short, as_of=AS_OF)
    assert world.committer.commits == 0


def test_unavailability_plan_moves_sessions_away_from_absent_staff():
    world, target = _world()
    other = world.sessions.add("C2", "S1", datetime(2025, 3, 3, 14), datetime(2025, 3, 3, 17))

    plan = world.engine.plan_unavailability_response(
        "S1", datetime(2025, 3, 3), datetime(2025, 3, 4), as_of=AS_OF
    )

    assert [s.id for s in plan.affected_sessions] == [target.id, other.id]
    # C1 has history with S2; C2 has no other staff to fall back on
    assert plan.results[0].state == RescheduleState.CANDIDATES_GENERATED
    assert {o.staff_id for o in plan.results[0].options} == {"S2"}
    assert plan.results[1].state == RescheduleState.MANUAL_REVIEW_REQUIRED
    assert plan.manual_review_count == 1


def test_rescheduling_impact():
    world, target = _world()
    world.sessions.add("C3", "S2", datetime(2025, 3, 5, 14), datetime(2025, 3, 5, 17))

    impact = world.engine.analyze_rescheduling_impact(
        target.id, datetime(2025, 3, 5, 9), "S2", as_of=AS_OF
    )

    assert impact.staff_changed
    assert impact.new_end == datetime(2025, 3, 5, 12)
    assert len(impact.affected_session_ids) == 1
    assert impact.continuity_disruption > 0
    assert "Scheduling Coordinator" in impact.notifications
    assert "New staff (S2)" in impact.notifications
    # one neighbouring session plus a staff change
    assert impact.operational_complexity == 30.0
    assert impact.conflicts == []


def test_options_skip_slots_that_leave_no_break():
    world, target = _world()
    world.sessions.add("C9", "S1", datetime(2025, 3, 3, 13), datetime(2025, 3, 3, 16))

    result = world.engine.find_rescheduling_options(
        target.id, as_of=AS_OF, allow_different_staff=False, limit=50
    )

    assert result.options
    # 10:00 and 16:00 touch the 13:00 session, everything between overlaps it
    assert all(o.start_time.date() != date(2025, 3, 3) for o in result.options)
    for option in result.options:
        assert world.engine.check_staff_workload(
            option.staff_id, option.start_time, option.end_time, exclude_session_id=target.id
        ) == []


def test_engine_passes_suggested_staff_through():
    world, target = _world()
    world.staff_available("S3")

    result = world.engine.find_rescheduling_options(
        target.id, as_of=AS_OF, exclude_staff_ids=["S1", "S2"], candidate_staff_ids=["S3"]
    )

    assert result.state == RescheduleState.CANDIDATES_GENERATED
    assert {o.staff_id for o in result.options} == {"S3"}


def test_superseded_session_gets_no_options():
    world, target = _world()
    option = world.engine.find_rescheduling_options(target.id, as_of=AS_OF).options[0]
    world.engine.commit_reschedule(target.id, option, as_of=AS_OF)

    with pytest.raises(ValidationError, match="already been rescheduled"):
        world.engine.find_rescheduling_options(target.id, as_of=AS_OF)


def test_commit_refuses_slot_without_break():
    world, target = _world()
    world.sessions.add("C9", "S1", datetime(2025, 3, 4, 13), datetime(2025, 3, 4, 16))
    tight = SlotChoice(staff_id="S1", start_time=datetime(2025, 3, 4, 10), end_time=datetime(2025, 3, 4, 13))

    with pytest.raises(ValidationError, match="minimum 30 minutes"):
        world.engine.commit_reschedule(target.id, tight, as_of=AS_OF)
    assert world.committer.commits == 0


def test_commit_rechecks_replacement_inside_transaction():
    world, target = _world()
    option = world.engine.find_rescheduling_options(target.id, as_of=AS_OF).options[0]

    def rival_reschedule():
        world.sessions.add(
            "C1", "S2", datetime(2025, 3, 5, 9), datetime(2025, 3, 5, 12), rescheduled_from_id=target.id
        )

    world.committer.before_commit = rival_reschedule

    with pytest.raises(ValidationError, match="already been rescheduled"):
        world.engine.commit_reschedule(target.id, option, as_of=AS_OF)
    assert world.committer.rollbacks == 1
    assert world.committer.commits == 0
    assert len(world.sessions.list_replacements([target.id])) == 0


def _freed_slot_world():
    """
    C1's Monday 2025-03-10 09:00 session with S1 was cancelled. S1 also
    serves C2 (last seen 5 days before), C3 (4 weeks before), C4 (never
    completed a session) and C5 (busy with S2 at that time).
    """
    world = FakeWorld()
    world.staff_available("S1")
    world.staff_available("S2")

    def book(client_id, staff_id, start, status=SessionStatus.COMPLETED):
        return world.sessions.add(client_id, staff_id, start, start + timedelta(hours=3), status=status)

    freed = book("C1", "S1", datetime(2025, 3, 10, 9), status=SessionStatus.CANCELLED)
    book("C2", "S1", datetime(2025, 3, 3, 9))
    book("C2", "S1", datetime(2025, 3, 5, 9))
    book("C3", "S1", datetime(2025, 2, 10, 9))
    book("C4", "S1", datetime(2025, 2, 12, 9), status=SessionStatus.CANCELLED)
    book("C5", "S1", datetime(2025, 2, 11, 9))
    book("C5", "S2", datetime(2025, 3, 10, 10), status=SessionStatus.SCHEDULED)
    return world, freed


def test_freed_slot_is_offered_to_other_free_clients():
    world, freed = _freed_slot_world()

    found = world.engine.find_alternative_opportunities(freed.id, as_of=datetime(2025, 3, 8))

    assert found.staff_id == "S1"
    assert (found.start_time, found.end_time) == (freed.start_time, freed.end_time)

    by_client = {c.client_id: c for c in found.candidates}
    assert set(by_client) == {"C2", "C3", "C4"}
    bonus = {cid: c.opportunity_score - c.continuity_score for cid, c in by_client.items()}
    assert bonus["C2"] == pytest.approx(10)
    assert bonus["C3"] == pytest.approx(20)
    assert bonus["C4"] == pytest.approx(15)
    assert by_client["C4"].continuity_score == 0.0
    assert by_client["C4"].last_session_date is None

    scores = [c.opportunity_score for c in found.candidates]
    assert scores == sorted(scores, reverse=True)


def test_freed_slot_respects_limit_and_session_state():
    world, freed = _freed_slot_world()

    limited = world.engine.find_alternative_opportunities(freed.id, as_of=datetime(2025, 3, 8), limit=1)
    assert len(limited.candidates) == 1

    done = world.sessions.add(
        "C2", "S1", datetime(2025, 2, 24, 9), datetime(2025, 2, 24, 12), status=SessionStatus.COMPLETED
    )
    with pytest.raises(ValidationError):
        world.engine.find_alternative_opportunities(done.id, as_of=datetime(2025, 3, 8))
    with pytest.raises(ValidationError):
        world.engine.find_alternative_opportunities(freed.id, as_of=datetime(2025, 3, 11))
