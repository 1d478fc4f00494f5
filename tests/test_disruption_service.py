# tests/test_disruption_service.py
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from aba_scheduling.errors import ValidationError
from aba_scheduling.models.schedule_event import ScheduleEventType
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.disruption_service import AuditEntityType, DisruptionTrend
from aba_scheduling.services.records import DisruptionType

from fakes import FakeWorld

START = datetime(2025, 3, 1)
END = datetime(2025, 3, 31)


def _session(world, client_id="C1", staff_id="S1", start=None, **kwargs):
    start = start or datetime(2025, 3, 3, 9)
    return world.sessions.add(client_id, staff_id, start, start + timedelta(hours=3), **kwargs)


def _cancel(world, session, at, reason=None, event_type=ScheduleEventType.SESSION_CANCELLED):
    return world.events.append(
        event_type,
        at,
        session_id=session.id,
        client_id=session.client_id,
        staff_id=session.staff_id,
        reason=reason,
    )


def _five_in_a_hundred() -> FakeWorld:
    world = FakeWorld()
    for i in range(100):
        start = datetime(2025, 3, 3, 9) + timedelta(days=i % 25)
        status = SessionStatus.CANCELLED if i < 5 else SessionStatus.COMPLETED
        session = _session(world, client_id=f"C{i % 10}", start=start, status=status)
        if i < 5:
            _cancel(world, session, datetime(2025, 3, 2, 10, 30), reason="Client sick")
    return world


def test_five_cancellations_in_a_hundred_sessions():
    report = _five_in_a_hundred().engine.generate_disruption_frequency_report(START, END)

    assert report.total_sessions == 100
    assert report.metrics.total_disruptions == 5
    assert report.metrics.disruption_rate == pytest.approx(5.0)
    assert report.metrics.disruptions_by_type == {
        "session_cancelled": 5,
        "session_rescheduled": 0,
        "staff_unavailable": 0,
    }
    assert report.metrics.average_disruptions_per_week == pytest.approx(5 / (30 / 7), abs=0.01)
    assert report.metrics.most_common_reason == "Client sick"

    assert report.impact.affected_sessions == 5
    assert report.impact.affected_clients == 5
    assert report.impact.reschedule_success_rate == 0.0
    # rate 5% doubled, no rebooking delay
    assert report.impact.client_impact_score == pytest.approx(6.0)


def test_report_is_idempotent():
    world = _five_in_a_hundred()
    first = world.engine.generate_disruption_frequency_report(START, END)
    second = world.engine.generate_disruption_frequency_report(START, END)
    assert first == second


def test_empty_event_stream():
    world = FakeWorld()
    _session(world)

    report = world.engine.generate_disruption_frequency_report(START, END)

    assert report.metrics.total_disruptions == 0
    assert report.metrics.disruption_rate == 0.0
    assert report.metrics.most_common_reason is None
    assert report.metrics.trend == DisruptionTrend.STABLE
    assert report.top_reasons == []
    assert len(report.by_hour) == 24
    assert [d.day_name for d in report.by_day_of_week][:2] == ["Sunday", "Monday"]
    assert sum(h.count for h in report.by_hour) == 0


def test_histograms_and_top_reasons():
    world = FakeWorld()
    monday_morning = datetime(2025, 3, 3, 10, 15)
    for i, reason in enumerate(["Traffic", None, "Traffic", "  "]):
        _cancel(world, _session(world, start=datetime(2025, 3, 4 + i, 9)), monday_morning, reason)

    report = world.engine.generate_disruption_frequency_report(START, END)

    assert [(r.reason, r.count, r.percentage) for r in report.top_reasons] == [
        ("Traffic", 2, 50.0),
        ("Unknown", 2, 50.0),
    ]
    assert report.by_hour[10].count == 4
    assert report.by_day_of_week[1].count == 4


def test_non_disruption_events_are_ignored():
    world = FakeWorld()
    session = _session(world)
    _cancel(world, session, datetime(2025, 3, 2), event_type=ScheduleEventType.SESSION_CREATED)

    report = world.engine.generate_disruption_frequency_report(START, END)
    assert report.metrics.total_disruptions == 0


def test_trend_increases_when_disruptions_cluster_late():
    world = FakeWorld()
    for day in (20, 22, 25):
        _cancel(world, _session(world, start=datetime(2025, 3, day, 9)), datetime(2025, 3, day, 8))

    report = world.engine.generate_disruption_frequency_report(START, END)
    assert report.metrics.trend == DisruptionTrend.INCREASING


def test_trend_decreases_when_disruptions_cluster_early():
    world = FakeWorld()
    for day in (3, 4, 5, 24):
        _cancel(world, _session(world, start=datetime(2025, 3, day, 9)), datetime(2025, 3, day, 8))

    report = world.engine.generate_disruption_frequency_report(START, END)
    assert report.metrics.trend == DisruptionTrend.DECREASING


def test_reschedule_success_follows_replacement_chain():
    world = FakeWorld()
    original = _session(world, start=datetime(2025, 3, 3, 9), status=SessionStatus.CANCELLED)
    _cancel(world, original, datetime(2025, 3, 2, 12), event_type=ScheduleEventType.SESSION_RESCHEDULED)
    middle = _session(
        world,
        start=datetime(2025, 3, 4, 9),
        status=SessionStatus.CANCELLED,
        rescheduled_from_id=original.id,
        created_at=datetime(2025, 3, 3, 12),
    )
    _session(
        world,
        start=datetime(2025, 3, 5, 9),
        status=SessionStatus.COMPLETED,
        rescheduled_from_id=middle.id,
        created_at=datetime(2025, 3, 4, 12),
    )

    abandoned = _session(world, start=datetime(2025, 3, 10, 9), status=SessionStatus.CANCELLED)
    _cancel(world, abandoned, datetime(2025, 3, 9, 12))

    impact = world.engine.generate_disruption_frequency_report(START, END).impact

    assert impact.reschedule_success_rate == 50.0
    # only the direct replacement counts toward the delay: 24 hours
    assert impact.average_reschedule_time == 24.0


def test_client_profile():
    world = FakeWorld()
    sessions = [_session(world, start=datetime(2025, 3, 3 + i, 9)) for i in range(4)]
    for s in sessions[:2]:
        world.sessions.update(replace(s, status=SessionStatus.CANCELLED))
        _cancel(world, s, datetime(2025, 3, 2, 9), reason="Family emergency")
    _session(world, client_id="C2", start=datetime(2025, 3, 3, 9))

    profile = world.engine.generate_client_disruption_profile("C1", START, END)

    assert profile.total_sessions == 4
    assert profile.disrupted_sessions == 2
    assert profile.disruption_rate == 50.0
    assert profile.most_common_disruption_type == DisruptionType.SESSION_CANCELLED
    # half the sessions planned with S1 were lost
    assert profile.continuity_impact == 50.0
    assert any("High disruption rate" in r for r in profile.recommendations)
    assert any("cancellations" in r for r in profile.recommendations)


def test_staff_profile_separates_caused_and_affected():
    world = FakeWorld()
    sessions = [_session(world, start=datetime(2025, 3, 3 + i, 9)) for i in range(10)]
    _cancel(world, sessions[0], datetime(2025, 3, 2, 9), event_type=ScheduleEventType.STAFF_UNAVAILABLE)
    _cancel(world, sessions[1], datetime(2025, 3, 2, 9))
    _cancel(world, sessions[2], datetime(2025, 3, 2, 9))

    profile = world.engine.generate_staff_disruption_profile("S1", START, END)

    assert profile.total_sessions == 10
    assert profile.caused_disruptions == 1
    assert profile.affected_by_disruptions == 2
    assert profile.sessions_lost_to_unavailability == 1
    assert profile.disruption_rate == 30.0
    # 100 - (10 + 0.5 * 20)
    assert profile.reliability == 80.0
    assert any("High disruption rate" in r for r in profile.recommendations)


def test_staff_without_sessions_is_fully_reliable():
    profile = FakeWorld().engine.generate_staff_disruption_profile("S1", START, END)
    assert profile.reliability == 100.0
    assert profile.recommendations == []


def test_audit_trail_lists_newest_first():
    world = FakeWorld()
    session = _session(world)
    _cancel(world, session, datetime(2025, 3, 1, 9), event_type=ScheduleEventType.SESSION_CREATED)
    _cancel(world, session, datetime(2025, 3, 2, 9), reason="Sick")

    trail = world.engine.get_audit_trail(AuditEntityType.SESSION, str(session.id))

    assert trail.total_events == 2
    assert [e.event_type for e in trail.events] == [
        ScheduleEventType.SESSION_CANCELLED,
        ScheduleEventType.SESSION_CREATED,
    ]
    assert trail.events[0].description == f"Session {session.id} cancelled: Sick"
    assert trail.start == datetime(2025, 3, 1, 9)
    assert trail.end == datetime(2025, 3, 2, 9)

    assert world.engine.get_audit_trail("client", "C1").total_events == 2
    assert world.engine.get_audit_trail("staff", "S2").total_events == 0


def test_invalid_inputs_raise():
    engine = FakeWorld().engine
    with pytest.raises(ValidationError):
        engine.generate_disruption_frequency_report(END, START)
    with pytest.raises(ValidationError):
        engine.generate_client_disruption_profile("", START, END)
    with pytest.raises(ValidationError):
        engine.get_audit_trail(AuditEntityType.SESSION, "abc")


def test_cancellation_stats():
    world = FakeWorld()
    first = _session(world, "C1", "S1", start=datetime(2025, 3, 3, 9))
    _cancel(world, first, datetime(2025, 3, 2, 9), reason="Sick")
    second = _session(world, "C2", "S1", start=datetime(2025, 3, 4, 9))
    world.events.append(
        ScheduleEventType.SESSION_CANCELLED,
        datetime(2025, 3, 3, 21),
        session_id=second.id,
        client_id="C2",
        staff_id="S1",
        reason="Sick",
        old_values={"start_time": "2025-03-04T09:00:00"},
    )
    late = _session(world, "C1", "S2", start=datetime(2025, 3, 5, 9))
    _cancel(world, late, datetime(2025, 3, 5, 10))
    _cancel(world, first, datetime(2025, 3, 2, 10), event_type=ScheduleEventType.SESSION_RESCHEDULED)

    stats = world.engine.get_cancellation_stats(START, END)

    assert stats.total_cancellations == 3
    assert stats.by_reason == {"Sick": 2, "Unknown": 1}
    assert stats.by_staff == {"S1": 2, "S2": 1}
    assert stats.by_client == {"C1": 2, "C2": 1}
    # 24h and 12h of notice; the late cancellation gave none
    assert stats.average_notice_hours == 18.0

    only_s2 = world.engine.get_cancellation_stats(START, END, staff_id="S2")
    assert only_s2.total_cancellations == 1
    assert only_s2.average_notice_hours == 0.0
