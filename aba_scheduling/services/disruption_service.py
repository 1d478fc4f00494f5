# aba_scheduling/services/disruption_service.py
"""
Disruption analytics over the append-only schedule event log.

Every report is a pure function of (window, event log, session history):
nothing here writes, and running a report twice over the same data gives
the same answer.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from aba_scheduling.config import SchedulingRules
from aba_scheduling.errors import ValidationError
from aba_scheduling.models.schedule_event import ScheduleEventType
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.calendar import (
    DAY_NAMES,
    clamp,
    day_of_week,
    hours_between,
    midpoint,
    round2,
    window_weeks,
)
from aba_scheduling.services.records import (
    DISRUPTION_EVENT_TYPES,
    DisruptionEvent,
    DisruptionType,
    SessionRecord,
)
from aba_scheduling.stores.protocols import EventLog, SessionStore

logger = logging.getLogger(__name__)

UNKNOWN_REASON = "Unknown"

# Halves shorter than a week each say nothing about a trend
MIN_TREND_WINDOW_DAYS = 14

# Client impact blend: how often sessions break vs. how long rebooking takes
IMPACT_RATE_WEIGHT = 0.6
IMPACT_DELAY_WEIGHT = 0.4
# A week-long wait to rebook counts as maximal delay
IMPACT_MAX_DELAY_HOURS = 168.0

# Reliability penalty per percentage point of disruption rate
CAUSED_PENALTY = 1.0
AFFECTED_PENALTY = 0.5

# Replacement chains longer than this are not followed
MAX_RESCHEDULE_CHAIN = 20


class DisruptionTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class AuditEntityType(str, Enum):
    SESSION = "session"
    CLIENT = "client"
    STAFF = "staff"


@dataclass(frozen=True)
class DisruptionMetrics:
    total_disruptions: int
    disruptions_by_type: Dict[str, int]
    disruption_rate: float  # % of sessions in the window
    average_disruptions_per_week: float
    most_common_reason: Optional[str]
    trend: DisruptionTrend


@dataclass(frozen=True)
class ImpactAnalysis:
    affected_sessions: int
    affected_clients: int
    affected_staff: int
    reschedule_success_rate: float
    average_reschedule_time: float  # hours
    client_impact_score: float  # 0-100, higher is worse


@dataclass(frozen=True)
class ReasonCount:
    reason: str
    count: int
    percentage: float


@dataclass(frozen=True)
class HourCount:
    hour: int
    count: int


@dataclass(frozen=True)
class DayCount:
    day_of_week: int  # 0=Sunday
    day_name: str
    count: int


@dataclass
class FrequencyReport:
    period_start: datetime
    period_end: datetime
    total_sessions: int
    metrics: DisruptionMetrics
    impact: ImpactAnalysis
    top_reasons: List[ReasonCount] = field(default_factory=list)
    by_hour: List[HourCount] = field(default_factory=list)
    by_day_of_week: List[DayCount] = field(default_factory=list)


@dataclass
class ClientDisruptionProfile:
    client_id: str
    total_sessions: int
    disrupted_sessions: int
    disruption_rate: float
    most_common_disruption_type: Optional[DisruptionType]
    average_reschedule_time: float
    continuity_impact: float  # 0-100, higher is worse
    recommendations: List[str] = field(default_factory=list)


@dataclass
class StaffDisruptionProfile:
    staff_id: str
    total_sessions: int
    disrupted_sessions: int
    caused_disruptions: int
    affected_by_disruptions: int
    sessions_lost_to_unavailability: int
    disruption_rate: float
    reliability: float  # 0-100, higher is better
    most_common_disruption_type: Optional[DisruptionType]
    average_reschedule_time: float
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AuditEntry:
    event_id: Optional[int]
    event_type: ScheduleEventType
    timestamp: datetime
    description: str
    session_id: Optional[int]
    client_id: Optional[str]
    staff_id: Optional[str]
    created_by: Optional[str]


@dataclass
class AuditTrail:
    entity_type: AuditEntityType
    entity_id: str
    events: List[AuditEntry]
    total_events: int
    start: Optional[datetime]
    end: Optional[datetime]


@dataclass
class CancellationStats:
    period_start: datetime
    period_end: datetime
    total_cancellations: int
    by_reason: Dict[str, int]
    by_staff: Dict[str, int]
    by_client: Dict[str, int]
    average_notice_hours: float  # cancellation to planned start


def _validate_range(start: datetime, end: datetime) -> None:
    if start is None or end is None:
        raise ValidationError("start and end are required")
    if end <= start:
        raise ValidationError("end must be after start")


def _reason(event: DisruptionEvent) -> str:
    return (event.reason or "").strip() or UNKNOWN_REASON


def _most_common_type(events: Iterable[DisruptionEvent]) -> Optional[DisruptionType]:
    counts = Counter(e.disruption_type for e in events if e.disruption_type is not None)
    if not counts:
        return None
    order = list(DisruptionType)
    return max(counts, key=lambda t: (counts[t], -order.index(t)))


def _rate(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


class DisruptionAnalyzer:
    def __init__(self, sessions: SessionStore, events: EventLog, rules: SchedulingRules):
        self.sessions = sessions
        self.events = events
        self.rules = rules

    # -----------------------------------------------------------------
    # Event access
    # -----------------------------------------------------------------

    def _disruptions(
        self,
        start: datetime,
        end: datetime,
        **scope,
    ) -> List[DisruptionEvent]:
        found = self.events.list_events(start, end, event_types=DISRUPTION_EVENT_TYPES, **scope)
        events = [e for e in found if e.is_disruption and start <= e.timestamp <= end]
        # Sorting makes every downstream tie-break independent of store order.
        return sorted(events, key=lambda e: (e.timestamp, e.id or 0, e.event_type.value))

    # -----------------------------------------------------------------
    # Frequency report
    # -----------------------------------------------------------------

    def generate_frequency_report(self, start: datetime, end: datetime) -> FrequencyReport:
        _validate_range(start, end)

        disruptions = self._disruptions(start, end)
        sessions = [s for s in self.sessions.list_by_date_range(start, end) if start <= s.start_time <= end]

        metrics = self._metrics(disruptions, len(sessions), start, end)
        top_reasons = self._top_reasons(disruptions)
        impact = self._impact(disruptions, metrics.disruption_rate)

        logger.info(
            "Disruption report %s..%s: %d disruptions over %d sessions (rate=%.2f%%)",
            start.isoformat(),
            end.isoformat(),
            metrics.total_disruptions,
            len(sessions),
            metrics.disruption_rate,
        )

        return FrequencyReport(
            period_start=start,
            period_end=end,
            total_sessions=len(sessions),
            metrics=metrics,
            impact=impact,
            top_reasons=top_reasons,
            by_hour=self._by_hour(disruptions),
            by_day_of_week=self._by_day_of_week(disruptions),
        )

    def _metrics(
        self,
        disruptions: List[DisruptionEvent],
        total_sessions: int,
        start: datetime,
        end: datetime,
    ) -> DisruptionMetrics:
        by_type = {t.value: 0 for t in DisruptionType}
        for e in disruptions:
            by_type[e.disruption_type.value] += 1

        reasons = self._top_reasons(disruptions)

        return DisruptionMetrics(
            total_disruptions=len(disruptions),
            disruptions_by_type=by_type,
            disruption_rate=round2(_rate(len(disruptions), total_sessions)),
            average_disruptions_per_week=round2(len(disruptions) / window_weeks(start, end)),
            most_common_reason=reasons[0].reason if reasons else None,
            trend=self._trend(disruptions, start, end),
        )

    def _trend(
        self,
        disruptions: List[DisruptionEvent],
        start: datetime,
        end: datetime,
    ) -> DisruptionTrend:
        if (end - start) < timedelta(days=MIN_TREND_WINDOW_DAYS):
            return DisruptionTrend.STABLE

        mid = midpoint(start, end)
        first = sum(1 for e in disruptions if e.timestamp < mid)
        second = len(disruptions) - first

        if first == 0:
            return DisruptionTrend.INCREASING if second > 0 else DisruptionTrend.STABLE

        change = (second - first) / first * 100
        if change > self.rules.disruption_trend_threshold:
            return DisruptionTrend.INCREASING
        if change < -self.rules.disruption_trend_threshold:
            return DisruptionTrend.DECREASING
        return DisruptionTrend.STABLE

    def _top_reasons(self, disruptions: List[DisruptionEvent]) -> List[ReasonCount]:
        counts = Counter(_reason(e) for e in disruptions)
        total = sum(counts.values())
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [
            ReasonCount(reason=reason, count=count, percentage=round2(_rate(count, total)))
            for reason, count in ranked[: self.rules.top_reasons_limit]
        ]

    def _by_hour(self, disruptions: List[DisruptionEvent]) -> List[HourCount]:
        counts = Counter(e.timestamp.hour for e in disruptions)
        return [HourCount(hour=h, count=counts.get(h, 0)) for h in range(24)]

    def _by_day_of_week(self, disruptions: List[DisruptionEvent]) -> List[DayCount]:
        counts = Counter(day_of_week(e.timestamp.date()) for e in disruptions)
        return [
            DayCount(day_of_week=d, day_name=DAY_NAMES[d], count=counts.get(d, 0))
            for d in range(7)
        ]

    def _impact(self, disruptions: List[DisruptionEvent], disruption_rate: float) -> ImpactAnalysis:
        success_rate, average_delay = self._reschedule_outcomes(disruptions)

        rate_component = clamp(disruption_rate * 2)
        delay_component = clamp(average_delay / IMPACT_MAX_DELAY_HOURS * 100)
        impact_score = clamp(
            IMPACT_RATE_WEIGHT * rate_component + IMPACT_DELAY_WEIGHT * delay_component
        )

        return ImpactAnalysis(
            affected_sessions=len({e.session_id for e in disruptions if e.session_id is not None}),
            affected_clients=len({e.client_id for e in disruptions if e.client_id}),
            affected_staff=len({e.staff_id for e in disruptions if e.staff_id}),
            reschedule_success_rate=round2(success_rate),
            average_reschedule_time=round2(average_delay),
            client_impact_score=round2(impact_score),
        )

    # -----------------------------------------------------------------
    # Rescheduling outcomes
    # -----------------------------------------------------------------

    def _replacement_map(self, session_ids: Iterable[int]) -> Dict[int, SessionRecord]:
        """
        Map each session id to the earliest session created to replace it,
        following replacement chains transitively.
        """
        mapping: Dict[int, SessionRecord] = {}
        frontier: Set[int] = set(session_ids)
        seen: Set[int] = set(frontier)

        for _ in range(MAX_RESCHEDULE_CHAIN):
            if not frontier:
                break
            replacements = sorted(
                (r for r in self.sessions.list_replacements(sorted(frontier)) if r.rescheduled_from_id in frontier),
                key=lambda r: (r.created_at or datetime.min, r.id),
            )
            frontier = set()
            for r in replacements:
                if r.rescheduled_from_id not in mapping:
                    mapping[r.rescheduled_from_id] = r
                if r.id not in seen:
                    seen.add(r.id)
                    frontier.add(r.id)
        return mapping

    def _reschedule_outcomes(self, disruptions: List[DisruptionEvent]) -> Tuple[float, float]:
        """
        (success rate %, average hours to rebook) for the disrupted sessions.

        Success means the final session of the replacement chain was
        completed. Delay is measured from the first disruption of a session
        to the creation of its direct replacement.
        """
        first_disrupted_at: Dict[int, datetime] = {}
        for e in disruptions:
            if e.session_id is not None and e.session_id not in first_disrupted_at:
                first_disrupted_at[e.session_id] = e.timestamp

        if not first_disrupted_at:
            return 0.0, 0.0

        replacements = self._replacement_map(first_disrupted_at)

        succeeded = 0
        delays: List[float] = []
        for session_id, disrupted_at in first_disrupted_at.items():
            direct = replacements.get(session_id)
            if direct is None:
                continue

            final = direct
            for _ in range(MAX_RESCHEDULE_CHAIN):
                following = replacements.get(final.id)
                if following is None:
                    break
                final = following
            if final.status == SessionStatus.COMPLETED:
                succeeded += 1

            if direct.created_at is not None:
                delay = hours_between(disrupted_at, direct.created_at)
                if delay >= 0:
                    delays.append(delay)

        success_rate = _rate(succeeded, len(first_disrupted_at))
        average_delay = sum(delays) / len(delays) if delays else 0.0
        return success_rate, average_delay

    # -----------------------------------------------------------------
    # Per-entity profiles
    # -----------------------------------------------------------------

    def client_profile(self, client_id: str, start: datetime, end: datetime) -> ClientDisruptionProfile:
        if not client_id:
            raise ValidationError("client_id is required")
        _validate_range(start, end)

        sessions = [
            s
            for s in self.sessions.list_by_client(client_id)
            if s.client_id == client_id and start <= s.start_time <= end
        ]
        disruptions = [e for e in self._disruptions(start, end, client_id=client_id) if e.client_id == client_id]
        disrupted = {e.session_id for e in disruptions if e.session_id is not None}

        disruption_rate = clamp(_rate(len(disrupted), len(sessions)))
        most_common = _most_common_type(disruptions)
        _, average_delay = self._reschedule_outcomes(disruptions)
        primary_staff, continuity_impact = _primary_share_loss(sessions)

        recommendations = client_recommendations(
            disruption_rate=disruption_rate,
            most_common=most_common,
            total_disruptions=len(disruptions),
            continuity_impact=continuity_impact,
            primary_staff_id=primary_staff,
        )

        return ClientDisruptionProfile(
            client_id=client_id,
            total_sessions=len(sessions),
            disrupted_sessions=len(disrupted),
            disruption_rate=round2(disruption_rate),
            most_common_disruption_type=most_common,
            average_reschedule_time=round2(average_delay),
            continuity_impact=round2(continuity_impact),
            recommendations=recommendations,
        )

    def staff_profile(self, staff_id: str, start: datetime, end: datetime) -> StaffDisruptionProfile:
        if not staff_id:
            raise ValidationError("staff_id is required")
        _validate_range(start, end)

        sessions = [
            s
            for s in self.sessions.list_by_staff(staff_id)
            if s.staff_id == staff_id and start <= s.start_time <= end
        ]
        disruptions = [e for e in self._disruptions(start, end, staff_id=staff_id) if e.staff_id == staff_id]

        caused = [e for e in disruptions if e.disruption_type == DisruptionType.STAFF_UNAVAILABLE]
        affected = [e for e in disruptions if e.disruption_type != DisruptionType.STAFF_UNAVAILABLE]
        lost_to_unavailability = {e.session_id for e in caused if e.session_id is not None}
        disrupted = {e.session_id for e in disruptions if e.session_id is not None}

        total = len(sessions)
        caused_rate = _rate(len(caused), total)
        affected_rate = _rate(len(affected), total)
        disruption_rate = _rate(len(disruptions), total)
        reliability = clamp(100 - (CAUSED_PENALTY * caused_rate + AFFECTED_PENALTY * affected_rate))

        _, average_delay = self._reschedule_outcomes(disruptions)

        recommendations = staff_recommendations(
            disruption_rate=disruption_rate,
            caused_disruptions=len(caused),
            sessions_lost=len(lost_to_unavailability),
            reliability=reliability,
        )

        return StaffDisruptionProfile(
            staff_id=staff_id,
            total_sessions=total,
            disrupted_sessions=len(disrupted),
            caused_disruptions=len(caused),
            affected_by_disruptions=len(affected),
            sessions_lost_to_unavailability=len(lost_to_unavailability),
            disruption_rate=round2(disruption_rate),
            reliability=round2(reliability),
            most_common_disruption_type=_most_common_type(disruptions),
            average_reschedule_time=round2(average_delay),
            recommendations=recommendations,
        )

    # -----------------------------------------------------------------
    # Cancellations
    # -----------------------------------------------------------------

    def _planned_start(self, event: DisruptionEvent) -> Optional[datetime]:
        raw = event.old_values.get("start_time")
        if raw:
            try:
                return datetime.fromisoformat(raw)
            except (TypeError, ValueError):
                logger.warning("Event %s has unreadable start_time %r", event.id, raw)
        if event.session_id is not None:
            session = self.sessions.get(event.session_id)
            if session is not None:
                return session.start_time
        return None

    def cancellation_stats(
        self,
        start: datetime,
        end: datetime,
        *,
        staff_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> CancellationStats:
        """
        Cancellation counts by reason, staff and client, plus the average
        notice given. Cancellations logged after the planned start carry
        no notice and are left out of the average.
        """
        _validate_range(start, end)

        events = [
            e
            for e in self.events.list_events(
                start,
                end,
                event_types=[ScheduleEventType.SESSION_CANCELLED],
                staff_id=staff_id,
                client_id=client_id,
            )
            if e.event_type == ScheduleEventType.SESSION_CANCELLED and start <= e.timestamp <= end
        ]

        notices: List[float] = []
        for e in events:
            planned = self._planned_start(e)
            if planned is None:
                continue
            notice = hours_between(e.timestamp, planned)
            if notice >= 0:
                notices.append(notice)

        return CancellationStats(
            period_start=start,
            period_end=end,
            total_cancellations=len(events),
            by_reason=dict(Counter(_reason(e) for e in events).most_common()),
            by_staff=dict(Counter(e.staff_id for e in events if e.staff_id).most_common()),
            by_client=dict(Counter(e.client_id for e in events if e.client_id).most_common()),
            average_notice_hours=round2(sum(notices) / len(notices)) if notices else 0.0,
        )

    # -----------------------------------------------------------------
    # Audit trail
    # -----------------------------------------------------------------

    def get_audit_trail(
        self,
        entity_type: AuditEntityType,
        entity_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditTrail:
        """Every schedule change touching one session, client or staff member, newest first."""
        if not entity_id:
            raise ValidationError("entity_id is required")
        if start is not None and end is not None and end <= start:
            raise ValidationError("end must be after start")

        entity_type = AuditEntityType(entity_type)
        if entity_type == AuditEntityType.SESSION:
            try:
                scope = {"session_id": int(entity_id)}
            except ValueError as e:
                raise ValidationError(f"Invalid session id {entity_id!r}") from e
        elif entity_type == AuditEntityType.CLIENT:
            scope = {"client_id": entity_id}
        else:
            scope = {"staff_id": entity_id}

        events = sorted(
            self.events.list_events(start, end, **scope),
            key=lambda e: (e.timestamp, e.id or 0),
            reverse=True,
        )
        entries = [
            AuditEntry(
                event_id=e.id,
                event_type=e.event_type,
                timestamp=e.timestamp,
                description=describe_event(e),
                session_id=e.session_id,
                client_id=e.client_id,
                staff_id=e.staff_id,
                created_by=e.created_by,
            )
            for e in events
        ]

        return AuditTrail(
            entity_type=entity_type,
            entity_id=entity_id,
            events=entries,
            total_events=len(entries),
            start=start if start is not None else (events[-1].timestamp if events else None),
            end=end if end is not None else (events[0].timestamp if events else None),
        )


def _primary_share_loss(sessions: List[SessionRecord]) -> Tuple[Optional[str], float]:
    """
    How much of the originally planned schedule with the client's primary
    staff member was lost to disruptions, in percent of planned sessions.

    Planned sessions are the original bookings (not replacements); the
    primary staff member is the one holding most of them. Delivered
    sessions are those with the primary that were not cancelled or missed,
    replacements included.
    """
    planned = [s for s in sessions if s.rescheduled_from_id is None and s.staff_id]
    if not planned:
        return None, 0.0

    counts = Counter(s.staff_id for s in planned)
    primary = min(counts, key=lambda staff_id: (-counts[staff_id], staff_id))

    delivered = sum(
        1
        for s in sessions
        if s.staff_id == primary
        and s.status not in (SessionStatus.CANCELLED, SessionStatus.NO_SHOW)
    )
    loss = (counts[primary] - delivered) / len(planned) * 100
    return primary, clamp(loss)


def describe_event(event: DisruptionEvent) -> str:
    if event.event_type == ScheduleEventType.SESSION_CREATED:
        text = f"Session {event.session_id} created"
    elif event.event_type == ScheduleEventType.SESSION_CANCELLED:
        text = f"Session {event.session_id} cancelled"
    elif event.event_type == ScheduleEventType.SESSION_RESCHEDULED:
        new_start = event.new_values.get("start_time")
        text = f"Session {event.session_id} rescheduled"
        if new_start:
            text += f" to {new_start}"
    else:
        text = f"Staff member {event.staff_id} reported unavailable"
        if event.session_id is not None:
            text += f" for session {event.session_id}"

    if event.reason:
        text += f": {event.reason}"
    return text


def client_recommendations(
    *,
    disruption_rate: float,
    most_common: Optional[DisruptionType],
    total_disruptions: int,
    continuity_impact: float,
    primary_staff_id: Optional[str],
) -> List[str]:
    recommendations: List[str] = []

    if disruption_rate > 20:
        recommendations.append(
            "High disruption rate detected. Review scheduling preferences and staff assignments."
        )
    if most_common == DisruptionType.SESSION_CANCELLED:
        recommendations.append(
            "Frequent cancellations detected. Review client availability patterns and communication preferences."
        )
    elif most_common == DisruptionType.SESSION_RESCHEDULED:
        recommendations.append(
            "Frequent rescheduling detected. Consider more flexible slots or backup staff assignments."
        )
    elif most_common == DisruptionType.STAFF_UNAVAILABLE:
        recommendations.append(
            "Sessions are mostly disrupted by staff unavailability. Assign a backup staff member."
        )
    if total_disruptions > 10:
        recommendations.append(
            "Multiple disruptions detected. Consider proactive scheduling strategies."
        )
    if continuity_impact > 25 and primary_staff_id:
        recommendations.append(
            f"Disruptions are eroding continuity with {primary_staff_id}. Prioritize rebooking with them."
        )
    return recommendations


def staff_recommendations(
    *,
    disruption_rate: float,
    caused_disruptions: int,
    sessions_lost: int,
    reliability: float,
) -> List[str]:
    recommendations: List[str] = []

    if disruption_rate > 15:
        recommendations.append(
            "High disruption rate detected. Review availability patterns and scheduling practices."
        )
    if sessions_lost > 5:
        recommendations.append(
            "Many sessions lost to unavailability. Improve advance notice procedures."
        )
    if caused_disruptions > 3:
        recommendations.append(
            "Multiple disruptions caused. Review workload and consider additional support."
        )
    if reliability < 70:
        recommendations.append(
            "Low reliability score. Avoid assigning this staff member as sole provider for new clients."
        )
    return recommendations
