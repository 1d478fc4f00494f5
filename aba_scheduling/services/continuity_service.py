# aba_scheduling/services/continuity_service.py
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from aba_scheduling.config import SchedulingRules
from aba_scheduling.errors import ValidationError
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.calendar import clamp, midpoint, round2, window_weeks
from aba_scheduling.services.records import SessionRecord
from aba_scheduling.stores.protocols import SessionStore

logger = logging.getLogger(__name__)

# Sessions that count as "held" (or about to be) with a staff member
COUNTED_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.CONFIRMED, SessionStatus.SCHEDULED}
)

# Score blend: overall share dominates, recent share and recency break ties
SHARE_WEIGHT = 0.60
RECENT_SHARE_WEIGHT = 0.25
RECENCY_WEIGHT = 0.15

# Full recency credit up to a week since the last session
RECENCY_GRACE_DAYS = 7

# Halves shorter than a week each say nothing about a trend
MIN_TREND_WINDOW_DAYS = 14

ReferenceDate = Union[date, datetime]


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass(frozen=True)
class ContinuityScore:
    staff_id: str
    client_id: str
    score: float  # 0-100, higher is better
    total_sessions: int
    recent_sessions: int
    last_session_date: Optional[datetime] = None
    share: float = 0.0  # % of the client's counted sessions held with this staff member


@dataclass(frozen=True)
class PairingFrequency:
    staff_id: str
    client_id: str
    total_sessions: int
    percentage: float
    first_session_date: Optional[datetime]
    last_session_date: Optional[datetime]
    average_sessions_per_week: float
    trend: Trend = Trend.STABLE


@dataclass(frozen=True)
class ContinuityMetrics:
    client_id: str
    total_sessions: int
    unique_staff: int
    average_continuity_score: float
    primary_staff_id: Optional[str]
    primary_staff_percentage: float
    continuity_trend: Trend


@dataclass
class ContinuityReport:
    client_id: str
    period_start: datetime
    period_end: datetime
    metrics: ContinuityMetrics
    pairing_frequencies: List[PairingFrequency] = field(default_factory=list)
    continuity_scores: List[ContinuityScore] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def as_reference_time(reference: ReferenceDate) -> datetime:
    """A bare date means "as of the end of that day"."""
    if isinstance(reference, datetime):
        return reference
    return datetime.combine(reference, time.max)


def classify_share_trend(first_share: float, second_share: float, threshold: float) -> Trend:
    diff = second_share - first_share
    if diff > threshold:
        return Trend.IMPROVING
    if diff < -threshold:
        return Trend.DECLINING
    return Trend.STABLE


class ContinuityScorer:
    """
    Measures how consistently a client is paired with the same staff.

    Everything is computed on demand from session history as of an explicit
    reference time. Results depend only on the set of sessions, never on the
    order the store returns them in.
    """

    def __init__(self, sessions: SessionStore, rules: SchedulingRules):
        self.sessions = sessions
        self.rules = rules

    def _counted_sessions(self, client_id: str) -> List[SessionRecord]:
        return [
            s
            for s in self.sessions.list_by_client(client_id)
            if s.client_id == client_id and s.staff_id and s.status in COUNTED_STATUSES
        ]

    def _recency_factor(self, last_session: datetime, reference: datetime) -> float:
        days_since = (reference - last_session).total_seconds() / 86400
        if days_since <= RECENCY_GRACE_DAYS:
            return 1.0
        zero_at = max(self.rules.recency_days * 2, RECENCY_GRACE_DAYS + 1)
        return max(0.0, 1 - (days_since - RECENCY_GRACE_DAYS) / (zero_at - RECENCY_GRACE_DAYS))

    def _score_all(self, client_id: str, reference: datetime) -> Dict[str, ContinuityScore]:
        history = [s for s in self._counted_sessions(client_id) if s.start_time <= reference]
        if not history:
            return {}

        recent_cutoff = reference - timedelta(days=self.rules.recency_days)
        recent_total = sum(1 for s in history if s.start_time >= recent_cutoff)

        by_staff: Dict[str, List[SessionRecord]] = defaultdict(list)
        for s in history:
            by_staff[s.staff_id].append(s)

        scores: Dict[str, ContinuityScore] = {}
        for staff_id, staff_sessions in by_staff.items():
            total = len(staff_sessions)
            recent = sum(1 for s in staff_sessions if s.start_time >= recent_cutoff)
            last = max(s.start_time for s in staff_sessions)

            share = total / len(history)
            recent_share = recent / recent_total if recent_total else 0.0
            blended = (
                SHARE_WEIGHT * share
                + RECENT_SHARE_WEIGHT * recent_share
                + RECENCY_WEIGHT * self._recency_factor(last, reference)
            )
            scores[staff_id] = ContinuityScore(
                staff_id=staff_id,
                client_id=client_id,
                score=round2(clamp(blended * 100)),
                total_sessions=total,
                recent_sessions=recent,
                last_session_date=last,
                share=round2(share * 100),
            )
        return scores

    def get_scores(self, client_id: str, reference_date: ReferenceDate) -> List[ContinuityScore]:
        """
        One score per staff member who has served the client up to the
        reference time, highest first. The first entry is the primary pairing.
        """
        if not client_id:
            raise ValidationError("client_id is required")
        reference = as_reference_time(reference_date)
        scores = self._score_all(client_id, reference).values()
        return sorted(scores, key=lambda s: (-s.score, s.staff_id))

    def primary_staff(self, client_id: str, reference_date: ReferenceDate) -> Optional[ContinuityScore]:
        scores = self.get_scores(client_id, reference_date)
        return scores[0] if scores else None

    def rank_staff(
        self,
        client_id: str,
        staff_ids: Iterable[str],
        reference_date: ReferenceDate,
    ) -> List[ContinuityScore]:
        """
        Rank candidate staff for a client, e.g. to auto-assign a session
        whose staff_id is still empty. Staff who never served the client
        score 0.
        """
        reference = as_reference_time(reference_date)
        known = self._score_all(client_id, reference)
        ranked = [
            known.get(staff_id)
            or ContinuityScore(
                staff_id=staff_id,
                client_id=client_id,
                score=0.0,
                total_sessions=0,
                recent_sessions=0,
            )
            for staff_id in dict.fromkeys(staff_ids)
        ]
        return sorted(ranked, key=lambda s: (-s.score, s.staff_id))

    def compute_pairing_frequencies(
        self,
        client_id: str,
        start: datetime,
        end: datetime,
    ) -> List[PairingFrequency]:
        """
        Share of the client's sessions in [start, end] held with each staff
        member. Percentages add up to 100 (up to rounding).
        """
        if not client_id:
            raise ValidationError("client_id is required")
        if end <= start:
            raise ValidationError("end must be after start")

        window = [s for s in self._counted_sessions(client_id) if start <= s.start_time <= end]
        if not window:
            return []

        weeks = window_weeks(start, end)
        trends = self._share_trends(window, start, end)

        by_staff: Dict[str, List[SessionRecord]] = defaultdict(list)
        for s in window:
            by_staff[s.staff_id].append(s)

        frequencies = [
            PairingFrequency(
                staff_id=staff_id,
                client_id=client_id,
                total_sessions=len(staff_sessions),
                percentage=round2(len(staff_sessions) / len(window) * 100),
                first_session_date=min(s.start_time for s in staff_sessions),
                last_session_date=max(s.start_time for s in staff_sessions),
                average_sessions_per_week=round2(len(staff_sessions) / weeks),
                trend=trends.get(staff_id, Trend.STABLE),
            )
            for staff_id, staff_sessions in by_staff.items()
        ]
        return sorted(frequencies, key=lambda f: (-f.total_sessions, f.staff_id))

    def _share_trends(
        self,
        window: List[SessionRecord],
        start: datetime,
        end: datetime,
    ) -> Dict[str, Trend]:
        """
        Compare each staff member's share of sessions in the later half of
        the window against the earlier half.
        """
        if (end - start) < timedelta(days=MIN_TREND_WINDOW_DAYS):
            return {}

        mid = midpoint(start, end)
        first = [s for s in window if s.start_time < mid]
        second = [s for s in window if s.start_time >= mid]
        if not first or not second:
            return {}

        trends: Dict[str, Trend] = {}
        for staff_id in {s.staff_id for s in window}:
            first_share = sum(1 for s in first if s.staff_id == staff_id) / len(first) * 100
            second_share = sum(1 for s in second if s.staff_id == staff_id) / len(second) * 100
            trends[staff_id] = classify_share_trend(
                first_share, second_share, self.rules.continuity_trend_threshold
            )
        return trends

    def generate_continuity_metrics(
        self,
        client_id: str,
        start: datetime,
        end: datetime,
    ) -> ContinuityMetrics:
        frequencies = self.compute_pairing_frequencies(client_id, start, end)
        scores = self.get_scores(client_id, end)
        return self._metrics(client_id, frequencies, scores)

    def _metrics(
        self,
        client_id: str,
        frequencies: List[PairingFrequency],
        scores: List[ContinuityScore],
    ) -> ContinuityMetrics:
        average = sum(s.score for s in scores) / len(scores) if scores else 0.0
        primary = scores[0] if scores else None
        primary_freq = next(
            (f for f in frequencies if primary and f.staff_id == primary.staff_id), None
        )
        return ContinuityMetrics(
            client_id=client_id,
            total_sessions=sum(f.total_sessions for f in frequencies),
            unique_staff=len(frequencies),
            average_continuity_score=round2(average),
            primary_staff_id=primary.staff_id if primary else None,
            primary_staff_percentage=primary_freq.percentage if primary_freq else 0.0,
            continuity_trend=primary_freq.trend if primary_freq else Trend.STABLE,
        )

    def generate_continuity_report(
        self,
        client_id: str,
        start: datetime,
        end: datetime,
    ) -> ContinuityReport:
        frequencies = self.compute_pairing_frequencies(client_id, start, end)
        scores = self.get_scores(client_id, end)
        metrics = self._metrics(client_id, frequencies, scores)

        logger.info(
            "Continuity report client=%s sessions=%d staff=%d primary=%s",
            client_id,
            metrics.total_sessions,
            metrics.unique_staff,
            metrics.primary_staff_id,
        )

        return ContinuityReport(
            client_id=client_id,
            period_start=start,
            period_end=end,
            metrics=metrics,
            pairing_frequencies=frequencies,
            continuity_scores=scores,
            recommendations=continuity_recommendations(metrics, frequencies),
        )


def continuity_recommendations(
    metrics: ContinuityMetrics,
    frequencies: List[PairingFrequency],
) -> List[str]:
    if metrics.total_sessions == 0:
        return []

    recommendations: List[str] = []
    if metrics.primary_staff_percentage < 60:
        recommendations.append(
            "Consider increasing sessions with the primary staff member to improve continuity of care"
        )
    if metrics.unique_staff > 4:
        recommendations.append(
            "Consider reducing the number of different staff working with this client"
        )
    if metrics.continuity_trend == Trend.DECLINING:
        recommendations.append(
            "Continuity is declining. Review recent scheduling changes"
        )
    if metrics.average_continuity_score < 50:
        recommendations.append(
            "Low continuity scores detected. Prioritize consistent staff assignments"
        )
    if sum(1 for f in frequencies if f.percentage < 10) > 2:
        recommendations.append(
            "Several staff members hold only a few sessions. Consider consolidating care"
        )
    return recommendations
