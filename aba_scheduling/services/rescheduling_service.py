# aba_scheduling/services/rescheduling_service.py
"""
Finds replacement slots for disrupted sessions and commits the one a
scheduler picks.

Per session the flow is:

    DISRUPTED -> CANDIDATES_GENERATED -> ACCEPTED -> RESCHEDULED
              \\-> EXHAUSTED -> MANUAL_REVIEW_REQUIRED

Ranking is a greedy multi-criteria sort over a bounded grid of slots,
not a solver. Nothing is persisted until `commit_reschedule` is called
with the chosen candidate.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from aba_scheduling.config import SchedulingRules
from aba_scheduling.errors import (
    ConcurrencyConflict,
    SchedulingError,
    SessionNotFoundError,
    ValidationError,
)
from aba_scheduling.models.therapy_session import SessionStatus
from aba_scheduling.services.availability_service import AvailabilityIndex
from aba_scheduling.services.calendar import (
    DAY_NAMES,
    business_days_from,
    clamp,
    day_of_week,
    hours_between,
    overlaps,
    round2,
)
from aba_scheduling.services.conflict_service import Conflict, ConflictDetector
from aba_scheduling.services.continuity_service import ContinuityScorer
from aba_scheduling.services.records import SessionRecord
from aba_scheduling.stores.protocols import RescheduleCommitter, SessionStore

logger = logging.getLogger(__name__)

# Sessions that already happened cannot move
FINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.NO_SHOW})

# Moves further than this also need the scheduling coordinator in the loop
COORDINATOR_NOTICE_HOURS = 24

# Impact analysis looks at bookings this close to the new slot
NEIGHBOURHOOD = timedelta(days=1)

# Operational complexity weights
COMPLEXITY_PER_AFFECTED = 10
COMPLEXITY_PER_CASCADING = 15
COMPLEXITY_STAFF_CHANGE = 20

# Freed-slot priority bonuses: clients who have waited longer go first
LONG_WAIT_DAYS = 7
LONG_WAIT_BONUS = 20
SHORT_WAIT_DAYS = 3
SHORT_WAIT_BONUS = 10
NEW_PAIRING_BONUS = 15
FREED_SLOT_CANDIDATES = 5


class RescheduleState(str, Enum):
    DISRUPTED = "disrupted"
    CANDIDATES_GENERATED = "candidates_generated"
    ACCEPTED = "accepted"
    RESCHEDULED = "rescheduled"
    EXHAUSTED = "exhausted"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


@dataclass(frozen=True)
class SlotChoice:
    staff_id: str
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class RescheduleOption(SlotChoice):
    rank: int = 0
    same_staff: bool = False
    continuity_score: float = 0.0
    reason: str = ""
    notifications: List[str] = field(default_factory=list)


@dataclass
class ReschedulingResult:
    session_id: int
    state: RescheduleState
    options: List[RescheduleOption]
    searched_from: date
    searched_until: date
    staff_considered: List[str]
    message: Optional[str] = None

    @property
    def requires_manual_review(self) -> bool:
        return self.state == RescheduleState.MANUAL_REVIEW_REQUIRED


@dataclass
class RescheduleOutcome:
    state: RescheduleState
    original_session_id: int
    new_session: SessionRecord
    notifications: List[str] = field(default_factory=list)


@dataclass
class UnavailabilityPlan:
    staff_id: str
    start: datetime
    end: datetime
    affected_sessions: List[SessionRecord]
    results: List[ReschedulingResult]

    @property
    def manual_review_count(self) -> int:
        return sum(1 for r in self.results if r.requires_manual_review)


@dataclass(frozen=True)
class FreedSlotCandidate:
    client_id: str
    continuity_score: float
    opportunity_score: float
    last_session_date: Optional[datetime] = None


@dataclass
class FreedSlotOpportunities:
    session_id: int
    staff_id: str
    start_time: datetime
    end_time: datetime
    candidates: List[FreedSlotCandidate]


@dataclass
class ReschedulingImpact:
    session_id: int
    new_start: datetime
    new_end: datetime
    new_staff_id: Optional[str]
    staff_changed: bool
    affected_session_ids: List[int]
    notifications: List[str]
    continuity_disruption: float
    operational_complexity: float
    conflicts: List[Conflict] = field(default_factory=list)


def required_notifications(
    session: SessionRecord,
    new_staff_id: Optional[str],
    new_start: datetime,
) -> List[str]:
    """Who must hear about moving `session` to `new_start` with `new_staff_id`."""
    recipients = ["Client/Guardian"]

    if new_staff_id and new_staff_id != session.staff_id:
        if session.staff_id:
            recipients.append(f"Original staff ({session.staff_id})")
        recipients.append(f"New staff ({new_staff_id})")
    elif session.staff_id:
        recipients.append(f"Assigned staff ({session.staff_id})")

    if abs(hours_between(session.start_time, new_start)) > COORDINATOR_NOTICE_HOURS:
        recipients.append("Scheduling Coordinator")
    return recipients


class ReschedulingOptimizer:
    def __init__(
        self,
        sessions: SessionStore,
        availability: AvailabilityIndex,
        detector: ConflictDetector,
        scorer: ContinuityScorer,
        rules: SchedulingRules,
        committer: Optional[RescheduleCommitter] = None,
    ):
        self.sessions = sessions
        self.availability = availability
        self.detector = detector
        self.scorer = scorer
        self.rules = rules
        self.committer = committer

    def _load(self, session_id: int) -> SessionRecord:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _ensure_movable(self, session: SessionRecord) -> None:
        if session.status in FINAL_STATUSES:
            raise ValidationError(
                f"Session {session.id} is {session.status.value} and cannot be rescheduled"
            )
        if self.sessions.list_replacements([session.id]):
            raise ValidationError(f"Session {session.id} has already been rescheduled")

    # -----------------------------------------------------------------
    # Candidate search
    # -----------------------------------------------------------------

    def _staff_pool(
        self,
        session: SessionRecord,
        as_of: datetime,
        exclude_staff_ids: Iterable[str],
        allow_different_staff: bool,
        candidate_staff_ids: Iterable[str],
    ) -> Dict[str, float]:
        """
        Staff to search, in search order, mapped to their continuity score
        with the client: the original staff first, then everyone who has
        served the client, then explicitly suggested staff.
        """
        excluded = set(exclude_staff_ids)

        ordered: List[str] = []
        if session.staff_id and session.staff_id not in excluded:
            ordered.append(session.staff_id)

        if allow_different_staff:
            for score in self.scorer.get_scores(session.client_id, as_of):
                if score.staff_id not in excluded:
                    ordered.append(score.staff_id)
            ordered.extend(s for s in candidate_staff_ids if s and s not in excluded)

        ordered = list(dict.fromkeys(ordered))
        ranked = self.scorer.rank_staff(session.client_id, ordered, as_of)
        scores = {s.staff_id: s.score for s in ranked}
        return {staff_id: scores.get(staff_id, 0.0) for staff_id in ordered}

    def _slot_starts(self, day: date) -> List[datetime]:
        duration = timedelta(hours=self.rules.session_duration_hours)
        step = timedelta(minutes=self.rules.slot_step_minutes)
        if step <= timedelta(0):
            raise ValidationError("slot step must be positive")

        starts: List[datetime] = []
        current = datetime.combine(day, self.rules.business_start)
        closing = datetime.combine(day, self.rules.business_end)
        while current + duration <= closing:
            starts.append(current)
            current += step
        return starts

    def find_rescheduling_options(
        self,
        session_id: int,
        *,
        as_of: Optional[datetime] = None,
        exclude_staff_ids: Iterable[str] = (),
        allow_different_staff: bool = True,
        candidate_staff_ids: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> ReschedulingResult:
        """
        Ranked, conflict-free replacement slots for a session.

        Ranking: original staff first, then continuity score (highest
        first), then soonest start. Returns a MANUAL_REVIEW_REQUIRED result
        when nothing in the horizon survives conflict checking.
        """
        as_of = as_of or datetime.now()
        session = self._load(session_id)
        self._ensure_movable(session)

        limit = self.rules.max_options if limit is None else limit
        if limit <= 0:
            raise ValidationError("limit must be positive")

        logger.info(
            "Rescheduling session=%s client=%s staff=%s state=%s",
            session.id,
            session.client_id,
            session.staff_id,
            RescheduleState.DISRUPTED.value,
        )

        pool = self._staff_pool(
            session, as_of, exclude_staff_ids, allow_different_staff, candidate_staff_ids
        )
        days = business_days_from(
            max(session.start_time.date(), as_of.date()),
            self.rules.horizon_business_days,
            self.rules.business_days,
        )
        duration = timedelta(hours=self.rules.session_duration_hours)

        candidates: List[RescheduleOption] = []
        for staff_id, continuity in pool.items():
            same_staff = staff_id == session.staff_id
            for day in days:
                for start in self._slot_starts(day):
                    if start <= as_of:
                        continue
                    if same_staff and start == session.start_time:
                        continue
                    end = start + duration
                    conflicts = self.detector.check_conflicts(
                        session.client_id,
                        staff_id,
                        start,
                        end,
                        exclude_session_id=session.id,
                    )
                    if conflicts:
                        continue
                    if self.detector.check_staff_workload(
                        staff_id, start, end, exclude_session_id=session.id
                    ):
                        continue
                    candidates.append(
                        RescheduleOption(
                            staff_id=staff_id,
                            start_time=start,
                            end_time=end,
                            same_staff=same_staff,
                            continuity_score=continuity,
                        )
                    )

        candidates.sort(
            key=lambda c: (not c.same_staff, -c.continuity_score, c.start_time, c.staff_id)
        )
        options = [
            RescheduleOption(
                staff_id=c.staff_id,
                start_time=c.start_time,
                end_time=c.end_time,
                rank=i,
                same_staff=c.same_staff,
                continuity_score=c.continuity_score,
                reason=_explain(c),
                notifications=required_notifications(session, c.staff_id, c.start_time),
            )
            for i, c in enumerate(candidates[:limit], start=1)
        ]

        searched_from = days[0] if days else as_of.date()
        searched_until = days[-1] if days else as_of.date()

        if not options:
            logger.warning(
                "No replacement slot for session=%s within %d business days (%d staff searched); "
                "state %s -> %s",
                session.id,
                self.rules.horizon_business_days,
                len(pool),
                RescheduleState.EXHAUSTED.value,
                RescheduleState.MANUAL_REVIEW_REQUIRED.value,
            )
            return ReschedulingResult(
                session_id=session.id,
                state=RescheduleState.MANUAL_REVIEW_REQUIRED,
                options=[],
                searched_from=searched_from,
                searched_until=searched_until,
                staff_considered=list(pool),
                message="No conflict-free slot within the rescheduling horizon",
            )

        logger.info(
            "Session=%s: %d candidates, %d returned",
            session.id,
            len(candidates),
            len(options),
        )
        return ReschedulingResult(
            session_id=session.id,
            state=RescheduleState.CANDIDATES_GENERATED,
            options=options,
            searched_from=searched_from,
            searched_until=searched_until,
            staff_considered=list(pool),
        )

    # -----------------------------------------------------------------
    # Commit
    # -----------------------------------------------------------------

    def commit_reschedule(
        self,
        session_id: int,
        candidate: SlotChoice,
        *,
        as_of: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> RescheduleOutcome:
        """
        Persist the chosen candidate and supersede the original session.

        The committer's transaction holds the write lock from before the
        re-check until the write, and the session is re-read under it. If
        the slot was taken or the session superseded in the meantime,
        ConcurrencyConflict (or ValidationError) is raised and nothing is
        written. Callers retry the whole options -> commit cycle once.
        """
        if self.committer is None:
            raise SchedulingError("No commit boundary configured for rescheduling")

        as_of = as_of or datetime.now()
        session = self._load(session_id)
        self._ensure_movable(session)

        if not candidate.staff_id:
            raise ValidationError("staff_id is required")
        self.detector.validate_session_window(candidate.start_time, candidate.end_time, as_of)

        workload = self.detector.check_staff_workload(
            candidate.staff_id, candidate.start_time, candidate.end_time, exclude_session_id=session.id
        )
        if workload:
            raise ValidationError("; ".join(c.description for c in workload))

        logger.info(
            "Session=%s state=%s staff=%s start=%s",
            session.id,
            RescheduleState.ACCEPTED.value,
            candidate.staff_id,
            candidate.start_time.isoformat(),
        )

        with self.committer.transaction():
            session = self._load(session_id)
            self._ensure_movable(session)

            conflicts = self.detector.check_conflicts(
                session.client_id,
                candidate.staff_id,
                candidate.start_time,
                candidate.end_time,
                exclude_session_id=session.id,
            )
            conflicts.extend(
                self.detector.check_staff_workload(
                    candidate.staff_id,
                    candidate.start_time,
                    candidate.end_time,
                    exclude_session_id=session.id,
                )
            )
            if conflicts:
                logger.warning(
                    "Commit for session=%s lost the slot: %s",
                    session.id,
                    [c.conflict_type.value for c in conflicts],
                )
                raise ConcurrencyConflict(conflicts)

            new_session = self.committer.supersede(
                session,
                staff_id=candidate.staff_id,
                start=candidate.start_time,
                end=candidate.end_time,
                reason=reason,
            )

        logger.info(
            "Session=%s state=%s replacement=%s",
            session.id,
            RescheduleState.RESCHEDULED.value,
            new_session.id,
        )
        return RescheduleOutcome(
            state=RescheduleState.RESCHEDULED,
            original_session_id=session.id,
            new_session=new_session,
            notifications=required_notifications(session, candidate.staff_id, candidate.start_time),
        )

    # -----------------------------------------------------------------
    # Staff unavailability
    # -----------------------------------------------------------------

    def find_sessions_affected_by_unavailability(
        self,
        staff_id: str,
        start: datetime,
        end: datetime,
    ) -> List[SessionRecord]:
        if not staff_id:
            raise ValidationError("staff_id is required")
        if end <= start:
            raise ValidationError("end must be after start")

        affected = [
            s
            for s in self.sessions.list_by_staff(staff_id)
            if s.staff_id == staff_id
            and s.is_active
            and s.status not in FINAL_STATUSES
            and overlaps(s.start_time, s.end_time, start, end)
        ]
        return sorted(affected, key=lambda s: (s.start_time, s.id))

    def plan_unavailability_response(
        self,
        staff_id: str,
        start: datetime,
        end: datetime,
        *,
        as_of: Optional[datetime] = None,
        candidate_staff_ids: Iterable[str] = (),
    ) -> UnavailabilityPlan:
        """Rescheduling options for every session the absent staff member would miss."""
        as_of = as_of or datetime.now()
        candidate_staff_ids = list(candidate_staff_ids)
        affected = self.find_sessions_affected_by_unavailability(staff_id, start, end)

        results = [
            self.find_rescheduling_options(
                s.id,
                as_of=as_of,
                exclude_staff_ids=[staff_id],
                allow_different_staff=True,
                candidate_staff_ids=candidate_staff_ids,
            )
            for s in affected
        ]
        plan = UnavailabilityPlan(
            staff_id=staff_id,
            start=start,
            end=end,
            affected_sessions=affected,
            results=results,
        )
        logger.info(
            "Unavailability plan staff=%s: %d sessions affected, %d need manual review",
            staff_id,
            len(affected),
            plan.manual_review_count,
        )
        return plan

    # -----------------------------------------------------------------
    # Freed slots
    # -----------------------------------------------------------------

    def find_alternative_opportunities(
        self,
        session_id: int,
        *,
        as_of: Optional[datetime] = None,
        limit: int = FREED_SLOT_CANDIDATES,
    ) -> FreedSlotOpportunities:
        """
        Other clients of the same staff member who could take the slot a
        cancelled session frees up.

        Candidates are the staff member's other clients that are free at
        that time. They are ordered by continuity score with the staff
        member plus a bonus for how long they have gone without a session
        together; a client with no completed session yet gets a flat bonus.
        """
        as_of = as_of or datetime.now()
        if limit <= 0:
            raise ValidationError("limit must be positive")

        session = self._load(session_id)
        if session.status in FINAL_STATUSES:
            raise ValidationError(f"Session {session.id} is {session.status.value}; its slot is not free")
        if not session.staff_id:
            raise ValidationError(f"Session {session.id} has no staff member to offer")
        if session.start_time < as_of:
            raise ValidationError(f"Session {session.id} has already started")

        staff_id = session.staff_id
        others = sorted(
            {s.client_id for s in self.sessions.list_by_staff(staff_id)} - {session.client_id}
        )

        candidates: List[FreedSlotCandidate] = []
        for client_id in others:
            if self.detector.check_conflicts(
                client_id,
                staff_id,
                session.start_time,
                session.end_time,
                exclude_session_id=session.id,
            ):
                continue

            score = self.scorer.rank_staff(client_id, [staff_id], as_of)[0]
            if score.last_session_date is None:
                bonus = NEW_PAIRING_BONUS
            else:
                waited = (session.start_time - score.last_session_date).days
                if waited > LONG_WAIT_DAYS:
                    bonus = LONG_WAIT_BONUS
                elif waited > SHORT_WAIT_DAYS:
                    bonus = SHORT_WAIT_BONUS
                else:
                    bonus = 0

            candidates.append(
                FreedSlotCandidate(
                    client_id=client_id,
                    continuity_score=score.score,
                    opportunity_score=round2(score.score + bonus),
                    last_session_date=score.last_session_date,
                )
            )

        candidates.sort(key=lambda c: (-c.opportunity_score, c.client_id))
        logger.info(
            "Freed slot session=%s staff=%s: %d of %d clients can take it",
            session.id,
            staff_id,
            len(candidates),
            len(others),
        )
        return FreedSlotOpportunities(
            session_id=session.id,
            staff_id=staff_id,
            start_time=session.start_time,
            end_time=session.end_time,
            candidates=candidates[:limit],
        )

    # -----------------------------------------------------------------
    # Impact
    # -----------------------------------------------------------------

    def analyze_rescheduling_impact(
        self,
        session_id: int,
        new_start: datetime,
        new_staff_id: Optional[str] = None,
        *,
        as_of: Optional[datetime] = None,
    ) -> ReschedulingImpact:
        """What else moving a session would touch, before anything is committed."""
        as_of = as_of or datetime.now()
        session = self._load(session_id)
        self._ensure_movable(session)

        new_end = new_start + (session.end_time - session.start_time)
        target_staff = new_staff_id or session.staff_id
        staff_changed = bool(new_staff_id) and new_staff_id != session.staff_id

        near_start, near_end = new_start - NEIGHBOURHOOD, new_end + NEIGHBOURHOOD
        neighbours: Dict[int, SessionRecord] = {}
        scopes = [{"client_id": session.client_id}]
        for staff_id in {session.staff_id, target_staff}:
            if staff_id:
                scopes.append({"staff_id": staff_id})
        for scope in scopes:
            for s in self.sessions.find_overlapping(near_start, near_end, exclude_id=session.id, **scope):
                if s.id != session.id and s.is_active:
                    neighbours[s.id] = s
        affected = sorted(neighbours.values(), key=lambda s: (s.start_time, s.id))

        continuity_drop = 0.0
        if staff_changed and session.staff_id:
            ranked = {
                s.staff_id: s.score
                for s in self.scorer.rank_staff(session.client_id, [session.staff_id, new_staff_id], as_of)
            }
            continuity_drop = max(0.0, ranked[session.staff_id] - ranked[new_staff_id])

        cascading = len(affected) // 2
        complexity = (
            COMPLEXITY_PER_AFFECTED * len(affected)
            + COMPLEXITY_PER_CASCADING * cascading
            + (COMPLEXITY_STAFF_CHANGE if staff_changed else 0)
        )

        conflicts = self.detector.check_conflicts(
            session.client_id, target_staff, new_start, new_end, exclude_session_id=session.id
        )
        conflicts.extend(
            self.detector.check_staff_workload(
                target_staff, new_start, new_end, exclude_session_id=session.id
            )
        )

        return ReschedulingImpact(
            session_id=session.id,
            new_start=new_start,
            new_end=new_end,
            new_staff_id=target_staff,
            staff_changed=staff_changed,
            affected_session_ids=[s.id for s in affected],
            notifications=required_notifications(session, target_staff, new_start),
            continuity_disruption=round2(continuity_drop),
            operational_complexity=round2(clamp(complexity)),
            conflicts=conflicts,
        )


def _explain(option: RescheduleOption) -> str:
    when = f"{DAY_NAMES[day_of_week(option.start_time.date())]} {option.start_time:%Y-%m-%d %H:%M}"
    if option.same_staff:
        return f"Same staff member ({option.staff_id}), {when}"
    if option.continuity_score > 0:
        return f"{option.staff_id} has continuity score {option.continuity_score:.1f} with the client, {when}"
    return f"{option.staff_id} is available, {when}"
