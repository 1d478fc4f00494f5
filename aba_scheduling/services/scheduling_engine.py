# aba_scheduling/services/scheduling_engine.py
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from aba_scheduling.config import SchedulingRules, get_settings
from aba_scheduling.db.session import get_db
from aba_scheduling.services.availability_service import AvailabilityIndex
from aba_scheduling.services.conflict_service import Conflict, ConflictDetector
from aba_scheduling.services.continuity_service import (
    ContinuityReport,
    ContinuityScore,
    ContinuityScorer,
    PairingFrequency,
    ReferenceDate,
)
from aba_scheduling.services.disruption_service import (
    AuditEntityType,
    AuditTrail,
    CancellationStats,
    ClientDisruptionProfile,
    DisruptionAnalyzer,
    FrequencyReport,
    StaffDisruptionProfile,
)
from aba_scheduling.services.rescheduling_service import (
    FREED_SLOT_CANDIDATES,
    FreedSlotOpportunities,
    ReschedulingImpact,
    ReschedulingOptimizer,
    ReschedulingResult,
    RescheduleOutcome,
    SlotChoice,
    UnavailabilityPlan,
)
from aba_scheduling.stores.protocols import (
    AvailabilityStore,
    EventLog,
    RescheduleCommitter,
    SessionStore,
)
from aba_scheduling.stores.sql import (
    SqlAvailabilityStore,
    SqlEventLog,
    SqlRescheduleCommitter,
    SqlSessionStore,
)


class SchedulingEngine:
    """
    Single entry point for the booking, reporting and real-time layers.

    Components are built once from explicit stores and rules; the engine
    holds no other state, so one instance can serve concurrent callers as
    long as its stores can.
    """

    def __init__(
        self,
        *,
        sessions: SessionStore,
        availability: AvailabilityStore,
        events: EventLog,
        rules: SchedulingRules,
        committer: Optional[RescheduleCommitter] = None,
    ):
        self.rules = rules
        self.availability = AvailabilityIndex(availability)
        self.detector = ConflictDetector(sessions, self.availability, rules)
        self.scorer = ContinuityScorer(sessions, rules)
        self.analyzer = DisruptionAnalyzer(sessions, events, rules)
        self.optimizer = ReschedulingOptimizer(
            sessions, self.availability, self.detector, self.scorer, rules, committer
        )

    # Conflicts

    def check_conflicts(
        self,
        client_id: str,
        staff_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int] = None,
    ) -> List[Conflict]:
        return self.detector.check_conflicts(client_id, staff_id, start, end, exclude_session_id)

    def check_staff_workload(
        self,
        staff_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[int] = None,
    ) -> List[Conflict]:
        return self.detector.check_staff_workload(staff_id, start, end, exclude_session_id)

    # Continuity

    def get_continuity_scores(self, client_id: str, reference_date: ReferenceDate) -> List[ContinuityScore]:
        return self.scorer.get_scores(client_id, reference_date)

    def compute_pairing_frequencies(self, client_id: str, start: datetime, end: datetime) -> List[PairingFrequency]:
        return self.scorer.compute_pairing_frequencies(client_id, start, end)

    def generate_continuity_report(self, client_id: str, start: datetime, end: datetime) -> ContinuityReport:
        return self.scorer.generate_continuity_report(client_id, start, end)

    # Disruptions

    def generate_disruption_frequency_report(self, start: datetime, end: datetime) -> FrequencyReport:
        return self.analyzer.generate_frequency_report(start, end)

    def generate_client_disruption_profile(
        self, client_id: str, start: datetime, end: datetime
    ) -> ClientDisruptionProfile:
        return self.analyzer.client_profile(client_id, start, end)

    def generate_staff_disruption_profile(
        self, staff_id: str, start: datetime, end: datetime
    ) -> StaffDisruptionProfile:
        return self.analyzer.staff_profile(staff_id, start, end)

    def get_audit_trail(
        self,
        entity_type: AuditEntityType,
        entity_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditTrail:
        return self.analyzer.get_audit_trail(entity_type, entity_id, start, end)

    def get_cancellation_stats(
        self,
        start: datetime,
        end: datetime,
        *,
        staff_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> CancellationStats:
        return self.analyzer.cancellation_stats(start, end, staff_id=staff_id, client_id=client_id)

    # Rescheduling

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
        return self.optimizer.find_rescheduling_options(
            session_id,
            as_of=as_of,
            exclude_staff_ids=exclude_staff_ids,
            allow_different_staff=allow_different_staff,
            candidate_staff_ids=candidate_staff_ids,
            limit=limit,
        )

    def commit_reschedule(
        self,
        session_id: int,
        chosen_candidate: SlotChoice,
        *,
        as_of: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> RescheduleOutcome:
        return self.optimizer.commit_reschedule(session_id, chosen_candidate, as_of=as_of, reason=reason)

    def plan_unavailability_response(
        self,
        staff_id: str,
        start: datetime,
        end: datetime,
        *,
        as_of: Optional[datetime] = None,
        candidate_staff_ids: Iterable[str] = (),
    ) -> UnavailabilityPlan:
        return self.optimizer.plan_unavailability_response(
            staff_id, start, end, as_of=as_of, candidate_staff_ids=candidate_staff_ids
        )

    def analyze_rescheduling_impact(
        self,
        session_id: int,
        new_start: datetime,
        new_staff_id: Optional[str] = None,
        *,
        as_of: Optional[datetime] = None,
    ) -> ReschedulingImpact:
        return self.optimizer.analyze_rescheduling_impact(session_id, new_start, new_staff_id, as_of=as_of)

    def find_alternative_opportunities(
        self,
        session_id: int,
        *,
        as_of: Optional[datetime] = None,
        limit: int = FREED_SLOT_CANDIDATES,
    ) -> FreedSlotOpportunities:
        return self.optimizer.find_alternative_opportunities(session_id, as_of=as_of, limit=limit)


def build_engine(
    db: Session,
    rules: Optional[SchedulingRules] = None,
    created_by: Optional[str] = None,
) -> SchedulingEngine:
    """Engine backed by the SQLAlchemy stores, all sharing one DB session."""
    if rules is None:
        rules = SchedulingRules.from_settings(get_settings())
    return SchedulingEngine(
        sessions=SqlSessionStore(db),
        availability=SqlAvailabilityStore(db),
        events=SqlEventLog(db),
        rules=rules,
        committer=SqlRescheduleCommitter(db, created_by=created_by),
    )


def get_engine(db: Session = Depends(get_db)) -> SchedulingEngine:
    """FastAPI dependency; tests override it with an engine over fakes."""
    return build_engine(db)
