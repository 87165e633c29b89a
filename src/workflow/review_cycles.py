"""HR Workflow & Approval Orchestration - Review Cycles.

A review cycle moves a whole cohort through shared phases:

    DRAFT -> SELF_ASSESSMENT -> MANAGER_REVIEW -> CALIBRATION
          -> FEEDBACK_DELIVERY -> COMPLETED -> ARCHIVED

Phases only move forward through the explicit start operations; nothing
advances automatically. Per-employee progress lives in ReviewParticipant
records and every progress figure is counted from them on demand.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .config import (
    DEFAULT_WORKFLOW_CONFIG,
    PHASE_ORDER,
    ApproverType,
    DeadlineType,
    NotificationType,
    ReviewPhase,
    WorkflowConfig,
    WorkflowStatus,
    WorkflowType,
)
from .deadlines import DeadlineMonitor, end_of_day
from .exceptions import (
    InvalidTransitionError,
    NotFoundError,
    OverlappingCycleError,
    PhasePreconditionError,
    ValidationError,
)
from .identity import Directory
from .models import CycleProgress, Page, ReviewCycle, ReviewParticipant
from .notifications import NotificationDispatcher
from .query import (
    RecordQuery,
    cycle_active,
    cycle_covers_department,
    cycle_current_on,
    cycle_deadline_within,
    cycle_named,
    cycle_overlaps,
    cycle_phase_is,
    participant_of,
)
from .state_machine import WorkflowStateManager
from .store import WorkflowStore

logger = logging.getLogger(__name__)

PHASE_DEADLINE_TYPES: Dict[ReviewPhase, DeadlineType] = {
    ReviewPhase.SELF_ASSESSMENT: DeadlineType.SELF_ASSESSMENT,
    ReviewPhase.MANAGER_REVIEW: DeadlineType.MANAGER_REVIEW,
    ReviewPhase.CALIBRATION: DeadlineType.CALIBRATION,
    ReviewPhase.FEEDBACK_DELIVERY: DeadlineType.FEEDBACK_DELIVERY,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewCycleManager:
    """Creates review cycles and walks them through their phases."""

    def __init__(
        self,
        store: WorkflowStore,
        state_manager: WorkflowStateManager,
        deadlines: DeadlineMonitor,
        dispatcher: NotificationDispatcher,
        directory: Directory,
        config: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.state_manager = state_manager
        self.deadlines = deadlines
        self.dispatcher = dispatcher
        self.directory = directory
        self.config = config
        self.clock = clock

    # ── Creation ─────────────────────────────────────────────────────

    def initiate_cycle(
        self,
        name: str,
        review_period_start: date,
        review_period_end: date,
        start_date: date,
        end_date: date,
        self_assessment_deadline: Optional[date] = None,
        manager_review_deadline: Optional[date] = None,
        calibration_deadline: Optional[date] = None,
        feedback_deadline: Optional[date] = None,
        department_ids: Optional[List[str]] = None,
        description: str = "",
        created_by: Optional[str] = None,
    ) -> ReviewCycle:
        """Create a DRAFT cycle and enroll the employees of its departments."""
        cycle = ReviewCycle(
            name=name.strip(),
            description=description,
            review_period_start=review_period_start,
            review_period_end=review_period_end,
            start_date=start_date,
            end_date=end_date,
            self_assessment_deadline=self_assessment_deadline,
            manager_review_deadline=manager_review_deadline,
            calibration_deadline=calibration_deadline,
            feedback_deadline=feedback_deadline,
            department_ids=list(department_ids or []),
            created_by=created_by,
        )
        self.validate_dates(cycle)

        with self.dispatcher.batch(), self.store.transaction():
            if RecordQuery.over(self.store, ReviewCycle).where(cycle_named(cycle.name)).count():
                raise ValidationError(f"A review cycle named '{cycle.name}' already exists", field="name")
            overlapping = RecordQuery.over(self.store, ReviewCycle).where(cycle_overlaps(start_date, end_date)).execute()
            if overlapping:
                raise OverlappingCycleError(
                    f"Review cycle dates {start_date.isoformat()}..{end_date.isoformat()} "
                    f"overlap active cycle '{overlapping[0].name}'",
                    conflicting_ids=[c.id for c in overlapping],
                )

            cycle = self.store.insert(cycle)
            workflow = self.state_manager.create(
                WorkflowType.PERFORMANCE_REVIEW_CYCLE,
                cycle.id,
                "ReviewCycle",
                initiator_id=created_by,
                due_date=end_of_day(end_date),
                context={"name": cycle.name},
            )
            cycle.workflow_instance_id = workflow.id
            cycle = self.store.update(cycle, cycle.version)

            for employee_id in self.directory.employees_in_departments(cycle.department_ids):
                self._enroll(cycle, employee_id)

        logger.info("Initiated review cycle %s '%s' (%s..%s)", cycle.id, cycle.name, start_date, end_date)
        return cycle

    @staticmethod
    def validate_dates(cycle: ReviewCycle) -> None:
        """Check date ordering; raises ValidationError listing every problem."""
        problems = []
        if cycle.review_period_end < cycle.review_period_start:
            problems.append({"field": "review_period_end", "issue": "must not be before review_period_start"})
        if cycle.end_date < cycle.start_date:
            problems.append({"field": "end_date", "issue": "must not be before start_date"})

        ordered = [
            ("self_assessment_deadline", cycle.self_assessment_deadline),
            ("manager_review_deadline", cycle.manager_review_deadline),
            ("calibration_deadline", cycle.calibration_deadline),
            ("feedback_deadline", cycle.feedback_deadline),
        ]
        for field_name, value in ordered:
            if value is not None and not (cycle.start_date <= value <= cycle.end_date):
                problems.append({"field": field_name, "issue": "must fall within the cycle dates"})
        present = [(n, v) for n, v in ordered if v is not None]
        for (earlier_name, earlier), (later_name, later) in zip(present, present[1:]):
            if later < earlier:
                problems.append({"field": later_name, "issue": f"must not be before {earlier_name}"})

        if problems:
            raise ValidationError("Invalid review cycle dates", details=problems)

    def add_participant(self, cycle_id: str, employee_id: str) -> ReviewParticipant:
        """Enroll a late joiner while the cycle has not reached manager review."""
        with self.store.transaction():
            cycle = self.get(cycle_id)
            if PHASE_ORDER.index(cycle.phase) > PHASE_ORDER.index(ReviewPhase.SELF_ASSESSMENT):
                raise InvalidTransitionError(
                    f"Cannot enroll participants during {cycle.phase.name}",
                    entity_id=cycle_id,
                    current_state=cycle.phase.name,
                )
            existing = self.store.find_by_key(ReviewParticipant, (cycle_id, employee_id))
            if existing is not None:
                return existing
            return self._enroll(cycle, employee_id)

    def _enroll(self, cycle: ReviewCycle, employee_id: str) -> ReviewParticipant:
        return self.store.insert(ReviewParticipant(
            cycle_id=cycle.id,
            employee_id=employee_id,
            manager_id=self.directory.manager_of(employee_id),
            department_id=self.directory.department_of(employee_id),
        ))

    # ── Phase transitions ────────────────────────────────────────────

    def start_self_assessment_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        return self._advance(cycle_id, ReviewPhase.SELF_ASSESSMENT, actor)

    def start_manager_review_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        return self._advance(cycle_id, ReviewPhase.MANAGER_REVIEW, actor)

    def start_calibration_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        return self._advance(cycle_id, ReviewPhase.CALIBRATION, actor)

    def start_feedback_delivery_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        return self._advance(cycle_id, ReviewPhase.FEEDBACK_DELIVERY, actor)

    def close_cycle(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        return self._advance(cycle_id, ReviewPhase.COMPLETED, actor)

    def archive_cycle(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with self.store.transaction():
            cycle = self.get(cycle_id)
            if cycle.phase != ReviewPhase.COMPLETED:
                raise InvalidTransitionError(
                    f"Only completed cycles can be archived; cycle {cycle_id} is {cycle.phase.name}",
                    entity_id=cycle_id,
                    current_state=cycle.phase.name,
                    attempted_state=ReviewPhase.ARCHIVED.name,
                )
            cycle.phase = ReviewPhase.ARCHIVED
            cycle = self.store.update(cycle, cycle.version)
        logger.info("Archived review cycle %s", cycle_id)
        return cycle

    def override_phase(self, cycle_id: str, phase: ReviewPhase, reason: str, actor: Optional[str] = None) -> ReviewCycle:
        """Administrative phase change, forward or backward, without gates."""
        if phase == ReviewPhase.ARCHIVED:
            raise ValidationError("Use archive_cycle to archive a cycle", field="phase")
        with self.dispatcher.batch(), self.store.transaction():
            cycle = self.get(cycle_id)
            if not cycle.active:
                raise InvalidTransitionError(
                    f"Cycle {cycle_id} is closed; phase override needs an active cycle",
                    entity_id=cycle_id,
                    current_state=cycle.phase.name,
                    attempted_state=phase.name,
                )
            previous = cycle.phase
            cycle = self._apply_phase(cycle, phase, f"Administrative override: {reason}", actor)
        logger.warning("Review cycle %s phase overridden %s -> %s by %s", cycle_id, previous.name, phase.name, actor)
        return cycle

    def _advance(self, cycle_id: str, target: ReviewPhase, actor: Optional[str]) -> ReviewCycle:
        with self.dispatcher.batch(), self.store.transaction():
            cycle = self.get(cycle_id)
            expected = PHASE_ORDER[PHASE_ORDER.index(target) - 1]
            if not cycle.active or cycle.phase != expected:
                raise InvalidTransitionError(
                    f"Cannot start {target.name} from {cycle.phase.name}; expected {expected.name}",
                    entity_id=cycle_id,
                    current_state=cycle.phase.name,
                    attempted_state=target.name,
                )
            self._check_preconditions(cycle, target)
            cycle = self._apply_phase(cycle, target, f"{target.name} phase started", actor)
        logger.info("Review cycle %s entered %s", cycle_id, target.name)
        return cycle

    def _check_preconditions(self, cycle: ReviewCycle, target: ReviewPhase) -> None:
        def unmet(condition: str) -> PhasePreconditionError:
            return PhasePreconditionError(
                f"Cannot start {target.name} for cycle {cycle.id}: {condition}",
                cycle_id=cycle.id,
                condition=condition,
            )

        if target in PHASE_DEADLINE_TYPES and cycle.deadline_for(target) is None:
            raise unmet(f"{target.value} deadline is not set")

        if target == ReviewPhase.SELF_ASSESSMENT and not self.participants(cycle.id):
            raise unmet("no employees are enrolled in the cycle")

        if not self.config.strict_phase_gates:
            return
        progress = self.get_cycle_progress(cycle.id)
        if target == ReviewPhase.MANAGER_REVIEW and progress.completed_self_assessments < progress.total_employees:
            raise unmet(
                f"{progress.total_employees - progress.completed_self_assessments} self-assessments outstanding"
            )
        if target == ReviewPhase.CALIBRATION and progress.completed_manager_reviews < progress.total_employees:
            raise unmet(
                f"{progress.total_employees - progress.completed_manager_reviews} manager reviews outstanding"
            )
        if target == ReviewPhase.COMPLETED and progress.delivered_feedbacks < progress.total_employees:
            raise unmet(
                f"{progress.total_employees - progress.delivered_feedbacks} feedback meetings outstanding"
            )

    def _apply_phase(self, cycle: ReviewCycle, target: ReviewPhase, reason: str, actor: Optional[str]) -> ReviewCycle:
        now = self.clock()
        workflow_id = cycle.workflow_instance_id
        cycle.phase = target
        closing = target == ReviewPhase.COMPLETED
        if closing:
            cycle.active = False
        cycle = self.store.update(cycle, cycle.version)

        self.deadlines.complete_for_workflow(workflow_id, now=now)
        workflow = self.state_manager.get(workflow_id)
        if closing:
            if workflow.status == WorkflowStatus.DRAFT:
                self.state_manager.transition(workflow_id, WorkflowStatus.IN_PROGRESS, reason=reason, actor=actor)
            self.state_manager.complete(workflow_id, reason=reason, actor=actor)
            return cycle

        status = WorkflowStatus.IN_PROGRESS if target != ReviewPhase.DRAFT else workflow.status
        self.state_manager.transition(workflow_id, status, state=target.name, reason=reason, actor=actor)

        due = cycle.deadline_for(target)
        if due is not None:
            self.deadlines.register(
                workflow_id,
                end_of_day(due),
                PHASE_DEADLINE_TYPES[target],
                assignee_id=cycle.created_by,
                warning_hours=self.config.phase_warning_hours.get(target, 48),
                description=f"{cycle.name}: {target.value.replace('_', ' ')}",
            )
        self._announce_phase(cycle, target)
        return cycle

    def _announce_phase(self, cycle: ReviewCycle, phase: ReviewPhase) -> None:
        participants = self.participants(cycle.id)
        due = cycle.deadline_for(phase)
        payload = {
            "title": f"{cycle.name}: {phase.value.replace('_', ' ').title()} Started",
            "cycle_id": cycle.id,
            "phase": phase.value,
            "deadline": due.isoformat() if due else None,
        }
        if phase == ReviewPhase.SELF_ASSESSMENT:
            recipients = sorted({p.employee_id for p in participants})
        elif phase in (ReviewPhase.MANAGER_REVIEW, ReviewPhase.FEEDBACK_DELIVERY):
            recipients = sorted({p.manager_id for p in participants if p.manager_id})
        else:
            holder = self.directory.role_holder(ApproverType.HR)
            recipients = [holder] if holder else []
        for recipient in recipients:
            self.dispatcher.send(recipient, NotificationType.PERFORMANCE_REVIEW, **payload)

    # ── Per-employee submissions ─────────────────────────────────────

    def submit_self_assessment(self, cycle_id: str, employee_id: str, rating: Optional[int] = None) -> ReviewParticipant:
        """Record an employee's self-assessment. Resubmission is a no-op."""
        with self.dispatcher.batch(), self.store.transaction():
            cycle = self._require_phase(cycle_id, ReviewPhase.SELF_ASSESSMENT)
            participant = self._participant(cycle, employee_id)
            if participant.self_assessment_submitted_at is not None:
                return participant
            participant.self_assessment_submitted_at = self.clock()
            if rating is not None:
                participant.overall_rating = rating
            participant = self.store.update(participant, participant.version)
            self.dispatcher.send(
                participant.manager_id,
                NotificationType.PERFORMANCE_REVIEW,
                title="Self-Assessment Submitted",
                cycle_id=cycle.id,
                employee_id=employee_id,
            )
        logger.info("Self-assessment submitted by %s in cycle %s", employee_id, cycle_id)
        return participant

    def submit_manager_review(
        self,
        cycle_id: str,
        employee_id: str,
        reviewer_id: Optional[str] = None,
        rating: Optional[int] = None,
    ) -> ReviewParticipant:
        """Record the manager's review of an employee. Resubmission is a no-op."""
        with self.dispatcher.batch(), self.store.transaction():
            cycle = self._require_phase(cycle_id, ReviewPhase.MANAGER_REVIEW)
            participant = self._participant(cycle, employee_id)
            if participant.manager_review_submitted_at is not None:
                return participant
            participant.manager_review_submitted_at = self.clock()
            if rating is not None:
                participant.overall_rating = rating
            participant = self.store.update(participant, participant.version)
            self.dispatcher.send(
                employee_id,
                NotificationType.PERFORMANCE_REVIEW,
                title="Manager Review Completed",
                cycle_id=cycle.id,
                reviewer_id=reviewer_id or participant.manager_id,
            )
        logger.info("Manager review submitted for %s in cycle %s", employee_id, cycle_id)
        return participant

    def record_feedback_meeting(
        self,
        cycle_id: str,
        employee_id: str,
        notes: str = "",
        manager_id: Optional[str] = None,
    ) -> ReviewParticipant:
        """Record that the feedback conversation took place."""
        with self.dispatcher.batch(), self.store.transaction():
            cycle = self._require_phase(cycle_id, ReviewPhase.FEEDBACK_DELIVERY)
            participant = self._participant(cycle, employee_id)
            participant.feedback_delivered_at = self.clock()
            participant.feedback_notes = notes
            participant = self.store.update(participant, participant.version)
            self.dispatcher.send(
                employee_id,
                NotificationType.PERFORMANCE_REVIEW,
                title="Feedback Meeting Recorded",
                cycle_id=cycle.id,
                manager_id=manager_id or participant.manager_id,
            )
        logger.info("Feedback meeting recorded for %s in cycle %s", employee_id, cycle_id)
        return participant

    def _require_phase(self, cycle_id: str, phase: ReviewPhase) -> ReviewCycle:
        cycle = self.get(cycle_id)
        if cycle.phase != phase:
            raise InvalidTransitionError(
                f"Cycle {cycle_id} is in {cycle.phase.name}, not {phase.name}",
                entity_id=cycle_id,
                current_state=cycle.phase.name,
                attempted_state=phase.name,
            )
        return cycle

    def _participant(self, cycle: ReviewCycle, employee_id: str) -> ReviewParticipant:
        participant = self.store.find_by_key(ReviewParticipant, (cycle.id, employee_id))
        if participant is None:
            raise ValidationError(
                f"Employee {employee_id} is not part of review cycle {cycle.id}",
                field="employee_id",
            )
        return participant

    # ── Reminders & progress ─────────────────────────────────────────

    def send_phase_reminders(self, cycle_id: str) -> int:
        """Remind everyone with outstanding work in the current phase."""
        cycle = self.get(cycle_id)
        participants = self.participants(cycle_id)
        due = cycle.deadline_for(cycle.phase)
        outstanding: Dict[str, List[str]] = defaultdict(list)

        if cycle.phase == ReviewPhase.SELF_ASSESSMENT:
            for p in participants:
                if p.self_assessment_submitted_at is None:
                    outstanding[p.employee_id].append(p.employee_id)
        elif cycle.phase == ReviewPhase.MANAGER_REVIEW:
            for p in participants:
                if p.manager_review_submitted_at is None and p.manager_id:
                    outstanding[p.manager_id].append(p.employee_id)
        elif cycle.phase == ReviewPhase.FEEDBACK_DELIVERY:
            for p in participants:
                if p.feedback_delivered_at is None and p.manager_id:
                    outstanding[p.manager_id].append(p.employee_id)

        with self.dispatcher.batch():
            for recipient, employees in sorted(outstanding.items()):
                self.dispatcher.send(
                    recipient,
                    NotificationType.REMINDER,
                    title=f"Reminder: {cycle.phase.value.replace('_', ' ').title()} Due",
                    cycle_id=cycle.id,
                    phase=cycle.phase.value,
                    deadline=due.isoformat() if due else None,
                    pending_employees=employees,
                )
        logger.info("Sent %d %s reminders for cycle %s", len(outstanding), cycle.phase.name, cycle_id)
        return len(outstanding)

    def get_cycle_progress(self, cycle_id: str) -> CycleProgress:
        cycle = self.get(cycle_id)
        return self._count(cycle, self.participants(cycle_id))

    def department_progress(self, cycle_id: str) -> Dict[Optional[str], CycleProgress]:
        cycle = self.get(cycle_id)
        by_department: Dict[Optional[str], List[ReviewParticipant]] = defaultdict(list)
        for p in self.participants(cycle_id):
            by_department[p.department_id].append(p)
        return {dept: self._count(cycle, members) for dept, members in by_department.items()}

    @staticmethod
    def _count(cycle: ReviewCycle, participants: List[ReviewParticipant]) -> CycleProgress:
        return CycleProgress(
            cycle_id=cycle.id,
            phase=cycle.phase,
            total_employees=len(participants),
            completed_self_assessments=sum(1 for p in participants if p.self_assessment_submitted_at),
            completed_manager_reviews=sum(1 for p in participants if p.manager_review_submitted_at),
            delivered_feedbacks=sum(1 for p in participants if p.feedback_delivered_at),
        )

    # ── Lookups ──────────────────────────────────────────────────────

    def get(self, cycle_id: str) -> ReviewCycle:
        cycle = self.store.get(ReviewCycle, cycle_id)
        if cycle is None:
            raise NotFoundError("ReviewCycle", cycle_id)
        return cycle

    def participants(self, cycle_id: str) -> List[ReviewParticipant]:
        return (
            RecordQuery.over(self.store, ReviewParticipant)
            .where(participant_of(cycle_id))
            .order_by(lambda p: p.employee_id)
            .execute()
        )

    def active_cycles(self) -> List[ReviewCycle]:
        return RecordQuery.over(self.store, ReviewCycle).where(cycle_active()).order_by(lambda c: c.start_date).execute()

    def cycles_by_phase(self, phase: ReviewPhase) -> List[ReviewCycle]:
        return (
            RecordQuery.over(self.store, ReviewCycle)
            .where(cycle_phase_is(phase))
            .order_by(lambda c: c.start_date)
            .execute()
        )

    def current_cycle(self, on: Optional[date] = None) -> Optional[ReviewCycle]:
        """The active cycle running on *on* (today by default), if any."""
        on = on or self.clock().date()
        return (
            RecordQuery.over(self.store, ReviewCycle)
            .where(cycle_current_on(on))
            .order_by(lambda c: c.start_date)
            .first()
        )

    def cycles_for_department(self, department_id: str) -> List[ReviewCycle]:
        return (
            RecordQuery.over(self.store, ReviewCycle)
            .where(cycle_covers_department(department_id))
            .order_by(lambda c: c.start_date, descending=True)
            .execute()
        )

    def cycles_with_approaching_deadlines(self, days_ahead: int, on: Optional[date] = None) -> List[ReviewCycle]:
        """Active cycles with a phase deadline between *on* and *days_ahead* days later."""
        if days_ahead < 0:
            raise ValidationError("days_ahead must not be negative", field="days_ahead")
        start = on or self.clock().date()
        end = start + timedelta(days=days_ahead)

        def next_deadline(cycle: ReviewCycle) -> date:
            return min(
                d for d in (cycle.deadline_for(p) for p in PHASE_DEADLINE_TYPES)
                if d is not None and start <= d <= end
            )

        return (
            RecordQuery.over(self.store, ReviewCycle)
            .where(cycle_deadline_within(start, end))
            .order_by(next_deadline)
            .execute()
        )

    def all_cycles(self, page: int = 1, page_size: Optional[int] = None) -> Page:
        return (
            RecordQuery.over(self.store, ReviewCycle)
            .order_by(lambda c: c.start_date, descending=True)
            .paginate(page, page_size or self.config.default_page_size)
            .page()
        )
