"""Tests for performance review cycle orchestration."""

from datetime import date, datetime, timezone

import pytest

from src.workflow.config import (
    DeadlineType,
    ErrorCode,
    NotificationType,
    ReviewPhase,
    WorkflowConfig,
    WorkflowStatus,
    WorkflowType,
)
from src.workflow.exceptions import (
    InvalidTransitionError,
    OverlappingCycleError,
    PhasePreconditionError,
    ValidationError,
)
from src.workflow.notifications import RecordingNotifier
from src.workflow.orchestrator import WorkflowOrchestrator

ENG = ["eng_head", "emp_1", "emp_2", "mgr_1"]


def _initiate(orch, **overrides):
    params = dict(
        name="2026 H1 Review",
        review_period_start=date(2025, 7, 1),
        review_period_end=date(2025, 12, 31),
        start_date=date(2026, 3, 1),
        end_date=date(2026, 4, 30),
        self_assessment_deadline=date(2026, 3, 15),
        manager_review_deadline=date(2026, 3, 31),
        calibration_deadline=date(2026, 4, 10),
        feedback_deadline=date(2026, 4, 25),
        department_ids=["eng"],
        created_by="hr_lead",
    )
    params.update(overrides)
    return orch.initiate_cycle(**params)


def _run_to(orch, cycle_id, phase):
    """Advance a cycle to *phase*, submitting everything each gate needs."""
    employees = [p.employee_id for p in orch.cycles.participants(cycle_id)]
    orch.start_self_assessment_phase(cycle_id)
    if phase == ReviewPhase.SELF_ASSESSMENT:
        return
    for e in employees:
        orch.submit_self_assessment(cycle_id, e, rating=3)
    orch.start_manager_review_phase(cycle_id)
    if phase == ReviewPhase.MANAGER_REVIEW:
        return
    for e in employees:
        orch.submit_manager_review(cycle_id, e, rating=4)
    orch.start_calibration_phase(cycle_id)
    if phase == ReviewPhase.CALIBRATION:
        return
    orch.start_feedback_delivery_phase(cycle_id)
    if phase == ReviewPhase.FEEDBACK_DELIVERY:
        return
    for e in employees:
        orch.record_feedback_meeting(cycle_id, e, notes="Discussed goals")
    orch.close_cycle(cycle_id)


# ── Creation ─────────────────────────────────────────────────────────


class TestCycleCreation:
    def test_initiate_enrolls_departments(self, orchestrator):
        cycle = _initiate(orchestrator)
        assert cycle.phase == ReviewPhase.DRAFT
        assert cycle.active is True
        assert [p.employee_id for p in orchestrator.cycles.participants(cycle.id)] == sorted(ENG)
        participant = next(p for p in orchestrator.cycles.participants(cycle.id) if p.employee_id == "emp_1")
        assert (participant.employee_id, participant.manager_id, participant.department_id) == ("emp_1", "mgr_1", "eng")

        workflow = orchestrator.get_workflow(cycle.workflow_instance_id)
        assert workflow.workflow_type == WorkflowType.PERFORMANCE_REVIEW_CYCLE
        assert workflow.status == WorkflowStatus.DRAFT
        assert workflow.entity_id == cycle.id

    def test_overlapping_cycle_rejected(self, orchestrator):
        first = _initiate(orchestrator)
        with pytest.raises(OverlappingCycleError) as exc_info:
            _initiate(orchestrator, name="Overlap", start_date=date(2026, 4, 15), end_date=date(2026, 5, 30),
                      self_assessment_deadline=None, manager_review_deadline=None,
                      calibration_deadline=None, feedback_deadline=None)
        assert exc_info.value.conflicting_ids == [first.id]
        assert exc_info.value.error_code == ErrorCode.OVERLAPPING_CYCLE

    def test_shared_boundary_day_overlaps(self, orchestrator):
        _initiate(orchestrator)
        with pytest.raises(OverlappingCycleError):
            _initiate(orchestrator, name="Touching", start_date=date(2026, 4, 30), end_date=date(2026, 6, 30),
                      self_assessment_deadline=None, manager_review_deadline=None,
                      calibration_deadline=None, feedback_deadline=None)

    def test_non_overlapping_cycle_allowed(self, orchestrator):
        _initiate(orchestrator)
        second = _initiate(orchestrator, name="2026 Q2", start_date=date(2026, 5, 1), end_date=date(2026, 6, 30),
                           self_assessment_deadline=None, manager_review_deadline=None,
                           calibration_deadline=None, feedback_deadline=None)
        assert second.phase == ReviewPhase.DRAFT
        assert len(orchestrator.get_active_cycles()) == 2

    def test_closed_cycle_does_not_block(self, orchestrator):
        first = _initiate(orchestrator)
        _run_to(orchestrator, first.id, ReviewPhase.COMPLETED)
        second = _initiate(orchestrator, name="Rerun", department_ids=["sales"])
        assert second.active is True

    def test_duplicate_name_rejected(self, orchestrator):
        _initiate(orchestrator)
        with pytest.raises(ValidationError):
            _initiate(orchestrator, name=" 2026 h1 review ", start_date=date(2026, 6, 1), end_date=date(2026, 6, 30),
                      self_assessment_deadline=None, manager_review_deadline=None,
                      calibration_deadline=None, feedback_deadline=None)

    def test_invalid_dates(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            _initiate(orchestrator, end_date=date(2026, 2, 1), feedback_deadline=date(2026, 3, 10))
        fields = {d["field"] for d in exc_info.value.details}
        assert "end_date" in fields
        assert "feedback_deadline" in fields

    def test_blank_name_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            _initiate(orchestrator, name="")


# ── Phase Transitions ────────────────────────────────────────────────


class TestPhaseTransitions:
    def test_full_walk(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.COMPLETED)
        cycle = orchestrator.get_cycle_status(cycle.id)
        assert cycle.phase == ReviewPhase.COMPLETED
        assert cycle.active is False
        workflow = orchestrator.get_workflow(cycle.workflow_instance_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        states = [t.to_state for t in orchestrator.get_workflow_history(workflow.id)]
        assert states[:2] == ["DRAFT", "IN_PROGRESS"]
        assert "CALIBRATION" in states
        assert states[-1] == "COMPLETED"

        cycle = orchestrator.archive_cycle(cycle.id)
        assert cycle.phase == ReviewPhase.ARCHIVED

    def test_phase_start_announces(self, orchestrator, notifier):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        sent = notifier.of_type(NotificationType.PERFORMANCE_REVIEW)
        assert sorted(n.recipient_id for n in sent) == sorted(ENG)
        assert sent[0].payload["deadline"] == "2026-03-15"

    def test_phase_deadlines_follow_phase(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.SELF_ASSESSMENT)
        open_deadlines = orchestrator.deadlines.for_workflow(cycle.workflow_instance_id)
        assert [d.deadline_type for d in open_deadlines] == [DeadlineType.SELF_ASSESSMENT]
        assert open_deadlines[0].deadline_at == datetime(2026, 3, 15, 23, 59, 59, tzinfo=timezone.utc)
        assert open_deadlines[0].assignee_id == "hr_lead"

        for e in ENG:
            orchestrator.submit_self_assessment(cycle.id, e)
        orchestrator.start_manager_review_phase(cycle.id)
        open_deadlines = orchestrator.deadlines.for_workflow(cycle.workflow_instance_id)
        assert [d.deadline_type for d in open_deadlines] == [DeadlineType.MANAGER_REVIEW]

    def test_manager_review_needs_self_assessments(self, orchestrator):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        orchestrator.submit_self_assessment(cycle.id, "emp_1")
        with pytest.raises(PhasePreconditionError) as exc_info:
            orchestrator.start_manager_review_phase(cycle.id)
        assert "3 self-assessments outstanding" in exc_info.value.condition
        assert exc_info.value.error_code == ErrorCode.PHASE_PRECONDITION
        assert orchestrator.get_cycle_status(cycle.id).phase == ReviewPhase.SELF_ASSESSMENT

    def test_calibration_needs_manager_reviews(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.MANAGER_REVIEW)
        with pytest.raises(PhasePreconditionError):
            orchestrator.start_calibration_phase(cycle.id)

    def test_close_needs_feedback(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.FEEDBACK_DELIVERY)
        orchestrator.record_feedback_meeting(cycle.id, "emp_1")
        with pytest.raises(PhasePreconditionError):
            orchestrator.close_cycle(cycle.id)

    def test_missing_phase_deadline(self, orchestrator):
        cycle = _initiate(orchestrator, calibration_deadline=None)
        _run_to(orchestrator, cycle.id, ReviewPhase.MANAGER_REVIEW)
        for e in ENG:
            orchestrator.submit_manager_review(cycle.id, e)
        with pytest.raises(PhasePreconditionError, match="calibration deadline is not set"):
            orchestrator.start_calibration_phase(cycle.id)

    def test_no_participants(self, orchestrator):
        cycle = _initiate(orchestrator, department_ids=["marketing"])
        with pytest.raises(PhasePreconditionError, match="no employees"):
            orchestrator.start_self_assessment_phase(cycle.id)

    def test_no_phase_regression(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.MANAGER_REVIEW)
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.start_self_assessment_phase(cycle.id)
        assert exc_info.value.current_state == "MANAGER_REVIEW"
        assert orchestrator.get_cycle_status(cycle.id).phase == ReviewPhase.MANAGER_REVIEW

    def test_no_phase_skipping(self, orchestrator):
        cycle = _initiate(orchestrator)
        with pytest.raises(InvalidTransitionError):
            orchestrator.start_manager_review_phase(cycle.id)

    def test_closed_cycle_cannot_restart(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            orchestrator.close_cycle(cycle.id)

    def test_archive_requires_completed(self, orchestrator):
        cycle = _initiate(orchestrator)
        with pytest.raises(InvalidTransitionError):
            orchestrator.archive_cycle(cycle.id)

    def test_relaxed_gates(self, store, directory, clock):
        orch = WorkflowOrchestrator(
            store, directory, RecordingNotifier(), config=WorkflowConfig(strict_phase_gates=False), clock=clock,
        )
        cycle = _initiate(orch)
        orch.start_self_assessment_phase(cycle.id)
        cycle = orch.start_manager_review_phase(cycle.id)
        assert cycle.phase == ReviewPhase.MANAGER_REVIEW

    def test_override_phase_backwards(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.MANAGER_REVIEW)
        cycle = orchestrator.override_cycle_phase(cycle.id, ReviewPhase.SELF_ASSESSMENT, "Reopened for late joiners", actor="hr_lead")
        assert cycle.phase == ReviewPhase.SELF_ASSESSMENT
        last = orchestrator.get_workflow_history(cycle.workflow_instance_id)[-1]
        assert "Administrative override" in last.reason
        assert last.transitioned_by == "hr_lead"

    def test_override_cannot_archive(self, orchestrator):
        cycle = _initiate(orchestrator)
        with pytest.raises(ValidationError):
            orchestrator.override_cycle_phase(cycle.id, ReviewPhase.ARCHIVED, "skip")


# ── Submissions ──────────────────────────────────────────────────────


class TestSubmissions:
    def test_self_assessment_outside_phase(self, orchestrator):
        cycle = _initiate(orchestrator)
        with pytest.raises(InvalidTransitionError):
            orchestrator.submit_self_assessment(cycle.id, "emp_1")

    def test_non_participant(self, orchestrator):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        with pytest.raises(ValidationError):
            orchestrator.submit_self_assessment(cycle.id, "emp_3")

    def test_resubmission_is_noop(self, orchestrator, clock):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        first = orchestrator.submit_self_assessment(cycle.id, "emp_1", rating=3)
        clock.advance(days=1)
        second = orchestrator.submit_self_assessment(cycle.id, "emp_1", rating=5)
        assert second.self_assessment_submitted_at == first.self_assessment_submitted_at
        assert second.overall_rating == 3

    def test_manager_notified_of_self_assessment(self, orchestrator, notifier):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        notifier.clear()
        orchestrator.submit_self_assessment(cycle.id, "emp_2")
        assert [n.recipient_id for n in notifier.sent] == ["mgr_1"]

    def test_late_joiner(self, orchestrator):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        orchestrator.cycles.add_participant(cycle.id, "emp_3")
        assert orchestrator.get_cycle_progress(cycle.id).total_employees == 5


# ── Progress & Reminders ─────────────────────────────────────────────


class TestProgress:
    def test_progress_counts(self, orchestrator):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        orchestrator.submit_self_assessment(cycle.id, "emp_1")
        orchestrator.submit_self_assessment(cycle.id, "emp_2")
        progress = orchestrator.get_cycle_progress(cycle.id)
        assert progress.phase == ReviewPhase.SELF_ASSESSMENT
        assert progress.total_employees == 4
        assert progress.completed_self_assessments == 2
        assert progress.completed_manager_reviews == 0
        assert progress.self_assessment_rate == 50.0
        assert progress.feedback_rate == 0.0

    def test_department_progress_frame(self, orchestrator):
        cycle = _initiate(orchestrator, department_ids=[])
        orchestrator.start_self_assessment_phase(cycle.id)
        for e in ("emp_3", "sales_mgr"):
            orchestrator.submit_self_assessment(cycle.id, e)
        frame = orchestrator.get_department_progress(cycle.id)
        by_dept = frame.set_index("department_id")
        assert by_dept.loc["sales", "self_assessment_rate"] == 100.0
        assert by_dept.loc["eng", "total_employees"] == 4
        assert frame.iloc[-1]["department_id"] == "sales"

    def test_reminders_self_assessment(self, orchestrator, notifier):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        orchestrator.submit_self_assessment(cycle.id, "emp_1")
        notifier.clear()
        assert orchestrator.send_phase_reminders(cycle.id) == 3
        assert sorted(n.recipient_id for n in notifier.of_type(NotificationType.REMINDER)) == ["emp_2", "eng_head", "mgr_1"]

    def test_reminders_manager_review_grouped(self, orchestrator, notifier):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.MANAGER_REVIEW)
        notifier.clear()
        assert orchestrator.send_phase_reminders(cycle.id) == 3
        to_mgr = next(n for n in notifier.sent if n.recipient_id == "mgr_1")
        assert to_mgr.payload["pending_employees"] == ["emp_1", "emp_2"]

    def test_no_reminders_in_calibration(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.CALIBRATION)
        assert orchestrator.send_phase_reminders(cycle.id) == 0

    def test_cycles_by_phase(self, orchestrator):
        cycle = _initiate(orchestrator)
        orchestrator.start_self_assessment_phase(cycle.id)
        assert [c.id for c in orchestrator.get_cycles_by_phase(ReviewPhase.SELF_ASSESSMENT)] == [cycle.id]
        assert orchestrator.get_cycles_by_phase(ReviewPhase.DRAFT) == []


# ── Queries ──────────────────────────────────────────────────────────


def _initiate_summer(orch, **overrides):
    params = dict(
        name="2026 Sales Midyear",
        start_date=date(2026, 6, 1),
        end_date=date(2026, 7, 31),
        self_assessment_deadline=date(2026, 6, 12),
        manager_review_deadline=date(2026, 6, 26),
        calibration_deadline=date(2026, 7, 10),
        feedback_deadline=date(2026, 7, 24),
        department_ids=["sales"],
    )
    params.update(overrides)
    return _initiate(orch, **params)


class TestCycleQueries:
    def test_current_cycle(self, orchestrator):
        spring = _initiate(orchestrator)
        summer = _initiate_summer(orchestrator)
        assert orchestrator.get_current_cycle().id == spring.id
        assert orchestrator.get_current_cycle(date(2026, 6, 15)).id == summer.id
        assert orchestrator.get_current_cycle(date(2026, 5, 15)) is None

    def test_current_cycle_ignores_closed(self, orchestrator):
        cycle = _initiate(orchestrator)
        _run_to(orchestrator, cycle.id, ReviewPhase.COMPLETED)
        assert orchestrator.get_current_cycle() is None

    def test_cycles_by_department(self, orchestrator):
        spring = _initiate(orchestrator)
        summer = _initiate_summer(orchestrator)
        company = _initiate_summer(
            orchestrator, name="2026 Q4 Company", start_date=date(2026, 10, 1), end_date=date(2026, 11, 30),
            self_assessment_deadline=None, manager_review_deadline=None,
            calibration_deadline=None, feedback_deadline=None, department_ids=[],
        )
        assert [c.id for c in orchestrator.get_cycles_by_department("sales")] == [company.id, summer.id]
        assert [c.id for c in orchestrator.get_cycles_by_department("eng")] == [company.id, spring.id]
        assert [c.id for c in orchestrator.get_cycles_by_department("finance")] == [company.id]

    def test_cycles_with_approaching_deadlines(self, orchestrator):
        spring = _initiate(orchestrator)
        summer = _initiate_summer(orchestrator)
        assert [c.id for c in orchestrator.get_cycles_with_approaching_deadlines(14)] == [spring.id]
        assert orchestrator.get_cycles_with_approaching_deadlines(7) == []
        soon = orchestrator.get_cycles_with_approaching_deadlines(20, on=date(2026, 6, 1))
        assert [c.id for c in soon] == [summer.id]

    def test_approaching_deadlines_negative_window(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.get_cycles_with_approaching_deadlines(-1)

    def test_all_review_cycles_paged(self, orchestrator):
        spring = _initiate(orchestrator)
        summer = _initiate_summer(orchestrator)
        page = orchestrator.get_all_review_cycles(page=1, page_size=1)
        assert page.total == 2
        assert [c.id for c in page.items] == [summer.id]
        assert page.has_next is True
        assert [c.id for c in orchestrator.get_all_review_cycles(page=2, page_size=1).items] == [spring.id]
