"""Tests for onboarding and offboarding checklists."""

from datetime import date, datetime, timezone

import pytest

from src.workflow.config import (
    ACTIVE_PROCESS_STATUSES,
    PROCESS_TRANSITIONS,
    DeadlineType,
    NotificationType,
    ProcessStatus,
    ProcessType,
    WorkflowStatus,
    WorkflowType,
)
from src.workflow.exceptions import (
    DuplicateActiveWorkflowError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.workflow.models import EmployeeProcess, EmployeeProcessTask
from src.workflow.processes import OFFBOARDING_TASKS, ONBOARDING_TASKS

TODAY = date(2026, 3, 2)


def _task_by_title(process, title):
    return next(t for t in process.tasks if t.title == title)


# ── Completion Percentage ────────────────────────────────────────────


class TestCompletionPercentage:
    def _process(self, done, total):
        tasks = [EmployeeProcessTask(title=f"t{i}", completed=i < done) for i in range(total)]
        return EmployeeProcess(employee_id="emp_1", tasks=tasks)

    def test_two_of_three(self):
        process = self._process(2, 3)
        assert process.completion_percentage == 67
        assert process.completed_tasks == 2
        assert process.total_tasks == 3

    def test_one_of_three(self):
        assert self._process(1, 3).completion_percentage == 33

    def test_all_done(self):
        assert self._process(4, 4).completion_percentage == 100

    def test_empty_checklist_is_complete(self):
        assert self._process(0, 0).completion_percentage == 100

    def test_unique_key_only_while_active(self):
        process = self._process(0, 1)
        assert process.unique_key() == ("emp_1", ProcessType.ONBOARDING)
        process.status = ProcessStatus.COMPLETED
        assert process.unique_key() is None


# ── Status Table ─────────────────────────────────────────────────────


class TestProcessTransitions:
    def test_every_status_has_an_entry(self):
        assert set(PROCESS_TRANSITIONS) == set(ProcessStatus)

    def test_finished_statuses_have_no_exits(self):
        for status in set(ProcessStatus) - ACTIVE_PROCESS_STATUSES:
            assert PROCESS_TRANSITIONS[status] == frozenset()

    def test_active_statuses_can_be_cancelled(self):
        for status in ACTIVE_PROCESS_STATUSES:
            assert ProcessStatus.CANCELLED in PROCESS_TRANSITIONS[status]

    def test_delayed_never_returns_to_planned(self):
        assert ProcessStatus.PLANNED not in PROCESS_TRANSITIONS[ProcessStatus.DELAYED]
        assert ProcessStatus.COMPLETED in PROCESS_TRANSITIONS[ProcessStatus.DELAYED]


# ── Onboarding ───────────────────────────────────────────────────────


class TestOnboarding:
    def test_start_onboarding(self, orchestrator, notifier):
        process = orchestrator.start_onboarding("emp_1", TODAY, initiator_id="hr_lead")
        assert process.process_type == ProcessType.ONBOARDING
        assert process.status == ProcessStatus.IN_PROGRESS
        assert process.manager_id == "mgr_1"
        assert process.target_end_date == date(2026, 4, 1)
        assert process.total_tasks == len(ONBOARDING_TASKS) - 1
        assert process.completion_percentage == 0

        assert [n.recipient_id for n in notifier.of_type(NotificationType.WELCOME)] == ["emp_1"]
        orientation = _task_by_title(process, "Department Orientation")
        assert orientation.assigned_to == "mgr_1"
        assert orientation.due_date == date(2026, 3, 7)
        assert _task_by_title(process, "IT Systems Setup").assigned_to is None

    def test_onboarding_workflow_and_deadline(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        workflow = orchestrator.get_workflow(process.workflow_instance_id)
        assert workflow.workflow_type == WorkflowType.ONBOARDING
        assert workflow.status == WorkflowStatus.IN_PROGRESS
        assert workflow.context["process_id"] == process.id
        deadlines = orchestrator.deadlines.for_workflow(workflow.id)
        assert [d.deadline_type for d in deadlines] == [DeadlineType.PROCESS_COMPLETION]
        assert deadlines[0].deadline_at == datetime(2026, 4, 1, 23, 59, 59, tzinfo=timezone.utc)

    def test_trainings_task_optional(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY, requires_trainings=True)
        assert process.total_tasks == len(ONBOARDING_TASKS)
        assert any(t.title == "Complete Mandatory Trainings" for t in process.tasks)

    def test_future_start_is_planned(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", date(2026, 3, 16))
        assert process.status == ProcessStatus.PLANNED
        process = orchestrator.complete_process_task(process.id, process.tasks[0].id, completed_by="emp_1")
        assert process.status == ProcessStatus.IN_PROGRESS

    def test_begin_planned_process(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", date(2026, 3, 16))
        process = orchestrator.processes.begin(process.id)
        assert process.status == ProcessStatus.IN_PROGRESS
        with pytest.raises(InvalidTransitionError):
            orchestrator.processes.begin(process.id)

    def test_duplicate_active_process(self, orchestrator):
        orchestrator.start_onboarding("emp_1", TODAY)
        with pytest.raises(DuplicateActiveWorkflowError):
            orchestrator.start_onboarding("emp_1", TODAY)

    def test_restart_after_cancel(self, orchestrator):
        first = orchestrator.start_onboarding("emp_1", TODAY)
        orchestrator.cancel_process(first.id, "Offer withdrawn")
        second = orchestrator.start_onboarding("emp_1", TODAY)
        assert second.id != first.id

    def test_invalid_command(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.start_onboarding("", TODAY)


# ── Task Completion ──────────────────────────────────────────────────


class TestTaskCompletion:
    def test_progress_and_auto_complete(self, orchestrator, notifier):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        *rest, last = process.tasks
        for task in rest:
            process = orchestrator.complete_process_task(process.id, task.id, completed_by="emp_1")
        assert process.status == ProcessStatus.IN_PROGRESS
        assert process.completion_percentage == round(100 * len(rest) / process.total_tasks)

        process = orchestrator.complete_process_task(process.id, last.id, completed_by="emp_1", notes="Done")
        assert process.status == ProcessStatus.COMPLETED
        assert process.completion_percentage == 100
        assert process.completed_at is not None
        assert _task_by_title(process, last.title).completion_notes == "Done"

        workflow = orchestrator.get_workflow(process.workflow_instance_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert orchestrator.deadlines.for_workflow(workflow.id) == []
        recipients = sorted(n.recipient_id for n in notifier.of_type(NotificationType.WORKFLOW_COMPLETED))
        assert recipients == ["emp_1", "mgr_1"]

    def test_three_task_checklist(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        keep = process.tasks[:3]
        for task in process.tasks[3:]:
            process = orchestrator.complete_process_task(process.id, task.id)
        process = orchestrator.get_process_status(process.id)
        assert process.completed_tasks == process.total_tasks - 3

        process = orchestrator.complete_process_task(process.id, keep[0].id)
        process = orchestrator.complete_process_task(process.id, keep[1].id)
        assert process.status == ProcessStatus.IN_PROGRESS
        process = orchestrator.complete_process_task(process.id, keep[2].id)
        assert process.status == ProcessStatus.COMPLETED

    def test_recompletion_is_noop(self, orchestrator, notifier):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        task_id = process.tasks[0].id
        first = orchestrator.complete_process_task(process.id, task_id, completed_by="emp_1")
        sent = len(notifier.of_type(NotificationType.TASK_COMPLETED))
        second = orchestrator.complete_process_task(process.id, task_id, completed_by="someone_else")
        assert second.version == first.version
        assert second.completed_tasks == 1
        assert len(notifier.of_type(NotificationType.TASK_COMPLETED)) == sent

    def test_unknown_task(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        with pytest.raises(NotFoundError):
            orchestrator.complete_process_task(process.id, "missing")

    def test_cancelled_process_rejects_completion(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        process = orchestrator.cancel_process(process.id, "Offer withdrawn", actor="hr_lead")
        assert process.status == ProcessStatus.CANCELLED
        assert orchestrator.get_workflow(process.workflow_instance_id).status == WorkflowStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            orchestrator.complete_process_task(process.id, process.tasks[0].id)

    def test_add_task_lowers_percentage(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        for task in process.tasks:
            if task.title != "30-Day Review Meeting":
                process = orchestrator.complete_process_task(process.id, task.id)
        before = process.completion_percentage
        process = orchestrator.processes.add_task(process.id, "Security Badge Photo", assigned_to="emp_1")
        assert process.completion_percentage < before
        assert process.status == ProcessStatus.IN_PROGRESS


# ── Offboarding ──────────────────────────────────────────────────────


class TestOffboarding:
    def test_start_offboarding(self, orchestrator):
        process = orchestrator.start_offboarding("emp_3", date(2026, 3, 31), reason="Relocation")
        assert process.process_type == ProcessType.OFFBOARDING
        assert process.status == ProcessStatus.IN_PROGRESS
        assert process.manager_id == "sales_mgr"
        assert process.target_end_date == date(2026, 3, 31)
        assert process.total_tasks == len(OFFBOARDING_TASKS)
        assert _task_by_title(process, "Exit Interview").assigned_to == "hr_lead"
        assert _task_by_title(process, "Knowledge Transfer Documentation").due_date == date(2026, 3, 17)
        workflow = orchestrator.get_workflow(process.workflow_instance_id)
        assert workflow.workflow_type == WorkflowType.OFFBOARDING

    def test_without_exit_interview(self, orchestrator):
        process = orchestrator.start_offboarding("emp_3", date(2026, 3, 31), exit_interview=False)
        assert process.total_tasks == len(OFFBOARDING_TASKS) - 1
        assert all(t.title != "Exit Interview" for t in process.tasks)

    def test_onboarding_and_offboarding_coexist(self, orchestrator):
        orchestrator.start_onboarding("emp_1", TODAY)
        process = orchestrator.start_offboarding("emp_1", date(2026, 3, 31))
        assert process.status == ProcessStatus.IN_PROGRESS
        assert len(orchestrator.processes.find_for_employee("emp_1", active_only=True)) == 2


# ── Overdue Handling ─────────────────────────────────────────────────


class TestOverdueProcesses:
    def test_delayed_sweep(self, orchestrator, notifier, clock):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        orchestrator.complete_process_task(process.id, process.tasks[0].id)

        delayed = orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc))
        assert delayed == []

        delayed = orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 3, 9, 0, tzinfo=timezone.utc))
        assert [p.id for p in delayed] == [process.id]
        process = orchestrator.get_process_status(process.id)
        assert process.status == ProcessStatus.DELAYED
        assert orchestrator.get_workflow(process.workflow_instance_id).current_state == "DELAYED"
        alert = notifier.of_type(NotificationType.DEADLINE_EXCEEDED)[-1]
        assert alert.recipient_id == "mgr_1"
        assert alert.payload["process_id"] == process.id

        again = orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 4, 9, 0, tzinfo=timezone.utc))
        assert again == []

    def test_delayed_process_can_still_complete(self, orchestrator):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 3, tzinfo=timezone.utc))
        for task in process.tasks:
            process = orchestrator.complete_process_task(process.id, task.id)
        assert process.status == ProcessStatus.COMPLETED

    def test_task_completion_never_delays(self, orchestrator, clock):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        clock.advance(days=60)
        process = orchestrator.complete_process_task(process.id, process.tasks[0].id)
        assert process.status == ProcessStatus.IN_PROGRESS

    def test_overdue_tasks_escalated_once(self, orchestrator, notifier):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        it_setup = _task_by_title(process, "IT Systems Setup")
        orchestrator.complete_process_task(process.id, it_setup.id)

        now = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
        escalated = orchestrator.escalate_overdue_tasks(now)
        titles = sorted(_task_by_title_id(orchestrator, pid, tid) for pid, tid in escalated)
        assert titles == [
            "Complete Profile Information",
            "Department Orientation",
            "First Week Check-in",
            "Policy Acknowledgment",
        ]
        assert all(n.recipient_id == "mgr_1" for n in notifier.of_type(NotificationType.ESCALATION))
        assert orchestrator.escalate_overdue_tasks(now) == []

    def test_delayed_sweep_tolerates_concurrent_completion(self, orchestrator, monkeypatch):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        store = orchestrator.store
        original_find = store.find
        interleaved = []

        def find_then_complete(record_type, predicate=None):
            found = original_find(record_type, predicate)
            if record_type is EmployeeProcess and not interleaved:
                interleaved.append(True)
                orchestrator.complete_process_task(process.id, process.tasks[0].id, completed_by="emp_1")
            return found

        monkeypatch.setattr(store, "find", find_then_complete)
        delayed = orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 3, 9, 0, tzinfo=timezone.utc))

        assert interleaved
        assert [p.id for p in delayed] == [process.id]
        process = orchestrator.get_process_status(process.id)
        assert process.status == ProcessStatus.DELAYED
        assert process.tasks[0].completed is True

    def test_delayed_sweep_skips_process_finished_meanwhile(self, orchestrator, monkeypatch):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        *rest, last = process.tasks
        for task in rest:
            orchestrator.complete_process_task(process.id, task.id)
        store = orchestrator.store
        original_find = store.find
        interleaved = []

        def find_then_finish(record_type, predicate=None):
            found = original_find(record_type, predicate)
            if record_type is EmployeeProcess and not interleaved:
                interleaved.append(True)
                orchestrator.complete_process_task(process.id, last.id)
            return found

        monkeypatch.setattr(store, "find", find_then_finish)
        delayed = orchestrator.deadlines.sweep_delayed_processes(datetime(2026, 4, 3, 9, 0, tzinfo=timezone.utc))

        assert delayed == []
        assert orchestrator.get_process_status(process.id).status == ProcessStatus.COMPLETED

    def test_run_deadline_sweep_survives_concurrent_completion(self, orchestrator, monkeypatch):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        store = orchestrator.store
        original_find = store.find
        interleaved = []

        def find_then_complete(record_type, predicate=None):
            found = original_find(record_type, predicate)
            if record_type is EmployeeProcess and not interleaved:
                interleaved.append(True)
                orchestrator.complete_process_task(process.id, process.tasks[0].id)
            return found

        monkeypatch.setattr(store, "find", find_then_complete)
        result = orchestrator.run_deadline_sweep(datetime(2026, 4, 3, 9, 0, tzinfo=timezone.utc))

        assert interleaved
        assert result["delayed_processes"] == 1
        assert result["overdue_tasks"] > 0
        process = orchestrator.get_process_status(process.id)
        assert process.tasks[0].completed is True
        assert all(t.escalated for t in process.tasks if not t.completed)

    def test_task_escalation_tolerates_concurrent_completion(self, orchestrator, monkeypatch):
        process = orchestrator.start_onboarding("emp_1", TODAY)
        profile = _task_by_title(process, "Complete Profile Information")
        store = orchestrator.store
        original_find = store.find
        interleaved = []

        def find_then_complete(record_type, predicate=None):
            found = original_find(record_type, predicate)
            if record_type is EmployeeProcess and not interleaved:
                interleaved.append(True)
                orchestrator.complete_process_task(process.id, profile.id)
            return found

        monkeypatch.setattr(store, "find", find_then_complete)
        escalated = orchestrator.escalate_overdue_tasks(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))

        titles = sorted(_task_by_title_id(orchestrator, pid, tid) for pid, tid in escalated)
        assert "Complete Profile Information" not in titles
        assert "Department Orientation" in titles
        process = orchestrator.get_process_status(process.id)
        assert _task_by_title(process, "Complete Profile Information").completed is True
        assert _task_by_title(process, "Complete Profile Information").escalated is False


def _task_by_title_id(orchestrator, process_id, task_id):
    return orchestrator.get_process_status(process_id).find_task(task_id).title


# ── Queries ──────────────────────────────────────────────────────────


class TestProcessQueries:
    def test_active_processes_earliest_start_first(self, orchestrator):
        later = orchestrator.start_onboarding("emp_2", date(2026, 3, 16))
        now = orchestrator.start_onboarding("emp_1", TODAY)
        leaving = orchestrator.start_offboarding("emp_3", date(2026, 4, 30))
        page = orchestrator.get_active_processes()
        assert page.total == 3
        assert [p.id for p in page.items] == [now.id, leaving.id, later.id]

    def test_active_processes_by_type(self, orchestrator):
        orchestrator.start_onboarding("emp_1", TODAY)
        leaving = orchestrator.start_offboarding("emp_3", date(2026, 4, 30))
        page = orchestrator.get_active_processes(ProcessType.OFFBOARDING)
        assert [p.id for p in page.items] == [leaving.id]

    def test_finished_processes_excluded(self, orchestrator):
        cancelled = orchestrator.start_onboarding("emp_1", TODAY)
        orchestrator.cancel_process(cancelled.id, "Offer withdrawn")
        kept = orchestrator.start_onboarding("emp_2", TODAY)
        assert [p.id for p in orchestrator.get_active_processes().items] == [kept.id]

    def test_active_processes_paged(self, orchestrator):
        for employee in ("emp_1", "emp_2", "emp_3"):
            orchestrator.start_onboarding(employee, TODAY)
        page = orchestrator.get_active_processes(page=2, page_size=2)
        assert page.total == 3
        assert [p.employee_id for p in page.items] == ["emp_3"]
        assert page.has_next is False
