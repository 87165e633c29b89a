"""HR Workflow & Approval Orchestration - Employee Processes.

Onboarding and offboarding are checklists. A process is PLANNED until its
start date (or first completed task), IN_PROGRESS while tasks remain, and
COMPLETED as soon as the last task is ticked off. DELAYED is set by the
deadline sweep, never by task completion.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .config import (
    DEFAULT_WORKFLOW_CONFIG,
    PROCESS_TRANSITIONS,
    PROCESS_WORKFLOW_TYPES,
    ApproverType,
    DeadlineType,
    NotificationType,
    ProcessStatus,
    ProcessType,
    WorkflowConfig,
    WorkflowStatus,
)
from .deadlines import DeadlineMonitor, end_of_day
from .exceptions import (
    DuplicateActiveWorkflowError,
    InvalidTransitionError,
    NotFoundError,
    UniqueConstraintViolation,
    VersionConflictError,
)
from .identity import Directory
from .models import EmployeeProcess, EmployeeProcessTask, Page
from .notifications import NotificationDispatcher
from .query import RecordQuery, process_active, process_for_employee, process_of_type
from .state_machine import WorkflowStateManager
from .store import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskTemplate:
    """Default checklist entry. ``assignee`` is a role resolved per employee."""

    title: str
    description: str
    offset_days: int
    assignee: Optional[str] = "employee"
    requires: Optional[str] = None


ONBOARDING_TASKS: Tuple[TaskTemplate, ...] = (
    TaskTemplate("Complete Profile Information", "Fill in personal details, emergency contacts and bank information", 3),
    TaskTemplate("Department Orientation", "Meet the team and walk through department processes", 5, "manager"),
    TaskTemplate("IT Systems Setup", "Provision accounts, email and system access", 2, None),
    TaskTemplate("Benefits Enrollment", "Review and enroll in benefit plans", 14),
    TaskTemplate("Policy Acknowledgment", "Read and acknowledge company policies", 7),
    TaskTemplate("Complete Mandatory Trainings", "Finish all mandatory training courses", 21, requires="trainings"),
    TaskTemplate("First Week Check-in", "Manager check-in at the end of the first week", 7, "manager"),
    TaskTemplate("30-Day Review Meeting", "Review progress after the first month", 30, "manager"),
)

# Offsets are relative to the last working day.
OFFBOARDING_TASKS: Tuple[TaskTemplate, ...] = (
    TaskTemplate("Knowledge Transfer Documentation", "Document responsibilities and open work", -14),
    TaskTemplate("Project Handover", "Hand over ongoing projects to the team", -7),
    TaskTemplate("Submit Pending Expenses", "Submit every outstanding expense claim", -10),
    TaskTemplate("Benefits Termination Review", "Review benefit continuation options", -7, "hr"),
    TaskTemplate("Exit Interview", "Exit interview with HR", -3, "hr", requires="exit_interview"),
    TaskTemplate("Farewell Communication", "Announce the departure to the team", -1, "manager"),
    TaskTemplate("Return Company Assets", "Return laptop, badge and other equipment", 0),
    TaskTemplate("IT Access Revocation", "Revoke system and building access", 0, None),
    TaskTemplate("Final Paycheck Processing", "Process final pay and outstanding balances", 0, "hr"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmployeeProcessManager:
    """Runs onboarding and offboarding checklists."""

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

    # ── Starting processes ───────────────────────────────────────────

    def start_onboarding(
        self,
        employee_id: str,
        start_date: date,
        manager_id: Optional[str] = None,
        requires_trainings: bool = False,
        initiator_id: Optional[str] = None,
        extra_tasks: Optional[List[EmployeeProcessTask]] = None,
        notes: str = "",
    ) -> EmployeeProcess:
        manager_id = manager_id or self.directory.manager_of(employee_id)
        flags = {"trainings"} if requires_trainings else set()
        tasks = self._tasks_from(ONBOARDING_TASKS, start_date, employee_id, manager_id, flags)
        tasks.extend(extra_tasks or [])
        target = start_date + timedelta(days=self.config.onboarding_duration_days)

        with self.dispatcher.batch(), self.store.transaction():
            process = self._open(
                ProcessType.ONBOARDING, employee_id, start_date, target, manager_id,
                tasks, initiator_id, notes, self.config.onboarding_warning_hours,
            )
            self.dispatcher.send(
                employee_id,
                NotificationType.WELCOME,
                title="Welcome Aboard",
                process_id=process.id,
                start_date=start_date.isoformat(),
                task_count=process.total_tasks,
            )
            self.dispatcher.send(
                manager_id,
                NotificationType.TASK_ASSIGNED,
                title="New Team Member Onboarding",
                process_id=process.id,
                employee_id=employee_id,
                start_date=start_date.isoformat(),
            )
        logger.info("Started onboarding %s for %s with %d tasks", process.id, employee_id, process.total_tasks)
        return process

    def start_offboarding(
        self,
        employee_id: str,
        last_working_day: date,
        reason: str = "",
        manager_id: Optional[str] = None,
        exit_interview: bool = True,
        initiator_id: Optional[str] = None,
    ) -> EmployeeProcess:
        manager_id = manager_id or self.directory.manager_of(employee_id)
        flags = {"exit_interview"} if exit_interview else set()
        tasks = self._tasks_from(OFFBOARDING_TASKS, last_working_day, employee_id, manager_id, flags)
        start = self.clock().date()

        with self.dispatcher.batch(), self.store.transaction():
            process = self._open(
                ProcessType.OFFBOARDING, employee_id, start, last_working_day, manager_id,
                tasks, initiator_id, reason, self.config.offboarding_warning_hours,
            )
            self.dispatcher.send(
                manager_id,
                NotificationType.TASK_ASSIGNED,
                title="Team Member Offboarding",
                process_id=process.id,
                employee_id=employee_id,
                last_working_day=last_working_day.isoformat(),
            )
        logger.info("Started offboarding %s for %s, last day %s", process.id, employee_id, last_working_day)
        return process

    def _tasks_from(
        self,
        templates: Tuple[TaskTemplate, ...],
        anchor: date,
        employee_id: str,
        manager_id: Optional[str],
        flags: set,
    ) -> List[EmployeeProcessTask]:
        assignees = {"employee": employee_id, "manager": manager_id, None: None}
        tasks = []
        for tmpl in templates:
            if tmpl.requires and tmpl.requires not in flags:
                continue
            if tmpl.assignee == "hr":
                assignee = self.directory.role_holder(ApproverType.HR, self.directory.department_of(employee_id))
            else:
                assignee = assignees.get(tmpl.assignee)
            tasks.append(EmployeeProcessTask(
                title=tmpl.title,
                description=tmpl.description,
                due_date=anchor + timedelta(days=tmpl.offset_days),
                assigned_to=assignee,
            ))
        return tasks

    def _open(
        self,
        process_type: ProcessType,
        employee_id: str,
        start_date: date,
        target_end_date: date,
        manager_id: Optional[str],
        tasks: List[EmployeeProcessTask],
        initiator_id: Optional[str],
        notes: str,
        warning_hours: int,
    ) -> EmployeeProcess:
        today = self.clock().date()
        status = ProcessStatus.PLANNED if start_date > today else ProcessStatus.IN_PROGRESS
        process = EmployeeProcess(
            employee_id=employee_id,
            process_type=process_type,
            status=status,
            start_date=start_date,
            target_end_date=target_end_date,
            manager_id=manager_id,
            notes=notes,
            tasks=tasks,
        )
        try:
            process = self.store.insert(process)
        except UniqueConstraintViolation as exc:
            raise DuplicateActiveWorkflowError(
                f"An active {process_type.value} process already exists for employee {employee_id}",
                existing_id=exc.existing_id,
                entity_id=employee_id,
            ) from exc

        workflow = self.state_manager.create(
            PROCESS_WORKFLOW_TYPES[process_type],
            employee_id,
            "Employee",
            initiator_id=initiator_id,
            assignee_id=manager_id,
            due_date=end_of_day(target_end_date),
            context={"process_id": process.id},
        )
        self.state_manager.transition(
            workflow.id,
            WorkflowStatus.IN_PROGRESS,
            state=status.name,
            reason=f"{process_type.value.title()} started",
            actor=initiator_id,
        )
        process.workflow_instance_id = workflow.id
        process = self.store.update(process, process.version)

        self.deadlines.register(
            workflow.id,
            end_of_day(target_end_date),
            DeadlineType.PROCESS_COMPLETION,
            assignee_id=manager_id,
            warning_hours=warning_hours,
            description=f"{process_type.value.title()} of {employee_id}",
        )
        for task in process.tasks:
            self.dispatcher.send(
                task.assigned_to,
                NotificationType.TASK_ASSIGNED,
                title=task.title,
                process_id=process.id,
                task_id=task.id,
                due_date=task.due_date.isoformat() if task.due_date else None,
            )
        return process

    # ── Checklist ────────────────────────────────────────────────────

    def get(self, process_id: str) -> EmployeeProcess:
        process = self.store.get(EmployeeProcess, process_id)
        if process is None:
            raise NotFoundError("EmployeeProcess", process_id)
        return process

    def begin(self, process_id: str, actor: Optional[str] = None) -> EmployeeProcess:
        """Move a PLANNED process to IN_PROGRESS."""
        with self.store.transaction():
            process = self.get(process_id)
            self._set_status(process, ProcessStatus.IN_PROGRESS)
            process = self.store.update(process, process.version)
            self.state_manager.transition(
                process.workflow_instance_id, state=ProcessStatus.IN_PROGRESS.name,
                reason="Process started", actor=actor,
            )
        return process

    def add_task(
        self,
        process_id: str,
        title: str,
        due_date: Optional[date] = None,
        assigned_to: Optional[str] = None,
        description: str = "",
    ) -> EmployeeProcess:
        with self.dispatcher.batch(), self.store.transaction():
            process = self.get(process_id)
            if not process.is_active:
                raise InvalidTransitionError(
                    f"Cannot add tasks to a {process.status.name} process",
                    entity_id=process_id,
                    current_state=process.status.name,
                )
            task = EmployeeProcessTask(title=title, description=description, due_date=due_date, assigned_to=assigned_to)
            process.tasks.append(task)
            process = self.store.update(process, process.version)
            self.dispatcher.send(assigned_to, NotificationType.TASK_ASSIGNED, title=title, process_id=process.id, task_id=task.id)
        return process

    def complete_task(
        self,
        process_id: str,
        task_id: str,
        completed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EmployeeProcess:
        """Tick off a task. Completing an already completed task is a no-op."""
        with self.dispatcher.batch(), self.store.transaction():
            process = self.get(process_id)
            task = process.find_task(task_id)
            if task is None:
                raise NotFoundError("EmployeeProcessTask", task_id)
            if task.completed:
                logger.debug("Task %s of %s already completed", task_id, process_id)
                return process
            if process.status == ProcessStatus.CANCELLED:
                raise InvalidTransitionError(
                    f"Process {process_id} is cancelled",
                    entity_id=process_id,
                    current_state=process.status.name,
                    attempted_state="TASK_COMPLETED",
                )

            now = self.clock()
            task.completed = True
            task.completion_date = now
            task.completion_notes = notes
            if process.status == ProcessStatus.PLANNED:
                self._set_status(process, ProcessStatus.IN_PROGRESS)

            finished = process.completed_tasks == process.total_tasks
            if finished:
                self._set_status(process, ProcessStatus.COMPLETED)
                process.completed_at = now
            process = self.store.update(process, process.version)

            self.dispatcher.send(
                process.manager_id,
                NotificationType.TASK_COMPLETED,
                title=f"Task Completed: {task.title}",
                process_id=process.id,
                task_id=task_id,
                completed_by=completed_by,
                completion_percentage=process.completion_percentage,
            )
            if finished:
                self.state_manager.complete(
                    process.workflow_instance_id,
                    reason="All checklist tasks completed",
                    actor=completed_by,
                )
                self.deadlines.complete_for_workflow(process.workflow_instance_id, now=now)
                for recipient in (process.employee_id, process.manager_id):
                    self.dispatcher.send(
                        recipient,
                        NotificationType.WORKFLOW_COMPLETED,
                        title=f"{process.process_type.value.title()} Completed",
                        process_id=process.id,
                    )

        logger.info(
            "Completed task %s of %s (%d%%)", task_id, process_id, process.completion_percentage,
        )
        return process

    def cancel(self, process_id: str, reason: str, actor: Optional[str] = None) -> EmployeeProcess:
        with self.dispatcher.batch(), self.store.transaction():
            process = self.get(process_id)
            self._set_status(process, ProcessStatus.CANCELLED)
            process.notes = f"{process.notes}\nCancelled: {reason}".strip()
            process = self.store.update(process, process.version)
            self.state_manager.cancel(process.workflow_instance_id, reason=reason, actor=actor)
            self.deadlines.complete_for_workflow(process.workflow_instance_id)
            self.dispatcher.send(
                process.manager_id,
                NotificationType.INFO,
                title=f"{process.process_type.value.title()} Cancelled",
                process_id=process.id,
                reason=reason,
            )
        logger.info("Cancelled process %s: %s", process_id, reason)
        return process

    def escalate_overdue_tasks(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Flag each overdue open task once and alert the process manager."""
        now = now or self.clock()
        today = now.date()

        def overdue_tasks(process: EmployeeProcess) -> List[EmployeeProcessTask]:
            return [
                t for t in process.tasks
                if not t.completed and not t.escalated and t.due_date is not None and t.due_date < today
            ]

        escalated: List[Tuple[str, str]] = []
        for candidate in RecordQuery.over(self.store, EmployeeProcess).where(process_active()).execute():
            if not overdue_tasks(candidate):
                continue
            flagged: List[Tuple[str, str]] = []
            try:
                with self.dispatcher.batch(), self.store.transaction():
                    process = self.store.get(EmployeeProcess, candidate.id)
                    if process is None or not process.is_active:
                        continue
                    for task in overdue_tasks(process):
                        task.escalated = True
                        flagged.append((process.id, task.id))
                        self.dispatcher.send(
                            process.manager_id,
                            NotificationType.ESCALATION,
                            title=f"Overdue Task: {task.title}",
                            process_id=process.id,
                            task_id=task.id,
                            employee_id=process.employee_id,
                            assigned_to=task.assigned_to,
                            due_date=task.due_date.isoformat(),
                        )
                    if flagged:
                        self.store.update(process, process.version)
            except VersionConflictError:
                logger.info("Process %s changed during task escalation, skipped", candidate.id)
                continue
            escalated.extend(flagged)
        if escalated:
            logger.warning("Escalated %d overdue checklist tasks", len(escalated))
        return escalated

    def find_for_employee(self, employee_id: str, active_only: bool = False) -> List[EmployeeProcess]:
        query = RecordQuery.over(self.store, EmployeeProcess).where(process_for_employee(employee_id))
        if active_only:
            query.where(process_active())
        return query.order_by(lambda p: p.start_date).execute()

    def active_processes(
        self,
        process_type: Optional[ProcessType] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        """Processes still running, earliest start first."""
        query = RecordQuery.over(self.store, EmployeeProcess).where(process_active())
        if process_type is not None:
            query.where(process_of_type(process_type))
        return (
            query.order_by(lambda p: (p.start_date, p.employee_id))
            .paginate(page, page_size or self.config.default_page_size)
            .page()
        )

    @staticmethod
    def _set_status(process: EmployeeProcess, target: ProcessStatus) -> None:
        if target not in PROCESS_TRANSITIONS[process.status]:
            raise InvalidTransitionError(
                f"Process {process.id} cannot move from {process.status.name} to {target.name}",
                entity_id=process.id,
                current_state=process.status.name,
                attempted_state=target.name,
            )
        process.status = target
