"""HR Workflow & Approval Orchestration - Deadline Monitor.

Sweeps are driven by an external scheduler and take ``now`` explicitly, so
they are pure functions of time and stored state. The only state they
write is the ``warning_sent`` / ``overdue_sent`` markers (and DELAYED for
employee processes past their target date).
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional

from .config import DEFAULT_WORKFLOW_CONFIG, DeadlineType, NotificationType, ProcessStatus, WorkflowConfig
from .exceptions import NotFoundError, VersionConflictError
from .identity import Directory
from .models import EmployeeProcess, WorkflowDeadline
from .notifications import NotificationDispatcher
from .query import (
    RecordQuery,
    deadline_assigned_to,
    deadline_for_workflow,
    deadline_open,
    deadline_overdue,
    warning_due,
)
from .state_machine import WorkflowStateManager
from .store import WorkflowStore

logger = logging.getLogger(__name__)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadlineMonitor:
    """Registers deadlines and runs overdue / warning sweeps."""

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: NotificationDispatcher,
        directory: Optional[Directory] = None,
        config: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
        state_manager: Optional[WorkflowStateManager] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.directory = directory
        self.config = config
        self.clock = clock
        self.state_manager = state_manager

    # ── Registration ─────────────────────────────────────────────────

    def register(
        self,
        workflow_instance_id: str,
        deadline_at: datetime,
        deadline_type: DeadlineType,
        assignee_id: Optional[str] = None,
        warning_hours: int = 24,
        description: str = "",
    ) -> WorkflowDeadline:
        """Track a deadline; the warning fires *warning_hours* before it."""
        deadline = WorkflowDeadline(
            workflow_instance_id=workflow_instance_id,
            deadline_at=deadline_at,
            warning_at=deadline_at - timedelta(hours=warning_hours),
            assignee_id=assignee_id,
            deadline_type=deadline_type,
            description=description,
        )
        deadline = self.store.insert(deadline)
        logger.debug(
            "Registered %s deadline %s for workflow %s at %s",
            deadline_type.value, deadline.id, workflow_instance_id, deadline_at.isoformat(),
        )
        return deadline

    def get(self, deadline_id: str) -> WorkflowDeadline:
        deadline = self.store.get(WorkflowDeadline, deadline_id)
        if deadline is None:
            raise NotFoundError("WorkflowDeadline", deadline_id)
        return deadline

    def for_workflow(self, workflow_instance_id: str, open_only: bool = True) -> List[WorkflowDeadline]:
        query = RecordQuery.over(self.store, WorkflowDeadline).where(deadline_for_workflow(workflow_instance_id))
        if open_only:
            query.where(deadline_open())
        return query.order_by(lambda d: d.deadline_at).execute()

    def update(self, deadline_id: str, deadline_at: datetime, warning_hours: Optional[int] = None) -> WorkflowDeadline:
        """Move a deadline. Warning and overdue markers start over."""
        deadline = self.get(deadline_id)
        lead = deadline.deadline_at - deadline.warning_at
        if warning_hours is not None:
            lead = timedelta(hours=warning_hours)
        deadline.deadline_at = deadline_at
        deadline.warning_at = deadline_at - lead
        deadline.warning_sent = False
        deadline.overdue_sent = False
        return self.store.update(deadline, deadline.version)

    def reassign(self, workflow_instance_id: str, assignee_id: str) -> int:
        """Point open deadlines at a new assignee without touching the clock."""
        count = 0
        for deadline in self.for_workflow(workflow_instance_id):
            deadline.assignee_id = assignee_id
            self.store.update(deadline, deadline.version)
            count += 1
        return count

    def complete(self, deadline_id: str, now: Optional[datetime] = None) -> WorkflowDeadline:
        deadline = self.get(deadline_id)
        if deadline.completed:
            return deadline
        deadline.completed = True
        deadline.completed_at = now or self.clock()
        return self.store.update(deadline, deadline.version)

    def cancel(self, deadline_id: str, now: Optional[datetime] = None) -> WorkflowDeadline:
        """Stop tracking a deadline without counting it as met."""
        deadline = self.get(deadline_id)
        if deadline.completed:
            return deadline
        deadline.completed = True
        deadline.cancelled = True
        deadline.completed_at = now or self.clock()
        deadline = self.store.update(deadline, deadline.version)
        logger.info("Cancelled deadline %s of workflow %s", deadline_id, deadline.workflow_instance_id)
        return deadline

    def for_assignee(self, assignee_id: str) -> List[WorkflowDeadline]:
        """Open deadlines owned by *assignee_id*, soonest first."""
        return (
            RecordQuery.over(self.store, WorkflowDeadline)
            .where(deadline_assigned_to(assignee_id))
            .where(deadline_open())
            .order_by(lambda d: d.deadline_at)
            .execute()
        )

    def complete_for_workflow(
        self,
        workflow_instance_id: str,
        deadline_type: Optional[DeadlineType] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Close every open deadline of a workflow step; returns how many."""
        now = now or self.clock()
        count = 0
        for deadline in self.for_workflow(workflow_instance_id):
            if deadline_type is not None and deadline.deadline_type != deadline_type:
                continue
            deadline.completed = True
            deadline.completed_at = now
            self.store.update(deadline, deadline.version)
            count += 1
        return count

    # ── Sweeps ───────────────────────────────────────────────────────

    def scan_overdue(self, now: Optional[datetime] = None) -> List[WorkflowDeadline]:
        """Report open deadlines already past due.

        Every call reports the full overdue set. The DEADLINE_EXCEEDED
        notification goes out once per deadline, tracked by ``overdue_sent``.
        """
        now = now or self.clock()
        overdue = (
            RecordQuery.over(self.store, WorkflowDeadline)
            .where(deadline_overdue(now))
            .order_by(lambda d: d.deadline_at)
            .execute()
        )
        reported: List[WorkflowDeadline] = []
        with self.dispatcher.batch():
            for deadline in overdue:
                if not deadline.overdue_sent:
                    deadline.overdue_sent = True
                    try:
                        deadline = self.store.update(deadline, deadline.version)
                    except VersionConflictError:
                        deadline = self.get(deadline.id)
                    else:
                        self.dispatcher.send(
                            deadline.assignee_id,
                            NotificationType.DEADLINE_EXCEEDED,
                            title="Deadline Exceeded",
                            deadline_id=deadline.id,
                            workflow_instance_id=deadline.workflow_instance_id,
                            deadline_type=deadline.deadline_type.value,
                            deadline_at=deadline.deadline_at.isoformat(),
                            description=deadline.description,
                        )
                reported.append(deadline)
        if reported:
            logger.warning("Deadline sweep found %d overdue deadlines", len(reported))
        return reported

    def scan_approaching_warnings(self, now: Optional[datetime] = None) -> List[WorkflowDeadline]:
        """Return deadlines whose warning time passed, each exactly once."""
        now = now or self.clock()
        due = (
            RecordQuery.over(self.store, WorkflowDeadline)
            .where(warning_due(now))
            .order_by(lambda d: d.warning_at)
            .execute()
        )
        warned: List[WorkflowDeadline] = []
        with self.dispatcher.batch():
            for deadline in due:
                deadline.warning_sent = True
                try:
                    deadline = self.store.update(deadline, deadline.version)
                except VersionConflictError:
                    # Another sweep got there first.
                    continue
                warned.append(deadline)
                self.dispatcher.send(
                    deadline.assignee_id,
                    NotificationType.DEADLINE_APPROACHING,
                    title="Deadline Approaching",
                    deadline_id=deadline.id,
                    workflow_instance_id=deadline.workflow_instance_id,
                    deadline_type=deadline.deadline_type.value,
                    deadline_at=deadline.deadline_at.isoformat(),
                    description=deadline.description,
                )
        if warned:
            logger.info("Sent %d deadline warnings", len(warned))
        return warned

    def count_overdue(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        return RecordQuery.over(self.store, WorkflowDeadline).where(deadline_overdue(now)).count()

    # ── Escalation ───────────────────────────────────────────────────

    def escalate(self, deadline_id: str, now: Optional[datetime] = None) -> WorkflowDeadline:
        """Raise a deadline's escalation level and alert the assignee's supervisor."""
        now = now or self.clock()
        with self.dispatcher.batch():
            deadline = self.get(deadline_id)
            deadline.escalation_level += 1
            deadline.last_escalated_at = now
            deadline = self.store.update(deadline, deadline.version)

            supervisor = None
            if self.directory is not None and deadline.assignee_id:
                supervisor = self.directory.manager_of(deadline.assignee_id)
            self.dispatcher.send(
                supervisor,
                NotificationType.ESCALATION,
                title="Overdue Item Escalated",
                deadline_id=deadline.id,
                workflow_instance_id=deadline.workflow_instance_id,
                assignee_id=deadline.assignee_id,
                escalation_level=deadline.escalation_level,
            )
        logger.warning(
            "Escalated deadline %s to level %d", deadline.id, deadline.escalation_level,
        )
        return deadline

    def auto_escalate_overdue(self, now: Optional[datetime] = None) -> List[WorkflowDeadline]:
        """Escalate overdue deadlines once per elapsed escalation interval."""
        now = now or self.clock()
        interval = timedelta(hours=self.config.auto_escalate_interval_hours)
        escalated = []
        for deadline in RecordQuery.over(self.store, WorkflowDeadline).where(deadline_overdue(now)).execute():
            overdue_for = now - deadline.deadline_at
            if overdue_for >= interval * (deadline.escalation_level + 1):
                escalated.append(self.escalate(deadline.id, now))
        return escalated

    # ── Employee processes ───────────────────────────────────────────

    def sweep_delayed_processes(self, now: Optional[datetime] = None) -> List[EmployeeProcess]:
        """Mark running processes past their target date as DELAYED.

        Each candidate is re-read inside its own transaction, so a task
        completed between the lookup and the update is honoured rather
        than overwritten.
        """
        now = now or self.clock()
        today = now.date()

        def behind_schedule(p: EmployeeProcess) -> bool:
            return (
                p.status in (ProcessStatus.PLANNED, ProcessStatus.IN_PROGRESS)
                and p.target_end_date is not None
                and p.target_end_date < today
                and p.completed_tasks < p.total_tasks
            )

        delayed = []
        for candidate in self.store.find(EmployeeProcess, behind_schedule):
            try:
                with self.dispatcher.batch(), self.store.transaction():
                    process = self.store.get(EmployeeProcess, candidate.id)
                    if process is None or not behind_schedule(process):
                        continue
                    process.status = ProcessStatus.DELAYED
                    process = self.store.update(process, process.version)
                    if self.state_manager is not None and process.workflow_instance_id:
                        self.state_manager.transition(
                            process.workflow_instance_id,
                            state="DELAYED",
                            reason=f"Target end date {process.target_end_date.isoformat()} passed",
                        )
                    self.dispatcher.send(
                        process.manager_id,
                        NotificationType.DEADLINE_EXCEEDED,
                        title=f"{process.process_type.value.title()} Delayed",
                        process_id=process.id,
                        employee_id=process.employee_id,
                        completion_percentage=process.completion_percentage,
                    )
            except VersionConflictError:
                logger.info("Process %s changed during the delay sweep, skipped", candidate.id)
                continue
            delayed.append(process)
        if delayed:
            logger.warning("Marked %d employee processes as delayed", len(delayed))
        return delayed
