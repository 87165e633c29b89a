"""HR Workflow & Approval Orchestration - Records.

Plain dataclasses persisted through the store collaborator. Every record
has a generated ``id`` and a ``version`` that the store bumps on each
conditional update.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from .config import (
    ACTIVE_PROCESS_STATUSES,
    FINAL_TRANSFER_STAGES,
    TERMINAL_APPROVAL_STATUSES,
    TERMINAL_STATUSES,
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    ApproverType,
    DeadlineType,
    ProcessStatus,
    ProcessType,
    ReviewPhase,
    TransferStage,
    WorkflowStatus,
    WorkflowType,
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Record:
    """Base for every stored record."""

    id: str = field(default_factory=_new_id)
    version: int = 0

    def unique_key(self) -> Optional[Tuple[Any, ...]]:
        """Key that at most one live record of this type may hold."""
        return None


# ── Workflow instances ───────────────────────────────────────────────


@dataclass
class WorkflowInstance(Record):
    """Generic envelope tracking one process attached to one entity."""

    workflow_type: WorkflowType = WorkflowType.LEAVE_APPROVAL
    entity_id: str = ""
    entity_type: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    current_state: str = ""
    current_assignee_id: Optional[str] = None
    initiator_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def unique_key(self) -> Optional[Tuple[Any, ...]]:
        if self.is_terminal:
            return None
        return (self.entity_id, self.workflow_type)


@dataclass(frozen=True)
class WorkflowStateTransition:
    """Immutable audit record for one workflow transition."""

    workflow_instance_id: str
    from_state: Optional[str]
    to_state: str
    reason: str = ""
    transitioned_by: Optional[str] = None
    transitioned_at: datetime = field(default_factory=_utcnow)
    sequence: int = 0


# ── Approvals ────────────────────────────────────────────────────────


@dataclass
class ApprovalChainConfig(Record):
    """One rung of an approval chain."""

    approval_type: ApprovalType = ApprovalType.LEAVE_REQUEST
    sequence_order: int = 1
    approver_type: ApproverType = ApproverType.DIRECT_MANAGER
    department_id: Optional[str] = None
    min_threshold: Optional[Decimal] = None
    max_threshold: Optional[Decimal] = None
    active: bool = True
    specific_approver_id: Optional[str] = None
    escalate_after_hours: Optional[int] = None
    description: str = ""

    @property
    def has_thresholds(self) -> bool:
        return self.min_threshold is not None or self.max_threshold is not None

    def contains(self, measure: Optional[Decimal]) -> bool:
        """Lower bound inclusive, upper bound exclusive, None is unbounded."""
        if not self.has_thresholds:
            return True
        if measure is None:
            return False
        if self.min_threshold is not None and measure < self.min_threshold:
            return False
        if self.max_threshold is not None and measure >= self.max_threshold:
            return False
        return True


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    """One decision or annotation on an approval request."""

    sequence: int
    level: int
    approver_id: Optional[str]
    decision: ApprovalDecision
    comments: str = ""
    decided_at: datetime = field(default_factory=_utcnow)
    delegated_to: Optional[str] = None


@dataclass
class ApprovalRequest(Record):
    """Leveled approval chain progress for one business entity."""

    workflow_instance_id: str = ""
    entity_id: str = ""
    entity_type: str = ""
    approval_type: ApprovalType = ApprovalType.LEAVE_REQUEST
    status: ApprovalStatus = ApprovalStatus.PENDING_APPROVAL
    requestor_id: str = ""
    department_id: Optional[str] = None
    current_approver_id: Optional[str] = None
    current_level: int = 1
    total_levels: int = 1
    amount: Optional[Decimal] = None
    days_count: Optional[int] = None
    priority: int = 3
    submitted_at: datetime = field(default_factory=_utcnow)
    due_date: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    approver_comments: Optional[str] = None
    description: str = ""
    chain: List[ApprovalChainConfig] = field(default_factory=list)
    history: List[ApprovalHistoryEntry] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    @property
    def is_final_level(self) -> bool:
        return self.current_level == self.total_levels

    def current_rung(self) -> ApprovalChainConfig:
        return self.chain[self.current_level - 1]


@dataclass
class PendingApprovalSummary:
    """Read model for an approver's inbox."""

    request_id: str
    approval_type: ApprovalType
    entity_id: str
    entity_description: str
    requestor_id: str
    current_level: int
    total_levels: int
    priority: int
    submitted_at: datetime
    due_date: Optional[datetime]
    days_waiting: int
    is_overdue: bool


@dataclass
class BulkDecisionResult:
    """Outcome of one id inside a bulk approval."""

    request_id: str
    success: bool
    status: Optional[ApprovalStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


# ── Employee processes ───────────────────────────────────────────────


@dataclass
class EmployeeProcessTask:
    """One checklist item of an onboarding or offboarding process."""

    id: str = field(default_factory=_new_id)
    title: str = ""
    description: str = ""
    due_date: Optional[date] = None
    completed: bool = False
    completion_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    completion_notes: Optional[str] = None
    escalated: bool = False


@dataclass
class EmployeeProcess(Record):
    """Checklist-style onboarding or offboarding process."""

    employee_id: str = ""
    process_type: ProcessType = ProcessType.ONBOARDING
    status: ProcessStatus = ProcessStatus.PLANNED
    start_date: Optional[date] = None
    target_end_date: Optional[date] = None
    workflow_instance_id: Optional[str] = None
    manager_id: Optional[str] = None
    notes: str = ""
    tasks: List[EmployeeProcessTask] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PROCESS_STATUSES

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    @property
    def completed_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.completed)

    @property
    def completion_percentage(self) -> int:
        # An empty checklist has nothing outstanding.
        if not self.tasks:
            return 100
        # Half-up rounding: 2 of 3 reports 67.
        return math.floor(self.completed_tasks * 100 / self.total_tasks + 0.5)

    def find_task(self, task_id: str) -> Optional[EmployeeProcessTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def unique_key(self) -> Optional[Tuple[Any, ...]]:
        if not self.is_active:
            return None
        return (self.employee_id, self.process_type)


# ── Review cycles ────────────────────────────────────────────────────


@dataclass
class ReviewCycle(Record):
    """Performance review cycle moving a cohort through shared phases."""

    name: str = ""
    description: str = ""
    review_period_start: Optional[date] = None
    review_period_end: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    phase: ReviewPhase = ReviewPhase.DRAFT
    self_assessment_deadline: Optional[date] = None
    manager_review_deadline: Optional[date] = None
    calibration_deadline: Optional[date] = None
    feedback_deadline: Optional[date] = None
    department_ids: List[str] = field(default_factory=list)
    active: bool = True
    workflow_instance_id: Optional[str] = None
    created_by: Optional[str] = None

    def deadline_for(self, phase: ReviewPhase) -> Optional[date]:
        return {
            ReviewPhase.SELF_ASSESSMENT: self.self_assessment_deadline,
            ReviewPhase.MANAGER_REVIEW: self.manager_review_deadline,
            ReviewPhase.CALIBRATION: self.calibration_deadline,
            ReviewPhase.FEEDBACK_DELIVERY: self.feedback_deadline,
        }.get(phase)

    def overlaps(self, start: date, end: date) -> bool:
        return self.start_date <= end and self.end_date >= start


@dataclass
class ReviewParticipant(Record):
    """Per-employee progress inside a review cycle."""

    cycle_id: str = ""
    employee_id: str = ""
    manager_id: Optional[str] = None
    department_id: Optional[str] = None
    self_assessment_submitted_at: Optional[datetime] = None
    manager_review_submitted_at: Optional[datetime] = None
    feedback_delivered_at: Optional[datetime] = None
    feedback_notes: Optional[str] = None
    overall_rating: Optional[int] = None

    def unique_key(self) -> Optional[Tuple[Any, ...]]:
        return (self.cycle_id, self.employee_id)


@dataclass
class CycleProgress:
    """Read-only progress view, always derived from participant records."""

    cycle_id: str
    phase: ReviewPhase
    total_employees: int = 0
    completed_self_assessments: int = 0
    completed_manager_reviews: int = 0
    delivered_feedbacks: int = 0

    @staticmethod
    def _pct(count: int, total: int) -> float:
        return round(count * 100.0 / total, 1) if total else 0.0

    @property
    def self_assessment_rate(self) -> float:
        return self._pct(self.completed_self_assessments, self.total_employees)

    @property
    def manager_review_rate(self) -> float:
        return self._pct(self.completed_manager_reviews, self.total_employees)

    @property
    def feedback_rate(self) -> float:
        return self._pct(self.delivered_feedbacks, self.total_employees)


# ── Transfers ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransferApproval:
    """One party's decision on a transfer."""

    stage: TransferStage
    approver_id: Optional[str]
    approved: bool
    comments: str = ""
    decided_at: datetime = field(default_factory=_utcnow)


@dataclass
class TransferRequest(Record):
    """Department, manager or position change awaiting sign-off.

    Approval runs current manager, receiving manager, then HR; a stage
    with nobody to ask is skipped. An approved transfer is applied by
    ``execute`` on or after its effective date.
    """

    employee_id: str = ""
    workflow_instance_id: Optional[str] = None
    stage: TransferStage = TransferStage.PENDING_CURRENT_MANAGER
    effective_date: Optional[date] = None
    reason: str = ""
    notes: str = ""
    requires_relocation: bool = False
    current_department_id: Optional[str] = None
    current_manager_id: Optional[str] = None
    current_position: Optional[str] = None
    new_department_id: Optional[str] = None
    new_manager_id: Optional[str] = None
    new_position: Optional[str] = None
    approvers: Dict[str, Optional[str]] = field(default_factory=dict)
    approvals: List[TransferApproval] = field(default_factory=list)
    initiated_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    executed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.stage not in FINAL_TRANSFER_STAGES

    @property
    def current_approver_id(self) -> Optional[str]:
        return self.approvers.get(self.stage.name)

    def approval_for(self, stage: TransferStage) -> Optional[TransferApproval]:
        for approval in self.approvals:
            if approval.stage == stage:
                return approval
        return None

    def unique_key(self) -> Optional[Tuple[Any, ...]]:
        if not self.is_open:
            return None
        return (self.employee_id,)


@dataclass
class PositionHistoryEntry(Record):
    """What an employee's placement was before and after a transfer."""

    employee_id: str = ""
    transfer_id: Optional[str] = None
    effective_date: Optional[date] = None
    previous_department_id: Optional[str] = None
    new_department_id: Optional[str] = None
    previous_manager_id: Optional[str] = None
    new_manager_id: Optional[str] = None
    previous_position: Optional[str] = None
    new_position: Optional[str] = None
    reason: str = ""
    recorded_at: datetime = field(default_factory=_utcnow)


# ── Deadlines ────────────────────────────────────────────────────────


@dataclass
class WorkflowDeadline(Record):
    """A tracked due date with a one-time advance warning."""

    workflow_instance_id: str = ""
    deadline_at: Optional[datetime] = None
    warning_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    deadline_type: DeadlineType = DeadlineType.APPROVAL_DECISION
    description: str = ""
    completed: bool = False
    completed_at: Optional[datetime] = None
    warning_sent: bool = False
    overdue_sent: bool = False
    cancelled: bool = False
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        return not self.completed and self.deadline_at is not None and self.deadline_at < now


# ── Paging ───────────────────────────────────────────────────────────

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of query results."""

    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages
