"""HR Workflow & Approval Orchestration - Configuration."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List


class WorkflowType(Enum):
    """Fixed catalog of workflow types."""

    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    LEAVE_APPROVAL = "leave_approval"
    EXPENSE_APPROVAL = "expense_approval"
    OVERTIME_APPROVAL = "overtime_approval"
    TRAINING_ENROLLMENT = "training_enrollment"
    PERFORMANCE_REVIEW_CYCLE = "performance_review_cycle"
    TRANSFER = "transfer"
    TIMESHEET_APPROVAL = "timesheet_approval"


class WorkflowStatus(Enum):
    """Workflow instance status."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ON_HOLD = "on_hold"
    ESCALATED = "escalated"


class ApprovalType(Enum):
    """Kinds of request that go through an approval chain."""

    LEAVE_REQUEST = "leave_request"
    EXPENSE_CLAIM = "expense_claim"
    OVERTIME_REQUEST = "overtime_request"
    TRAINING_REQUEST = "training_request"
    POSITION_TRANSFER = "position_transfer"
    SALARY_ADJUSTMENT = "salary_adjustment"
    TIMESHEET_APPROVAL = "timesheet_approval"


class ApproverType(Enum):
    """How the approver for a chain rung is determined."""

    DIRECT_MANAGER = "direct_manager"
    DEPARTMENT_HEAD = "department_head"
    HR = "hr"
    FINANCE = "finance"
    EXECUTIVE = "executive"
    SPECIFIC_EMPLOYEE = "specific_employee"


class ApprovalStatus(Enum):
    """Approval request status."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalDecision(Enum):
    """Decision (or annotation) recorded in an approval history."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_MORE_INFO = "request_more_info"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    WITHDRAW = "withdraw"


class ProcessType(Enum):
    """Employee lifecycle process type."""

    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"


class ProcessStatus(Enum):
    """Employee process status."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


class ReviewPhase(Enum):
    """Review cycle phases, in order."""

    DRAFT = "draft"
    SELF_ASSESSMENT = "self_assessment"
    MANAGER_REVIEW = "manager_review"
    CALIBRATION = "calibration"
    FEEDBACK_DELIVERY = "feedback_delivery"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class TransferStage(Enum):
    """Where a transfer stands in its approval and execution sequence."""

    PENDING_CURRENT_MANAGER = "pending_current_manager_approval"
    PENDING_NEW_MANAGER = "pending_new_manager_approval"
    PENDING_HR = "pending_hr_approval"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class DeadlineType(Enum):
    """What a tracked deadline governs."""

    APPROVAL_DECISION = "approval_decision"
    TASK_COMPLETION = "task_completion"
    SELF_ASSESSMENT = "self_assessment"
    MANAGER_REVIEW = "manager_review"
    CALIBRATION = "calibration"
    FEEDBACK_DELIVERY = "feedback_delivery"
    PROCESS_COMPLETION = "process_completion"
    TRANSFER_APPROVAL = "transfer_approval"


class NotificationType(Enum):
    """Notification catalog passed to the notifier collaborator."""

    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_DECISION = "approval_decision"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    DEADLINE_APPROACHING = "deadline_approaching"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    WORKFLOW_COMPLETED = "workflow_completed"
    ESCALATION = "escalation"
    REMINDER = "reminder"
    INFO = "info"
    WELCOME = "welcome"
    TRAINING_ENROLLMENT = "training_enrollment"
    PERFORMANCE_REVIEW = "performance_review"


class ErrorCode(Enum):
    """Structured error codes carried by workflow errors."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STALE_APPROVAL = "STALE_APPROVAL"
    PHASE_PRECONDITION = "PHASE_PRECONDITION"
    OVERLAPPING_CYCLE = "OVERLAPPING_CYCLE"
    DUPLICATE_ACTIVE_WORKFLOW = "DUPLICATE_ACTIVE_WORKFLOW"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_APPROVER_AVAILABLE = "NO_APPROVER_AVAILABLE"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"


# Statuses after which a workflow no longer blocks a new one for the same
# entity. APPROVED may still move on to COMPLETED or FAILED.
TERMINAL_STATUSES: FrozenSet[WorkflowStatus] = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.COMPLETED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.FAILED,
})

FINAL_STATUSES: FrozenSet[WorkflowStatus] = TERMINAL_STATUSES - {WorkflowStatus.APPROVED}

TERMINAL_APPROVAL_STATUSES: FrozenSet[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
})

ACTIVE_PROCESS_STATUSES: FrozenSet[ProcessStatus] = frozenset({
    ProcessStatus.PLANNED,
    ProcessStatus.IN_PROGRESS,
    ProcessStatus.DELAYED,
})

PROCESS_TRANSITIONS: Dict[ProcessStatus, FrozenSet[ProcessStatus]] = {
    ProcessStatus.PLANNED: frozenset({ProcessStatus.IN_PROGRESS, ProcessStatus.DELAYED, ProcessStatus.CANCELLED}),
    ProcessStatus.IN_PROGRESS: frozenset({ProcessStatus.COMPLETED, ProcessStatus.DELAYED, ProcessStatus.CANCELLED}),
    ProcessStatus.DELAYED: frozenset({ProcessStatus.COMPLETED, ProcessStatus.CANCELLED}),
    ProcessStatus.COMPLETED: frozenset(),
    ProcessStatus.CANCELLED: frozenset(),
}

# Transfer stages in approval order. Stages without an approver are skipped.
TRANSFER_APPROVAL_STAGES: List[TransferStage] = [
    TransferStage.PENDING_CURRENT_MANAGER,
    TransferStage.PENDING_NEW_MANAGER,
    TransferStage.PENDING_HR,
]

FINAL_TRANSFER_STAGES: FrozenSet[TransferStage] = frozenset({
    TransferStage.COMPLETED,
    TransferStage.REJECTED,
    TransferStage.CANCELLED,
})

PHASE_ORDER: List[ReviewPhase] = list(ReviewPhase)

APPROVAL_WORKFLOW_TYPES: Dict[ApprovalType, WorkflowType] = {
    ApprovalType.LEAVE_REQUEST: WorkflowType.LEAVE_APPROVAL,
    ApprovalType.EXPENSE_CLAIM: WorkflowType.EXPENSE_APPROVAL,
    ApprovalType.OVERTIME_REQUEST: WorkflowType.OVERTIME_APPROVAL,
    ApprovalType.TRAINING_REQUEST: WorkflowType.TRAINING_ENROLLMENT,
    ApprovalType.POSITION_TRANSFER: WorkflowType.TRANSFER,
    ApprovalType.SALARY_ADJUSTMENT: WorkflowType.TRANSFER,
    ApprovalType.TIMESHEET_APPROVAL: WorkflowType.TIMESHEET_APPROVAL,
}

APPROVAL_ENTITY_TYPES: Dict[ApprovalType, str] = {
    ApprovalType.LEAVE_REQUEST: "LeaveRequest",
    ApprovalType.EXPENSE_CLAIM: "ExpenseClaim",
    ApprovalType.OVERTIME_REQUEST: "OvertimeRecord",
    ApprovalType.TRAINING_REQUEST: "TrainingEnrollment",
    ApprovalType.POSITION_TRANSFER: "PositionTransfer",
    ApprovalType.SALARY_ADJUSTMENT: "SalaryAdjustment",
    ApprovalType.TIMESHEET_APPROVAL: "Timesheet",
}

APPROVAL_TITLES: Dict[ApprovalType, str] = {
    ApprovalType.LEAVE_REQUEST: "Leave Request Pending Approval",
    ApprovalType.EXPENSE_CLAIM: "Expense Claim Pending Approval",
    ApprovalType.OVERTIME_REQUEST: "Overtime Request Pending Approval",
    ApprovalType.TRAINING_REQUEST: "Training Request Pending Approval",
    ApprovalType.POSITION_TRANSFER: "Position Transfer Pending Approval",
    ApprovalType.SALARY_ADJUSTMENT: "Salary Adjustment Pending Approval",
    ApprovalType.TIMESHEET_APPROVAL: "Timesheet Pending Approval",
}

PROCESS_WORKFLOW_TYPES: Dict[ProcessType, WorkflowType] = {
    ProcessType.ONBOARDING: WorkflowType.ONBOARDING,
    ProcessType.OFFBOARDING: WorkflowType.OFFBOARDING,
}


@dataclass
class WorkflowConfig:
    """Tunable defaults injected into the workflow services."""

    approval_due_days: int = 5
    approval_warning_hours: int = 24
    default_priority: int = 3
    onboarding_duration_days: int = 30
    onboarding_warning_hours: int = 72
    offboarding_warning_hours: int = 72
    transfer_lead_days: int = 7
    transfer_warning_hours: int = 72
    phase_warning_hours: Dict[ReviewPhase, int] = field(default_factory=lambda: {
        ReviewPhase.SELF_ASSESSMENT: 72,
        ReviewPhase.MANAGER_REVIEW: 72,
        ReviewPhase.CALIBRATION: 48,
        ReviewPhase.FEEDBACK_DELIVERY: 48,
    })
    auto_escalate_interval_hours: int = 24
    strict_phase_gates: bool = True
    default_page_size: int = 20

    @classmethod
    def from_settings(cls, settings) -> "WorkflowConfig":
        """Build a config from the application settings object."""
        return cls(
            approval_due_days=settings.approval_due_days,
            approval_warning_hours=settings.approval_warning_hours,
            default_priority=settings.default_priority,
            onboarding_duration_days=settings.onboarding_duration_days,
            onboarding_warning_hours=settings.onboarding_warning_hours,
            offboarding_warning_hours=settings.offboarding_warning_hours,
            transfer_lead_days=settings.transfer_lead_days,
            transfer_warning_hours=settings.transfer_warning_hours,
            phase_warning_hours={
                ReviewPhase.SELF_ASSESSMENT: settings.self_assessment_warning_hours,
                ReviewPhase.MANAGER_REVIEW: settings.manager_review_warning_hours,
                ReviewPhase.CALIBRATION: settings.calibration_warning_hours,
                ReviewPhase.FEEDBACK_DELIVERY: settings.feedback_warning_hours,
            },
            auto_escalate_interval_hours=settings.auto_escalate_interval_hours,
            strict_phase_gates=settings.strict_phase_gates,
            default_page_size=settings.default_page_size,
        )


DEFAULT_WORKFLOW_CONFIG = WorkflowConfig()
