"""HR Workflow & Approval Orchestration.

Approval chains, workflow state machines, onboarding/offboarding
checklists, performance review cycles, transfers and deadline monitoring behind a
single orchestrator façade.
"""

from .config import (
    WorkflowType,
    WorkflowStatus,
    ApprovalType,
    ApproverType,
    ApprovalStatus,
    ApprovalDecision,
    ProcessType,
    ProcessStatus,
    ReviewPhase,
    TransferStage,
    DeadlineType,
    NotificationType,
    ErrorCode,
    WorkflowConfig,
)
from .exceptions import (
    WorkflowError,
    ConfigurationError,
    InvalidTransitionError,
    StaleApprovalError,
    PhasePreconditionError,
    OverlappingCycleError,
    DuplicateActiveWorkflowError,
    NotFoundError,
    ValidationError,
    NoApproverAvailableError,
)
from .models import (
    WorkflowInstance,
    WorkflowStateTransition,
    ApprovalChainConfig,
    ApprovalRequest,
    ApprovalHistoryEntry,
    PendingApprovalSummary,
    BulkDecisionResult,
    EmployeeProcess,
    EmployeeProcessTask,
    ReviewCycle,
    ReviewParticipant,
    CycleProgress,
    TransferRequest,
    TransferApproval,
    PositionHistoryEntry,
    WorkflowDeadline,
    Page,
)
from .store import WorkflowStore, InMemoryWorkflowStore
from .query import RecordQuery
from .identity import Directory, Employee, InMemoryDirectory
from .notifications import Notifier, NotificationDispatcher, RecordingNotifier, LoggingNotifier
from .state_machine import (
    StateMachine,
    WorkflowTypeHandler,
    ApprovalWorkflowHandler,
    EmployeeProcessHandler,
    ReviewCycleHandler,
    TransferWorkflowHandler,
    HandlerRegistry,
    WorkflowStateManager,
)
from .chain import ApprovalChainResolver
from .approvals import ApprovalManager, EntityStatusHandler, NullEntityStatusHandler
from .processes import EmployeeProcessManager
from .review_cycles import ReviewCycleManager
from .transfers import TransferExecutor, TransferManager
from .deadlines import DeadlineMonitor
from .orchestrator import WorkflowOrchestrator

__all__ = [
    # Config
    "WorkflowType",
    "WorkflowStatus",
    "ApprovalType",
    "ApproverType",
    "ApprovalStatus",
    "ApprovalDecision",
    "ProcessType",
    "ProcessStatus",
    "ReviewPhase",
    "TransferStage",
    "DeadlineType",
    "NotificationType",
    "ErrorCode",
    "WorkflowConfig",
    # Errors
    "WorkflowError",
    "ConfigurationError",
    "InvalidTransitionError",
    "StaleApprovalError",
    "PhasePreconditionError",
    "OverlappingCycleError",
    "DuplicateActiveWorkflowError",
    "NotFoundError",
    "ValidationError",
    "NoApproverAvailableError",
    # Records
    "WorkflowInstance",
    "WorkflowStateTransition",
    "ApprovalChainConfig",
    "ApprovalRequest",
    "ApprovalHistoryEntry",
    "PendingApprovalSummary",
    "BulkDecisionResult",
    "EmployeeProcess",
    "EmployeeProcessTask",
    "ReviewCycle",
    "ReviewParticipant",
    "CycleProgress",
    "TransferRequest",
    "TransferApproval",
    "PositionHistoryEntry",
    "WorkflowDeadline",
    "Page",
    # Collaborators
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "RecordQuery",
    "Directory",
    "Employee",
    "InMemoryDirectory",
    "Notifier",
    "NotificationDispatcher",
    "RecordingNotifier",
    "LoggingNotifier",
    # State Machine
    "StateMachine",
    "WorkflowTypeHandler",
    "ApprovalWorkflowHandler",
    "EmployeeProcessHandler",
    "ReviewCycleHandler",
    "TransferWorkflowHandler",
    "HandlerRegistry",
    "WorkflowStateManager",
    # Services
    "ApprovalChainResolver",
    "ApprovalManager",
    "EntityStatusHandler",
    "NullEntityStatusHandler",
    "EmployeeProcessManager",
    "ReviewCycleManager",
    "TransferExecutor",
    "TransferManager",
    "DeadlineMonitor",
    "WorkflowOrchestrator",
]
