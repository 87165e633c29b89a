"""Workflow Exception Hierarchy.

Typed exceptions raised by the orchestration core. Every error carries a
message, an error code and a list of structured details (entity id,
attempted transition, current state) so the calling layer can render an
actionable response without parsing strings.
"""

from typing import Any, Dict, List, Optional

from src.workflow.config import ErrorCode


class WorkflowError(Exception):
    """Base exception for all workflow errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": list(self.details),
        }


class ConfigurationError(WorkflowError):
    """Raised when no active approval chain exists for a request type."""

    def __init__(self, message: str, approval_type: Optional[str] = None, **context: Any):
        details = [{"approval_type": approval_type, **context}] if approval_type else []
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details)
        self.approval_type = approval_type


class InvalidTransitionError(WorkflowError):
    """Raised when a transition is not legal from the current state."""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current_state: Optional[str] = None,
        attempted_state: Optional[str] = None,
    ):
        super().__init__(
            message,
            ErrorCode.INVALID_TRANSITION,
            [{
                "entity_id": entity_id,
                "current_state": current_state,
                "attempted_state": attempted_state,
            }],
        )
        self.entity_id = entity_id
        self.current_state = current_state
        self.attempted_state = attempted_state


class StaleApprovalError(WorkflowError):
    """Raised when a decision targets a level that is no longer current."""

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        expected_level: Optional[int] = None,
        current_level: Optional[int] = None,
        current_status: Optional[str] = None,
    ):
        super().__init__(
            message,
            ErrorCode.STALE_APPROVAL,
            [{
                "entity_id": request_id,
                "expected_level": expected_level,
                "current_level": current_level,
                "current_state": current_status,
            }],
        )
        self.request_id = request_id
        self.expected_level = expected_level
        self.current_level = current_level
        self.current_status = current_status


class PhasePreconditionError(WorkflowError):
    """Raised when a review phase is started before its prerequisites hold."""

    def __init__(self, message: str, cycle_id: Optional[str] = None, condition: str = ""):
        super().__init__(
            message,
            ErrorCode.PHASE_PRECONDITION,
            [{"entity_id": cycle_id, "unmet_condition": condition}],
        )
        self.cycle_id = cycle_id
        self.condition = condition


class OverlappingCycleError(WorkflowError):
    """Raised when a new review cycle intersects an active one."""

    def __init__(self, message: str, conflicting_ids: Optional[List[str]] = None):
        conflicting_ids = conflicting_ids or []
        super().__init__(
            message,
            ErrorCode.OVERLAPPING_CYCLE,
            [{"conflicting_cycle_id": cid} for cid in conflicting_ids],
        )
        self.conflicting_ids = conflicting_ids


class DuplicateActiveWorkflowError(WorkflowError):
    """Raised when an active workflow already exists for the same entity."""

    def __init__(self, message: str, existing_id: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(
            message,
            ErrorCode.DUPLICATE_ACTIVE_WORKFLOW,
            [{"entity_id": entity_id, "existing_id": existing_id}],
        )
        self.existing_id = existing_id
        self.entity_id = entity_id


class NotFoundError(WorkflowError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            ErrorCode.RESOURCE_NOT_FOUND,
            [{"resource_type": resource_type, "resource_id": resource_id}],
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ValidationError(WorkflowError):
    """Raised when caller input fails validation."""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class NoApproverAvailableError(WorkflowError):
    """Raised when a chain rung or escalation cannot be assigned to anyone."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message, ErrorCode.NO_APPROVER_AVAILABLE, [context] if context else [])


# ── Store-level errors ───────────────────────────────────────────────


class StoreError(WorkflowError):
    """Base for errors raised by the persistence collaborator."""


class UniqueConstraintViolation(StoreError):
    """Create-if-absent lost: a live record already holds the key."""

    def __init__(self, key: Any, existing_id: str):
        super().__init__(
            f"Unique key already held: {key}",
            ErrorCode.RESOURCE_CONFLICT,
            [{"key": repr(key), "existing_id": existing_id}],
        )
        self.key = key
        self.existing_id = existing_id


class VersionConflictError(StoreError):
    """Conditional update lost: the stored version moved on."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Version conflict on {record_id}: expected {expected_version}, found {actual_version}",
            ErrorCode.RESOURCE_CONFLICT,
            [{
                "entity_id": record_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }],
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
