"""Command Models.

Pydantic schemas validating caller input before it reaches the
orchestration services.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.workflow.config import ApprovalDecision, ApprovalType
from src.workflow.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


# ─── Approvals ───────────────────────────────────────────────────────────


class SubmitApprovalCommand(BaseModel):
    """Submit an entity for approval."""

    approval_type: ApprovalType
    entity_id: str = Field(min_length=1)
    requestor_id: str = Field(min_length=1)
    amount: Optional[Decimal] = Field(default=None, ge=0)
    days_count: Optional[int] = Field(default=None, ge=0)
    department_id: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    description: str = Field(default="", max_length=500)
    entity_type: Optional[str] = None


class LeaveRequestCommand(BaseModel):
    """Leave request shortcut."""

    leave_request_id: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    days_count: int = Field(gt=0)
    department_id: Optional[str] = None
    description: str = Field(default="", max_length=500)


class ExpenseClaimCommand(BaseModel):
    """Expense claim shortcut."""

    expense_claim_id: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    department_id: Optional[str] = None
    description: str = Field(default="", max_length=500)


class OvertimeRequestCommand(BaseModel):
    """Overtime request shortcut; hours drive the chain thresholds."""

    overtime_record_id: str = Field(min_length=1)
    employee_id: str = Field(min_length=1)
    hours: Decimal = Field(gt=0)
    department_id: Optional[str] = None
    description: str = Field(default="", max_length=500)


class DecisionCommand(BaseModel):
    """A decision at a specific chain level."""

    request_id: str = Field(min_length=1)
    level: int = Field(ge=1)
    decision: ApprovalDecision
    comments: str = Field(default="", max_length=2000)
    actor: Optional[str] = None
    delegate_to: Optional[str] = None


# ─── Employee Processes ──────────────────────────────────────────────────


class OnboardingCommand(BaseModel):
    """Start onboarding for a new hire."""

    employee_id: str = Field(min_length=1)
    start_date: date
    manager_id: Optional[str] = None
    requires_trainings: bool = False
    initiator_id: Optional[str] = None
    notes: str = ""


class OffboardingCommand(BaseModel):
    """Start offboarding for a leaver."""

    employee_id: str = Field(min_length=1)
    last_working_day: date
    reason: str = Field(default="", max_length=500)
    manager_id: Optional[str] = None
    exit_interview: bool = True
    initiator_id: Optional[str] = None


# ─── Review Cycles ───────────────────────────────────────────────────────


class InitiateCycleCommand(BaseModel):
    """Create a performance review cycle."""

    name: str = Field(min_length=1, max_length=200)
    review_period_start: date
    review_period_end: date
    start_date: date
    end_date: date
    self_assessment_deadline: Optional[date] = None
    manager_review_deadline: Optional[date] = None
    calibration_deadline: Optional[date] = None
    feedback_deadline: Optional[date] = None
    department_ids: list[str] = Field(default_factory=list)
    description: str = ""
    created_by: Optional[str] = None


# ─── Transfers ───────────────────────────────────────────────────────────


class TransferCommand(BaseModel):
    """Move an employee to another department, manager or position."""

    employee_id: str = Field(min_length=1)
    effective_date: date
    new_department_id: Optional[str] = None
    new_manager_id: Optional[str] = None
    new_position: Optional[str] = Field(default=None, max_length=200)
    current_position: Optional[str] = None
    reason: str = Field(default="", max_length=500)
    notes: str = ""
    requires_relocation: bool = False
    initiated_by: Optional[str] = None


def validate_command(model: Type[M], **data) -> M:
    """Build *model* from keyword data, raising the workflow ValidationError."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "issue": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", details=details) from exc
