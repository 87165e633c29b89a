"""HR Workflow & Approval Orchestration - Orchestrator.

Single entry point used by the HTTP layer and schedulers. All
collaborators (store, directory, notifier, entity callback, clock) are
passed in; the orchestrator wires the services together and validates
input before delegating.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import pandas as pd

from src.logging_config import OperationContext, log_performance

from .approvals import ApprovalManager, EntityStatusHandler
from .chain import ApprovalChainResolver
from .commands import (
    DecisionCommand,
    ExpenseClaimCommand,
    InitiateCycleCommand,
    LeaveRequestCommand,
    OffboardingCommand,
    OnboardingCommand,
    OvertimeRequestCommand,
    SubmitApprovalCommand,
    TransferCommand,
    validate_command,
)
from .config import (
    DEFAULT_WORKFLOW_CONFIG,
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    ApproverType,
    ProcessType,
    ReviewPhase,
    TransferStage,
    WorkflowConfig,
    WorkflowType,
)
from .deadlines import DeadlineMonitor
from .identity import Directory
from .models import (
    ApprovalChainConfig,
    ApprovalHistoryEntry,
    ApprovalRequest,
    BulkDecisionResult,
    CycleProgress,
    EmployeeProcess,
    Page,
    PendingApprovalSummary,
    ReviewCycle,
    ReviewParticipant,
    TransferRequest,
    WorkflowDeadline,
    WorkflowInstance,
    WorkflowStateTransition,
)
from .notifications import NotificationDispatcher, Notifier
from .processes import EmployeeProcessManager
from .reporting import approval_turnaround, department_progress_frame, overdue_summary
from .review_cycles import ReviewCycleManager
from .state_machine import HandlerRegistry, WorkflowStateManager
from .store import WorkflowStore
from .transfers import TransferExecutor, TransferManager

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowOrchestrator:
    """Façade over approvals, employee processes, review cycles and deadlines."""

    def __init__(
        self,
        store: WorkflowStore,
        directory: Directory,
        notifier: Optional[Notifier] = None,
        config: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG,
        entity_handler: Optional[EntityStatusHandler] = None,
        clock: Callable[[], datetime] = _utcnow,
        registry: Optional[HandlerRegistry] = None,
        transfer_executor: Optional[TransferExecutor] = None,
    ):
        self.store = store
        self.directory = directory
        self.config = config
        self.clock = clock
        self.dispatcher = NotificationDispatcher(notifier)
        self.workflows = WorkflowStateManager(store, registry, clock)
        self.chains = ApprovalChainResolver(store, directory)
        self.deadlines = DeadlineMonitor(
            store, self.dispatcher, directory, config, clock, state_manager=self.workflows,
        )
        self.approvals = ApprovalManager(
            store, self.chains, self.workflows, self.deadlines, self.dispatcher,
            directory, config, entity_handler, clock,
        )
        self.processes = EmployeeProcessManager(
            store, self.workflows, self.deadlines, self.dispatcher, directory, config, clock,
        )
        self.cycles = ReviewCycleManager(
            store, self.workflows, self.deadlines, self.dispatcher, directory, config, clock,
        )
        self.transfers = TransferManager(
            store, self.workflows, self.deadlines, self.dispatcher, directory, config, clock,
            executor=transfer_executor,
        )

    @classmethod
    def from_settings(
        cls,
        store: WorkflowStore,
        directory: Directory,
        notifier: Optional[Notifier] = None,
        settings=None,
        **kwargs: Any,
    ) -> "WorkflowOrchestrator":
        """Build an orchestrator configured from environment settings."""
        if settings is None:
            from src.settings import get_settings
            settings = get_settings()
        return cls(store, directory, notifier, config=WorkflowConfig.from_settings(settings), **kwargs)

    # ── Chain configuration ──────────────────────────────────────────

    def configure_chain_rung(
        self,
        approval_type: ApprovalType,
        sequence_order: int,
        approver_type: ApproverType,
        department_id: Optional[str] = None,
        min_threshold: Optional[Union[Decimal, int, str]] = None,
        max_threshold: Optional[Union[Decimal, int, str]] = None,
        specific_approver_id: Optional[str] = None,
        description: str = "",
    ) -> ApprovalChainConfig:
        return self.chains.add_rung(ApprovalChainConfig(
            approval_type=approval_type,
            sequence_order=sequence_order,
            approver_type=approver_type,
            department_id=department_id,
            min_threshold=Decimal(str(min_threshold)) if min_threshold is not None else None,
            max_threshold=Decimal(str(max_threshold)) if max_threshold is not None else None,
            specific_approver_id=specific_approver_id,
            description=description,
        ))

    def preview_chain(
        self,
        approval_type: ApprovalType,
        amount: Optional[Union[Decimal, int, str]] = None,
        department_id: Optional[str] = None,
    ) -> List[ApprovalChainConfig]:
        measure = Decimal(str(amount)) if amount is not None else None
        return self.chains.resolve(approval_type, measure, department_id)

    # ── Approvals ────────────────────────────────────────────────────

    @log_performance(threshold_ms=500)
    def submit_for_approval(
        self,
        approval_type: ApprovalType,
        entity_id: str,
        requestor_id: str,
        amount: Optional[Union[Decimal, int, float, str]] = None,
        days_count: Optional[int] = None,
        department_id: Optional[str] = None,
        priority: Optional[int] = None,
        description: str = "",
        entity_type: Optional[str] = None,
    ) -> ApprovalRequest:
        cmd = validate_command(
            SubmitApprovalCommand,
            approval_type=approval_type,
            entity_id=entity_id,
            requestor_id=requestor_id,
            amount=amount,
            days_count=days_count,
            department_id=department_id,
            priority=priority,
            description=description,
            entity_type=entity_type,
        )
        with OperationContext(actor_id=cmd.requestor_id, entity_id=cmd.entity_id):
            return self.approvals.submit(
                cmd.approval_type,
                cmd.entity_id,
                cmd.requestor_id,
                amount=cmd.amount,
                days_count=cmd.days_count,
                department_id=cmd.department_id,
                priority=cmd.priority,
                description=cmd.description,
                entity_type=cmd.entity_type,
            )

    def submit_leave_request(
        self,
        leave_request_id: str,
        employee_id: str,
        days_count: int,
        department_id: Optional[str] = None,
        description: str = "",
    ) -> ApprovalRequest:
        cmd = validate_command(
            LeaveRequestCommand,
            leave_request_id=leave_request_id,
            employee_id=employee_id,
            days_count=days_count,
            department_id=department_id,
            description=description,
        )
        return self.submit_for_approval(
            ApprovalType.LEAVE_REQUEST,
            cmd.leave_request_id,
            cmd.employee_id,
            days_count=cmd.days_count,
            department_id=cmd.department_id,
            description=cmd.description or f"Leave request for {cmd.days_count} day(s)",
        )

    def submit_expense_claim(
        self,
        expense_claim_id: str,
        employee_id: str,
        amount: Union[Decimal, int, float, str],
        department_id: Optional[str] = None,
        description: str = "",
    ) -> ApprovalRequest:
        cmd = validate_command(
            ExpenseClaimCommand,
            expense_claim_id=expense_claim_id,
            employee_id=employee_id,
            amount=amount,
            department_id=department_id,
            description=description,
        )
        return self.submit_for_approval(
            ApprovalType.EXPENSE_CLAIM,
            cmd.expense_claim_id,
            cmd.employee_id,
            amount=cmd.amount,
            department_id=cmd.department_id,
            description=cmd.description or f"Expense claim of {cmd.amount}",
        )

    def submit_overtime_request(
        self,
        overtime_record_id: str,
        employee_id: str,
        hours: Union[Decimal, int, float, str],
        department_id: Optional[str] = None,
        description: str = "",
    ) -> ApprovalRequest:
        cmd = validate_command(
            OvertimeRequestCommand,
            overtime_record_id=overtime_record_id,
            employee_id=employee_id,
            hours=hours,
            department_id=department_id,
            description=description,
        )
        return self.submit_for_approval(
            ApprovalType.OVERTIME_REQUEST,
            cmd.overtime_record_id,
            cmd.employee_id,
            amount=cmd.hours,
            department_id=cmd.department_id,
            description=cmd.description or f"Overtime request for {cmd.hours} hour(s)",
        )

    def get_approval_status(self, request_id: str) -> ApprovalRequest:
        return self.approvals.get(request_id)

    def get_approval_history(self, request_id: str) -> List[ApprovalHistoryEntry]:
        return self.approvals.history(request_id)

    def process_decision(
        self,
        request_id: str,
        level: int,
        decision: ApprovalDecision,
        comments: str = "",
        actor: Optional[str] = None,
        delegate_to: Optional[str] = None,
    ) -> ApprovalRequest:
        cmd = validate_command(
            DecisionCommand,
            request_id=request_id,
            level=level,
            decision=decision,
            comments=comments,
            actor=actor,
            delegate_to=delegate_to,
        )
        with OperationContext(actor_id=cmd.actor or "", approval_request_id=cmd.request_id):
            return self.approvals.decide(
                cmd.request_id, cmd.level, cmd.decision, cmd.comments, cmd.actor, cmd.delegate_to,
            )

    def withdraw_approval_request(self, request_id: str, reason: str = "", actor: Optional[str] = None) -> ApprovalRequest:
        with OperationContext(actor_id=actor or "", approval_request_id=request_id):
            return self.approvals.withdraw(request_id, reason, actor)

    def escalate_to_next_approver(self, request_id: str, actor: Optional[str] = None, reason: str = "") -> ApprovalRequest:
        with OperationContext(actor_id=actor or "", approval_request_id=request_id):
            return self.approvals.escalate(request_id, actor, reason)

    @log_performance(threshold_ms=2000)
    def bulk_approve(self, request_ids: List[str], comments: str = "", actor: Optional[str] = None) -> List[BulkDecisionResult]:
        return self.approvals.bulk_approve(request_ids, comments, actor)

    def get_pending_approvals_for_approver(
        self,
        approver_id: str,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Union[List[PendingApprovalSummary], Page]:
        return self.approvals.pending_for_approver(approver_id, page, page_size)

    def count_pending_approvals(self, approver_id: str) -> int:
        return self.approvals.count_pending(approver_id)

    def get_approvals_by_requestor(
        self,
        requestor_id: str,
        status: Optional[ApprovalStatus] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Union[List[ApprovalRequest], Page]:
        return self.approvals.by_requestor(requestor_id, status, page, page_size)

    # ── Employee processes ───────────────────────────────────────────

    def start_onboarding(
        self,
        employee_id: str,
        start_date: date,
        manager_id: Optional[str] = None,
        requires_trainings: bool = False,
        initiator_id: Optional[str] = None,
        notes: str = "",
    ) -> EmployeeProcess:
        cmd = validate_command(
            OnboardingCommand,
            employee_id=employee_id,
            start_date=start_date,
            manager_id=manager_id,
            requires_trainings=requires_trainings,
            initiator_id=initiator_id,
            notes=notes,
        )
        with OperationContext(actor_id=cmd.initiator_id or "", employee_id=cmd.employee_id):
            return self.processes.start_onboarding(
                cmd.employee_id, cmd.start_date, cmd.manager_id, cmd.requires_trainings,
                cmd.initiator_id, notes=cmd.notes,
            )

    def start_offboarding(
        self,
        employee_id: str,
        last_working_day: date,
        reason: str = "",
        manager_id: Optional[str] = None,
        exit_interview: bool = True,
        initiator_id: Optional[str] = None,
    ) -> EmployeeProcess:
        cmd = validate_command(
            OffboardingCommand,
            employee_id=employee_id,
            last_working_day=last_working_day,
            reason=reason,
            manager_id=manager_id,
            exit_interview=exit_interview,
            initiator_id=initiator_id,
        )
        with OperationContext(actor_id=cmd.initiator_id or "", employee_id=cmd.employee_id):
            return self.processes.start_offboarding(
                cmd.employee_id, cmd.last_working_day, cmd.reason, cmd.manager_id,
                cmd.exit_interview, cmd.initiator_id,
            )

    def complete_process_task(
        self,
        process_id: str,
        task_id: str,
        completed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EmployeeProcess:
        with OperationContext(actor_id=completed_by or "", process_id=process_id):
            return self.processes.complete_task(process_id, task_id, completed_by, notes)

    def cancel_process(self, process_id: str, reason: str, actor: Optional[str] = None) -> EmployeeProcess:
        with OperationContext(actor_id=actor or "", process_id=process_id):
            return self.processes.cancel(process_id, reason, actor)

    def get_process_status(self, process_id: str) -> EmployeeProcess:
        return self.processes.get(process_id)

    def get_active_processes(
        self,
        process_type: Optional[ProcessType] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        return self.processes.active_processes(process_type, page, page_size)

    def escalate_overdue_tasks(self, now: Optional[datetime] = None) -> List:
        return self.processes.escalate_overdue_tasks(now)

    # ── Review cycles ────────────────────────────────────────────────

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
        cmd = validate_command(
            InitiateCycleCommand,
            name=name,
            review_period_start=review_period_start,
            review_period_end=review_period_end,
            start_date=start_date,
            end_date=end_date,
            self_assessment_deadline=self_assessment_deadline,
            manager_review_deadline=manager_review_deadline,
            calibration_deadline=calibration_deadline,
            feedback_deadline=feedback_deadline,
            department_ids=department_ids or [],
            description=description,
            created_by=created_by,
        )
        with OperationContext(actor_id=cmd.created_by or "", cycle_name=cmd.name):
            return self.cycles.initiate_cycle(**cmd.model_dump())

    def get_cycle_status(self, cycle_id: str) -> ReviewCycle:
        return self.cycles.get(cycle_id)

    def get_active_cycles(self) -> List[ReviewCycle]:
        return self.cycles.active_cycles()

    def get_cycles_by_phase(self, phase: ReviewPhase) -> List[ReviewCycle]:
        return self.cycles.cycles_by_phase(phase)

    def get_current_cycle(self, on: Optional[date] = None) -> Optional[ReviewCycle]:
        return self.cycles.current_cycle(on)

    def get_cycles_by_department(self, department_id: str) -> List[ReviewCycle]:
        return self.cycles.cycles_for_department(department_id)

    def get_cycles_with_approaching_deadlines(self, days_ahead: int = 7, on: Optional[date] = None) -> List[ReviewCycle]:
        return self.cycles.cycles_with_approaching_deadlines(days_ahead, on)

    def get_all_review_cycles(self, page: int = 1, page_size: Optional[int] = None) -> Page:
        return self.cycles.all_cycles(page, page_size)

    def start_self_assessment_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.start_self_assessment_phase(cycle_id, actor)

    def start_manager_review_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.start_manager_review_phase(cycle_id, actor)

    def start_calibration_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.start_calibration_phase(cycle_id, actor)

    def start_feedback_delivery_phase(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.start_feedback_delivery_phase(cycle_id, actor)

    def close_cycle(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.close_cycle(cycle_id, actor)

    def archive_cycle(self, cycle_id: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.archive_cycle(cycle_id, actor)

    def override_cycle_phase(self, cycle_id: str, phase: ReviewPhase, reason: str, actor: Optional[str] = None) -> ReviewCycle:
        with OperationContext(actor_id=actor or "", cycle_id=cycle_id):
            return self.cycles.override_phase(cycle_id, phase, reason, actor)

    def submit_self_assessment(self, cycle_id: str, employee_id: str, rating: Optional[int] = None) -> ReviewParticipant:
        with OperationContext(actor_id=employee_id, cycle_id=cycle_id, employee_id=employee_id):
            return self.cycles.submit_self_assessment(cycle_id, employee_id, rating)

    def submit_manager_review(
        self,
        cycle_id: str,
        employee_id: str,
        reviewer_id: Optional[str] = None,
        rating: Optional[int] = None,
    ) -> ReviewParticipant:
        with OperationContext(actor_id=reviewer_id or "", cycle_id=cycle_id, employee_id=employee_id):
            return self.cycles.submit_manager_review(cycle_id, employee_id, reviewer_id, rating)

    def record_feedback_meeting(
        self,
        cycle_id: str,
        employee_id: str,
        notes: str = "",
        manager_id: Optional[str] = None,
    ) -> ReviewParticipant:
        with OperationContext(actor_id=manager_id or "", cycle_id=cycle_id, employee_id=employee_id):
            return self.cycles.record_feedback_meeting(cycle_id, employee_id, notes, manager_id)

    def get_cycle_progress(self, cycle_id: str) -> CycleProgress:
        return self.cycles.get_cycle_progress(cycle_id)

    def get_department_progress(self, cycle_id: str) -> pd.DataFrame:
        return department_progress_frame(self.cycles.department_progress(cycle_id))

    def send_phase_reminders(self, cycle_id: str) -> int:
        return self.cycles.send_phase_reminders(cycle_id)

    # ── Transfers ────────────────────────────────────────────────────

    def initiate_transfer(
        self,
        employee_id: str,
        effective_date: date,
        new_department_id: Optional[str] = None,
        new_manager_id: Optional[str] = None,
        new_position: Optional[str] = None,
        current_position: Optional[str] = None,
        reason: str = "",
        notes: str = "",
        requires_relocation: bool = False,
        initiated_by: Optional[str] = None,
    ) -> TransferRequest:
        cmd = validate_command(
            TransferCommand,
            employee_id=employee_id,
            effective_date=effective_date,
            new_department_id=new_department_id,
            new_manager_id=new_manager_id,
            new_position=new_position,
            current_position=current_position,
            reason=reason,
            notes=notes,
            requires_relocation=requires_relocation,
            initiated_by=initiated_by,
        )
        with OperationContext(actor_id=cmd.initiated_by or "", employee_id=cmd.employee_id):
            return self.transfers.initiate(**cmd.model_dump())

    def approve_transfer(
        self,
        transfer_id: str,
        stage: TransferStage,
        comments: str = "",
        actor: Optional[str] = None,
    ) -> TransferRequest:
        with OperationContext(actor_id=actor or "", transfer_id=transfer_id):
            return self.transfers.decide(transfer_id, stage, True, comments, actor)

    def reject_transfer(
        self,
        transfer_id: str,
        stage: TransferStage,
        comments: str = "",
        actor: Optional[str] = None,
    ) -> TransferRequest:
        with OperationContext(actor_id=actor or "", transfer_id=transfer_id):
            return self.transfers.decide(transfer_id, stage, False, comments, actor)

    def execute_transfer(self, transfer_id: str, actor: Optional[str] = None) -> TransferRequest:
        with OperationContext(actor_id=actor or "", transfer_id=transfer_id):
            return self.transfers.execute(transfer_id, actor)

    def cancel_transfer(self, transfer_id: str, reason: str, actor: Optional[str] = None) -> TransferRequest:
        with OperationContext(actor_id=actor or "", transfer_id=transfer_id):
            return self.transfers.cancel(transfer_id, reason, actor)

    def get_transfer_status(self, transfer_id: str) -> TransferRequest:
        return self.transfers.get(transfer_id)

    def get_position_history(self, employee_id: str, page: int = 1, page_size: Optional[int] = None) -> Page:
        return self.transfers.position_history(employee_id, page, page_size)

    # ── Deadlines ────────────────────────────────────────────────────

    def cancel_deadline(self, deadline_id: str) -> WorkflowDeadline:
        return self.deadlines.cancel(deadline_id)

    def get_deadlines_by_assignee(self, assignee_id: str) -> List[WorkflowDeadline]:
        return self.deadlines.for_assignee(assignee_id)

    def scan_overdue(self, now: Optional[datetime] = None) -> List[WorkflowDeadline]:
        return self.deadlines.scan_overdue(now)

    def scan_approaching_warnings(self, now: Optional[datetime] = None) -> List[WorkflowDeadline]:
        return self.deadlines.scan_approaching_warnings(now)

    @log_performance(threshold_ms=5000)
    def run_deadline_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every periodic sweep once; the scheduler calls this on a timer."""
        now = now or self.clock()
        summary = {
            "warnings": len(self.deadlines.scan_approaching_warnings(now)),
            "overdue": len(self.deadlines.scan_overdue(now)),
            "escalated": len(self.deadlines.auto_escalate_overdue(now)),
            "delayed_processes": len(self.deadlines.sweep_delayed_processes(now)),
            "overdue_tasks": len(self.processes.escalate_overdue_tasks(now)),
        }
        logger.info("Deadline sweep at %s: %s", now.isoformat(), summary)
        return summary

    # ── Workflow instances ───────────────────────────────────────────

    def get_workflow(self, workflow_id: str) -> WorkflowInstance:
        return self.workflows.get(workflow_id)

    def get_workflow_history(self, workflow_id: str) -> List[WorkflowStateTransition]:
        return self.workflows.history(workflow_id)

    def find_active_workflow(self, entity_id: str, workflow_type: WorkflowType) -> Optional[WorkflowInstance]:
        return self.workflows.find_active(entity_id, workflow_type)

    def find_workflows_by_assignee(
        self,
        assignee_id: str,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Union[List[WorkflowInstance], Page]:
        return self.workflows.find_by_assignee(assignee_id, page, page_size or self.config.default_page_size)

    def find_overdue_workflows(self, now: Optional[datetime] = None) -> List[WorkflowInstance]:
        return self.workflows.find_overdue(now)

    def update_workflow_due_date(self, workflow_id: str, due_date: Optional[datetime]) -> WorkflowInstance:
        return self.workflows.update_due_date(workflow_id, due_date)

    # ── Reports ──────────────────────────────────────────────────────

    def approval_turnaround_report(self) -> pd.DataFrame:
        return approval_turnaround(self.store.find(ApprovalRequest))

    def overdue_report(self, now: Optional[datetime] = None) -> pd.DataFrame:
        return overdue_summary(self.store.find(WorkflowDeadline), now or self.clock())
