"""HR Workflow & Approval Orchestration - Transfers.

A transfer moves an employee to another department, manager or position.
It is signed off by the current manager, then the receiving manager, then
HR. A stage nobody can fill is skipped, except HR which is mandatory. An
approved transfer stays APPROVED until ``execute`` applies it and writes a
position history entry.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from .config import (
    DEFAULT_WORKFLOW_CONFIG,
    TRANSFER_APPROVAL_STAGES,
    ApproverType,
    DeadlineType,
    NotificationType,
    TransferStage,
    WorkflowConfig,
    WorkflowStatus,
    WorkflowType,
)
from .deadlines import DeadlineMonitor, end_of_day
from .exceptions import (
    DuplicateActiveWorkflowError,
    InvalidTransitionError,
    NoApproverAvailableError,
    NotFoundError,
    UniqueConstraintViolation,
    ValidationError,
)
from .identity import Directory
from .models import Page, PositionHistoryEntry, TransferApproval, TransferRequest
from .notifications import NotificationDispatcher
from .query import RecordQuery, field_equals
from .state_machine import WorkflowStateManager
from .store import WorkflowStore

logger = logging.getLogger(__name__)


@runtime_checkable
class TransferExecutor(Protocol):
    """Applies an approved transfer to the system of record."""

    def apply_transfer(
        self,
        employee_id: str,
        department_id: Optional[str],
        manager_id: Optional[str],
        position: Optional[str],
    ) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferManager:
    """Runs the transfer approval sequence and applies approved transfers."""

    def __init__(
        self,
        store: WorkflowStore,
        state_manager: WorkflowStateManager,
        deadlines: DeadlineMonitor,
        dispatcher: NotificationDispatcher,
        directory: Directory,
        config: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
        executor: Optional[TransferExecutor] = None,
    ):
        self.store = store
        self.state_manager = state_manager
        self.deadlines = deadlines
        self.dispatcher = dispatcher
        self.directory = directory
        self.config = config
        self.clock = clock
        if executor is None and isinstance(directory, TransferExecutor):
            executor = directory
        self.executor = executor

    # ── Initiation ───────────────────────────────────────────────────

    def initiate(
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
        current_department = self.directory.department_of(employee_id)
        current_manager = self.directory.manager_of(employee_id)

        changes_department = new_department_id is not None and new_department_id != current_department
        changes_manager = new_manager_id is not None and new_manager_id != current_manager
        changes_position = new_position is not None and new_position != current_position
        if not (changes_department or changes_manager or changes_position):
            raise ValidationError("A transfer must change the department, manager or position")
        if new_manager_id is not None:
            if new_manager_id == employee_id:
                raise ValidationError("An employee cannot report to themselves", field="new_manager_id")
            if not self.directory.exists(new_manager_id):
                raise ValidationError(f"Unknown manager: {new_manager_id}", field="new_manager_id")

        approvers = self._resolve_approvers(employee_id, current_department, current_manager,
                                            new_department_id, new_manager_id)
        first_stage = self._next_stage(approvers, None)

        transfer = TransferRequest(
            employee_id=employee_id,
            stage=first_stage,
            effective_date=effective_date,
            reason=reason,
            notes=notes,
            requires_relocation=requires_relocation,
            current_department_id=current_department,
            current_manager_id=current_manager,
            current_position=current_position,
            new_department_id=new_department_id,
            new_manager_id=new_manager_id,
            new_position=new_position,
            approvers=approvers,
            initiated_by=initiated_by,
            created_at=self.clock(),
        )
        due = end_of_day(effective_date - timedelta(days=self.config.transfer_lead_days))

        with self.dispatcher.batch(), self.store.transaction():
            try:
                transfer = self.store.insert(transfer)
            except UniqueConstraintViolation as exc:
                raise DuplicateActiveWorkflowError(
                    f"An open transfer already exists for employee {employee_id}",
                    existing_id=exc.existing_id,
                    entity_id=employee_id,
                ) from exc

            approver = transfer.current_approver_id
            workflow = self.state_manager.create(
                WorkflowType.TRANSFER,
                employee_id,
                "Employee",
                initiator_id=initiated_by,
                context={"transfer_id": transfer.id},
            )
            self.state_manager.transition(
                workflow.id,
                WorkflowStatus.PENDING_APPROVAL,
                state=first_stage.name,
                reason="Transfer submitted",
                actor=initiated_by,
                assignee_id=approver,
            )
            self.state_manager.update_due_date(workflow.id, due)
            transfer.workflow_instance_id = workflow.id
            transfer = self.store.update(transfer, transfer.version)

            self.deadlines.register(
                workflow.id,
                due,
                DeadlineType.TRANSFER_APPROVAL,
                assignee_id=approver,
                warning_hours=self.config.transfer_warning_hours,
                description=f"Transfer of {employee_id}",
            )
            self._request_approval(transfer)

        logger.info(
            "Initiated transfer %s for %s effective %s, first stage %s",
            transfer.id, employee_id, effective_date.isoformat(), first_stage.name,
        )
        return transfer

    def _resolve_approvers(
        self,
        employee_id: str,
        current_department: Optional[str],
        current_manager: Optional[str],
        new_department_id: Optional[str],
        new_manager_id: Optional[str],
    ) -> Dict[str, Optional[str]]:
        receiving = new_manager_id
        if receiving is None and new_department_id is not None:
            receiving = self.directory.department_head(new_department_id)
        if receiving in (current_manager, employee_id):
            receiving = None

        hr = self.directory.role_holder(ApproverType.HR, new_department_id or current_department)
        if hr is None:
            raise NoApproverAvailableError(
                f"No HR approver available for the transfer of {employee_id}",
                employee_id=employee_id,
            )
        return {
            TransferStage.PENDING_CURRENT_MANAGER.name: current_manager,
            TransferStage.PENDING_NEW_MANAGER.name: receiving,
            TransferStage.PENDING_HR.name: hr,
        }

    @staticmethod
    def _next_stage(approvers: Dict[str, Optional[str]], after: Optional[TransferStage]) -> TransferStage:
        """First approval stage after *after* that has someone to ask."""
        stages = TRANSFER_APPROVAL_STAGES
        start = stages.index(after) + 1 if after is not None else 0
        for stage in stages[start:]:
            if approvers.get(stage.name):
                return stage
        return TransferStage.APPROVED

    def _request_approval(self, transfer: TransferRequest) -> None:
        self.dispatcher.send(
            transfer.current_approver_id,
            NotificationType.APPROVAL_REQUIRED,
            title="Transfer Pending Approval",
            transfer_id=transfer.id,
            employee_id=transfer.employee_id,
            stage=transfer.stage.value,
            effective_date=transfer.effective_date.isoformat() if transfer.effective_date else None,
        )

    # ── Decisions ────────────────────────────────────────────────────

    def decide(
        self,
        transfer_id: str,
        stage: TransferStage,
        approve: bool,
        comments: str = "",
        actor: Optional[str] = None,
    ) -> TransferRequest:
        """Record the decision for *stage*, which must be the current one."""
        with self.dispatcher.batch(), self.store.transaction():
            transfer = self.get(transfer_id)
            if transfer.stage != stage:
                raise InvalidTransitionError(
                    f"Transfer {transfer_id} is at {transfer.stage.name}; a decision for {stage.name} does not apply",
                    entity_id=transfer_id,
                    current_state=transfer.stage.name,
                    attempted_state=stage.name,
                )

            now = self.clock()
            transfer.approvals.append(TransferApproval(
                stage=stage,
                approver_id=actor or transfer.current_approver_id,
                approved=approve,
                comments=comments,
                decided_at=now,
            ))

            if not approve:
                transfer.stage = TransferStage.REJECTED
                transfer = self.store.update(transfer, transfer.version)
                self.state_manager.transition(
                    transfer.workflow_instance_id,
                    WorkflowStatus.REJECTED,
                    state=TransferStage.REJECTED.name,
                    reason=comments or f"Rejected at {stage.name}",
                    actor=actor,
                )
                self.deadlines.complete_for_workflow(transfer.workflow_instance_id, now=now)
                self._announce(transfer, approved=False, comments=comments)
            else:
                transfer.stage = self._next_stage(transfer.approvers, stage)
                transfer = self.store.update(transfer, transfer.version)
                if transfer.stage == TransferStage.APPROVED:
                    self.state_manager.transition(
                        transfer.workflow_instance_id,
                        WorkflowStatus.APPROVED,
                        state=TransferStage.APPROVED.name,
                        reason="All transfer approvals received",
                        actor=actor,
                    )
                    self.deadlines.complete_for_workflow(transfer.workflow_instance_id, now=now)
                    self._announce(transfer, approved=True, comments=comments)
                else:
                    approver = transfer.current_approver_id
                    self.state_manager.transition(
                        transfer.workflow_instance_id,
                        state=transfer.stage.name,
                        reason=f"{stage.name} approved",
                        actor=actor,
                        assignee_id=approver,
                    )
                    self.deadlines.reassign(transfer.workflow_instance_id, approver)
                    self._request_approval(transfer)

        logger.info(
            "Transfer %s %s at %s, now %s",
            transfer_id, "approved" if approve else "rejected", stage.name, transfer.stage.name,
        )
        return transfer

    def _announce(self, transfer: TransferRequest, approved: bool, comments: str) -> None:
        recipients = {transfer.employee_id, transfer.initiated_by}
        for recipient in sorted(r for r in recipients if r):
            self.dispatcher.send(
                recipient,
                NotificationType.APPROVAL_DECISION,
                title="Transfer Approved" if approved else "Transfer Rejected",
                transfer_id=transfer.id,
                approved=approved,
                comments=comments,
            )

    # ── Execution ────────────────────────────────────────────────────

    def execute(self, transfer_id: str, actor: Optional[str] = None) -> TransferRequest:
        with self.dispatcher.batch(), self.store.transaction():
            transfer = self.get(transfer_id)
            if transfer.stage != TransferStage.APPROVED:
                raise InvalidTransitionError(
                    f"Transfer {transfer_id} is {transfer.stage.name}; only approved transfers execute",
                    entity_id=transfer_id,
                    current_state=transfer.stage.name,
                    attempted_state=TransferStage.COMPLETED.name,
                )

            now = self.clock()
            self.store.insert(PositionHistoryEntry(
                employee_id=transfer.employee_id,
                transfer_id=transfer.id,
                effective_date=transfer.effective_date,
                previous_department_id=transfer.current_department_id,
                new_department_id=transfer.new_department_id or transfer.current_department_id,
                previous_manager_id=transfer.current_manager_id,
                new_manager_id=transfer.new_manager_id or transfer.current_manager_id,
                previous_position=transfer.current_position,
                new_position=transfer.new_position or transfer.current_position,
                reason=transfer.reason,
                recorded_at=now,
            ))
            transfer.stage = TransferStage.COMPLETED
            transfer.executed_at = now
            transfer = self.store.update(transfer, transfer.version)
            self.state_manager.complete(transfer.workflow_instance_id, reason="Transfer executed", actor=actor)

            if self.executor is not None:
                self.executor.apply_transfer(
                    transfer.employee_id,
                    transfer.new_department_id,
                    transfer.new_manager_id,
                    transfer.new_position,
                )
            recipients = {transfer.employee_id, transfer.current_manager_id, transfer.new_manager_id}
            for recipient in sorted(r for r in recipients if r):
                self.dispatcher.send(
                    recipient,
                    NotificationType.WORKFLOW_COMPLETED,
                    title="Transfer Completed",
                    transfer_id=transfer.id,
                    employee_id=transfer.employee_id,
                    effective_date=transfer.effective_date.isoformat() if transfer.effective_date else None,
                )
        logger.info("Executed transfer %s for %s", transfer_id, transfer.employee_id)
        return transfer

    def cancel(self, transfer_id: str, reason: str, actor: Optional[str] = None) -> TransferRequest:
        """Withdraw a transfer that is still pending or approved but not yet executed."""
        with self.dispatcher.batch(), self.store.transaction():
            transfer = self.get(transfer_id)
            if not transfer.is_open:
                raise InvalidTransitionError(
                    f"Transfer {transfer_id} is {transfer.stage.name} and cannot be cancelled",
                    entity_id=transfer_id,
                    current_state=transfer.stage.name,
                    attempted_state=TransferStage.CANCELLED.name,
                )
            pending_approver = transfer.current_approver_id
            transfer.stage = TransferStage.CANCELLED
            transfer.notes = f"{transfer.notes}\nCancelled: {reason}".strip()
            transfer = self.store.update(transfer, transfer.version)
            self.state_manager.cancel(transfer.workflow_instance_id, reason=reason, actor=actor)
            self.deadlines.complete_for_workflow(transfer.workflow_instance_id)
            recipients = {transfer.employee_id, pending_approver}
            for recipient in sorted(r for r in recipients if r):
                self.dispatcher.send(
                    recipient,
                    NotificationType.INFO,
                    title="Transfer Cancelled",
                    transfer_id=transfer.id,
                    reason=reason,
                )
        logger.info("Cancelled transfer %s: %s", transfer_id, reason)
        return transfer

    # ── Lookups ──────────────────────────────────────────────────────

    def get(self, transfer_id: str) -> TransferRequest:
        transfer = self.store.get(TransferRequest, transfer_id)
        if transfer is None:
            raise NotFoundError("TransferRequest", transfer_id)
        return transfer

    def open_transfer_for(self, employee_id: str) -> Optional[TransferRequest]:
        return self.store.find_by_key(TransferRequest, (employee_id,))

    def position_history(
        self,
        employee_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        """Placements of *employee_id*, most recent effective date first."""
        return (
            RecordQuery.over(self.store, PositionHistoryEntry)
            .where(field_equals("employee_id", employee_id))
            .order_by(lambda e: (e.effective_date or date.min, e.recorded_at), descending=True)
            .paginate(page, page_size or self.config.default_page_size)
            .page()
        )
