"""HR Workflow & Approval Orchestration - Workflow State Machine.

Transition tables are declared per workflow family by a
``WorkflowTypeHandler`` and checked by a small ``StateMachine``.
``WorkflowStateManager`` is the only code that mutates a
``WorkflowInstance``; it writes the new state and appends the matching
``WorkflowStateTransition`` inside one store transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .config import FINAL_STATUSES, WorkflowStatus, WorkflowType
from .exceptions import (
    ConfigurationError,
    DuplicateActiveWorkflowError,
    InvalidTransitionError,
    NotFoundError,
    UniqueConstraintViolation,
)
from .models import Page, WorkflowInstance, WorkflowStateTransition
from .query import RecordQuery, workflow_assigned_to, workflow_overdue
from .store import TRANSITION_LOG, WorkflowStore

logger = logging.getLogger(__name__)

S = WorkflowStatus


@dataclass
class State:
    """A single state in a transition table."""

    name: str
    is_terminal: bool = False


@dataclass
class Transition:
    """A transition between two states."""

    from_state: str
    to_state: str
    label: str = ""


class StateMachine:
    """Declarative transition table."""

    def __init__(self, name: str = "default"):
        self.name = name
        self.states: Dict[str, State] = {}
        self.transitions: List[Transition] = []

    def add_state(self, state: State) -> None:
        self.states[state.name] = state

    def add_transition(self, transition: Transition) -> None:
        self.transitions.append(transition)

    def can_transition(self, current: str, target: str) -> bool:
        return any(t.from_state == current and t.to_state == target for t in self.transitions)

    def validate_workflow(self) -> List[str]:
        """Validate the table definition. Returns a list of error strings."""
        errors: List[str] = []

        if not self.states:
            errors.append("No states defined")
            return errors

        for trans in self.transitions:
            if trans.from_state not in self.states:
                errors.append(f"Transition references unknown source state: {trans.from_state}")
            if trans.to_state not in self.states:
                errors.append(f"Transition references unknown target state: {trans.to_state}")
            src = self.states.get(trans.from_state)
            if src is not None and src.is_terminal:
                errors.append(f"Terminal state '{src.name}' has an outgoing transition")

        if not any(s.is_terminal for s in self.states.values()):
            errors.append("No terminal state defined")

        state_names = list(self.states.keys())
        targets = {t.to_state for t in self.transitions}
        for sname in state_names[1:]:
            if sname not in targets:
                errors.append(f"State '{sname}' is unreachable")

        return errors


def _build(name: str, edges: Dict[WorkflowStatus, List[WorkflowStatus]]) -> StateMachine:
    sm = StateMachine(name=name)
    for status in edges:
        sm.add_state(State(name=status.name, is_terminal=status in FINAL_STATUSES))
    for src, targets in edges.items():
        for dst in targets:
            sm.add_transition(Transition(from_state=src.name, to_state=dst.name, label=f"{src.value}_to_{dst.value}"))
    return sm


# ── Type handlers ────────────────────────────────────────────────────


class WorkflowTypeHandler:
    """Strategy holding the type-specific behavior of a workflow family."""

    workflow_types: tuple = ()
    initial_state: str = "INITIATED"
    edges: Dict[WorkflowStatus, List[WorkflowStatus]] = {}

    def __init__(self) -> None:
        self.machine = _build(type(self).__name__, self.edges)

    def handles(self, workflow_type: WorkflowType) -> bool:
        return workflow_type in self.workflow_types

    def can_transition(self, current: WorkflowStatus, target: WorkflowStatus) -> bool:
        return self.machine.can_transition(current.name, target.name)


class ApprovalWorkflowHandler(WorkflowTypeHandler):
    """Approval-backed workflows mirror their ApprovalRequest."""

    workflow_types = (
        WorkflowType.LEAVE_APPROVAL,
        WorkflowType.EXPENSE_APPROVAL,
        WorkflowType.OVERTIME_APPROVAL,
        WorkflowType.TRAINING_ENROLLMENT,
        WorkflowType.TIMESHEET_APPROVAL,
    )
    edges = {
        S.DRAFT: [S.PENDING_APPROVAL, S.CANCELLED],
        S.PENDING_APPROVAL: [S.ESCALATED, S.ON_HOLD, S.APPROVED, S.REJECTED, S.CANCELLED],
        S.ESCALATED: [S.PENDING_APPROVAL, S.APPROVED, S.REJECTED, S.CANCELLED],
        S.ON_HOLD: [S.PENDING_APPROVAL, S.CANCELLED],
        S.APPROVED: [S.COMPLETED, S.FAILED],
        S.REJECTED: [],
        S.CANCELLED: [],
        S.COMPLETED: [],
        S.FAILED: [],
    }

    @staticmethod
    def level_state(level: int) -> str:
        return f"PENDING_LEVEL_{level}"


class TransferWorkflowHandler(ApprovalWorkflowHandler):
    """Transfers: an approved transfer waits for its effective date and may still be cancelled."""

    workflow_types = (WorkflowType.TRANSFER,)
    edges = {
        **ApprovalWorkflowHandler.edges,
        S.APPROVED: [S.COMPLETED, S.FAILED, S.CANCELLED],
    }


class EmployeeProcessHandler(WorkflowTypeHandler):
    """Onboarding and offboarding checklists."""

    workflow_types = (WorkflowType.ONBOARDING, WorkflowType.OFFBOARDING)
    edges = {
        S.DRAFT: [S.IN_PROGRESS, S.CANCELLED],
        S.IN_PROGRESS: [S.ON_HOLD, S.ESCALATED, S.COMPLETED, S.CANCELLED, S.FAILED],
        S.ON_HOLD: [S.IN_PROGRESS, S.CANCELLED],
        S.ESCALATED: [S.IN_PROGRESS, S.COMPLETED, S.CANCELLED],
        S.COMPLETED: [],
        S.CANCELLED: [],
        S.FAILED: [],
    }


class ReviewCycleHandler(WorkflowTypeHandler):
    """Performance review cycles. Phase names travel as ``current_state``."""

    workflow_types = (WorkflowType.PERFORMANCE_REVIEW_CYCLE,)
    initial_state = "DRAFT"
    edges = {
        S.DRAFT: [S.IN_PROGRESS, S.CANCELLED],
        S.IN_PROGRESS: [S.ON_HOLD, S.COMPLETED, S.CANCELLED],
        S.ON_HOLD: [S.IN_PROGRESS, S.CANCELLED],
        S.COMPLETED: [],
        S.CANCELLED: [],
    }


BUILTIN_HANDLERS = (ApprovalWorkflowHandler, TransferWorkflowHandler, EmployeeProcessHandler, ReviewCycleHandler)


class HandlerRegistry:
    """Maps each workflow type to its handler."""

    def __init__(self, load_builtins: bool = True):
        self.handlers: List[WorkflowTypeHandler] = []
        if load_builtins:
            for handler_cls in BUILTIN_HANDLERS:
                self.register(handler_cls())

    def register(self, handler: WorkflowTypeHandler) -> None:
        """Add a handler; later registrations win. Rejects broken tables."""
        errors = handler.machine.validate_workflow()
        if errors:
            raise ConfigurationError(
                f"Invalid transition table for {type(handler).__name__}: {'; '.join(errors)}",
                handler=type(handler).__name__,
            )
        self.handlers.insert(0, handler)

    def for_type(self, workflow_type: WorkflowType) -> WorkflowTypeHandler:
        for handler in self.handlers:
            if handler.handles(workflow_type):
                return handler
        raise KeyError(f"No handler for workflow type: {workflow_type}")


# ── State manager ────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStateManager:
    """Creates workflow instances and applies audited transitions."""

    def __init__(
        self,
        store: WorkflowStore,
        registry: Optional[HandlerRegistry] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.registry = registry or HandlerRegistry()
        self.clock = clock

    def handler_for(self, workflow_type: WorkflowType) -> WorkflowTypeHandler:
        return self.registry.for_type(workflow_type)

    def create(
        self,
        workflow_type: WorkflowType,
        entity_id: str,
        entity_type: str,
        initiator_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        due_date: Optional[datetime] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Create-if-absent a DRAFT workflow for the entity."""
        handler = self.handler_for(workflow_type)
        now = self.clock()
        instance = WorkflowInstance(
            workflow_type=workflow_type,
            entity_id=entity_id,
            entity_type=entity_type,
            status=WorkflowStatus.DRAFT,
            current_state=handler.initial_state,
            current_assignee_id=assignee_id,
            initiator_id=initiator_id,
            started_at=now,
            due_date=due_date,
            context=dict(context or {}),
        )
        with self.store.transaction():
            try:
                instance = self.store.insert(instance)
            except UniqueConstraintViolation as exc:
                raise DuplicateActiveWorkflowError(
                    f"An active {workflow_type.value} workflow already exists for {entity_type} {entity_id}",
                    existing_id=exc.existing_id,
                    entity_id=entity_id,
                ) from exc
            self._record(instance.id, None, instance.status.name, "Workflow initiated", initiator_id, now)
        logger.info("Created %s workflow %s for %s %s", workflow_type.value, instance.id, entity_type, entity_id)
        return instance

    def get(self, workflow_id: str) -> WorkflowInstance:
        instance = self.store.get(WorkflowInstance, workflow_id)
        if instance is None:
            raise NotFoundError("WorkflowInstance", workflow_id)
        return instance

    def find_active(self, entity_id: str, workflow_type: WorkflowType) -> Optional[WorkflowInstance]:
        return self.store.find_by_key(WorkflowInstance, (entity_id, workflow_type))

    def find_by_assignee(
        self,
        assignee_id: str,
        page: Optional[int] = None,
        page_size: int = 20,
    ) -> Union[List[WorkflowInstance], Page]:
        query = (
            RecordQuery.over(self.store, WorkflowInstance)
            .where(workflow_assigned_to(assignee_id))
            .order_by(lambda w: (w.due_date is None, w.due_date or w.started_at))
        )
        if page is None:
            return query.execute()
        return query.paginate(page, page_size).page()

    def find_overdue(self, now: Optional[datetime] = None) -> List[WorkflowInstance]:
        """Unfinished workflows past their due date, most overdue first."""
        now = now or self.clock()
        return (
            RecordQuery.over(self.store, WorkflowInstance)
            .where(workflow_overdue(now))
            .order_by(lambda w: w.due_date)
            .execute()
        )

    def update_due_date(self, workflow_id: str, due_date: Optional[datetime]) -> WorkflowInstance:
        """Move a workflow's due date; state and history are untouched."""
        with self.store.transaction():
            instance = self.get(workflow_id)
            if instance.status in FINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Workflow {workflow_id} is {instance.status.name}; its due date is fixed",
                    entity_id=workflow_id,
                    current_state=instance.status.name,
                )
            instance.due_date = due_date
            instance = self.store.update(instance, instance.version)
        logger.info(
            "Workflow %s due date set to %s", workflow_id, due_date.isoformat() if due_date else None,
        )
        return instance

    def transition(
        self,
        workflow_id: str,
        status: Optional[WorkflowStatus] = None,
        state: Optional[str] = None,
        reason: str = "",
        actor: Optional[str] = None,
        assignee_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Move a workflow to a new status and/or sub-state label.

        A status change must be allowed by the type's table. Label-only
        changes are allowed while the workflow is not final. Either way
        exactly one transition record is appended.
        """
        with self.store.transaction():
            instance = self.get(workflow_id)
            current = instance.status
            target = status or current

            if current in FINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Workflow {workflow_id} is {current.name} and cannot change",
                    entity_id=workflow_id,
                    current_state=current.name,
                    attempted_state=(target.name if status else state),
                )
            if target != current and not self.handler_for(instance.workflow_type).can_transition(current, target):
                raise InvalidTransitionError(
                    f"Cannot move workflow {workflow_id} from {current.name} to {target.name}",
                    entity_id=workflow_id,
                    current_state=current.name,
                    attempted_state=target.name,
                )

            now = self.clock()
            previous_state = instance.current_state
            expected_version = instance.version
            instance.status = target
            if state is not None:
                instance.current_state = state
            if assignee_id is not None:
                instance.current_assignee_id = assignee_id
            if context:
                instance.context.update(context)
            if target in FINAL_STATUSES:
                instance.completed_at = now
                instance.current_assignee_id = None

            instance = self.store.update(instance, expected_version)
            if target != current:
                self._record(workflow_id, current.name, target.name, reason, actor, now)
            else:
                self._record(workflow_id, previous_state, instance.current_state, reason, actor, now)

        logger.info(
            "Workflow %s: %s/%s -> %s/%s (%s)",
            workflow_id, current.name, previous_state, target.name, instance.current_state, reason,
        )
        return instance

    def complete(self, workflow_id: str, reason: str = "Workflow completed", actor: Optional[str] = None) -> WorkflowInstance:
        return self.transition(workflow_id, WorkflowStatus.COMPLETED, state="COMPLETED", reason=reason, actor=actor)

    def fail(self, workflow_id: str, reason: str, actor: Optional[str] = None) -> WorkflowInstance:
        return self.transition(workflow_id, WorkflowStatus.FAILED, state="FAILED", reason=reason, actor=actor)

    def cancel(self, workflow_id: str, reason: str, actor: Optional[str] = None) -> WorkflowInstance:
        return self.transition(workflow_id, WorkflowStatus.CANCELLED, state="CANCELLED", reason=reason, actor=actor)

    def assign(self, workflow_id: str, assignee_id: str, reason: str, actor: Optional[str] = None) -> WorkflowInstance:
        return self.transition(workflow_id, reason=reason, actor=actor, assignee_id=assignee_id)

    def history(self, workflow_id: str) -> List[WorkflowStateTransition]:
        """Full transition history, oldest first."""
        records = self.store.read_log(TRANSITION_LOG, workflow_id)
        return sorted(records, key=lambda r: (r.transitioned_at, r.sequence))

    def _record(
        self,
        workflow_id: str,
        from_state: Optional[str],
        to_state: str,
        reason: str,
        actor: Optional[str],
        at: datetime,
    ) -> WorkflowStateTransition:
        return self.store.append(
            TRANSITION_LOG,
            workflow_id,
            WorkflowStateTransition(
                workflow_instance_id=workflow_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                transitioned_by=actor,
                transitioned_at=at,
            ),
        )
