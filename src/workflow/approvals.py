"""HR Workflow & Approval Orchestration - Approval Manager.

Drives the ApprovalRequest lifecycle:

    PENDING_APPROVAL --approve (last level)--> APPROVED
    PENDING_APPROVAL --approve (level < total)--> PENDING_APPROVAL, level + 1
    PENDING_APPROVAL --reject (any level)--> REJECTED
    PENDING_APPROVAL --withdraw--> CANCELLED

Each operation reads the request, checks the expected level, writes it
back with a compare-and-swap on ``version`` and mirrors the change onto
the owning WorkflowInstance, all inside one store transaction.
Notifications are queued and sent after the transaction commits.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable

from .chain import ApprovalChainResolver
from .config import (
    APPROVAL_ENTITY_TYPES,
    APPROVAL_TITLES,
    APPROVAL_WORKFLOW_TYPES,
    DEFAULT_WORKFLOW_CONFIG,
    ApprovalDecision,
    ApprovalStatus,
    ApprovalType,
    DeadlineType,
    NotificationType,
    WorkflowConfig,
    WorkflowStatus,
)
from .deadlines import DeadlineMonitor
from .exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StaleApprovalError,
    ValidationError,
    VersionConflictError,
    WorkflowError,
)
from .identity import Directory
from .models import ApprovalHistoryEntry, ApprovalRequest, BulkDecisionResult, Page, PendingApprovalSummary
from .notifications import NotificationDispatcher
from .query import (
    RecordQuery,
    approval_status_is,
    approval_type_is,
    approver_is,
    requestor_is,
)
from .state_machine import ApprovalWorkflowHandler, WorkflowStateManager
from .store import WorkflowStore

logger = logging.getLogger(__name__)


@runtime_checkable
class EntityStatusHandler(Protocol):
    """Callback into the owning business entity once a chain finishes."""

    def on_approved(self, request: ApprovalRequest) -> None:
        ...

    def on_rejected(self, request: ApprovalRequest) -> None:
        ...


class NullEntityStatusHandler:
    """Entity callback that does nothing."""

    def on_approved(self, request: ApprovalRequest) -> None:
        return None

    def on_rejected(self, request: ApprovalRequest) -> None:
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalManager:
    """Manages leveled approval requests and their workflow envelopes."""

    def __init__(
        self,
        store: WorkflowStore,
        resolver: ApprovalChainResolver,
        state_manager: WorkflowStateManager,
        deadlines: DeadlineMonitor,
        dispatcher: NotificationDispatcher,
        directory: Directory,
        config: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG,
        entity_handler: Optional[EntityStatusHandler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.state_manager = state_manager
        self.deadlines = deadlines
        self.dispatcher = dispatcher
        self.directory = directory
        self.config = config
        self.entity_handler = entity_handler or NullEntityStatusHandler()
        self.clock = clock

    # ── Submission ───────────────────────────────────────────────────

    def submit(
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
        context: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Resolve the chain and open a request at level 1."""
        amount = Decimal(str(amount)) if amount is not None else None
        priority = priority if priority is not None else self.config.default_priority
        entity_type = entity_type or APPROVAL_ENTITY_TYPES[approval_type]
        workflow_type = APPROVAL_WORKFLOW_TYPES[approval_type]
        title = APPROVAL_TITLES[approval_type]

        with self.dispatcher.batch(), self.store.transaction():
            department_id = department_id or self.directory.department_of(requestor_id)
            measure = amount if amount is not None else days_count
            chain = self.resolver.resolve(approval_type, measure, department_id)
            first_approver = self.resolver.resolve_approver(chain[0], requestor_id, department_id)

            now = self.clock()
            due = now + timedelta(days=self.config.approval_due_days)
            workflow = self.state_manager.create(
                workflow_type,
                entity_id,
                entity_type,
                initiator_id=requestor_id,
                due_date=due,
                context={**(context or {}), "approval_type": approval_type.value},
            )
            request = self.store.insert(ApprovalRequest(
                workflow_instance_id=workflow.id,
                entity_id=entity_id,
                entity_type=entity_type,
                approval_type=approval_type,
                requestor_id=requestor_id,
                department_id=department_id,
                current_approver_id=first_approver,
                current_level=1,
                total_levels=len(chain),
                amount=amount,
                days_count=days_count,
                priority=priority,
                submitted_at=now,
                due_date=due,
                description=description,
                chain=chain,
            ))
            self.state_manager.transition(
                workflow.id,
                WorkflowStatus.PENDING_APPROVAL,
                state=ApprovalWorkflowHandler.level_state(1),
                reason="Submitted for approval",
                actor=requestor_id,
                assignee_id=first_approver,
                context={"approval_request_id": request.id},
            )
            self.deadlines.register(
                workflow.id,
                due,
                DeadlineType.APPROVAL_DECISION,
                assignee_id=first_approver,
                warning_hours=self.config.approval_warning_hours,
                description=f"{title}: level 1 of {request.total_levels}",
            )
            self._notify_approver(request, first_approver, title)

        logger.info(
            "Submitted %s %s for %s: %d level(s), first approver %s",
            approval_type.value, request.id, entity_id, request.total_levels, first_approver,
        )
        return request

    # ── Decisions ────────────────────────────────────────────────────

    def decide(
        self,
        request_id: str,
        level: int,
        decision: ApprovalDecision,
        comments: str = "",
        actor: Optional[str] = None,
        delegate_to: Optional[str] = None,
    ) -> ApprovalRequest:
        """Apply a decision at *level*.

        Raises StaleApprovalError if the request is no longer pending at
        that level, which is how a losing concurrent decision surfaces.
        """
        if decision in (ApprovalDecision.ESCALATE, ApprovalDecision.WITHDRAW):
            raise ValidationError(f"{decision.name} is not a decision; use its own operation", field="decision")
        if decision == ApprovalDecision.DELEGATE and not delegate_to:
            raise ValidationError("DELEGATE requires a delegate", field="delegate_to")

        with self.dispatcher.batch(), self.store.transaction():
            request = self.get(request_id)
            self._check_current(request, level)
            if decision == ApprovalDecision.DELEGATE and delegate_to in (request.requestor_id, request.current_approver_id):
                raise ValidationError(
                    f"Cannot delegate request {request_id} to {delegate_to}: already the requestor or current approver",
                    field="delegate_to",
                )
            expected_version = request.version
            actor = actor or request.current_approver_id
            now = self.clock()
            previous_approver = request.current_approver_id

            self._append_history(
                request, decision, actor, comments, now,
                delegated_to=delegate_to if decision == ApprovalDecision.DELEGATE else None,
            )

            if decision == ApprovalDecision.APPROVE and request.is_final_level:
                request.status = ApprovalStatus.APPROVED
                request.decided_at = now
                request.approver_comments = comments or None
                request.current_approver_id = None
            elif decision == ApprovalDecision.APPROVE:
                request.current_level += 1
                request.current_approver_id = self.resolver.resolve_approver(
                    request.current_rung(), request.requestor_id, request.department_id,
                )
                request.due_date = now + timedelta(days=self.config.approval_due_days)
            elif decision == ApprovalDecision.REJECT:
                request.status = ApprovalStatus.REJECTED
                request.decided_at = now
                request.approver_comments = comments or None
                request.current_approver_id = None
            elif decision == ApprovalDecision.DELEGATE:
                request.current_approver_id = delegate_to

            request = self._save(request, expected_version, level)

            if decision == ApprovalDecision.APPROVE and request.status == ApprovalStatus.APPROVED:
                self._finish_approved(request, actor)
            elif decision == ApprovalDecision.APPROVE:
                self._advance_level(request, level, actor)
            elif decision == ApprovalDecision.REJECT:
                self._finish_rejected(request, actor, comments)
            elif decision == ApprovalDecision.REQUEST_MORE_INFO:
                self.state_manager.transition(
                    request.workflow_instance_id,
                    state=f"AWAITING_INFO_LEVEL_{level}",
                    reason=comments or "More information requested",
                    actor=actor,
                )
                self.dispatcher.send(
                    request.requestor_id,
                    NotificationType.INFO,
                    title="More Information Requested",
                    request_id=request.id,
                    level=level,
                    comments=comments,
                )
            else:
                self.state_manager.transition(
                    request.workflow_instance_id,
                    state=ApprovalWorkflowHandler.level_state(level),
                    reason=f"Delegated by {previous_approver} to {delegate_to}",
                    actor=actor,
                    assignee_id=delegate_to,
                )
                self.deadlines.reassign(request.workflow_instance_id, delegate_to)
                self._notify_approver(request, delegate_to, APPROVAL_TITLES[request.approval_type])

        logger.info(
            "Decision %s on %s at level %d by %s -> %s",
            decision.name, request_id, level, actor, request.status.name,
        )
        return request

    def escalate(self, request_id: str, actor: Optional[str] = None, reason: str = "") -> ApprovalRequest:
        """Hand a pending request to the current approver's supervisor."""
        with self.dispatcher.batch(), self.store.transaction():
            request = self.get(request_id)
            if request.status != ApprovalStatus.PENDING_APPROVAL:
                raise InvalidTransitionError(
                    f"Approval request {request_id} is {request.status.name}; only pending requests escalate",
                    entity_id=request_id,
                    current_state=request.status.name,
                    attempted_state="ESCALATED",
                )
            expected_version = request.version
            previous_approver = request.current_approver_id
            target = self.resolver.escalation_target(previous_approver)
            now = self.clock()

            self._append_history(
                request, ApprovalDecision.ESCALATE, actor or "system",
                reason or f"Escalated from {previous_approver}", now, delegated_to=target,
            )
            request.current_approver_id = target
            request = self._save(request, expected_version, request.current_level)

            self.state_manager.transition(
                request.workflow_instance_id,
                WorkflowStatus.ESCALATED,
                state=f"ESCALATED_LEVEL_{request.current_level}",
                reason=reason or f"Escalated from {previous_approver} to {target}",
                actor=actor,
                assignee_id=target,
            )
            self.deadlines.reassign(request.workflow_instance_id, target)
            self.dispatcher.send(
                target,
                NotificationType.ESCALATION,
                title=f"Escalated: {APPROVAL_TITLES[request.approval_type]}",
                request_id=request.id,
                entity_id=request.entity_id,
                escalated_from=previous_approver,
                level=request.current_level,
            )
            self.dispatcher.send(
                previous_approver,
                NotificationType.INFO,
                title="Approval Request Escalated",
                request_id=request.id,
                escalated_to=target,
            )

        logger.warning("Escalated approval %s from %s to %s", request_id, previous_approver, target)
        return request

    def withdraw(self, request_id: str, reason: str = "", actor: Optional[str] = None) -> ApprovalRequest:
        """Cancel a request. Withdrawing a finished request changes nothing."""
        with self.dispatcher.batch(), self.store.transaction():
            request = self.get(request_id)
            if request.is_terminal:
                logger.info("Withdraw of %s ignored: already %s", request_id, request.status.name)
                return request

            expected_version = request.version
            now = self.clock()
            approver = request.current_approver_id
            self._append_history(
                request, ApprovalDecision.WITHDRAW, actor or request.requestor_id,
                reason or "Withdrawn by requestor", now,
            )
            request.status = ApprovalStatus.CANCELLED
            request.decided_at = now
            request.current_approver_id = None
            request = self._save(request, expected_version, request.current_level)

            self.state_manager.cancel(
                request.workflow_instance_id,
                reason=reason or "Withdrawn by requestor",
                actor=actor or request.requestor_id,
            )
            self.deadlines.complete_for_workflow(request.workflow_instance_id, now=now)
            self.dispatcher.send(
                approver,
                NotificationType.INFO,
                title="Approval Request Withdrawn",
                request_id=request.id,
                entity_id=request.entity_id,
                reason=reason,
            )

        logger.info("Withdrew approval request %s", request_id)
        return request

    def bulk_approve(self, request_ids: List[str], comments: str = "", actor: Optional[str] = None) -> List[BulkDecisionResult]:
        """Approve each request at its current level; failures stay per id."""
        results: List[BulkDecisionResult] = []
        for request_id in request_ids:
            try:
                current = self.get(request_id)
                decided = self.decide(request_id, current.current_level, ApprovalDecision.APPROVE, comments, actor)
            except WorkflowError as exc:
                logger.warning("Bulk approve failed for %s: %s", request_id, exc.message)
                results.append(BulkDecisionResult(
                    request_id=request_id,
                    success=False,
                    error=exc.message,
                    error_code=exc.error_code.value,
                ))
            else:
                results.append(BulkDecisionResult(request_id=request_id, success=True, status=decided.status))
        logger.info(
            "Bulk approve: %d/%d succeeded",
            sum(1 for r in results if r.success), len(results),
        )
        return results

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, request_id: str) -> ApprovalRequest:
        request = self.store.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError("ApprovalRequest", request_id)
        return request

    def find_for_entity(self, entity_id: str, approval_type: Optional[ApprovalType] = None) -> List[ApprovalRequest]:
        query = RecordQuery.over(self.store, ApprovalRequest).where(lambda r: r.entity_id == entity_id)
        if approval_type is not None:
            query.where(approval_type_is(approval_type))
        return query.order_by(lambda r: r.submitted_at).execute()

    def pending_for_approver(
        self,
        approver_id: str,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        approval_type: Optional[ApprovalType] = None,
    ) -> Union[List[PendingApprovalSummary], Page]:
        """An approver's inbox, highest priority and oldest first.

        Returns a Page when *page* is given, otherwise the full list.
        """
        query = (
            RecordQuery.over(self.store, ApprovalRequest)
            .where(approver_is(approver_id))
            .where(approval_status_is(ApprovalStatus.PENDING_APPROVAL))
            .order_by(lambda r: (r.priority, r.submitted_at))
        )
        if approval_type is not None:
            query.where(approval_type_is(approval_type))
        now = self.clock()
        if page is None:
            return [self._summarize(r, now) for r in query.execute()]
        result = query.paginate(page, page_size or self.config.default_page_size).page()
        result.items = [self._summarize(r, now) for r in result.items]
        return result

    def count_pending(self, approver_id: str) -> int:
        return (
            RecordQuery.over(self.store, ApprovalRequest)
            .where(approver_is(approver_id))
            .where(approval_status_is(ApprovalStatus.PENDING_APPROVAL))
            .count()
        )

    def by_requestor(
        self,
        requestor_id: str,
        status: Optional[ApprovalStatus] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Union[List[ApprovalRequest], Page]:
        """Requests a requestor submitted, newest first; a Page when *page* is given."""
        query = RecordQuery.over(self.store, ApprovalRequest).where(requestor_is(requestor_id))
        if status is not None:
            query.where(approval_status_is(status))
        query.order_by(lambda r: r.submitted_at, descending=True)
        if page is None:
            return query.execute()
        return query.paginate(page, page_size or self.config.default_page_size).page()

    def history(self, request_id: str) -> List[ApprovalHistoryEntry]:
        return list(self.get(request_id).history)

    # ── Internals ────────────────────────────────────────────────────

    @staticmethod
    def _check_current(request: ApprovalRequest, level: int) -> None:
        if request.status != ApprovalStatus.PENDING_APPROVAL or level != request.current_level:
            raise StaleApprovalError(
                f"Approval request {request.id} is {request.status.name} at level "
                f"{request.current_level}; decision for level {level} is stale",
                request_id=request.id,
                expected_level=level,
                current_level=request.current_level,
                current_status=request.status.name,
            )

    def _save(self, request: ApprovalRequest, expected_version: int, level: int) -> ApprovalRequest:
        try:
            return self.store.update(request, expected_version)
        except VersionConflictError as exc:
            latest = self.get(request.id)
            raise StaleApprovalError(
                f"Approval request {request.id} changed concurrently",
                request_id=request.id,
                expected_level=level,
                current_level=latest.current_level,
                current_status=latest.status.name,
            ) from exc

    @staticmethod
    def _append_history(
        request: ApprovalRequest,
        decision: ApprovalDecision,
        approver_id: Optional[str],
        comments: str,
        at: datetime,
        delegated_to: Optional[str] = None,
    ) -> None:
        request.history.append(ApprovalHistoryEntry(
            sequence=len(request.history) + 1,
            level=request.current_level,
            approver_id=approver_id,
            decision=decision,
            comments=comments,
            decided_at=at,
            delegated_to=delegated_to,
        ))

    def _advance_level(self, request: ApprovalRequest, approved_level: int, actor: Optional[str]) -> None:
        self.state_manager.transition(
            request.workflow_instance_id,
            WorkflowStatus.PENDING_APPROVAL,
            state=ApprovalWorkflowHandler.level_state(request.current_level),
            reason=f"Level {approved_level} approved by {actor}",
            actor=actor,
            assignee_id=request.current_approver_id,
        )
        now = self.clock()
        self.deadlines.complete_for_workflow(request.workflow_instance_id, DeadlineType.APPROVAL_DECISION, now)
        self.deadlines.register(
            request.workflow_instance_id,
            request.due_date,
            DeadlineType.APPROVAL_DECISION,
            assignee_id=request.current_approver_id,
            warning_hours=self.config.approval_warning_hours,
            description=(
                f"{APPROVAL_TITLES[request.approval_type]}: level "
                f"{request.current_level} of {request.total_levels}"
            ),
        )
        self._notify_approver(request, request.current_approver_id, APPROVAL_TITLES[request.approval_type])

    def _finish_approved(self, request: ApprovalRequest, actor: Optional[str]) -> None:
        workflow_id = request.workflow_instance_id
        self.state_manager.transition(
            workflow_id, WorkflowStatus.APPROVED, state="APPROVED",
            reason=f"Final level approved by {actor}", actor=actor,
        )
        self.deadlines.complete_for_workflow(workflow_id, now=request.decided_at)
        try:
            self.entity_handler.on_approved(request)
        except Exception as exc:
            logger.exception("Post-approval activation failed for %s %s", request.entity_type, request.entity_id)
            self.state_manager.fail(workflow_id, reason=f"Post-approval activation failed: {exc}", actor=actor)
        else:
            self.state_manager.complete(workflow_id, reason="Approval chain completed", actor=actor)
        self._notify_decision(request, "APPROVED")

    def _finish_rejected(self, request: ApprovalRequest, actor: Optional[str], comments: str) -> None:
        self.state_manager.transition(
            request.workflow_instance_id, WorkflowStatus.REJECTED, state="REJECTED",
            reason=comments or f"Rejected by {actor}", actor=actor,
        )
        self.deadlines.complete_for_workflow(request.workflow_instance_id, now=request.decided_at)
        self.entity_handler.on_rejected(request)
        self._notify_decision(request, "REJECTED")

    def _notify_approver(self, request: ApprovalRequest, approver_id: Optional[str], title: str) -> None:
        self.dispatcher.send(
            approver_id,
            NotificationType.APPROVAL_REQUIRED,
            title=title,
            request_id=request.id,
            entity_id=request.entity_id,
            entity_type=request.entity_type,
            requestor_id=request.requestor_id,
            level=request.current_level,
            total_levels=request.total_levels,
            due_date=request.due_date.isoformat() if request.due_date else None,
        )

    def _notify_decision(self, request: ApprovalRequest, outcome: str) -> None:
        self.dispatcher.send(
            request.requestor_id,
            NotificationType.APPROVAL_DECISION,
            title=f"{request.entity_type} {outcome.title()}",
            request_id=request.id,
            entity_id=request.entity_id,
            outcome=outcome,
            comments=request.approver_comments,
        )

    def _summarize(self, request: ApprovalRequest, now: datetime) -> PendingApprovalSummary:
        return PendingApprovalSummary(
            request_id=request.id,
            approval_type=request.approval_type,
            entity_id=request.entity_id,
            entity_description=request.description or f"{request.entity_type} {request.entity_id}",
            requestor_id=request.requestor_id,
            current_level=request.current_level,
            total_levels=request.total_levels,
            priority=request.priority,
            submitted_at=request.submitted_at,
            due_date=request.due_date,
            days_waiting=max(0, (now - request.submitted_at).days),
            is_overdue=request.due_date is not None and request.due_date < now,
        )
