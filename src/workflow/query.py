"""Query builder and predicate factories for workflow records.

Each criterion is a small pure function returning a predicate, so filters
can be tested on their own and combined freely:

    pending = (RecordQuery.over(store, ApprovalRequest)
        .where(approver_is("emp_7"))
        .where(approval_status_is(ApprovalStatus.PENDING_APPROVAL))
        .order_by(lambda r: r.submitted_at, descending=True)
        .paginate(page=1, page_size=20)
        .execute())
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Optional, Type

from .config import ApprovalStatus, ApprovalType, ProcessType, ReviewPhase, WorkflowType
from .models import Page

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]


class RecordQuery:
    """Builder-pattern query over records supplied by a loader."""

    def __init__(self, loader: Callable[[], List[Any]]) -> None:
        self._loader = loader
        self._filters: List[Predicate] = []
        self._sort_key: Optional[Callable[[Any], Any]] = None
        self._descending = False
        self._page: Optional[int] = None
        self._page_size: int = 20
        self._limit: Optional[int] = None

    @classmethod
    def over(cls, store: Any, record_type: Type) -> "RecordQuery":
        """Query all records of *record_type* held by *store*."""
        return cls(lambda: store.find(record_type))

    def where(self, predicate: Predicate) -> "RecordQuery":
        self._filters.append(predicate)
        return self

    def where_all(self, predicates: Iterable[Predicate]) -> "RecordQuery":
        self._filters.extend(predicates)
        return self

    def order_by(self, key: Callable[[Any], Any], descending: bool = False) -> "RecordQuery":
        self._sort_key = key
        self._descending = descending
        return self

    def paginate(self, page: int = 1, page_size: int = 20) -> "RecordQuery":
        """Set pagination parameters (1-based page)."""
        self._page = max(1, page)
        self._page_size = max(1, page_size)
        return self

    def limit(self, n: int) -> "RecordQuery":
        self._limit = n
        return self

    def _matching(self) -> List[Any]:
        results = self._loader()
        for f in self._filters:
            results = [r for r in results if f(r)]
        if self._sort_key is not None:
            results.sort(key=self._sort_key, reverse=self._descending)
        if self._limit is not None:
            results = results[: self._limit]
        return results

    def execute(self) -> List[Any]:
        """Run the query and return matching records."""
        results = self._matching()
        if self._page is not None:
            start = (self._page - 1) * self._page_size
            results = results[start:start + self._page_size]
        logger.debug("Record query returned %d results", len(results))
        return results

    def count(self) -> int:
        """Number of matching records, before pagination."""
        return len(self._matching())

    def first(self) -> Optional[Any]:
        results = self._matching()
        return results[0] if results else None

    def page(self) -> Page:
        """Run the query and wrap the current page with its total."""
        matching = self._matching()
        page = self._page or 1
        start = (page - 1) * self._page_size
        return Page(
            items=matching[start:start + self._page_size],
            total=len(matching),
            page=page,
            page_size=self._page_size,
        )


# ── Predicate factories ──────────────────────────────────────────────


def field_equals(name: str, value: Any) -> Predicate:
    return lambda r: getattr(r, name, None) == value


def workflow_for_entity(entity_id: str, workflow_type: Optional[WorkflowType] = None) -> Predicate:
    def predicate(r: Any) -> bool:
        if r.entity_id != entity_id:
            return False
        return workflow_type is None or r.workflow_type == workflow_type
    return predicate


def workflow_active() -> Predicate:
    return lambda r: not r.is_terminal


def workflow_assigned_to(assignee_id: str) -> Predicate:
    return lambda w: w.current_assignee_id == assignee_id


def workflow_overdue(now: datetime) -> Predicate:
    """Unfinished workflows whose due date has passed."""
    return lambda w: not w.is_terminal and w.due_date is not None and w.due_date < now


def approval_status_is(*statuses: ApprovalStatus) -> Predicate:
    wanted = set(statuses)
    return lambda r: r.status in wanted


def approver_is(approver_id: str) -> Predicate:
    return lambda r: r.current_approver_id == approver_id


def requestor_is(requestor_id: str) -> Predicate:
    return lambda r: r.requestor_id == requestor_id


def approval_type_is(approval_type: ApprovalType) -> Predicate:
    return lambda r: r.approval_type == approval_type


def submitted_between(start: Optional[datetime], end: Optional[datetime]) -> Predicate:
    def predicate(r: Any) -> bool:
        if start is not None and r.submitted_at < start:
            return False
        if end is not None and r.submitted_at > end:
            return False
        return True
    return predicate


def cycle_active() -> Predicate:
    return lambda c: c.active


def cycle_phase_is(phase: ReviewPhase) -> Predicate:
    return lambda c: c.phase == phase


def cycle_overlaps(start: date, end: date) -> Predicate:
    """Active cycles whose [start_date, end_date] intersects [start, end]."""
    return lambda c: c.active and c.overlaps(start, end)


def cycle_current_on(day: date) -> Predicate:
    return lambda c: c.active and c.start_date <= day <= c.end_date


def cycle_covers_department(department_id: str) -> Predicate:
    """Cycles listing the department, plus organization-wide cycles."""
    return lambda c: not c.department_ids or department_id in c.department_ids


def cycle_deadline_within(start: date, end: date) -> Predicate:
    return lambda c: c.active and any(
        d is not None and start <= d <= end
        for d in (c.self_assessment_deadline, c.manager_review_deadline, c.calibration_deadline, c.feedback_deadline)
    )


def cycle_named(name: str) -> Predicate:
    return lambda c: c.name.strip().lower() == name.strip().lower()


def participant_of(cycle_id: str) -> Predicate:
    return lambda p: p.cycle_id == cycle_id


def process_for_employee(employee_id: str) -> Predicate:
    return lambda p: p.employee_id == employee_id


def process_active() -> Predicate:
    return lambda p: p.is_active


def process_of_type(process_type: ProcessType) -> Predicate:
    return lambda p: p.process_type == process_type


def deadline_open() -> Predicate:
    return lambda d: not d.completed


def deadline_for_workflow(workflow_instance_id: str) -> Predicate:
    return lambda d: d.workflow_instance_id == workflow_instance_id


def deadline_assigned_to(assignee_id: str) -> Predicate:
    return lambda d: d.assignee_id == assignee_id


def deadline_overdue(now: datetime) -> Predicate:
    return lambda d: d.is_overdue(now)


def warning_due(now: datetime) -> Predicate:
    return lambda d: (
        not d.completed
        and not d.warning_sent
        and d.warning_at is not None
        and d.warning_at < now
    )
