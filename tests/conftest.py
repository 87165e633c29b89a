"""Pytest configuration and shared fixtures."""

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.workflow.config import ApprovalType, ApproverType, WorkflowConfig  # noqa: E402
from src.workflow.identity import Employee, InMemoryDirectory  # noqa: E402
from src.workflow.notifications import RecordingNotifier  # noqa: E402
from src.workflow.orchestrator import WorkflowOrchestrator  # noqa: E402
from src.workflow.store import InMemoryWorkflowStore  # noqa: E402


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_directory() -> InMemoryDirectory:
    """Small org: an executive, finance and HR leads, an engineering and a sales team."""
    directory = InMemoryDirectory([
        Employee("ceo", "Dana Chief", "exec", None, roles={ApproverType.EXECUTIVE}),
        Employee("cfo", "Finn Ledger", "finance", "ceo", roles={ApproverType.FINANCE}),
        Employee("hr_lead", "Harper Rowe", "hr", "ceo", roles={ApproverType.HR}),
        Employee("eng_head", "Ellis Stone", "eng", "ceo"),
        Employee("mgr_1", "Morgan Vale", "eng", "eng_head"),
        Employee("emp_1", "Avery Lin", "eng", "mgr_1"),
        Employee("emp_2", "Blake Ortiz", "eng", "mgr_1"),
        Employee("sales_mgr", "Sam Rivers", "sales", "ceo"),
        Employee("emp_3", "Casey Moreau", "sales", "sales_mgr"),
    ])
    directory.set_department_head("eng", "eng_head")
    directory.set_department_head("sales", "sales_mgr")
    return directory


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def directory():
    return build_directory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(store, directory, notifier, clock):
    return WorkflowOrchestrator(store, directory, notifier, config=WorkflowConfig(), clock=clock)


@pytest.fixture
def expense_chain(orchestrator):
    """Expense chain: manager always, department head from 1000, finance from 5000."""
    orchestrator.configure_chain_rung(ApprovalType.EXPENSE_CLAIM, 1, ApproverType.DIRECT_MANAGER)
    orchestrator.configure_chain_rung(
        ApprovalType.EXPENSE_CLAIM, 2, ApproverType.DEPARTMENT_HEAD, min_threshold=Decimal("1000"),
    )
    orchestrator.configure_chain_rung(
        ApprovalType.EXPENSE_CLAIM, 3, ApproverType.FINANCE, min_threshold=Decimal("5000"),
    )
    return orchestrator


@pytest.fixture
def leave_chain(orchestrator):
    """Leave chain: manager always, HR for more than five days."""
    orchestrator.configure_chain_rung(ApprovalType.LEAVE_REQUEST, 1, ApproverType.DIRECT_MANAGER)
    orchestrator.configure_chain_rung(ApprovalType.LEAVE_REQUEST, 2, ApproverType.HR, min_threshold=6)
    return orchestrator
