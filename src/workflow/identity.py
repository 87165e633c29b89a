"""Identity Directory Protocol.

Resolves organizational relationships for approver determination and
escalation targeting. The core never looks at employee records directly.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from .config import ApproverType

logger = logging.getLogger(__name__)

# Approver types resolved through an organization-wide role holder.
ROLE_APPROVER_TYPES = frozenset({ApproverType.HR, ApproverType.FINANCE, ApproverType.EXECUTIVE})


@runtime_checkable
class Directory(Protocol):
    """Protocol the orchestration core uses to answer "who approves this?"."""

    def exists(self, employee_id: str) -> bool:
        """Whether the employee is known."""
        ...

    def manager_of(self, employee_id: str) -> Optional[str]:
        """Direct manager of an employee, if any."""
        ...

    def department_of(self, employee_id: str) -> Optional[str]:
        """Department the employee belongs to."""
        ...

    def department_head(self, department_id: str) -> Optional[str]:
        """Head of a department, if one is assigned."""
        ...

    def role_holder(self, role: ApproverType, department_id: Optional[str] = None) -> Optional[str]:
        """Who holds an approver role, preferring a department-scoped holder."""
        ...

    def employees_in_departments(self, department_ids: Iterable[str]) -> List[str]:
        """Active employees in the given departments (all when empty)."""
        ...


@dataclass
class Employee:
    """Minimal employee view held by the in-memory directory."""

    employee_id: str
    name: str = ""
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    email: str = ""
    active: bool = True
    roles: Set[ApproverType] = field(default_factory=set)
    position: Optional[str] = None


class InMemoryDirectory:
    """Directory backed by dictionaries, for embedding and tests."""

    def __init__(self, employees: Optional[Iterable[Employee]] = None) -> None:
        self._lock = threading.Lock()
        self._employees: Dict[str, Employee] = {}
        self._heads: Dict[str, str] = {}
        for employee in employees or []:
            self.add_employee(employee)

    def add_employee(self, employee: Employee) -> Employee:
        with self._lock:
            self._employees[employee.employee_id] = employee
        return employee

    def set_department_head(self, department_id: str, employee_id: str) -> None:
        with self._lock:
            self._heads[department_id] = employee_id

    def apply_transfer(
        self,
        employee_id: str,
        department_id: Optional[str],
        manager_id: Optional[str],
        position: Optional[str],
    ) -> None:
        """Move an employee; None leaves that attribute as it is."""
        with self._lock:
            employee = self._employees[employee_id]
            if department_id is not None:
                employee.department_id = department_id
            if manager_id is not None:
                employee.manager_id = manager_id
            if position is not None:
                employee.position = position
        logger.info("Moved %s to department %s under %s", employee_id, employee.department_id, employee.manager_id)

    def get(self, employee_id: str) -> Optional[Employee]:
        return self._employees.get(employee_id)

    def exists(self, employee_id: str) -> bool:
        employee = self._employees.get(employee_id)
        return employee is not None and employee.active

    def manager_of(self, employee_id: str) -> Optional[str]:
        employee = self._employees.get(employee_id)
        return employee.manager_id if employee else None

    def department_of(self, employee_id: str) -> Optional[str]:
        employee = self._employees.get(employee_id)
        return employee.department_id if employee else None

    def department_head(self, department_id: str) -> Optional[str]:
        return self._heads.get(department_id)

    def role_holder(self, role: ApproverType, department_id: Optional[str] = None) -> Optional[str]:
        holders = sorted(
            (e for e in self._employees.values() if e.active and role in e.roles),
            key=lambda e: e.employee_id,
        )
        if department_id is not None:
            for e in holders:
                if e.department_id == department_id:
                    return e.employee_id
        return holders[0].employee_id if holders else None

    def employees_in_departments(self, department_ids: Iterable[str]) -> List[str]:
        wanted = set(department_ids)
        return sorted(
            e.employee_id
            for e in self._employees.values()
            if e.active and (not wanted or e.department_id in wanted)
        )
