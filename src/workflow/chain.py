"""HR Workflow & Approval Orchestration - Approval Chain Resolver."""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from .config import ApprovalType, ApproverType
from .exceptions import ConfigurationError, NoApproverAvailableError
from .identity import ROLE_APPROVER_TYPES, Directory
from .models import ApprovalChainConfig
from .store import WorkflowStore

logger = logging.getLogger(__name__)


class ApprovalChainResolver:
    """Turns configured chain rungs into an ordered approver chain.

    Rungs are filtered by approval type, ``active`` flag, threshold window
    and department. When a department-specific rung and a global rung share
    a sequence position, the department-specific one wins.
    """

    def __init__(self, store: WorkflowStore, directory: Directory):
        self.store = store
        self.directory = directory

    # ── Configuration ────────────────────────────────────────────────

    def add_rung(self, rung: ApprovalChainConfig) -> ApprovalChainConfig:
        """Register a chain rung. In-flight requests keep their snapshot."""
        if rung.min_threshold is not None and rung.max_threshold is not None:
            if rung.min_threshold > rung.max_threshold:
                raise ConfigurationError(
                    "min_threshold must not exceed max_threshold",
                    approval_type=rung.approval_type.value,
                    sequence_order=rung.sequence_order,
                )
        if rung.approver_type == ApproverType.SPECIFIC_EMPLOYEE and not rung.specific_approver_id:
            raise ConfigurationError(
                "SPECIFIC_EMPLOYEE rungs need a specific_approver_id",
                approval_type=rung.approval_type.value,
                sequence_order=rung.sequence_order,
            )
        stored = self.store.insert(rung)
        logger.info(
            "Added %s chain rung %d (%s)",
            rung.approval_type.value, rung.sequence_order, rung.approver_type.value,
        )
        return stored

    def deactivate_rung(self, rung_id: str) -> ApprovalChainConfig:
        rung = self.store.get(ApprovalChainConfig, rung_id)
        if rung is None:
            raise ConfigurationError(f"Unknown chain rung: {rung_id}")
        rung.active = False
        return self.store.update(rung, rung.version)

    def configured_rungs(self, approval_type: ApprovalType) -> List[ApprovalChainConfig]:
        rungs = self.store.find(
            ApprovalChainConfig,
            lambda r: r.approval_type == approval_type and r.active,
        )
        return sorted(rungs, key=lambda r: r.sequence_order)

    # ── Resolution ───────────────────────────────────────────────────

    def resolve(
        self,
        approval_type: ApprovalType,
        amount: Optional[Decimal] = None,
        department_id: Optional[str] = None,
    ) -> List[ApprovalChainConfig]:
        """Return the ordered rungs that apply to this request.

        Raises ConfigurationError when nothing applies; approval is never
        bypassed silently.
        """
        candidates = self.configured_rungs(approval_type)
        if not candidates:
            raise ConfigurationError(
                f"No active approval chain configured for {approval_type.value}",
                approval_type=approval_type.value,
            )

        measure = Decimal(str(amount)) if amount is not None else None
        by_position: Dict[int, ApprovalChainConfig] = {}
        for rung in candidates:
            if rung.department_id is not None and rung.department_id != department_id:
                continue
            if not rung.contains(measure):
                continue
            held = by_position.get(rung.sequence_order)
            if held is None or (held.department_id is None and rung.department_id is not None):
                by_position[rung.sequence_order] = rung

        chain = [by_position[pos] for pos in sorted(by_position)]
        if not chain:
            raise ConfigurationError(
                f"No approval chain rung of {approval_type.value} applies to amount {amount}",
                approval_type=approval_type.value,
                amount=str(amount) if amount is not None else None,
                department_id=department_id,
            )
        logger.debug(
            "Resolved %s chain (amount=%s, department=%s): %s",
            approval_type.value, amount, department_id,
            [r.approver_type.value for r in chain],
        )
        return chain

    def resolve_approver(
        self,
        rung: ApprovalChainConfig,
        requestor_id: str,
        department_id: Optional[str] = None,
    ) -> str:
        """Identify the employee who signs off on *rung* for this requestor."""
        department_id = department_id or self.directory.department_of(requestor_id)
        approver: Optional[str] = None

        if rung.approver_type == ApproverType.DIRECT_MANAGER:
            approver = self.directory.manager_of(requestor_id)
        elif rung.approver_type == ApproverType.DEPARTMENT_HEAD:
            if department_id is not None:
                approver = self.directory.department_head(department_id)
            if approver is None or approver == requestor_id:
                approver = self.directory.manager_of(requestor_id)
        elif rung.approver_type == ApproverType.SPECIFIC_EMPLOYEE:
            approver = rung.specific_approver_id
        elif rung.approver_type in ROLE_APPROVER_TYPES:
            approver = self.directory.role_holder(rung.approver_type, department_id)

        if approver is None:
            raise NoApproverAvailableError(
                f"No {rung.approver_type.value} approver available for {requestor_id}",
                requestor_id=requestor_id,
                approver_type=rung.approver_type.value,
                sequence_order=rung.sequence_order,
            )
        return approver

    def escalation_target(self, approver_id: str) -> str:
        """The supervisor a pending approval escalates to."""
        target = self.directory.manager_of(approver_id)
        if target is None:
            raise NoApproverAvailableError(
                "No escalation target available",
                approver_id=approver_id,
            )
        return target
