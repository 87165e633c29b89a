"""Workflow reporting.

Tabular summaries built with pandas for dashboards and exports.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from .models import ApprovalRequest, CycleProgress, WorkflowDeadline

logger = logging.getLogger(__name__)

TURNAROUND_COLUMNS = [
    "approval_type", "requests", "approved", "rejected", "cancelled",
    "pending", "approval_rate", "avg_turnaround_hours", "avg_levels",
]
PROGRESS_COLUMNS = [
    "department_id", "total_employees", "self_assessments",
    "manager_reviews", "feedbacks", "self_assessment_rate", "feedback_rate",
]
OVERDUE_COLUMNS = [
    "deadline_id", "workflow_instance_id", "deadline_type", "assignee_id",
    "deadline_at", "hours_overdue", "escalation_level",
]


def approval_turnaround(requests: List[ApprovalRequest]) -> pd.DataFrame:
    """Per approval type: outcome counts and mean decision time in hours."""
    if not requests:
        return pd.DataFrame(columns=TURNAROUND_COLUMNS)

    frame = pd.DataFrame([
        {
            "approval_type": r.approval_type.value,
            "status": r.status.name,
            "levels": r.total_levels,
            "turnaround_hours": (
                (r.decided_at - r.submitted_at).total_seconds() / 3600 if r.decided_at else float("nan")
            ),
        }
        for r in requests
    ])
    grouped = frame.groupby("approval_type")
    summary = pd.DataFrame({
        "requests": grouped.size(),
        "approved": grouped["status"].apply(lambda s: int((s == "APPROVED").sum())),
        "rejected": grouped["status"].apply(lambda s: int((s == "REJECTED").sum())),
        "cancelled": grouped["status"].apply(lambda s: int((s == "CANCELLED").sum())),
        "pending": grouped["status"].apply(lambda s: int((s == "PENDING_APPROVAL").sum())),
        "avg_turnaround_hours": grouped["turnaround_hours"].mean().round(2),
        "avg_levels": grouped["levels"].mean().round(2),
    }).reset_index()

    decided = summary["approved"] + summary["rejected"]
    summary["approval_rate"] = (summary["approved"] / decided.where(decided > 0)).fillna(0.0).round(3)
    return summary[TURNAROUND_COLUMNS].sort_values("requests", ascending=False).reset_index(drop=True)


def department_progress_frame(progress: Dict[Optional[str], CycleProgress]) -> pd.DataFrame:
    """One row per department, least complete first."""
    rows = []
    for department_id, p in progress.items():
        rows.append({
            "department_id": department_id,
            "total_employees": p.total_employees,
            "self_assessments": p.completed_self_assessments,
            "manager_reviews": p.completed_manager_reviews,
            "feedbacks": p.delivered_feedbacks,
            "self_assessment_rate": p.self_assessment_rate,
            "feedback_rate": p.feedback_rate,
        })
    if not rows:
        return pd.DataFrame(columns=PROGRESS_COLUMNS)
    return pd.DataFrame(rows).sort_values("self_assessment_rate").reset_index(drop=True)


def overdue_summary(deadlines: List[WorkflowDeadline], now: datetime) -> pd.DataFrame:
    """Overdue deadlines, most overdue first."""
    rows = []
    for d in deadlines:
        if not d.is_overdue(now):
            continue
        rows.append({
            "deadline_id": d.id,
            "workflow_instance_id": d.workflow_instance_id,
            "deadline_type": d.deadline_type.value,
            "assignee_id": d.assignee_id,
            "deadline_at": d.deadline_at,
            "hours_overdue": round((now - d.deadline_at).total_seconds() / 3600, 1),
            "escalation_level": d.escalation_level,
        })
    if not rows:
        return pd.DataFrame(columns=OVERDUE_COLUMNS)
    logger.debug("Overdue summary covers %d deadlines", len(rows))
    return pd.DataFrame(rows).sort_values("hours_overdue", ascending=False).reset_index(drop=True)
