"""Centralized settings for the HR workflow core.

Uses pydantic-settings to load from environment variables (prefixed
HRFLOW_) with defaults matching the built-in workflow policy.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Workflow settings loaded from environment variables."""

    # --- Approvals ---
    approval_due_days: int = 5
    approval_warning_hours: int = 24
    default_priority: int = 3
    auto_escalate_interval_hours: int = 24  # Overdue deadlines escalate once per interval

    # --- Employee processes ---
    onboarding_duration_days: int = 30
    onboarding_warning_hours: int = 72
    offboarding_warning_hours: int = 72

    # --- Transfers ---
    transfer_lead_days: int = 7  # Approvals are due this many days before the effective date
    transfer_warning_hours: int = 72

    # --- Review cycles ---
    self_assessment_warning_hours: int = 72
    manager_review_warning_hours: int = 72
    calibration_warning_hours: int = 48
    feedback_warning_hours: int = 48
    strict_phase_gates: bool = True  # Require every submission before the next phase

    # --- Queries ---
    default_page_size: int = 20

    model_config = {
        "env_prefix": "HRFLOW_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
