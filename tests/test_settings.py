"""Tests for environment-driven settings."""

from unittest.mock import patch

from src.settings import Settings, get_settings
from src.workflow.config import ReviewPhase, WorkflowConfig
from src.workflow.identity import InMemoryDirectory
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.store import InMemoryWorkflowStore


class TestSettings:
    def test_defaults_match_workflow_config(self):
        settings = Settings()
        config = WorkflowConfig.from_settings(settings)
        assert config == WorkflowConfig()

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("HRFLOW_APPROVAL_DUE_DAYS", "3")
        monkeypatch.setenv("HRFLOW_STRICT_PHASE_GATES", "false")
        monkeypatch.setenv("HRFLOW_CALIBRATION_WARNING_HOURS", "12")
        monkeypatch.setenv("HRFLOW_TRANSFER_LEAD_DAYS", "10")
        settings = Settings()
        assert settings.approval_due_days == 3
        assert settings.strict_phase_gates is False

        config = WorkflowConfig.from_settings(settings)
        assert config.approval_due_days == 3
        assert config.strict_phase_gates is False
        assert config.phase_warning_hours[ReviewPhase.CALIBRATION] == 12
        assert config.transfer_lead_days == 10
        assert config.transfer_warning_hours == 72

    def test_unprefixed_env_ignored(self, monkeypatch):
        monkeypatch.setenv("APPROVAL_DUE_DAYS", "9")
        assert Settings().approval_due_days == 5

    def test_get_settings_is_cached(self, monkeypatch):
        get_settings.cache_clear()
        try:
            first = get_settings()
            monkeypatch.setenv("HRFLOW_DEFAULT_PAGE_SIZE", "50")
            assert get_settings() is first
            get_settings.cache_clear()
            assert get_settings().default_page_size == 50
        finally:
            get_settings.cache_clear()


class TestOrchestratorFromSettings:
    def test_explicit_settings(self):
        settings = Settings(approval_due_days=2, default_page_size=5)
        orch = WorkflowOrchestrator.from_settings(InMemoryWorkflowStore(), InMemoryDirectory(), settings=settings)
        assert orch.config.approval_due_days == 2
        assert orch.config.default_page_size == 5

    def test_uses_cached_settings(self):
        settings = Settings(onboarding_duration_days=45)
        with patch("src.settings.get_settings", return_value=settings):
            orch = WorkflowOrchestrator.from_settings(InMemoryWorkflowStore(), InMemoryDirectory())
        assert orch.config.onboarding_duration_days == 45
