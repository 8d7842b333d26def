"""
Unit Tests - Settings
"""
import pytest
from pydantic import ValidationError

from src.config.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SESSION_FUNNEL_PROGRESS_BACKEND", "API_WORKERS", "WORKERS"):
        monkeypatch.delenv(name, raising=False)


class TestFunnelProgressBackend:
    """Tests for the funnel progress backend setting"""

    def test_defaults_to_database(self):
        settings = Settings()

        assert settings.sessions.funnel_progress_backend == "database"
        assert settings.api_workers > 1

    def test_memory_rejected_with_several_workers(self, monkeypatch):
        monkeypatch.setenv("SESSION_FUNNEL_PROGRESS_BACKEND", "memory")

        with pytest.raises(ValidationError, match="API_WORKERS=1"):
            Settings()

    def test_memory_allowed_with_one_worker(self, monkeypatch):
        monkeypatch.setenv("SESSION_FUNNEL_PROGRESS_BACKEND", "Memory")
        monkeypatch.setenv("API_WORKERS", "1")

        assert Settings().sessions.funnel_progress_backend == "memory"

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("SESSION_FUNNEL_PROGRESS_BACKEND", "memcached")

        with pytest.raises(ValidationError):
            Settings()
