"""Tests for environment-driven settings."""

from pathlib import Path

from missionspine.core.settings import get_settings, reset_settings


class TestMissionSettings:
    def test_data_dir_from_environment(self, isolated_settings):
        """MISSION_DATA_DIR drives data_dir and the derived directories."""
        settings = get_settings()
        assert settings.data_dir == isolated_settings
        assert settings.executions_dir == isolated_settings / "executions"
        assert settings.sync_dir == isolated_settings / "sync"
        assert settings.stores_dir == isolated_settings / "stores"

    def test_defaults(self, monkeypatch):
        """Unset variables fall back to the documented defaults."""
        monkeypatch.delenv("MISSION_DATA_DIR")
        reset_settings()
        settings = get_settings()
        assert settings.data_dir == Path(".mission-data")
        assert settings.persist_state is False
        assert settings.max_pagination_pages == 100
        assert settings.rate_limit_strategy == "pause"
        assert settings.circuit_failure_threshold == 5

    def test_cached_until_reset(self, monkeypatch):
        """get_settings is cached; reset_settings re-reads the environment."""
        first = get_settings()
        monkeypatch.setenv("MISSION_PERSIST_STATE", "true")
        assert get_settings() is first
        reset_settings()
        assert get_settings().persist_state is True
