"""
Unit tests for dashboard worker configuration.
"""

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import DashboardConfig, get_config


class TestDashboardConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DASHBOARD_REFRESH_CRON", raising=False)
        config = DashboardConfig(_env_file=None)

        assert config.port == 3200
        assert config.refresh_cron == "*/10 * * * *"
        assert config.cache_max_entries == 1000
        assert config.cache_max_size_bytes == 50 * 1024 * 1024
        assert config.projects_cache_ttl_seconds == 30
        assert config.allowed_role_names == ["organiser", "lead_organiser", "admin"]
        assert config.refresh_function_names[0] == "refresh_patch_project_mapping_view"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DASHBOARD_REFRESH_CRON", "0 * * * *")
        monkeypatch.setenv("DASHBOARD_REFRESH_FUNCTIONS", " refresh_a , ,refresh_b")
        monkeypatch.setenv("DASHBOARD_CACHE_MAX_ENTRIES", "50")

        config = DashboardConfig(_env_file=None)

        assert config.refresh_cron == "0 * * * *"
        assert config.refresh_function_names == ["refresh_a", "refresh_b"]
        assert config.cache_max_entries == 50

    def test_get_config_overrides(self):
        config = get_config(allowed_roles="admin", refresh_enabled=False)

        assert config.allowed_role_names == ["admin"]
        assert config.refresh_enabled is False
