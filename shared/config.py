"""
Shared configuration management for the organizing dashboard worker.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_REFRESH_FUNCTIONS = ",".join([
    "refresh_patch_project_mapping_view",
    "refresh_project_list_comprehensive_view",
    "refresh_employers_search_view",
    "refresh_active_eba_employers",
])


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class DashboardConfig(BaseSettings):
    """Dashboard worker configuration, read from DASHBOARD_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    service_name: str = "dashboard"

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3200)
    cors_origin: str = Field(default="*")

    # Supabase
    supabase_url: str = Field(default="http://localhost:54321")
    supabase_anon_key: str = Field(default="")
    supabase_service_role_key: str = Field(default="")
    supabase_timeout_seconds: float = Field(default=10.0)

    # Access control
    allowed_roles: str = Field(default="organiser,lead_organiser,admin")

    # Materialized view refresh
    refresh_enabled: bool = Field(default=True)
    refresh_cron: str = Field(default="*/10 * * * *")
    refresh_functions: str = Field(default=DEFAULT_REFRESH_FUNCTIONS)
    background_refresh_function: str = Field(default="refresh_patch_project_mapping_view")
    background_refresh_timeout_seconds: float = Field(default=10.0)

    # Response cache
    projects_cache_ttl_seconds: float = Field(default=30.0)
    dashboard_cache_ttl_seconds: float = Field(default=30.0)
    cache_max_entries: int = Field(default=1000)
    cache_max_size_bytes: int = Field(default=50 * 1024 * 1024)
    cache_sweep_interval_seconds: float = Field(default=30.0)
    cache_bytes_per_char: int = Field(default=2)
    cache_sweep_target_ratio: float = Field(default=0.8)
    cache_sweep_max_evict_fraction: float = Field(default=0.1)

    @property
    def allowed_role_names(self) -> List[str]:
        return _split_csv(self.allowed_roles)

    @property
    def refresh_function_names(self) -> List[str]:
        return _split_csv(self.refresh_functions)


def get_config(**overrides) -> DashboardConfig:
    """Get configuration for the dashboard worker."""
    return DashboardConfig(**overrides)
