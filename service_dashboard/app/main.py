"""
Dashboard worker service.

Serves the project list and the organizing dashboard from Supabase with a
short-lived in-process response cache, and refreshes the materialized views
those reads depend on.
"""

import sys
import os
import time
from typing import Any, Dict, Optional

# Add shared directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Request
from fastapi.responses import JSONResponse
from shared.base_service import BaseService
from shared.config import DashboardConfig
from shared.errors import AuthenticationError, AuthorizationError, ProfileLoadError
from shared.logging import set_cache_type

from .adapters.supabase_client import SupabaseClientFactory
from .caching.keys import hash_token, make_cache_key
from .caching.ttl_cache import TTLCache, create_cache
from .domain.auth import ensure_authorized_user, get_bearer_token
from .domain.dashboard import DashboardFilters, build_dashboard
from .domain.projects import PROJECT_LIST_VIEW, ProjectListParams, list_projects
from .refresh.actions import build_view_refresh_actions, rpc_refresh_action
from .refresh.scheduler import RefreshScheduler


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class DashboardWorkerService(BaseService):
    """Dashboard worker implementation."""

    def __init__(
        self,
        config: Optional[DashboardConfig] = None,
        *,
        supabase: Optional[SupabaseClientFactory] = None,
        cache: Optional[TTLCache] = None,
    ):
        super().__init__("dashboard", config)

        self.supabase = supabase or SupabaseClientFactory(
            self.config.supabase_url,
            self.config.supabase_anon_key,
            self.config.supabase_service_role_key,
            timeout=self.config.supabase_timeout_seconds,
        )
        self.cache = cache or create_cache(self.config, self.metrics)
        self.scheduler = RefreshScheduler(
            self.config.refresh_cron,
            build_view_refresh_actions(self.supabase.service_role, self.config.refresh_function_names),
            on_demand_actions=[
                rpc_refresh_action(self.supabase.service_role, self.config.background_refresh_function)
            ],
            background_timeout_seconds=self.config.background_refresh_timeout_seconds,
            metrics=self.metrics,
        )

        self._setup_dashboard_routes()

    def _setup_dashboard_routes(self):
        """Set up dashboard-specific routes."""

        @self.app.get("/v1/projects")
        async def get_projects(request: Request):
            """Paginated, filtered project list for the caller."""
            started = time.perf_counter()
            token = get_bearer_token(request)
            if not token:
                return self._error(401, "Unauthorized")

            params = ProjectListParams.from_query(request.query_params)
            try:
                caller = await ensure_authorized_user(self.supabase, token, self.config.allowed_role_names)
                effective_since = params.since or caller.last_seen_projects_at

                cache_key = make_cache_key("projects", hash_token(token), params.cache_params(effective_since))
                cached = self._cache_lookup("projects", cache_key)
                if cached is not None:
                    return self._hit(cached)

                body = await list_projects(
                    caller.client,
                    params,
                    effective_since,
                    on_patch_fallback=self._refresh_patch_mapping,
                )
                body["debug"]["queryTime"] = _elapsed_ms(started)
                return self._store_and_respond(cache_key, body, self.config.projects_cache_ttl_seconds)
            except Exception as exc:
                return self._failure(exc, "Failed to fetch projects")

        @self.app.get("/v1/dashboard")
        async def get_dashboard(request: Request):
            """Aggregated organizing dashboard for the caller."""
            started = time.perf_counter()
            token = get_bearer_token(request)
            if not token:
                return self._error(401, "Unauthorized")

            filters = DashboardFilters.from_query(request.query_params)
            cache_key = make_cache_key("dashboard", hash_token(token), filters.cache_params())
            cached = self._cache_lookup("dashboard", cache_key)
            if cached is not None:
                return self._hit(cached)

            try:
                caller = await ensure_authorized_user(self.supabase, token, self.config.allowed_role_names)
                body = await build_dashboard(caller.client, filters)
                body["debug"]["queryTime"] = _elapsed_ms(started)
                return self._store_and_respond(cache_key, body, self.config.dashboard_cache_ttl_seconds)
            except Exception as exc:
                return self._failure(exc, "Failed to fetch dashboard")

        @self.app.get("/v1/cache/stats")
        async def cache_stats():
            """Response cache statistics."""
            return self.cache.stats()

    def _refresh_patch_mapping(self):
        self.scheduler.trigger_background_refresh(self.config.background_refresh_function)

    def _cache_lookup(self, cache_type: str, key: str) -> Optional[Dict[str, Any]]:
        set_cache_type(cache_type)
        value = self.cache.get(key)
        metric = "cache_hits_total" if value is not None else "cache_misses_total"
        self.metrics.increment_counter(metric, cache_type=cache_type)
        return value

    def _hit(self, cached: Dict[str, Any]) -> JSONResponse:
        body = dict(cached)
        body["debug"] = {**cached.get("debug", {}), "cacheHit": True}
        return JSONResponse(content=body, headers={"X-Cache": "HIT"})

    def _store_and_respond(self, key: str, body: Dict[str, Any], ttl_seconds: float) -> JSONResponse:
        self.cache.set(key, body, ttl_seconds)
        return JSONResponse(
            content=body,
            headers={
                "Cache-Control": f"public, max-age={int(ttl_seconds)}",
                "X-Cache": "MISS",
            }
        )

    @staticmethod
    def _error(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": message})

    def _failure(self, exc: Exception, message: str) -> JSONResponse:
        if isinstance(exc, AuthenticationError):
            return self._error(401, "Unauthorized")
        if isinstance(exc, AuthorizationError):
            return self._error(403, "Forbidden")
        if isinstance(exc, ProfileLoadError):
            self.logger.error("Profile load failed", error=str(exc))
            return self._error(500, "Unable to load user profile")

        self.logger.error(message, error=str(exc), exc_info=True)
        self.metrics.record_error(type(exc).__name__)
        return self._error(500, message)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check that the database is reachable with the service role."""
        await (
            self.supabase.service_role()
            .table(PROJECT_LIST_VIEW)
            .select("*", count="exact", head=True)
            .execute()
        )
        return {"supabase": "ok"}

    async def start(self):
        """Start cache sweeping and scheduled view refreshes."""
        await self.cache.start()
        if self.config.refresh_enabled:
            await self.scheduler.start()

        self.logger.info("Dashboard worker started", port=self.config.port)

    async def stop(self):
        """Stop background work and release the connection pool."""
        await self.scheduler.stop()
        await self.cache.stop()
        await self.supabase.aclose()

        self.logger.info("Dashboard worker stopped")


def create_app():
    """Create dashboard worker application."""
    service = DashboardWorkerService()
    return service.app


def main():
    DashboardWorkerService().run()


if __name__ == "__main__":
    main()
