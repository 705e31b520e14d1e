"""
Refresh actions backed by Postgres functions called over PostgREST RPC.
"""

from typing import Any, Callable, Iterable, List

from shared.logging import get_logger
from ..adapters.supabase_client import SupabaseClient
from .scheduler import RefreshAction


logger = get_logger("dashboard.refresh_actions")


def _log_failed_views(function: str, result: Any):
    # Bulk refresh functions return one row per view instead of raising.
    if not isinstance(result, list):
        return
    for row in result:
        if isinstance(row, dict) and row.get("success") is False:
            logger.warning(
                "Materialized view refresh reported failure",
                function=function,
                view=row.get("view_name"),
                duration_ms=row.get("duration_ms"),
                error=row.get("error_message"),
            )


def rpc_refresh_action(client_provider: Callable[[], SupabaseClient], function: str) -> RefreshAction:
    """Build an action that calls the named refresh function."""

    async def _run():
        result = await client_provider().rpc(function)
        _log_failed_views(function, result)
        return result

    return RefreshAction(name=function, run=_run)


def build_view_refresh_actions(
    client_provider: Callable[[], SupabaseClient],
    functions: Iterable[str],
) -> List[RefreshAction]:
    return [rpc_refresh_action(client_provider, function) for function in functions]
