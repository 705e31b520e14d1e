"""
Project list queries over project_list_comprehensive_view.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from shared.logging import get_logger
from ..adapters.supabase_client import QueryBuilder, SupabaseClient, SupabaseError


logger = get_logger("dashboard.projects")

PROJECT_LIST_VIEW = "project_list_comprehensive_view"
PATCH_MAPPING_VIEW = "patch_project_mapping_view"

DEFAULT_PAGE_SIZE = 24
MAX_PAGE_SIZE = 100

# Sort key -> (column, nulls_first for asc, nulls_first for desc)
SORT_COLUMNS = {
    "name": ("name", None, None),
    "value": ("value", False, False),
    "tier": ("tier", False, False),
    "workers": ("total_workers", None, None),
    "members": ("total_members", None, None),
    "employers": ("engaged_employer_count", None, None),
    "eba_coverage": ("eba_coverage_percent", None, None),
    "delegates": ("delegate_name", False, True),
}


def _parse_int(raw: Optional[str], default: int) -> int:
    try:
        return int(raw) if raw else default
    except (TypeError, ValueError):
        return default


def split_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def unique_project_ids(rows: List[Dict[str, Any]]) -> List[str]:
    seen = {}
    for row in rows:
        project_id = row.get("project_id")
        if project_id:
            seen.setdefault(project_id, None)
    return list(seen)


@dataclass
class ProjectListParams:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = "name"
    dir: str = "asc"
    q: Optional[str] = None
    patch_ids: List[str] = field(default_factory=list)
    tier: str = "all"
    universe: str = "all"
    stage: str = "all"
    workers: str = "all"
    special: str = "all"
    eba: str = "all"
    since: Optional[str] = None
    new_only: bool = False

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "ProjectListParams":
        page_size = max(_parse_int(query.get("pageSize"), DEFAULT_PAGE_SIZE), 1)
        q = query.get("q")
        return cls(
            page=max(_parse_int(query.get("page"), 1), 1),
            page_size=min(page_size, MAX_PAGE_SIZE),
            sort=query.get("sort") or "name",
            dir=query.get("dir") or "asc",
            q=q.lower() if q else None,
            patch_ids=split_ids(query.get("patch")),
            tier=query.get("tier") or "all",
            universe=query.get("universe") or "all",
            stage=query.get("stage") or "all",
            workers=query.get("workers") or "all",
            special=query.get("special") or "all",
            eba=query.get("eba") or "all",
            since=query.get("since") or None,
            new_only=query.get("newOnly") in ("1", "true"),
        )

    @property
    def ascending(self) -> bool:
        return self.dir == "asc"

    def applied_filters(self, effective_since: Optional[str]) -> Dict[str, Any]:
        return {
            "q": self.q,
            "patchIds": self.patch_ids,
            "tier": self.tier,
            "universe": self.universe,
            "stage": self.stage,
            "workers": self.workers,
            "special": self.special,
            "eba": self.eba,
            "sort": self.sort,
            "dir": self.dir,
            "newOnly": self.new_only,
            "since": effective_since,
        }

    def cache_params(self, effective_since: Optional[str]) -> Dict[str, Any]:
        """Every value that changes the response, for the cache key."""
        params = self.applied_filters(effective_since)
        params.update({"page": self.page, "pageSize": self.page_size})
        return params


@dataclass
class PatchScope:
    project_ids: List[str]
    row_count: int
    method: str


async def resolve_patch_projects(client: SupabaseClient, patch_ids: List[str]) -> PatchScope:
    """Map patches to project ids, falling back to job_sites when the view is empty."""
    rows: List[Dict[str, Any]] = []
    try:
        result = await client.table(PATCH_MAPPING_VIEW).select("project_id").in_("patch_id", patch_ids).execute()
        rows = result.data or []
    except SupabaseError as exc:
        logger.warning("Patch mapping view query failed, falling back", error=str(exc))

    method = "materialized_view"
    if not rows:
        result = await (
            client.table("job_sites")
            .select("project_id")
            .in_("patch_id", patch_ids)
            .not_null("project_id")
            .execute()
        )
        rows = result.data or []
        method = "fallback_job_sites"

    return PatchScope(project_ids=unique_project_ids(rows), row_count=len(rows), method=method)


def apply_filters(
    query: QueryBuilder,
    params: ProjectListParams,
    effective_since: Optional[str],
    project_ids: Optional[List[str]] = None,
) -> QueryBuilder:
    if project_ids:
        query = query.in_("id", project_ids)

    if params.q:
        query = query.ilike("search_text", f"%{params.q}%")

    if params.tier != "all":
        query = query.eq("tier", params.tier)
    if params.universe != "all":
        query = query.eq("organising_universe", params.universe)
    if params.stage != "all":
        query = query.eq("stage_class", params.stage)

    if params.workers == "zero":
        query = query.eq("total_workers", 0)
    elif params.workers == "nonzero":
        query = query.gt("total_workers", 0)

    if params.special == "noBuilderWithEmployers":
        query = query.eq("has_builder", False).gt("engaged_employer_count", 0)

    if params.eba == "eba_active":
        query = query.eq("has_builder", True).eq("builder_has_eba", True)
    elif params.eba == "eba_inactive":
        query = query.eq("has_builder", True).eq("builder_has_eba", False)
    elif params.eba == "builder_unknown":
        query = query.eq("has_builder", False)

    if params.new_only and effective_since:
        query = query.gt("created_at", effective_since)

    return query


def apply_sort(query: QueryBuilder, params: ProjectListParams) -> QueryBuilder:
    column, nulls_first_asc, nulls_first_desc = SORT_COLUMNS.get(params.sort, ("created_at", None, None))
    nulls_first = nulls_first_asc if params.ascending else nulls_first_desc
    return query.order(column, ascending=params.ascending, nulls_first=nulls_first)


def shape_project(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "main_job_site_id": row.get("main_job_site_id"),
        "value": row.get("value"),
        "tier": row.get("tier"),
        "organising_universe": row.get("organising_universe"),
        "stage_class": row.get("stage_class"),
        "builder_name": row.get("builder_name"),
        "created_at": row.get("created_at"),
        "full_address": row.get("full_address"),
        "project_assignments": row.get("project_assignments_data") or [],
    }


def shape_summary(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "project_id": row.get("id"),
        "total_workers": row.get("total_workers") or 0,
        "total_members": row.get("total_members") or 0,
        "engaged_employer_count": row.get("engaged_employer_count") or 0,
        "eba_active_employer_count": row.get("eba_active_employer_count") or 0,
        "estimated_total": row.get("estimated_total") or 0,
        "delegate_name": row.get("delegate_name"),
        "first_patch_name": row.get("first_patch_name"),
        "organiser_names": row.get("organiser_names"),
    }


async def list_projects(
    client: SupabaseClient,
    params: ProjectListParams,
    effective_since: Optional[str],
    on_patch_fallback: Optional[Callable[[], Any]] = None,
) -> Dict[str, Any]:
    """Fetch one page of projects and shape the response body."""
    patch_count = 0
    patch_method = "none"
    project_ids: Optional[List[str]] = None

    if params.patch_ids:
        scope = await resolve_patch_projects(client, params.patch_ids)
        patch_count = scope.row_count
        patch_method = scope.method
        project_ids = scope.project_ids
        if scope.method == "fallback_job_sites" and on_patch_fallback:
            on_patch_fallback()

    debug = {
        "cacheHit": False,
        "appliedFilters": params.applied_filters(effective_since),
        "patchProjectCount": patch_count,
        "patchFilteringUsed": bool(params.patch_ids),
        "patchFilteringMethod": patch_method,
    }

    if params.patch_ids and patch_count == 0:
        return {
            "projects": [],
            "summaries": {},
            "pagination": {"page": params.page, "pageSize": params.page_size, "totalCount": 0, "totalPages": 0},
            "debug": debug,
        }

    query = client.table(PROJECT_LIST_VIEW).select("*", count="exact")
    query = apply_filters(query, params, effective_since, project_ids)
    query = apply_sort(query, params)

    start = (params.page - 1) * params.page_size
    result = await query.range(start, start + params.page_size - 1).execute()
    rows = result.data or []
    total_count = result.count or 0

    return {
        "projects": [shape_project(row) for row in rows],
        "summaries": {row.get("id"): shape_summary(row) for row in rows},
        "pagination": {
            "page": params.page,
            "pageSize": params.page_size,
            "totalCount": total_count,
            "totalPages": math.ceil(total_count / params.page_size),
        },
        "debug": debug,
    }
