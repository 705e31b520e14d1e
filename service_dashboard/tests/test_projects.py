"""
Unit tests for project list queries.
"""

import pytest
from unittest.mock import MagicMock

import httpx

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_dashboard.app.adapters.supabase_client import SupabaseClientFactory
from service_dashboard.app.domain.projects import (
    ProjectListParams,
    apply_filters,
    apply_sort,
    list_projects,
)


PROJECT_ROW = {
    "id": "p1",
    "name": "Tower One",
    "main_job_site_id": "s1",
    "value": 1200000,
    "tier": "tier_1",
    "organising_universe": "active",
    "stage_class": "construction",
    "builder_name": "BuildCo",
    "created_at": "2024-04-01T00:00:00Z",
    "full_address": "1 Main St",
    "project_assignments_data": [{"employer_id": "e1"}],
    "total_workers": 40,
    "total_members": 12,
    "engaged_employer_count": 3,
    "eba_active_employer_count": 2,
    "estimated_total": 55,
    "delegate_name": None,
    "first_patch_name": "North",
    "organiser_names": "Sam",
}


def routed_factory(routes):
    """Factory whose transport answers by request path."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return routes[request.url.path](request)

    factory = SupabaseClientFactory(
        "https://db.example.supabase.co",
        "anon-key",
        "service-key",
        transport=httpx.MockTransport(handler),
    )
    return factory, seen


class TestProjectListParams:
    """Test cases for query parameter parsing."""

    def test_defaults(self):
        params = ProjectListParams.from_query({})

        assert params.page == 1
        assert params.page_size == 24
        assert params.sort == "name"
        assert params.dir == "asc"
        assert params.q is None
        assert params.patch_ids == []
        assert params.new_only is False

    def test_page_size_clamped(self):
        assert ProjectListParams.from_query({"pageSize": "500"}).page_size == 100
        assert ProjectListParams.from_query({"pageSize": "0"}).page_size == 1
        assert ProjectListParams.from_query({"page": "-3"}).page == 1

    def test_garbage_numbers_fall_back(self):
        params = ProjectListParams.from_query({"page": "abc", "pageSize": "many"})

        assert params.page == 1
        assert params.page_size == 24

    def test_search_lowercased_and_patches_split(self):
        params = ProjectListParams.from_query({"q": "Tower", "patch": " a, b,,c ", "newOnly": "true"})

        assert params.q == "tower"
        assert params.patch_ids == ["a", "b", "c"]
        assert params.new_only is True

    def test_cache_params_include_pagination_and_since(self):
        params = ProjectListParams.from_query({"page": "2"})

        cache_params = params.cache_params("2024-05-01T00:00:00Z")

        assert cache_params["page"] == 2
        assert cache_params["pageSize"] == 24
        assert cache_params["since"] == "2024-05-01T00:00:00Z"


class TestFilters:
    """Test cases for filter and sort translation."""

    @pytest.fixture
    def query(self):
        factory = SupabaseClientFactory("https://db.example.supabase.co", "anon", "service")
        return factory.service_role().table("project_list_comprehensive_view").select("*")

    def test_all_filters(self, query):
        params = ProjectListParams.from_query({
            "q": "tower",
            "tier": "tier_1",
            "universe": "active",
            "stage": "construction",
            "workers": "nonzero",
            "eba": "eba_active",
            "newOnly": "1",
        })

        built = dict(apply_filters(query, params, "2024-01-01", ["p1"]).build_params())

        assert built["id"] == 'in.("p1")'
        assert built["search_text"] == "ilike.%tower%"
        assert built["tier"] == "eq.tier_1"
        assert built["organising_universe"] == "eq.active"
        assert built["stage_class"] == "eq.construction"
        assert built["total_workers"] == "gt.0"
        assert built["builder_has_eba"] == "eq.true"
        assert built["created_at"] == "gt.2024-01-01"

    def test_no_builder_with_employers(self, query):
        params = ProjectListParams.from_query({"special": "noBuilderWithEmployers"})

        built = apply_filters(query, params, None).build_params()

        assert ("has_builder", "eq.false") in built
        assert ("engaged_employer_count", "gt.0") in built

    def test_new_only_without_since_is_ignored(self, query):
        params = ProjectListParams.from_query({"newOnly": "1"})

        built = dict(apply_filters(query, params, None).build_params())

        assert "created_at" not in built

    def test_sort_mapping(self, query):
        desc_delegates = ProjectListParams.from_query({"sort": "delegates", "dir": "desc"})

        assert dict(apply_sort(query, desc_delegates).build_params())["order"] == "delegate_name.desc.nullsfirst"

    def test_unknown_sort_uses_created_at(self):
        factory = SupabaseClientFactory("https://db.example.supabase.co", "anon", "service")
        query = factory.service_role().table("v").select("*")

        built = dict(apply_sort(query, ProjectListParams.from_query({"sort": "mystery"})).build_params())

        assert built["order"] == "created_at.asc"


class TestListProjects:
    """Test cases for list_projects."""

    @pytest.mark.asyncio
    async def test_shapes_page(self):
        factory, seen = routed_factory({
            "/rest/v1/project_list_comprehensive_view": lambda r: httpx.Response(
                200, json=[PROJECT_ROW], headers={"Content-Range": "0-0/49"}
            ),
        })
        params = ProjectListParams.from_query({"page": "2"})

        body = await list_projects(factory.service_role(), params, None)
        await factory.aclose()

        assert body["projects"][0]["id"] == "p1"
        assert body["projects"][0]["project_assignments"] == [{"employer_id": "e1"}]
        assert body["summaries"]["p1"]["total_workers"] == 40
        assert body["pagination"] == {"page": 2, "pageSize": 24, "totalCount": 49, "totalPages": 3}
        assert body["debug"]["patchFilteringUsed"] is False
        assert body["debug"]["patchFilteringMethod"] == "none"
        assert seen[0].url.params["offset"] == "24"

    @pytest.mark.asyncio
    async def test_patch_filter_uses_mapping_view(self):
        factory, seen = routed_factory({
            "/rest/v1/patch_project_mapping_view": lambda r: httpx.Response(
                200, json=[{"project_id": "p1"}, {"project_id": "p1"}]
            ),
            "/rest/v1/project_list_comprehensive_view": lambda r: httpx.Response(
                200, json=[PROJECT_ROW], headers={"Content-Range": "0-0/1"}
            ),
        })
        on_fallback = MagicMock()
        params = ProjectListParams.from_query({"patch": "patch-1"})

        body = await list_projects(factory.service_role(), params, None, on_patch_fallback=on_fallback)
        await factory.aclose()

        assert body["debug"]["patchFilteringMethod"] == "materialized_view"
        assert body["debug"]["patchProjectCount"] == 2
        assert seen[1].url.params["id"] == 'in.("p1")'
        on_fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_mapping_view_falls_back_and_triggers_refresh(self):
        factory, seen = routed_factory({
            "/rest/v1/patch_project_mapping_view": lambda r: httpx.Response(200, json=[]),
            "/rest/v1/job_sites": lambda r: httpx.Response(200, json=[{"project_id": "p1"}]),
            "/rest/v1/project_list_comprehensive_view": lambda r: httpx.Response(
                200, json=[PROJECT_ROW], headers={"Content-Range": "0-0/1"}
            ),
        })
        on_fallback = MagicMock()
        params = ProjectListParams.from_query({"patch": "patch-1"})

        body = await list_projects(factory.service_role(), params, None, on_patch_fallback=on_fallback)
        await factory.aclose()

        assert body["debug"]["patchFilteringMethod"] == "fallback_job_sites"
        assert seen[1].url.params["project_id"] == "not.is.null"
        on_fallback.assert_called_once()

    @pytest.mark.asyncio
    async def test_patch_without_projects_short_circuits(self):
        factory, seen = routed_factory({
            "/rest/v1/patch_project_mapping_view": lambda r: httpx.Response(200, json=[]),
            "/rest/v1/job_sites": lambda r: httpx.Response(200, json=[]),
        })
        params = ProjectListParams.from_query({"patch": "patch-1"})

        body = await list_projects(factory.service_role(), params, "2024-01-01")
        await factory.aclose()

        assert body["projects"] == []
        assert body["pagination"]["totalCount"] == 0
        assert body["debug"]["appliedFilters"]["since"] == "2024-01-01"
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_mapping_view_error_falls_back(self):
        factory, _ = routed_factory({
            "/rest/v1/patch_project_mapping_view": lambda r: httpx.Response(
                404, json={"code": "42P01", "message": 'relation "patch_project_mapping_view" does not exist'}
            ),
            "/rest/v1/job_sites": lambda r: httpx.Response(200, json=[{"project_id": "p9"}]),
            "/rest/v1/project_list_comprehensive_view": lambda r: httpx.Response(
                200, json=[], headers={"Content-Range": "*/0"}
            ),
        })
        params = ProjectListParams.from_query({"patch": "patch-1"})

        body = await list_projects(factory.service_role(), params, None)
        await factory.aclose()

        assert body["debug"]["patchFilteringMethod"] == "fallback_job_sites"
        assert body["pagination"]["totalPages"] == 0
