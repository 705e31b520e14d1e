"""
Unit tests for the Supabase REST client.
"""

import pytest
import json
from typing import List, Tuple

import httpx

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.circuit_breaker import CircuitBreakerOpenException, CircuitBreakerState
from service_dashboard.app.adapters.supabase_client import (
    SupabaseClientFactory,
    SupabaseError,
    parse_content_range,
)


class RecordingTransport:
    """Collects requests and answers them with a canned handler."""

    def __init__(self, handler):
        self.requests: List[httpx.Request] = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


def make_factory(handler) -> Tuple[SupabaseClientFactory, RecordingTransport]:
    recorder = RecordingTransport(handler)
    factory = SupabaseClientFactory(
        "https://db.example.supabase.co/",
        "anon-key",
        "service-key",
        transport=httpx.MockTransport(recorder),
    )
    return factory, recorder


class TestParseContentRange:

    def test_total_after_slash(self):
        assert parse_content_range("0-23/345") == 345
        assert parse_content_range("*/12") == 12

    def test_unknown_total(self):
        assert parse_content_range("0-23/*") is None
        assert parse_content_range(None) is None


class TestSupabaseClient:
    """Test cases for SupabaseClient."""

    @pytest.mark.asyncio
    async def test_select_builds_postgrest_query(self):
        factory, recorder = make_factory(
            lambda request: httpx.Response(
                200,
                json=[{"id": "p1"}],
                headers={"Content-Range": "0-0/57"},
            )
        )
        client = factory.for_user("user-token")

        result = await (
            client.table("project_list_comprehensive_view")
            .select("*", count="exact")
            .in_("id", ["p1", "p2"])
            .eq("tier", "tier_1")
            .gt("total_workers", 0)
            .eq("has_builder", False)
            .ilike("search_text", "%tower%")
            .order("value", ascending=False, nulls_first=False)
            .range(24, 47)
            .execute()
        )
        await factory.aclose()

        assert result.data == [{"id": "p1"}]
        assert result.count == 57

        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/project_list_comprehensive_view"
        params = request.url.params
        assert params["select"] == "*"
        assert params["id"] == 'in.("p1","p2")'
        assert params["tier"] == "eq.tier_1"
        assert params["total_workers"] == "gt.0"
        assert params["has_builder"] == "eq.false"
        assert params["search_text"] == "ilike.%tower%"
        assert params["order"] == "value.desc.nullslast"
        assert params["offset"] == "24"
        assert params["limit"] == "24"
        assert request.headers["Prefer"] == "count=exact"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_head_count(self):
        factory, recorder = make_factory(
            lambda request: httpx.Response(200, headers={"Content-Range": "*/1200"})
        )

        result = await (
            factory.service_role()
            .table("workers")
            .select("*", count="exact", head=True)
            .eq("union_membership_status", "member")
            .execute()
        )
        await factory.aclose()

        assert result.count == 1200
        assert result.data is None
        assert recorder.requests[0].method == "HEAD"
        assert recorder.requests[0].headers["Authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_select_strips_whitespace_from_columns(self):
        factory, recorder = make_factory(lambda request: httpx.Response(200, json=[]))

        await factory.service_role().table("profiles").select("role, last_seen_projects_at").execute()
        await factory.aclose()

        assert recorder.requests[0].url.params["select"] == "role,last_seen_projects_at"

    @pytest.mark.asyncio
    async def test_maybe_single(self):
        factory, _ = make_factory(lambda request: httpx.Response(200, json=[{"role": "admin"}]))
        client = factory.service_role()

        result = await client.table("profiles").select("role").eq("id", "u1").maybe_single().execute()

        assert result.data == {"role": "admin"}
        await factory.aclose()

    @pytest.mark.asyncio
    async def test_maybe_single_empty(self):
        factory, _ = make_factory(lambda request: httpx.Response(200, json=[]))

        result = await factory.service_role().table("profiles").select("role").maybe_single().execute()

        assert result.data is None
        await factory.aclose()

    @pytest.mark.asyncio
    async def test_rpc_posts_to_function(self):
        factory, recorder = make_factory(lambda request: httpx.Response(204))

        result = await factory.service_role().rpc("refresh_patch_project_mapping_view")
        await factory.aclose()

        assert result is None
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/rpc/refresh_patch_project_mapping_view"
        assert json.loads(request.content) == {}

    @pytest.mark.asyncio
    async def test_rpc_missing_function_error(self):
        factory, _ = make_factory(
            lambda request: httpx.Response(
                404,
                json={
                    "code": "PGRST202",
                    "message": "Could not find the function public.refresh_x without parameters",
                    "details": None,
                    "hint": None,
                },
            )
        )

        with pytest.raises(SupabaseError) as exc_info:
            await factory.service_role().rpc("refresh_x")
        await factory.aclose()

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "PGRST202"
        # Client errors never trip the breaker
        assert factory.circuit_breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_get_user(self):
        factory, recorder = make_factory(lambda request: httpx.Response(200, json={"id": "user-1"}))

        user = await factory.for_user("user-token").get_user()
        await factory.aclose()

        assert user == {"id": "user-1"}
        assert recorder.requests[0].url.path == "/auth/v1/user"
        assert recorder.requests[0].headers["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_get_user_rejected(self):
        factory, _ = make_factory(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

        with pytest.raises(SupabaseError) as exc_info:
            await factory.for_user("bad").get_user()
        await factory.aclose()

        assert exc_info.value.status_code == 401
        assert exc_info.value.raw_message == "invalid JWT"

    @pytest.mark.asyncio
    async def test_get_user_without_token(self):
        factory, recorder = make_factory(lambda request: httpx.Response(200, json={}))

        with pytest.raises(SupabaseError):
            await factory.service_role().get_user()
        await factory.aclose()

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        factory, _ = make_factory(handler)

        with pytest.raises(SupabaseError) as exc_info:
            await factory.service_role().table("projects").select("id").execute()
        await factory.aclose()

        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_errors_open_circuit(self):
        factory, recorder = make_factory(lambda request: httpx.Response(503, json={"message": "unavailable"}))
        client = factory.service_role()

        for _ in range(factory.circuit_breaker.failure_threshold):
            with pytest.raises(SupabaseError):
                await client.table("projects").select("id").execute()

        with pytest.raises(CircuitBreakerOpenException):
            await client.table("projects").select("id").execute()
        await factory.aclose()

        assert len(recorder.requests) == factory.circuit_breaker.failure_threshold
