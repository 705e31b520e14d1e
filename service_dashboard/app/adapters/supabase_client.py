"""
Supabase client for the dashboard worker.

Talks to PostgREST (/rest/v1) and GoTrue (/auth/v1) over one shared
httpx.AsyncClient. Service-role and per-user clients differ only in the
credentials they send.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.circuit_breaker import CircuitBreaker


@dataclass
class QueryResult:
    data: Any
    count: Optional[int] = None


class SupabaseError(ExternalServiceError):
    """Error reported by PostgREST/GoTrue, or a failed request to them."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Any] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(
            service="supabase",
            message=message,
            details={
                "status_code": status_code,
                "error_code": error_code,
                "details": details,
                "hint": hint,
            }
        )
        self.status_code = status_code
        self.error_code = error_code
        self.raw_message = message


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _quote(value: Any) -> str:
    text = _format_value(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Extract the total from a PostgREST Content-Range header ("0-23/345")."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def _error_from_response(response: httpx.Response) -> SupabaseError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    error_code = body.get("code") or body.get("error_code")
    return SupabaseError(
        str(message),
        status_code=response.status_code,
        error_code=str(error_code) if error_code is not None else None,
        details=body.get("details"),
        hint=body.get("hint"),
    )


class QueryBuilder:
    """Fluent PostgREST query for a single table or view."""

    def __init__(self, client: "SupabaseClient", table: str):
        self._client = client
        self.table = table
        self._columns = "*"
        self._count: Optional[str] = None
        self._head = False
        self._single = False
        self._filters: List[Tuple[str, str]] = []
        self._order: List[str] = []
        self._offset: Optional[int] = None
        self._limit: Optional[int] = None

    def select(self, columns: str = "*", *, count: Optional[str] = None, head: bool = False) -> "QueryBuilder":
        self._columns = "".join(columns.split())
        self._count = count
        self._head = head
        return self

    def _filter(self, column: str, expression: str) -> "QueryBuilder":
        self._filters.append((column, expression))
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, f"eq.{_format_value(value)}")

    def gt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, f"gt.{_format_value(value)}")

    def in_(self, column: str, values: Iterable[Any]) -> "QueryBuilder":
        quoted = ",".join(_quote(value) for value in values)
        return self._filter(column, f"in.({quoted})")

    def not_null(self, column: str) -> "QueryBuilder":
        return self._filter(column, "not.is.null")

    def ilike(self, column: str, pattern: str) -> "QueryBuilder":
        return self._filter(column, f"ilike.{pattern}")

    def order(self, column: str, *, ascending: bool = True, nulls_first: Optional[bool] = None) -> "QueryBuilder":
        clause = f"{column}.{'asc' if ascending else 'desc'}"
        if nulls_first is not None:
            clause += ".nullsfirst" if nulls_first else ".nullslast"
        self._order.append(clause)
        return self

    def range(self, start: int, end: int) -> "QueryBuilder":
        """Inclusive row range, as in Supabase client libraries."""
        self._offset = start
        self._limit = end - start + 1
        return self

    def maybe_single(self) -> "QueryBuilder":
        self._single = True
        return self

    def build_params(self) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = [("select", self._columns)]
        params.extend(self._filters)
        if self._order:
            params.append(("order", ",".join(self._order)))
        if self._offset is not None:
            params.append(("offset", str(self._offset)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    async def execute(self) -> QueryResult:
        return await self._client.execute_query(self)


class SupabaseClient:
    """PostgREST/GoTrue client bound to one set of credentials."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._http = http
        self._api_key = api_key
        self._access_token = access_token
        self._circuit_breaker = circuit_breaker
        self.logger = get_logger("dashboard.supabase_client")

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    async def execute_query(self, query: QueryBuilder) -> QueryResult:
        extra = {"Prefer": f"count={query._count}"} if query._count else None
        response = await self._send(
            "HEAD" if query._head else "GET",
            f"/rest/v1/{query.table}",
            params=query.build_params(),
            headers=self._headers(extra),
        )

        count = parse_content_range(response.headers.get("content-range"))
        if query._head:
            return QueryResult(data=None, count=count)

        data = response.json()
        if query._single:
            data = data[0] if data else None
        return QueryResult(data=data, count=count)

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a Postgres function exposed through PostgREST."""
        response = await self._send(
            "POST",
            f"/rest/v1/rpc/{function}",
            json=params or {},
            headers=self._headers({"Content-Type": "application/json"}),
        )
        if not response.content:
            return None
        return response.json()

    async def get_user(self) -> Dict[str, Any]:
        """Resolve the access token to a GoTrue user."""
        if not self._access_token:
            raise SupabaseError("no access token", status_code=401)
        response = await self._send("GET", "/auth/v1/user", headers=self._headers())
        return response.json()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        async def _request() -> httpx.Response:
            try:
                response = await self._http.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                self.logger.error("Supabase request failed", method=method, path=path, error=str(exc))
                raise SupabaseError(f"request failed: {exc}") from exc

            # Only upstream failures count against the breaker.
            if response.status_code >= 500:
                raise _error_from_response(response)
            return response

        if self._circuit_breaker:
            response = await self._circuit_breaker.call(_request)
        else:
            response = await _request()

        if response.status_code >= 400:
            raise _error_from_response(response)
        return response


class SupabaseClientFactory:
    """Owns the connection pool and hands out credentialed clients."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_role_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self._anon_key = anon_key
        self._service_role_key = service_role_key
        self._http = httpx.AsyncClient(base_url=self.url, timeout=timeout, transport=transport)
        self.circuit_breaker = CircuitBreaker(
            name="supabase",
            failure_threshold=5,
            recovery_timeout=30.0,
            tracked_exceptions=(SupabaseError,),
        )

    def service_role(self) -> SupabaseClient:
        return SupabaseClient(self._http, self._service_role_key, circuit_breaker=self.circuit_breaker)

    def for_user(self, access_token: str) -> SupabaseClient:
        return SupabaseClient(
            self._http,
            self._anon_key,
            access_token=access_token,
            circuit_breaker=self.circuit_breaker,
        )

    async def aclose(self):
        await self._http.aclose()
