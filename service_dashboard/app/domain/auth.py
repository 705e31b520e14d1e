"""
Caller authorization for dashboard endpoints.

Callers present a Supabase access token as a bearer token. The token is
resolved to a user through GoTrue and the user's profile role decides
whether they may read organizing data.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from fastapi import Request

from shared.logging import get_logger, set_user_context
from shared.errors import AuthenticationError, AuthorizationError, ProfileLoadError
from ..adapters.supabase_client import SupabaseClient, SupabaseClientFactory, SupabaseError


logger = get_logger("dashboard.auth")

DEFAULT_ALLOWED_ROLES = frozenset({"organiser", "lead_organiser", "admin"})


@dataclass
class AuthorizedCaller:
    client: SupabaseClient
    user_id: str
    role: str
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def last_seen_projects_at(self) -> Optional[str]:
        return self.profile.get("last_seen_projects_at")


def get_bearer_token(request: Request) -> Optional[str]:
    """Return the token from "Authorization: Bearer <token>", else None."""
    header = request.headers.get("authorization")
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
        return parts[1]
    return None


async def ensure_authorized_user(
    factory: SupabaseClientFactory,
    token: str,
    allowed_roles: Iterable[str] = DEFAULT_ALLOWED_ROLES,
) -> AuthorizedCaller:
    client = factory.for_user(token)

    try:
        user = await client.get_user()
    except SupabaseError as exc:
        if exc.status_code is not None and exc.status_code < 500:
            raise AuthenticationError(details={"reason": exc.raw_message})
        raise

    user_id = (user or {}).get("id")
    if not user_id:
        raise AuthenticationError()
    set_user_context(user_id)

    try:
        result = await (
            client.table("profiles")
            .select("role, last_seen_projects_at")
            .eq("id", user_id)
            .maybe_single()
            .execute()
        )
    except SupabaseError as exc:
        logger.error("Profile load failed", user_id=user_id, error=str(exc))
        raise ProfileLoadError(details={"reason": exc.raw_message}) from exc

    profile = result.data or {}
    role = profile.get("role")
    if role not in set(allowed_roles):
        logger.info("Caller role not permitted", user_id=user_id, role=role)
        raise AuthorizationError(details={"role": role})

    return AuthorizedCaller(client=client, user_id=user_id, role=role, profile=profile)
