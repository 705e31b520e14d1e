"""
Cache key construction.

A key is "<prefix>:<scope>:<params>" where params are serialized as compact
JSON with sorted keys, so two requests that differ only in parameter order
share a key. Dictionary members set to None are dropped: an unset filter and
an absent filter must produce the same key.
"""

import hashlib
import json
from typing import Any, Mapping, Optional


def _without_none(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _without_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_without_none(item) for item in value]
    return value


def stable_stringify(params: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(
        _without_none(params or {}),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def make_cache_key(prefix: str, scope: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Build the cache key for (prefix, scope, params).

    Callers must include every value that changes the response in params,
    including pagination and the effective "since" timestamp.
    """
    return f"{prefix}:{scope}:{stable_stringify(params)}"


def hash_token(token: Optional[str]) -> str:
    """Derive a caller scope from a bearer token without exposing it."""
    if not token:
        return "anon"
    return hashlib.sha1(token.encode("utf-8")).hexdigest()[:16]
