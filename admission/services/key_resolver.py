"""Rate limit key resolution.

A key scopes a budget: requests sharing a key share capacity. Resolvers are
pure functions of ``RequestIdentity`` so the same request metadata always
maps to the same key.
"""

from __future__ import annotations

import hashlib

from fastapi import Request

from admission.adapters.rate_limit.base import RequestIdentity

# Checked in order; the first header present wins.
CLIENT_ADDRESS_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

# "/api/v1/users/42" -> "/api/v1"
PATH_SCOPE_SEGMENTS = 2


def identity_from_request(request: Request) -> RequestIdentity:
    """Capture the request metadata key resolvers may use.

    Args:
        request: Incoming FastAPI request.

    Returns:
        RequestIdentity with lower-cased header names.
    """

    principal = getattr(request.state, "user_id", None)
    return RequestIdentity(
        path=request.url.path,
        headers={name.lower(): value for name, value in request.headers.items()},
        client_host=request.client.host if request.client else None,
        principal=str(principal) if principal is not None else None,
    )


def client_address(identity: RequestIdentity) -> str:
    """Return the originating client address.

    For X-Forwarded-For the first entry of the chain is the original client.
    """

    for header in CLIENT_ADDRESS_HEADERS:
        value = identity.headers.get(header)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    return identity.client_host or "unknown"


def path_scope(path: str, segments: int = PATH_SCOPE_SEGMENTS) -> str:
    """Normalize a path to its leading ``segments`` segments.

    Empty segments (duplicate or trailing slashes) are ignored, so
    "/api//v1/" and "/api/v1" share a scope.
    """

    parts = [part for part in path.split("/") if part]
    return "/" + "/".join(parts[:segments])


def default_key_resolver(identity: RequestIdentity) -> str:
    """Scope by client address and route prefix."""

    return f"ip:{client_address(identity)}:{path_scope(identity.path)}"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def api_key_key_resolver(identity: RequestIdentity) -> str:
    """Scope by API key when present, else fall back to the client address.

    The raw key never appears in the limiter key (it may be logged or stored
    in Redis); a SHA-256 prefix is used instead.
    """

    api_key = identity.headers.get("x-api-key")
    if api_key:
        return f"api_key:{_digest(api_key)}:{path_scope(identity.path)}"
    return default_key_resolver(identity)


def principal_key_resolver(identity: RequestIdentity) -> str:
    """Scope by authenticated principal when known, else by client address."""

    if identity.principal:
        return f"user:{identity.principal}:{path_scope(identity.path)}"
    return default_key_resolver(identity)


def hash_limiter_key(key: str) -> str:
    """Hash a limiter key for logging without exposing addresses or secrets."""

    return _digest(key)
