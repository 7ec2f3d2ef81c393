"""Unit tests for limiter key resolution."""

import pytest
from fastapi import Request

from admission.adapters.rate_limit.base import RequestIdentity
from admission.services.key_resolver import (
    api_key_key_resolver,
    client_address,
    default_key_resolver,
    hash_limiter_key,
    identity_from_request,
    path_scope,
    principal_key_resolver,
)


def _request(path: str, headers: dict[str, str], client=("10.0.0.1", 5000), user_id=None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
        "state": {},
    }
    request = Request(scope)
    if user_id is not None:
        request.state.user_id = user_id
    return request


def test_default_key_uses_first_forwarded_address(identity) -> None:
    assert default_key_resolver(identity) == "ip:203.0.113.7:/api/v1"


def test_default_key_is_deterministic(identity) -> None:
    assert default_key_resolver(identity) == default_key_resolver(identity)


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"x-forwarded-for": "198.51.100.1", "x-real-ip": "198.51.100.2"}, "198.51.100.1"),
        ({"x-real-ip": "198.51.100.2", "cf-connecting-ip": "198.51.100.3"}, "198.51.100.2"),
        ({"cf-connecting-ip": "198.51.100.3"}, "198.51.100.3"),
        ({"x-forwarded-for": " , 198.51.100.9", "x-real-ip": "198.51.100.2"}, "198.51.100.2"),
        ({}, "10.0.0.1"),
    ],
)
def test_client_address_header_precedence(headers, expected) -> None:
    identity = RequestIdentity(path="/", headers=headers, client_host="10.0.0.1")

    assert client_address(identity) == expected


def test_client_address_unknown_without_any_source() -> None:
    assert client_address(RequestIdentity(path="/")) == "unknown"


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/api/v1/users/42", "/api/v1"),
        ("/api//v1/", "/api/v1"),
        ("/health", "/health"),
        ("/", "/"),
        ("", "/"),
    ],
)
def test_path_scope(path, expected) -> None:
    assert path_scope(path) == expected


def test_same_prefix_shares_key() -> None:
    a = RequestIdentity(path="/api/v1/users", client_host="192.0.2.1")
    b = RequestIdentity(path="/api/v1/orders/7", client_host="192.0.2.1")
    c = RequestIdentity(path="/api/v2/users", client_host="192.0.2.1")

    assert default_key_resolver(a) == default_key_resolver(b)
    assert default_key_resolver(a) != default_key_resolver(c)


def test_api_key_resolver_hashes_key() -> None:
    identity = RequestIdentity(path="/api/v1/items", headers={"x-api-key": "secret-key-123"})

    key = api_key_key_resolver(identity)

    assert key.startswith("api_key:")
    assert key.endswith(":/api/v1")
    assert "secret-key-123" not in key
    assert len(key.split(":")[1]) == 16


def test_api_key_resolver_falls_back_to_address(identity) -> None:
    assert api_key_key_resolver(identity) == default_key_resolver(identity)


def test_principal_resolver(identity) -> None:
    authenticated = RequestIdentity(path="/api/v1/me", principal="user-7")

    assert principal_key_resolver(authenticated) == "user:user-7:/api/v1"
    assert principal_key_resolver(identity) == default_key_resolver(identity)


def test_hash_limiter_key_is_stable_and_opaque() -> None:
    digest = hash_limiter_key("ip:203.0.113.7:/api/v1")

    assert digest == hash_limiter_key("ip:203.0.113.7:/api/v1")
    assert len(digest) == 16
    assert "203.0.113.7" not in digest


def test_identity_from_request_lowercases_headers() -> None:
    request = _request("/api/v1/things", {"X-Forwarded-For": "203.0.113.7"}, user_id=42)

    identity = identity_from_request(request)

    assert identity.path == "/api/v1/things"
    assert identity.headers["x-forwarded-for"] == "203.0.113.7"
    assert identity.client_host == "10.0.0.1"
    assert identity.principal == "42"


def test_identity_from_request_without_client() -> None:
    identity = identity_from_request(_request("/", {}, client=None))

    assert identity.client_host is None
    assert identity.principal is None
    assert default_key_resolver(identity) == "ip:unknown:/"
