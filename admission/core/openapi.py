"""OpenAPI customization for rate limited operations.

Enriches the generated schema with:
- A reusable ``RateLimitExceeded`` (429) response, including its headers
- That response attached to every operation the middleware can throttle
- Tags metadata
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from admission.core.rate_limit import is_excluded_path

RATE_LIMIT_RESPONSE_REF = "#/components/responses/RateLimitExceeded"


def _header(description: str) -> Dict[str, Any]:
    return {"description": description, "schema": {"type": "integer"}}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to document throttling."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        responses = schema.setdefault("components", {}).setdefault("responses", {})
        responses.setdefault(
            "RateLimitExceeded",
            {
                "description": "Rate limit exceeded for the policy guarding this path.",
                "headers": {
                    "Retry-After": _header("Seconds to wait before retrying."),
                    "X-RateLimit-Limit": _header("Capacity of the applied policy."),
                    "X-RateLimit-Remaining": _header("Units left (always 0 on 429)."),
                    "X-RateLimit-Reset": _header("Epoch milliseconds when capacity is restored."),
                },
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in (
            {"name": "Policies", "description": "Named rate limit policies."},
            {"name": "Health", "description": "Liveness and limiter health."},
        ):
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if is_excluded_path(path):
                continue
            for method_obj in methods.values():
                if isinstance(method_obj, dict):
                    method_obj.setdefault("responses", {}).setdefault(
                        "429", {"$ref": RATE_LIMIT_RESPONSE_REF}
                    )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
