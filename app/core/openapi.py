"""OpenAPI customization for rate limited operations.

Rate limiting happens in middleware, so FastAPI cannot see it when it
generates the schema. This helper documents it after the fact:
- Rate-Limit-* response headers on every rate limited operation
- The 429 Too Many Requests response
- Tags metadata

Exempt paths (health checks by default) are left untouched.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from app.core.config import settings
from app.core.rate_limit import is_exempt_path
from app.services.rate_limiter import HEADER_LEFT, HEADER_REACHED, HEADER_RESET

RATE_LIMIT_HEADER_SCHEMAS: Dict[str, Dict[str, Any]] = {
    HEADER_REACHED: {
        "description": "Whether the caller has used up the quota for the current window.",
        "schema": {"type": "string", "enum": ["true", "false"]},
    },
    HEADER_LEFT: {
        "description": "Requests left in the current window.",
        "schema": {"type": "integer", "minimum": 0},
    },
    HEADER_RESET: {
        "description": "ISO-8601 timestamp at which the current window resets.",
        "schema": {"type": "string", "format": "date-time"},
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to describe rate limiting."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Rate Limit",
                "description": "Quota status for the calling client.",
            },
            {
                "name": "Health",
                "description": "Liveness and readiness checks (not rate limited).",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        if not settings.app.rate_limit_enabled:
            return schema

        for path, methods in schema.get("paths", {}).items():
            if is_exempt_path(path):
                continue
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                responses = method_obj.setdefault("responses", {})
                for response in responses.values():
                    response.setdefault("headers", {}).update(RATE_LIMIT_HEADER_SCHEMAS)
                responses.setdefault(
                    "429",
                    {
                        "description": "Too Many Requests: the caller's quota for the window is used up.",
                        "headers": dict(RATE_LIMIT_HEADER_SCHEMAS),
                    },
                )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
