from __future__ import annotations

from typing import Any, Mapping

CLAIM_KEYS = ("custom:tenant_id", "tenant_id")
TENANT_HEADER = "x-tenant-id"


def header_value(headers: Mapping[str, Any] | None, name: str) -> str | None:
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value:
            return str(value)
    return None


def resolve_tenant_id(event: Mapping[str, Any], allow_header: bool) -> str | None:
    """Tenant id from the API Gateway authorizer claims, then the test header."""
    request_context = event.get("requestContext") or {}
    authorizer = request_context.get("authorizer") or {}
    claims = authorizer.get("claims") or {}
    for key in CLAIM_KEYS:
        value = claims.get(key)
        if value:
            return str(value)
    if allow_header:
        return header_value(event.get("headers"), TENANT_HEADER)
    return None
