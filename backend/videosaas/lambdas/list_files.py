from __future__ import annotations

import json
from typing import Any

from loguru import logger

from ..config import SETTINGS
from ..logging_setup import configure_logging
from ..store import get_file_registry
from ..tenancy import resolve_tenant_id

configure_logging(enqueue=False)

CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": dict(CORS_HEADERS),
        "body": json.dumps(body),
    }


def handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    logger.debug("Event: {}", json.dumps(event, default=str))
    tenant_id = resolve_tenant_id(event, allow_header=SETTINGS.allow_tenant_header)
    if not tenant_id:
        logger.warning("Rejected list-files request without tenant identity")
        return _response(401, {"error": "Unauthorized: tenant_id not found"})

    try:
        files = get_file_registry().list_files(tenant_id)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error listing files for {}", tenant_id)
        return _response(500, {"error": "Internal server error", "details": str(exc)})

    logger.info("Listed {} files for {}", len(files), tenant_id)
    return _response(
        200,
        {
            "files": [f.model_dump(mode="json", by_alias=True) for f in files],
            "count": len(files),
        },
    )
