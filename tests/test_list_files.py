from __future__ import annotations

import json

import pytest

from backend.videosaas.lambdas import list_files
from backend.videosaas.store import FileRegistry

from .conftest import FakeTable


def _event(claims: dict | None = None, headers: dict | None = None) -> dict:
    event: dict = {"headers": headers or {}}
    if claims is not None:
        event["requestContext"] = {"authorizer": {"claims": claims}}
    return event


@pytest.fixture
def registry(monkeypatch, table: FakeTable) -> FileRegistry:
    registry = FileRegistry(table)
    monkeypatch.setattr(list_files, "get_file_registry", lambda: registry)
    return registry


def _seed(table: FakeTable) -> None:
    for file_id, kind in (("a", "guide"), ("b", "test")):
        table.items[("TENANT#acme", f"FILE#{file_id}")] = {
            "PK": "TENANT#acme",
            "SK": f"FILE#{file_id}",
            "type": kind,
            "name": file_id,
            "s3_key": f"lib/{file_id}",
            "createdAt": "2025-12-01T10:00:00+00:00",
        }


def test_lists_files_for_claim_tenant(registry: FileRegistry, table: FakeTable) -> None:
    _seed(table)
    response = list_files.handler(_event(claims={"custom:tenant_id": "acme"}))
    assert response["statusCode"] == 200
    assert response["headers"]["Access-Control-Allow-Origin"] == "*"
    body = json.loads(response["body"])
    assert body["count"] == 2
    assert {f["type"] for f in body["files"]} == {"pdf", "playwright"}
    assert {f["s3Key"] for f in body["files"]} == {"lib/a", "lib/b"}


def test_empty_library_returns_zero(registry: FileRegistry) -> None:
    response = list_files.handler(_event(claims={"tenant_id": "TENANT#acme"}))
    assert json.loads(response["body"]) == {"files": [], "count": 0}


def test_missing_tenant_is_unauthorized_without_storage_call(registry: FileRegistry, table: FakeTable) -> None:
    response = list_files.handler(_event())
    assert response["statusCode"] == 401
    assert json.loads(response["body"]) == {"error": "Unauthorized: tenant_id not found"}
    assert table.query_calls == 0


def test_header_fallback_follows_setting(registry, table, patch_settings) -> None:
    _seed(table)
    patch_settings(list_files, allow_tenant_header=True)
    ok = list_files.handler(_event(headers={"X-Tenant-Id": "acme"}))
    assert ok["statusCode"] == 200

    patch_settings(list_files, allow_tenant_header=False)
    denied = list_files.handler(_event(headers={"x-tenant-id": "acme"}))
    assert denied["statusCode"] == 401


def test_storage_failure_is_reported(monkeypatch) -> None:
    class Broken:
        def list_files(self, tenant_id):
            raise RuntimeError("dynamo down")

    monkeypatch.setattr(list_files, "get_file_registry", lambda: Broken())
    response = list_files.handler(_event(claims={"custom:tenant_id": "acme"}))
    assert response["statusCode"] == 500
    assert json.loads(response["body"]) == {"error": "Internal server error", "details": "dynamo down"}
