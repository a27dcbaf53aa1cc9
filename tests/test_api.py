from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.videosaas import main
from backend.videosaas.orchestrator import get_orchestrator
from backend.videosaas.status import ProjectStatus
from backend.videosaas.store import get_file_registry, get_project_store

HEADERS = {"x-tenant-id": "acme"}


class RecordingOrchestrator:
    def __init__(self) -> None:
        self.started: list[tuple] = []
        self.resumed: list[tuple] = []
        self.fail_with: Exception | None = None

    def start(self, tenant_id, project_id, voice_id=None, use_simple_recording=True) -> str:
        if self.fail_with:
            raise self.fail_with
        self.started.append((tenant_id, project_id, voice_id, use_simple_recording))
        return f"run-{project_id}"

    def resume(self, task_token, payload) -> None:
        if self.fail_with:
            raise self.fail_with
        self.resumed.append((task_token, payload))


@pytest.fixture
def orchestrator() -> RecordingOrchestrator:
    return RecordingOrchestrator()


@pytest.fixture
def client(project_store, file_registry, orchestrator, fake_aws, patch_settings):
    from backend.videosaas import aws

    patch_settings(main, aws, allow_tenant_header=True, s3_bucket="media")
    main.app.dependency_overrides[get_project_store] = lambda: project_store
    main.app.dependency_overrides[get_file_registry] = lambda: file_registry
    main.app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture
def in_review(project_store, build_project):
    return project_store.save(build_project(ProjectStatus.REVIEW))


def test_health(client) -> None:
    assert client.get("/health").json()["status"] == "ok"


def test_requests_without_tenant_are_rejected(client, patch_settings) -> None:
    assert client.get("/api/files").status_code == 401
    patch_settings(main, allow_tenant_header=False)
    assert client.get("/api/files", headers=HEADERS).status_code == 401


def test_trusted_proxy_header_identifies_tenant_in_production(client, in_review, patch_settings) -> None:
    patch_settings(main, allow_tenant_header=False, trusted_tenant_header="x-authenticated-tenant")
    proxied = {"X-Authenticated-Tenant": "acme"}
    response = client.get(f"/api/projects/{in_review.id}", headers=proxied)
    assert response.status_code == 200
    assert response.json()["id"] == in_review.id
    assert client.get("/api/files", headers=HEADERS).status_code == 401


def test_trusted_proxy_header_wins_over_development_header(client, in_review, patch_settings) -> None:
    patch_settings(main, allow_tenant_header=True, trusted_tenant_header="x-authenticated-tenant")
    headers = {"x-authenticated-tenant": "other", "x-tenant-id": "acme"}
    assert client.get(f"/api/projects/{in_review.id}", headers=headers).status_code == 404


def test_register_and_list_files(client) -> None:
    created = client.post(
        "/api/files",
        json={"fileName": "guide.pdf", "fileKey": "lib/1-guide.pdf", "fileType": "application/pdf"},
        headers=HEADERS,
    )
    assert created.status_code == 201
    assert created.json()["file"]["type"] == "pdf"

    listed = client.get("/api/files", headers=HEADERS).json()
    assert listed["count"] == 1
    assert listed["files"][0]["s3Key"] == "lib/1-guide.pdf"
    assert client.get("/api/files", headers={"x-tenant-id": "other"}).json()["count"] == 0


def test_upload_url(client, patch_settings) -> None:
    body = client.post("/api/upload", json={"fileName": "a.pdf", "fileType": "application/pdf"}, headers=HEADERS).json()
    assert body["fileKey"].startswith("lib/") and body["fileKey"].endswith("-a.pdf")
    assert body["uploadUrl"].startswith("https://signed.example/put_object/")

    patch_settings(main, s3_bucket="")
    assert client.post("/api/upload", json={"fileName": "a.pdf", "fileType": "x"}, headers=HEADERS).status_code == 503


def test_create_project_starts_pipeline(client, orchestrator) -> None:
    response = client.post(
        "/api/projects",
        json={"name": " Login tour ", "selectedFiles": ["f1"], "voiceId": "Joanna"},
        headers=HEADERS,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Login tour"
    assert body["status"] == "DRAFT"
    assert "taskToken" not in body
    assert orchestrator.started == [("TENANT#acme", body["id"], "Joanna", True)]

    listed = client.get("/api/projects", headers=HEADERS).json()
    assert listed["count"] == 1


def test_create_project_validates_payload(client) -> None:
    assert client.post("/api/projects", json={"name": "x", "selectedFiles": []}, headers=HEADERS).status_code == 422


def test_create_project_marks_error_when_start_fails(client, orchestrator, project_store) -> None:
    orchestrator.fail_with = RuntimeError("state machine missing")
    response = client.post("/api/projects", json={"name": "Demo", "selectedFiles": ["f1"]}, headers=HEADERS)
    assert response.status_code == 502
    [project] = project_store.list("acme")
    assert project.status == ProjectStatus.ERROR
    assert "state machine missing" in (project.error_message or "")


def test_unknown_project_is_404(client) -> None:
    assert client.get("/api/projects/missing", headers=HEADERS).status_code == 404


def test_other_tenants_cannot_read_projects(client, in_review) -> None:
    assert client.get(f"/api/projects/{in_review.id}", headers={"x-tenant-id": "other"}).status_code == 404


def test_patch_saves_draft_edits(client, in_review) -> None:
    manifest = [s.model_dump(mode="json", by_alias=True) for s in in_review.manifest or []]
    manifest[0]["narration"] = "Welcome aboard."
    response = client.patch(f"/api/projects/{in_review.id}", json={"manifest": manifest}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["manifest"][0]["narration"] == "Welcome aboard."
    assert response.json()["status"] == "REVIEW"
    assert client.patch(f"/api/projects/{in_review.id}", json={}, headers=HEADERS).status_code == 400


def test_approve_resumes_with_stored_token(client, in_review, orchestrator, project_store) -> None:
    manifest = [s.model_dump(mode="json", by_alias=True) for s in in_review.manifest or []]
    response = client.post(f"/api/projects/{in_review.id}/approve", json={"manifest": manifest}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "APPROVED"

    [(token, payload)] = orchestrator.resumed
    assert token == "token-1"
    assert payload["status"] == "APPROVED"
    assert len(payload["manifest"]) == 3
    assert project_store.get("acme", in_review.id).task_token is None

    again = client.post(f"/api/projects/{in_review.id}/approve", json={"manifest": manifest}, headers=HEADERS)
    assert again.status_code == 409


def test_approve_rejects_empty_manifest(client, in_review) -> None:
    response = client.post(f"/api/projects/{in_review.id}/approve", json={"manifest": []}, headers=HEADERS)
    assert response.status_code == 422


def test_duplicate_step_ids_are_rejected(client, in_review, project_store) -> None:
    step = {"step_id": 1, "code_action": "await page.goto('https://example.com')", "narration": "Hi."}
    url = f"/api/projects/{in_review.id}"
    assert client.patch(url, json={"manifest": [step, step]}, headers=HEADERS).status_code == 422
    assert client.post(f"{url}/approve", json={"manifest": [step, step]}, headers=HEADERS).status_code == 422
    assert project_store.get("acme", in_review.id).status is ProjectStatus.REVIEW


def test_invalid_project_state_is_a_bad_request(client, in_review, monkeypatch) -> None:
    from backend.videosaas.models import AudioProgress

    def _broken(project, manifest):
        return AudioProgress(total=1, completed=2)

    monkeypatch.setattr(main.lifecycle, "approve", _broken)
    manifest = [s.model_dump(mode="json", by_alias=True) for s in in_review.manifest or []]
    response = client.post(f"/api/projects/{in_review.id}/approve", json={"manifest": manifest}, headers=HEADERS)
    assert response.status_code == 400
    assert "exceeds total" in response.json()["detail"]


def test_audio_and_sync_status(client, project_store, build_project) -> None:
    project = project_store.save(build_project(ProjectStatus.RENDERING))
    audio = client.get(f"/api/projects/{project.id}/audio", headers=HEADERS).json()
    assert audio["audioProgress"]["completed"] == 3
    assert audio["durationMap"] == {"1": 1500, "2": 1500, "3": 1500}
    assert audio["manifest"][0]["audioUrl"].endswith("audio/acme/proj-1/step_1.mp3?expires=3600")

    sync = client.get(f"/api/projects/{project.id}/sync", headers=HEADERS).json()
    assert sync["syncedScriptS3Key"] == "scripts/acme/proj-1/synced_runner.ts"
    assert sync["scriptUrl"].startswith("https://signed.example/get_object/")


def test_video_status_presigns_finished_video(client, project_store, build_project) -> None:
    project = project_store.save(build_project(ProjectStatus.COMPLETE))
    body = client.get(f"/api/projects/{project.id}/video", headers=HEADERS).json()
    assert body["status"] == "COMPLETE"
    assert body["videoUrl"].startswith("https://signed.example/get_object/videos/acme/proj-1/")
    assert body["taskStatus"] is None


def test_stale_transition_is_conflict(client, project_store, build_project) -> None:
    project = project_store.save(build_project(ProjectStatus.APPROVED))
    response = client.patch(f"/api/projects/{project.id}", json={"manifest": [
        {"step_id": 1, "code_action": "page.goto(x)", "narration": "Hi."}
    ]}, headers=HEADERS)
    assert response.status_code == 409
