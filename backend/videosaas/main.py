from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from . import aws, lifecycle
from .config import SETTINGS
from .logging_setup import configure_logging
from .models import (
    ApproveScriptRequest,
    CreateProjectRequest,
    FileListResponse,
    Project,
    RegisterFileRequest,
    UpdateProjectRequest,
    UploadUrlRequest,
    tenant_pk,
)
from .orchestrator import Orchestrator, get_orchestrator
from .pipeline.nodes.video_node import refresh_video_status
from .status import InvalidTransitionError, ProjectStatus
from .store import (
    ConcurrentModificationError,
    FileRegistry,
    ProjectNotFoundError,
    ProjectStore,
    get_file_registry,
    get_project_store,
)
from .tenancy import TENANT_HEADER, header_value

configure_logging(SETTINGS.logs_root)

app = FastAPI(title="Tutorial Video Pipeline API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProjectNotFoundError)
def _not_found(_: Request, exc: ProjectNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": f"project {exc.args[0]} not found"})


@app.exception_handler(InvalidTransitionError)
def _invalid_transition(_: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConcurrentModificationError)
def _conflict(_: Request, exc: ConcurrentModificationError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(lifecycle.StageError)
def _stage_error(_: Request, exc: lifecycle.StageError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def _invalid_project(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def require_tenant(request: Request) -> str:
    """Tenant from the authenticating proxy's header, then the development header."""
    tenant_id = None
    if SETTINGS.trusted_tenant_header:
        tenant_id = header_value(request.headers, SETTINGS.trusted_tenant_header)
    if not tenant_id and SETTINGS.allow_tenant_header:
        tenant_id = header_value(request.headers, TENANT_HEADER)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Unauthorized: tenant_id not found")
    return tenant_pk(tenant_id)


def _presign(key: str | None) -> str | None:
    if not key or not SETTINGS.s3_bucket:
        return None
    return aws.presign_get(SETTINGS.s3_bucket, key)


def _project_body(project: Project) -> dict[str, Any]:
    body = project.model_dump(mode="json", by_alias=True, exclude={"task_token"})
    body["videoUrl"] = _presign(project.video_s3_key)
    return body


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/api/files", response_model=FileListResponse)
def list_files(
    tenant_id: str = Depends(require_tenant),
    registry: FileRegistry = Depends(get_file_registry),
) -> FileListResponse:
    files = registry.list_files(tenant_id)
    return FileListResponse(files=files, count=len(files))


@app.post("/api/files", status_code=201)
def register_file(
    payload: RegisterFileRequest,
    tenant_id: str = Depends(require_tenant),
    registry: FileRegistry = Depends(get_file_registry),
) -> dict:
    item = registry.register_file(tenant_id, payload.file_name, payload.file_key, payload.file_type)
    return {"file": item.model_dump(mode="json", by_alias=True)}


@app.post("/api/upload")
def upload_url(payload: UploadUrlRequest, tenant_id: str = Depends(require_tenant)) -> dict:
    if not SETTINGS.s3_bucket:
        raise HTTPException(status_code=503, detail="S3 bucket is not configured")
    key = f"lib/{int(time.time() * 1000)}-{payload.file_name}"
    url = aws.presign_put(SETTINGS.s3_bucket, key, payload.file_type)
    logger.info("Issued upload URL for {} ({})", key, tenant_id)
    return {"uploadUrl": url, "fileKey": key}


@app.get("/api/projects")
def list_projects(
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    projects = store.list(tenant_id)
    return {"projects": [_project_body(p) for p in projects], "count": len(projects)}


@app.post("/api/projects", status_code=201)
def create_project(
    payload: CreateProjectRequest,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    project = store.create(tenant_id, payload.name.strip(), payload.user_prompt, payload.selected_files)
    try:
        orchestrator.start(tenant_id, project.id, payload.voice_id, payload.use_simple_recording)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to start pipeline for project {}", project.id)
        store.fail(tenant_id, project.id, f"Failed to start pipeline: {exc}")
        raise HTTPException(status_code=502, detail="failed to start pipeline") from exc
    return _project_body(store.get(tenant_id, project.id))


@app.get("/api/projects/{project_id}")
def get_project(
    project_id: str,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    return _project_body(store.get(tenant_id, project_id))


@app.patch("/api/projects/{project_id}")
def update_project(
    project_id: str,
    payload: UpdateProjectRequest,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    if payload.manifest is None:
        raise HTTPException(status_code=400, detail="nothing to update")
    manifest = payload.manifest
    project = store.mutate(tenant_id, project_id, lambda p: lifecycle.save_manifest_draft(p, manifest))
    return _project_body(project)


@app.post("/api/projects/{project_id}/approve")
def approve_project(
    project_id: str,
    payload: ApproveScriptRequest,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    current = store.get(tenant_id, project_id)
    token = current.task_token
    if current.status != ProjectStatus.REVIEW or not token:
        raise InvalidTransitionError(current.status, ProjectStatus.APPROVED, "project is not waiting for review")
    project = store.save(lifecycle.approve(current, payload.manifest))
    resume_payload = {
        "projectId": project.id,
        "manifest": [step.model_dump(mode="json", by_alias=True) for step in project.manifest or []],
        "status": ProjectStatus.APPROVED.value,
    }
    try:
        orchestrator.resume(token, resume_payload)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to resume pipeline for project {}", project_id)
        store.fail(tenant_id, project_id, f"Failed to resume pipeline: {exc}")
        raise HTTPException(status_code=502, detail="failed to resume pipeline") from exc
    return _project_body(store.get(tenant_id, project_id))


@app.get("/api/projects/{project_id}/audio")
def audio_status(
    project_id: str,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    project = store.get(tenant_id, project_id)
    steps = []
    for step in project.manifest or []:
        row = step.model_dump(mode="json", by_alias=True)
        row["audioUrl"] = _presign(step.audio_s3_key)
        steps.append(row)
    return {
        "status": project.status.value,
        "audioProgress": project.audio_progress.model_dump(mode="json", by_alias=True) if project.audio_progress else None,
        "durationMap": {str(k): v for k, v in (project.duration_map or {}).items()},
        "manifest": steps,
    }


@app.get("/api/projects/{project_id}/sync")
def sync_status(
    project_id: str,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    project = store.get(tenant_id, project_id)
    return {
        "status": project.status.value,
        "syncedScriptS3Key": project.synced_script_s3_key,
        "scriptUrl": _presign(project.synced_script_s3_key),
    }


@app.get("/api/projects/{project_id}/video")
def video_status(
    project_id: str,
    tenant_id: str = Depends(require_tenant),
    store: ProjectStore = Depends(get_project_store),
) -> dict:
    project, task_status = refresh_video_status(store, tenant_id, project_id)
    return {
        "status": project.status.value,
        "videoProgress": project.video_progress.model_dump(mode="json", by_alias=True) if project.video_progress else None,
        "videoS3Key": project.video_s3_key,
        "videoUrl": _presign(project.video_s3_key),
        "taskStatus": task_status,
        "errorMessage": project.error_message,
    }


def run() -> None:
    uvicorn.run("backend.videosaas.main:app", host="0.0.0.0", port=8000, reload=not SETTINGS.is_production)


if __name__ == "__main__":
    run()
