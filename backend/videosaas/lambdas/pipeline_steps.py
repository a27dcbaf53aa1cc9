"""Step Functions task handlers, one per pipeline stage.

Every handler takes the execution input (``tenantId``, ``projectId`` and
stage options) and returns it enriched with the project's new status, so the
state machine can pass it straight to the next task. Stage failures are
recorded on the project and re-raised for the state machine's Catch.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from ..logging_setup import configure_logging
from ..pipeline.nodes.audio_node import generate_audio
from ..pipeline.nodes.script_node import await_review, generate_manifest
from ..pipeline.nodes.sync_node import synchronize_script
from ..pipeline.nodes.video_node import refresh_video_status, start_video_render
from ..store import get_file_registry, get_project_store

configure_logging(enqueue=False)

DEFAULT_ERROR_MESSAGE = "Pipeline execution failed"


def _ids(event: dict[str, Any]) -> tuple[str, str]:
    tenant_id = event.get("tenantId")
    project_id = event.get("projectId")
    if not tenant_id or not project_id:
        raise ValueError("tenantId and projectId are required")
    return str(tenant_id), str(project_id)


def _result(event: dict[str, Any], status: str, **extra: Any) -> dict[str, Any]:
    out = {key: value for key, value in event.items() if key not in {"taskToken", "error"}}
    out["status"] = status
    out.update(extra)
    return out


def generate_script(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    tenant_id, project_id = _ids(event)
    project = generate_manifest(get_project_store(), get_file_registry(), tenant_id, project_id)
    return _result(event, project.status.value, stepCount=len(project.manifest or []))


def wait_for_review(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Invoked with ``.waitForTaskToken``; the execution resumes on approval."""
    tenant_id, project_id = _ids(event)
    token = event.get("taskToken")
    if not token:
        raise ValueError("taskToken is required")
    project = await_review(get_project_store(), tenant_id, project_id, str(token))
    logger.info("Project {} waiting for script review", project_id)
    return _result(event, project.status.value)


def generate_audio_step(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    tenant_id, project_id = _ids(event)
    project = generate_audio(get_project_store(), tenant_id, project_id, event.get("voiceId"))
    return _result(event, project.status.value)


def sync_script(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    tenant_id, project_id = _ids(event)
    project = synchronize_script(get_project_store(), get_file_registry(), tenant_id, project_id)
    return _result(event, project.status.value, syncedScriptS3Key=project.synced_script_s3_key)


def start_video(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    tenant_id, project_id = _ids(event)
    project = start_video_render(
        get_project_store(),
        tenant_id,
        project_id,
        bool(event.get("useSimpleRecording", True)),
    )
    stage = project.video_progress.stage.value if project.video_progress else None
    return _result(event, project.status.value, videoStage=stage)


def check_video(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    tenant_id, project_id = _ids(event)
    project, task_status = refresh_video_status(get_project_store(), tenant_id, project_id)
    stage = project.video_progress.stage.value if project.video_progress else None
    return _result(
        event,
        project.status.value,
        videoStage=stage,
        videoS3Key=project.video_s3_key,
        taskStatus=task_status,
    )


def mark_error(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Catch-all target: records the execution error on the project."""
    tenant_id, project_id = _ids(event)
    error = event.get("error") or {}
    message = str(error.get("Cause") or error.get("Error") or DEFAULT_ERROR_MESSAGE)
    project = get_project_store().fail(tenant_id, project_id, message)
    return _result(event, project.status.value, errorMessage=project.error_message)
