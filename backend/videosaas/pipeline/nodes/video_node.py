from __future__ import annotations

import time
from typing import Any, Callable

from loguru import logger

from ... import aws, lifecycle
from ...config import SETTINGS
from ...models import Project, clean_tenant
from ...status import ProjectStatus, VideoStage
from ...store import ProjectStore, get_project_store
from ..retry import retry_call
from ..state import PipelineState
from ..utils import audio_prefix, bump_attempt, record_failure, video_key, video_key_candidates

TASK_FAILED_MESSAGE = "Video recording task failed"


def recorder_environment(project: Project, use_simple_recording: bool = True) -> list[dict[str, str]]:
    env = {
        "PROJECT_ID": project.id,
        "TENANT_ID": clean_tenant(project.tenant_id),
        "S3_BUCKET": SETTINGS.s3_bucket,
        "SYNCED_SCRIPT_S3_KEY": project.synced_script_s3_key or "",
        "AUDIO_S3_PREFIX": audio_prefix(project.tenant_id, project.id),
        "OUTPUT_VIDEO_S3_KEY": video_key(project.tenant_id, project.id),
        "USE_SIMPLE_RECORDING": str(use_simple_recording).lower(),
    }
    return [{"name": name, "value": value} for name, value in env.items()]


def launch_recording_task(project: Project, use_simple_recording: bool = True) -> str:
    response = retry_call(
        f"run_task:{project.id}",
        lambda: aws.client("ecs").run_task(
            cluster=SETTINGS.ecs_cluster,
            taskDefinition=SETTINGS.ecs_task_family,
            launchType="FARGATE",
            count=1,
            networkConfiguration={
                "awsvpcConfiguration": {
                    "subnets": SETTINGS.ecs_subnets,
                    "securityGroups": SETTINGS.ecs_security_groups,
                    "assignPublicIp": "ENABLED",
                }
            },
            overrides={
                "containerOverrides": [
                    {
                        "name": SETTINGS.ecs_container_name,
                        "environment": recorder_environment(project, use_simple_recording),
                    }
                ]
            },
        ),
        max_attempts=2,
    )
    tasks = response.get("tasks") or []
    if not tasks:
        failures = response.get("failures") or []
        reason = failures[0].get("reason") if failures else "no task returned"
        raise RuntimeError(f"Failed to start recording task: {reason}")
    return str(tasks[0]["taskArn"])


def start_video_render(
    store: ProjectStore,
    tenant_id: str,
    project_id: str,
    use_simple_recording: bool = True,
) -> Project:
    mock = SETTINGS.use_mock_video
    project = store.mutate(tenant_id, project_id, lambda p: lifecycle.start_video(p, mock=mock))
    try:
        if mock:
            logger.info("Project {}: mock video render", project_id)
            return store.save(lifecycle.complete(project, video_key(tenant_id, project_id)))
        task_arn = launch_recording_task(project, use_simple_recording)
        logger.info("Project {}: recording task {} started", project_id, task_arn)
        return store.save(lifecycle.advance_video(project, VideoStage.RUNNING, task_arn))
    except Exception as exc:
        store.fail(tenant_id, project_id, f"Video generation failed: {exc}")
        raise lifecycle.StageError(str(exc)) from exc


def find_video(tenant_id: str, project_id: str) -> str | None:
    if not SETTINGS.s3_bucket:
        return None
    for key in video_key_candidates(tenant_id, project_id):
        if aws.object_exists(SETTINGS.s3_bucket, key):
            return key
    return None


def describe_task(task_arn: str) -> dict[str, Any] | None:
    response = aws.client("ecs").describe_tasks(cluster=SETTINGS.ecs_cluster, tasks=[task_arn])
    tasks = response.get("tasks") or []
    return tasks[0] if tasks else None


def refresh_video_status(
    store: ProjectStore,
    tenant_id: str,
    project_id: str,
) -> tuple[Project, dict[str, Any] | None]:
    """Reconcile a VIDEO_GENERATING project with S3 and the recording task."""
    project = store.get(tenant_id, project_id)
    if project.status != ProjectStatus.VIDEO_GENERATING:
        return project, None

    key = find_video(tenant_id, project_id)
    if key:
        logger.info("Project {}: video found at {}", project_id, key)
        return store.save(lifecycle.complete(project, key)), None

    task_arn = project.video_progress.task_arn if project.video_progress else None
    if not task_arn:
        return project, None
    try:
        task = describe_task(task_arn)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not describe recording task {}: {}", task_arn, exc)
        return project, None
    if task is None:
        return project, None

    task_status = {
        "lastStatus": task.get("lastStatus"),
        "desiredStatus": task.get("desiredStatus"),
        "stoppedReason": task.get("stoppedReason"),
    }
    if task.get("lastStatus") == "STOPPED":
        containers = task.get("containers") or [{}]
        if containers[0].get("exitCode") != 0:
            message = task.get("stoppedReason") or TASK_FAILED_MESSAGE
            return store.fail(tenant_id, project_id, message), task_status
    return project, task_status


def wait_for_video(
    store: ProjectStore,
    tenant_id: str,
    project_id: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Project:
    deadline = clock() + SETTINGS.video_poll_timeout_seconds
    while True:
        project, _ = refresh_video_status(store, tenant_id, project_id)
        if project.status != ProjectStatus.VIDEO_GENERATING:
            return project
        if clock() >= deadline:
            return store.fail(tenant_id, project_id, "Timed out waiting for the video recording")
        sleep(SETTINGS.video_poll_seconds)


def video_renderer(state: PipelineState) -> PipelineState:
    state = dict(state)
    bump_attempt(state, "video_renderer")
    store = get_project_store()

    try:
        project = start_video_render(
            store,
            state["tenant_id"],
            state["project_id"],
            state.get("use_simple_recording", True),
        )
        if project.status == ProjectStatus.VIDEO_GENERATING:
            project = wait_for_video(store, state["tenant_id"], state["project_id"])
    except Exception as exc:  # noqa: BLE001
        record_failure(state, store, "video_renderer", exc)
        return state

    state["status"] = project.status.value
    state["next_action"] = "complete" if project.status == ProjectStatus.COMPLETE else "failed"
    return state
