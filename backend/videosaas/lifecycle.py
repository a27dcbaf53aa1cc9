"""Guarded project transitions.

Every function takes a Project and returns a new, re-validated Project. None
of them touch storage; callers persist the result through ProjectStore.save.
"""

from __future__ import annotations

from typing import Any, Iterable

from .models import AudioProgress, AudioStep, Project, ScriptStep, VideoProgress, utcnow
from .status import (
    InvalidTransitionError,
    ProjectStatus,
    VideoStage,
    require_transition,
    require_video_transition,
)


class StageError(RuntimeError):
    pass


def _evolve(project: Project, target: ProjectStatus | None = None, **changes: Any) -> Project:
    if target is not None:
        require_transition(project.status, target)
        changes["status"] = target
    data = project.model_dump()
    data.update(changes)
    data["updated_at"] = utcnow()
    return Project.model_validate(data)


def _guard(ok: bool, project: Project, target: ProjectStatus, reason: str) -> None:
    if not ok:
        raise InvalidTransitionError(project.status, target, reason)


def _require_status(project: Project, expected: ProjectStatus, target: ProjectStatus) -> None:
    _guard(project.status == expected, project, target, f"project must be {expected.value}")


def _as_audio_steps(manifest: Iterable[ScriptStep]) -> list[AudioStep]:
    steps: list[AudioStep] = []
    for step in manifest:
        if isinstance(step, AudioStep):
            steps.append(step)
        else:
            steps.append(AudioStep(**step.model_dump()))
    return steps


def start_generation(project: Project) -> Project:
    return _evolve(project, ProjectStatus.GENERATING, error_message=None)


def attach_manifest(project: Project, manifest: Iterable[ScriptStep]) -> Project:
    _require_status(project, ProjectStatus.GENERATING, ProjectStatus.REVIEW)
    steps = _as_audio_steps(manifest)
    _guard(bool(steps), project, ProjectStatus.REVIEW, "generated manifest is empty")
    return _evolve(project, manifest=steps)


def submit_for_review(
    project: Project,
    task_token: str,
    manifest: Iterable[ScriptStep] | None = None,
) -> Project:
    steps = _as_audio_steps(manifest) if manifest is not None else list(project.manifest or [])
    _guard(bool(steps), project, ProjectStatus.REVIEW, "generated manifest is empty")
    _guard(bool(task_token), project, ProjectStatus.REVIEW, "a task token is required to suspend for review")
    return _evolve(project, ProjectStatus.REVIEW, manifest=steps, task_token=task_token)


def save_manifest_draft(project: Project, manifest: Iterable[ScriptStep]) -> Project:
    _require_status(project, ProjectStatus.REVIEW, ProjectStatus.REVIEW)
    steps = _as_audio_steps(manifest)
    _guard(bool(steps), project, ProjectStatus.REVIEW, "manifest must not be empty")
    return _evolve(project, manifest=steps)


def approve(project: Project, manifest: Iterable[ScriptStep]) -> Project:
    # Narration may have been edited, so any earlier audio is stale.
    steps = [
        step.model_copy(update={"audio_s3_key": None, "duration_ms": None, "audio_generated": False})
        for step in _as_audio_steps(manifest)
    ]
    _guard(bool(steps), project, ProjectStatus.APPROVED, "approved manifest must not be empty")
    return _evolve(project, ProjectStatus.APPROVED, manifest=steps, task_token=None)


def start_audio(project: Project) -> Project:
    steps = project.manifest or []
    _guard(bool(steps), project, ProjectStatus.AUDIO_GENERATING, "project has no manifest")
    progress = AudioProgress(total=len(steps), completed=0, current_step=steps[0].step_id)
    return _evolve(project, ProjectStatus.AUDIO_GENERATING, audio_progress=progress)


def record_step_audio(project: Project, step_id: int, audio_s3_key: str, duration_ms: int) -> Project:
    _require_status(project, ProjectStatus.AUDIO_GENERATING, ProjectStatus.AUDIO_GENERATING)
    steps = list(project.manifest or [])
    index = next((i for i, step in enumerate(steps) if step.step_id == step_id), None)
    if index is None:
        raise KeyError(f"step {step_id} is not in the manifest")
    steps[index] = steps[index].model_copy(
        update={"audio_s3_key": audio_s3_key, "duration_ms": duration_ms, "audio_generated": True}
    )
    completed = sum(1 for step in steps if step.audio_generated)
    pending = [step.step_id for step in steps if not step.audio_generated]
    progress = AudioProgress(
        total=len(steps),
        completed=completed,
        current_step=pending[0] if pending else step_id,
    )
    duration_map = dict(project.duration_map or {})
    duration_map[step_id] = duration_ms
    return _evolve(project, manifest=steps, audio_progress=progress, duration_map=duration_map)


def complete_audio(project: Project) -> Project:
    steps = project.manifest or []
    missing = [step.step_id for step in steps if not step.audio_generated]
    _guard(
        bool(steps) and not missing,
        project,
        ProjectStatus.AUDIO_COMPLETE,
        f"steps without audio: {missing}",
    )
    duration_map = {step.step_id: step.duration_ms or 0 for step in steps}
    progress = AudioProgress(total=len(steps), completed=len(steps))
    return _evolve(
        project,
        ProjectStatus.AUDIO_COMPLETE,
        audio_progress=progress,
        duration_map=duration_map,
    )


def start_sync(project: Project) -> Project:
    _guard(bool(project.duration_map), project, ProjectStatus.SYNCING, "no duration map, generate audio first")
    return _evolve(project, ProjectStatus.SYNCING)


def finish_sync(project: Project, synced_script_s3_key: str) -> Project:
    _guard(bool(synced_script_s3_key), project, ProjectStatus.RENDERING, "synced script key is required")
    return _evolve(project, ProjectStatus.RENDERING, synced_script_s3_key=synced_script_s3_key)


def start_video(project: Project, mock: bool = False) -> Project:
    _guard(
        bool(project.synced_script_s3_key),
        project,
        ProjectStatus.VIDEO_GENERATING,
        "synced script not found, complete script synchronization first",
    )
    progress = VideoProgress(stage=VideoStage.STARTING, started_at=utcnow(), mock=mock)
    return _evolve(project, ProjectStatus.VIDEO_GENERATING, video_progress=progress)


def advance_video(project: Project, stage: VideoStage, task_arn: str | None = None) -> Project:
    _require_status(project, ProjectStatus.VIDEO_GENERATING, ProjectStatus.VIDEO_GENERATING)
    if stage.is_terminal:
        raise InvalidTransitionError(project.status, ProjectStatus.VIDEO_GENERATING, f"use complete() or fail() for {stage.value}")
    current = project.video_progress or VideoProgress()
    if stage == current.stage and task_arn in (None, current.task_arn):
        return project
    if stage != current.stage:
        require_video_transition(current.stage, stage)
    progress = current.model_copy(update={"stage": stage, "task_arn": task_arn or current.task_arn})
    return _evolve(project, video_progress=progress)


def complete(project: Project, video_s3_key: str) -> Project:
    _guard(bool(video_s3_key), project, ProjectStatus.COMPLETE, "videoS3Key is required")
    current = project.video_progress or VideoProgress()
    require_video_transition(current.stage, VideoStage.COMPLETE)
    progress = current.model_copy(update={"stage": VideoStage.COMPLETE, "completed_at": utcnow()})
    return _evolve(project, ProjectStatus.COMPLETE, video_s3_key=video_s3_key, video_progress=progress)


def fail(project: Project, message: str) -> Project:
    message = (message or "").strip()
    _guard(bool(message), project, ProjectStatus.ERROR, "errorMessage is required")
    changes: dict[str, Any] = {"error_message": message}
    progress = project.video_progress
    if progress is not None and not progress.stage.is_terminal:
        changes["video_progress"] = progress.model_copy(
            update={"stage": VideoStage.ERROR, "completed_at": utcnow()}
        )
    return _evolve(project, ProjectStatus.ERROR, **changes)
