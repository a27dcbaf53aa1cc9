from __future__ import annotations

import sys

from loguru import logger
from tqdm import tqdm

from ... import aws, lifecycle
from ...config import SETTINGS
from ...models import AudioStep, Project
from ...store import ProjectStore, get_project_store
from ..retry import retry_call
from ..state import PipelineState
from ..utils import audio_key, bump_attempt, estimate_duration_ms, mp3_duration_ms, record_failure

VOICE_OPTIONS = {
    "matthew": "Matthew",
    "joanna": "Joanna",
    "ivy": "Ivy",
    "kendra": "Kendra",
    "kimberly": "Kimberly",
    "salli": "Salli",
    "joey": "Joey",
    "justin": "Justin",
    "brian": "Brian",
    "amy": "Amy",
}


def resolve_voice(voice_id: str | None) -> str:
    if not voice_id:
        return SETTINGS.polly_voice_id
    return VOICE_OPTIONS.get(voice_id.strip().lower(), SETTINGS.polly_voice_id)


def _synthesize_polly(text: str, voice: str) -> bytes:
    def _call() -> bytes:
        response = aws.client("polly").synthesize_speech(
            Engine=SETTINGS.polly_engine,
            OutputFormat="mp3",
            Text=text,
            TextType="text",
            VoiceId=voice,
        )
        return response["AudioStream"].read()

    return retry_call("polly_synthesize", _call, max_attempts=3)


def synthesize_step(project: Project, step: AudioStep, voice: str) -> tuple[str, int]:
    """Produce narration audio for one step and return (s3 key, duration ms)."""
    key = audio_key(project.tenant_id, project.id, step.step_id)
    if SETTINGS.use_mock_polly:
        return key, estimate_duration_ms(step.narration)

    audio = _synthesize_polly(step.narration, voice)
    duration_ms = mp3_duration_ms(len(audio))
    retry_call(
        f"put_audio:{step.step_id}",
        lambda: aws.client("s3").put_object(
            Bucket=SETTINGS.s3_bucket,
            Key=key,
            Body=audio,
            ContentType="audio/mpeg",
            Metadata={
                "project-id": project.id,
                "step-id": str(step.step_id),
                "duration-ms": str(duration_ms),
            },
        ),
    )
    return key, duration_ms


def generate_audio(
    store: ProjectStore,
    tenant_id: str,
    project_id: str,
    voice_id: str | None = None,
) -> Project:
    """Narrate every manifest step in order, saving progress after each one."""
    project = store.mutate(tenant_id, project_id, lifecycle.start_audio)
    voice = resolve_voice(voice_id)
    logger.info("Project {}: generating audio for {} steps with voice {}", project_id, len(project.manifest or []), voice)

    steps = list(project.manifest or [])
    pbar = tqdm(
        total=len(steps),
        desc=f"project-{project_id}:audio",
        unit="step",
        disable=not sys.stderr.isatty(),
    )
    try:
        for step in steps:
            try:
                key, duration_ms = synthesize_step(project, step, voice)
            except Exception as exc:
                message = f"Failed to generate audio for step {step.step_id}: {exc}"
                store.fail(tenant_id, project_id, message)
                raise lifecycle.StageError(message) from exc
            project = store.save(lifecycle.record_step_audio(project, step.step_id, key, duration_ms))
            logger.debug("Project {}: step {} audio {} ({} ms)", project_id, step.step_id, key, duration_ms)
            pbar.update(1)
    finally:
        pbar.close()

    return store.save(lifecycle.complete_audio(project))


def audio_generator(state: PipelineState) -> PipelineState:
    state = dict(state)
    bump_attempt(state, "audio_generator")
    store = get_project_store()

    try:
        project = generate_audio(store, state["tenant_id"], state["project_id"], state.get("voice_id"))
        state["status"] = project.status.value
        state["next_action"] = "sync_script"
    except Exception as exc:  # noqa: BLE001
        record_failure(state, store, "audio_generator", exc)
    return state
