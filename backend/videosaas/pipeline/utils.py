from __future__ import annotations

import re
from typing import Any

from loguru import logger

from ..models import clean_tenant
from .state import PipelineState

DEFAULT_AUDIO_DURATION_MS = 2000
POLLY_MP3_BITRATE = 48000
WORDS_PER_MINUTE = 150
CHARS_PER_WORD = 5


def add_error(state: PipelineState, message: str) -> None:
    errors = state.setdefault("errors", [])
    errors.append(message)


def bump_attempt(state: PipelineState, key: str) -> int:
    attempts = state.setdefault("attempts", {})
    attempts[key] = attempts.get(key, 0) + 1
    return attempts[key]


def estimate_duration_ms(text: str) -> int:
    words = len(text) / CHARS_PER_WORD
    return round(words / WORDS_PER_MINUTE * 60 * 1000)


def mp3_duration_ms(num_bytes: int, bitrate: int = POLLY_MP3_BITRATE) -> int:
    return round(num_bytes * 8 / bitrate * 1000)


def audio_prefix(tenant_id: str, project_id: str) -> str:
    return f"audio/{clean_tenant(tenant_id)}/{project_id}/"


def audio_key(tenant_id: str, project_id: str, step_id: int) -> str:
    return f"{audio_prefix(tenant_id, project_id)}step_{step_id}.mp3"


def synced_script_key(tenant_id: str, project_id: str) -> str:
    return f"scripts/{clean_tenant(tenant_id)}/{project_id}/synced_runner.ts"


def video_key(tenant_id: str, project_id: str, extension: str = "mp4") -> str:
    return f"videos/{clean_tenant(tenant_id)}/{project_id}/recording.{extension}"


def video_key_candidates(tenant_id: str, project_id: str) -> list[str]:
    return [video_key(tenant_id, project_id, "webm"), video_key(tenant_id, project_id, "mp4")]


def strip_code_fences(text: str) -> str:
    cleaned = re.sub(r"^```(?:typescript|javascript|ts|js|json)?\n?", "", text.strip(), flags=re.MULTILINE)
    return re.sub(r"```$", "", cleaned, flags=re.MULTILINE).strip()


def record_failure(state: PipelineState, store: Any, node: str, exc: Exception) -> None:
    message = f"{node} error: {exc}"
    add_error(state, message)
    state["status"] = "ERROR"
    state["next_action"] = "failed"
    try:
        store.fail(state["tenant_id"], state["project_id"], message)
    except Exception as store_exc:  # noqa: BLE001
        logger.warning("Could not record failure for project {}: {}", state.get("project_id"), store_exc)
