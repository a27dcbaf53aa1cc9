from __future__ import annotations

import json
import re
from typing import Mapping, Sequence

from loguru import logger

from ... import aws, lifecycle
from ...config import SETTINGS
from ...models import Project, ScriptStep
from ...store import FileRegistry, ProjectStore, get_file_registry, get_project_store
from ..retry import retry_call
from ..state import PipelineState
from ..utils import (
    DEFAULT_AUDIO_DURATION_MS,
    bump_attempt,
    record_failure,
    strip_code_fences,
    synced_script_key,
)
from .script_node import read_file_text

STEP_META_PREFIX = "// __STEP_META__:"

IDENTIFIERS = (
    "username",
    "password",
    "email",
    "login",
    "submit",
    "checkout",
    "cart",
    "firstname",
    "lastname",
    "postalcode",
    "continue",
    "finish",
    "backpack",
    "inventory",
    "complete",
    "header",
)

SYNC_SYSTEM_PROMPT = """You annotate Playwright tests for narrated screen recordings.

For each manifest entry, in order, find the script line that performs its
code_action (match the action type such as goto, fill or click, plus key
identifiers such as username or submit) and insert the line

    // __STEP_META__: {"stepId": <step_id>, "audioDuration": <audioDuration>}

immediately before it, using the same indentation. Skip manifest entries that
match no line and never annotate lines without a manifest entry. Keep all
original code exactly as-is. Return ONLY the annotated TypeScript code."""

_ACTION_TYPE = re.compile(r"\.(goto|fill|click|type|press|check|uncheck|select|hover|focus)\s*\(", re.IGNORECASE)
_EXPECT_TYPE = re.compile(r"expect.*\.(toHaveURL|toHaveText|toBeVisible|toContain)", re.IGNORECASE)


def step_meta(step_id: int, duration_ms: int) -> str:
    return f"{STEP_META_PREFIX} {json.dumps({'stepId': step_id, 'audioDuration': duration_ms})}"


def extract_action_keys(code: str) -> list[str]:
    """Action type first, then any known identifiers the call mentions."""
    keys: list[str] = []
    action = _ACTION_TYPE.search(code)
    if action:
        keys.append(action.group(1).lower())
    assertion = _EXPECT_TYPE.search(code)
    if assertion:
        keys.extend(["expect", assertion.group(1).lower()])
    lowered = code.lower()
    keys.extend(identifier for identifier in IDENTIFIERS if identifier in lowered)
    return keys


def line_matches_action(line: str, code_action: str) -> bool:
    action_keys = extract_action_keys(code_action)
    line_keys = extract_action_keys(line)
    if not action_keys or not line_keys:
        return False
    if action_keys[0] not in line_keys:
        return False
    wanted = action_keys[1:]
    if not wanted:
        return True
    return any(key in line_keys[1:] for key in wanted)


def _duration(duration_map: Mapping[int, int], step_id: int) -> int:
    return int(duration_map.get(step_id) or DEFAULT_AUDIO_DURATION_MS)


def annotate_script(script: str, duration_map: Mapping[int, int], manifest: Sequence[ScriptStep]) -> str:
    """Insert a step marker before the first unmatched line performing each step."""
    ordered = sorted(manifest, key=lambda step: step.step_id)
    matched: set[int] = set()
    lines: list[str] = []
    for line in script.split("\n"):
        stripped = line.strip()
        if stripped.startswith("await page.") or stripped.startswith("await expect"):
            for step in ordered:
                if step.step_id in matched:
                    continue
                if line_matches_action(stripped, step.code_action):
                    indent = line[: len(line) - len(line.lstrip())] or "  "
                    lines.append(f"{indent}{step_meta(step.step_id, _duration(duration_map, step.step_id))}")
                    matched.add(step.step_id)
                    break
        lines.append(line)
    return "\n".join(lines)


def render_manifest_script(duration_map: Mapping[int, int], manifest: Sequence[ScriptStep], project_id: str) -> str:
    """Build a standalone Playwright test that replays the manifest actions."""
    blocks: list[str] = []
    for step in manifest:
        action = step.code_action.strip()
        if "page." not in action and "expect" not in action:
            continue
        if not action.startswith("await"):
            action = f"await {action}"
        blocks.append(f"  {step_meta(step.step_id, _duration(duration_map, step.step_id))}\n  {action.rstrip(';')};")
    body = "\n\n".join(blocks)
    return (
        "import { test, expect } from '@playwright/test';\n"
        "\n"
        f"// Synchronized recording script for project {project_id}.\n"
        "// Each step marker precedes the action its narration belongs to.\n"
        "\n"
        f"test('Synchronized Video Recording - Project {project_id}', async ({{ page }}) => {{\n"
        "  await page.setViewportSize({ width: 1920, height: 1080 });\n"
        "\n"
        f"{body}\n"
        "\n"
        "  await page.waitForTimeout(2000);\n"
        "});\n"
    )


def build_synced_script(
    original: str | None,
    duration_map: Mapping[int, int],
    manifest: Sequence[ScriptStep],
    project_id: str,
) -> str:
    if original and original.strip():
        return annotate_script(original, duration_map, manifest)
    return render_manifest_script(duration_map, manifest, project_id)


def _bedrock_sync(original: str, duration_map: Mapping[int, int], manifest: Sequence[ScriptStep]) -> str:
    entries = [
        {
            "step_id": step.step_id,
            "code_action": step.code_action,
            "audioDuration": _duration(duration_map, step.step_id),
            "narration_preview": step.narration[:50],
        }
        for step in sorted(manifest, key=lambda s: s.step_id)
    ]
    prompt = (
        f"ORIGINAL_SCRIPT:\n```typescript\n{original}\n```\n\n"
        f"MANIFEST:\n{json.dumps(entries, indent=2)}\n\n"
        "Return ONLY the annotated TypeScript code."
    )
    text = retry_call("bedrock_sync", lambda: aws.invoke_claude(SYNC_SYSTEM_PROMPT, prompt, max_tokens=8192))
    script = strip_code_fences(text)
    if STEP_META_PREFIX not in script:
        raise ValueError("model response contains no step markers")
    return script


def original_script(registry: FileRegistry, project: Project) -> str | None:
    for file_id in project.selected_files:
        item = registry.get_file(project.tenant_id, file_id)
        if item is not None and item.type == "playwright":
            content = read_file_text(item)
            if content:
                return content
    return None


def synchronize_script(
    store: ProjectStore,
    registry: FileRegistry,
    tenant_id: str,
    project_id: str,
) -> Project:
    project = store.mutate(tenant_id, project_id, lifecycle.start_sync)
    try:
        duration_map = project.duration_map or {}
        manifest = project.manifest or []
        original = original_script(registry, project)

        script = ""
        if original and not SETTINGS.use_mock_bedrock:
            try:
                script = _bedrock_sync(original, duration_map, manifest)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Bedrock sync failed, annotating locally: {}", exc)
        if not script:
            script = build_synced_script(original, duration_map, manifest, project_id)

        key = synced_script_key(tenant_id, project_id)
        if SETTINGS.s3_bucket:
            retry_call(
                f"put_synced_script:{project_id}",
                lambda: aws.client("s3").put_object(
                    Bucket=SETTINGS.s3_bucket,
                    Key=key,
                    Body=script.encode("utf-8"),
                    ContentType="text/typescript",
                ),
            )
        logger.info("Project {}: synced script written to {}", project_id, key)
        return store.save(lifecycle.finish_sync(project, key))
    except Exception as exc:
        store.fail(tenant_id, project_id, f"Script synchronization failed: {exc}")
        raise lifecycle.StageError(str(exc)) from exc


def script_synchronizer(state: PipelineState) -> PipelineState:
    state = dict(state)
    bump_attempt(state, "script_synchronizer")
    store = get_project_store()

    try:
        project = synchronize_script(store, get_file_registry(), state["tenant_id"], state["project_id"])
        state["status"] = project.status.value
        state["next_action"] = "render_video"
    except Exception as exc:  # noqa: BLE001
        record_failure(state, store, "script_synchronizer", exc)
    return state
