from __future__ import annotations

import json
import re
from io import BytesIO
from typing import Any

from loguru import logger
from pypdf import PdfReader

from ... import aws, lifecycle
from ...config import SETTINGS
from ...models import FileItem, Project, ScriptStep
from ...store import FileRegistry, ProjectStore, get_file_registry, get_project_store
from ..retry import retry_call
from ..state import PipelineState
from ..utils import bump_attempt, record_failure

MAX_ACTIONS = 50
MAX_CONTEXT_CHARS = 8000

SYSTEM_PROMPT = """You write narration for screen-recorded software tutorials.

Given a Playwright test, produce exactly one manifest entry per user-facing
action (goto, click, fill, type, press, check, select, hover and expect
assertions), in the order the actions appear. Skip setup calls such as
setViewportSize, waitForTimeout and waitForLoadState.

Narrate like a friendly guide giving a live demo: short, conversational
sentences in the second person, one or two sentences per step. Do not narrate
page loads or other transitions that have no matching action.

Return ONLY a JSON array of objects with the keys step_id (1-based integer),
code_action (the Playwright call), narration and importance ("low" for setup
and navigation, "medium" for the main flow, "high" for critical actions and
verifications)."""

DEFAULT_ACTIONS = [
    "page.goto('https://www.saucedemo.com/')",
    "page.locator('[data-test=\"username\"]').fill('standard_user')",
    "page.locator('[data-test=\"password\"]').fill('secret_sauce')",
    "page.locator('[data-test=\"login-button\"]').click()",
    "expect(page).toHaveURL(/.*inventory.html/)",
]

_PAGE_ACTION = re.compile(r"await\s+page\.(goto|click|fill|type|press|check|uncheck|select|hover|focus|locator)\s*\(")
_EXPECT_ACTION = re.compile(r"await\s+expect\s*\(")
_SKIPPED = ("setviewportsize", "waitfortimeout")
_TRANSITIONS = ["Now", "Next", "Go ahead and", "Then", ""]

# First matching rule wins.
_NARRATION_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("username",), "Enter your username here."),
    (("password",), "Type in your password."),
    (("login-button",), "Click the login button to sign in."),
    (("add-to-cart", "add_to_cart"), "Add this item to your cart."),
    (("shopping_cart", "cart_link", "cart_icon"), "Click on the cart icon to see what you've added."),
    (("firstname", "first-name"), "Fill in your first name."),
    (("lastname", "last-name"), "Enter your last name."),
    (("postalcode", "postal-code", "zip"), "Add your postal code."),
    (("continue",), "Click continue to move forward."),
)


def extract_playwright_actions(code: str, limit: int = MAX_ACTIONS) -> list[str]:
    """Return user-facing Playwright calls in source order, without ``await``."""
    actions: list[str] = []
    for raw in code.splitlines():
        line = raw.strip()
        if not line or line.startswith("//") or line.startswith("/*"):
            continue
        if _PAGE_ACTION.search(line):
            match = re.search(r"await\s+(page\.[^;]+)", line)
        elif _EXPECT_ACTION.search(line):
            match = re.search(r"await\s+(expect\([^;]+)", line)
        else:
            continue
        if match:
            actions.append(re.sub(r";?\s*$", "", match.group(1)))
    return actions[:limit]


def _with_transition(text: str, index: int) -> str:
    transition = "Let's start by" if index == 0 else _TRANSITIONS[index % len(_TRANSITIONS)]
    if not transition:
        return text
    return f"{transition} {text[0].lower()}{text[1:]}"


def _narrate_assertion(lowered: str) -> str:
    if "tohaveurl" in lowered and "inventory" in lowered:
        return "Great, you should now see the inventory page."
    if "tohavetext" in lowered:
        if "thank you" in lowered or "complete" in lowered:
            return "And there's your confirmation! The order is complete."
        return "Notice how the text updates on screen."
    if "cart_badge" in lowered:
        return "You can see the cart has updated with your items."
    return "Take a moment to see the result."


def narrate_action(action: str, index: int) -> str:
    lowered = action.lower()
    if "goto" in lowered:
        if index == 0:
            return "Let's open up the application."
        if "inventory" in lowered:
            return _with_transition("Head over to the inventory page.", index)
        if "cart" in lowered:
            return _with_transition("Navigate to your cart.", index)
        if "checkout" in lowered:
            return _with_transition("Move on to the checkout page.", index)
        return _with_transition("Navigate to the next page.", index)

    if "click" in lowered and "login" in lowered:
        return _with_transition("Click the login button to sign in.", index)
    for needles, text in _NARRATION_RULES:
        if any(needle in lowered for needle in needles):
            return _with_transition(text, index)
    if "checkout" in lowered and "click" in lowered:
        return _with_transition("Proceed to checkout.", index)
    if "finish" in lowered:
        return "Perfect! Click finish to complete your order."

    if "expect" in lowered:
        return _narrate_assertion(lowered)

    for verb, text in (
        ("fill", "Fill in this field."),
        ("click", "Click here to continue."),
        ("select", "Select an option from the dropdown."),
        ("check", "Check this option."),
        ("type", "Type in the required information."),
    ):
        if verb in lowered:
            return _with_transition(text, index)
    return _with_transition("Complete this step.", index)


def _importance(index: int, total: int) -> str:
    if index < 2:
        return "low"
    if index > total - 3:
        return "high"
    return "medium"


def mock_manifest(actions: list[str]) -> list[ScriptStep]:
    steps = actions or DEFAULT_ACTIONS
    kept = [a for a in steps if not any(skip in a.lower() for skip in _SKIPPED)]
    return [
        ScriptStep(
            step_id=index + 1,
            code_action=action,
            narration=narrate_action(action, index),
            importance=_importance(index, len(kept)),
        )
        for index, action in enumerate(kept)
    ]


def parse_manifest(text: str) -> list[ScriptStep]:
    match = re.search(r"\[[\s\S]*\]", text)
    if not match:
        raise ValueError("No JSON array found in model response")
    raw: list[dict[str, Any]] = json.loads(match.group(0))
    return [ScriptStep.model_validate(item) for item in raw]


def _bedrock_manifest(user_prompt: str, context_docs: str, raw_script: str) -> list[ScriptStep]:
    prompt = (
        f'USER_PROMPT: "{user_prompt}"\n\n'
        f"CONTEXT_DOCS:\n{context_docs[:MAX_CONTEXT_CHARS]}\n\n"
        f"RAW_SCRIPT:\n```typescript\n{raw_script}\n```\n\n"
        "Return ONLY the JSON array."
    )
    text = retry_call("bedrock_manifest", lambda: aws.invoke_claude(SYSTEM_PROMPT, prompt))
    return parse_manifest(text)


def pdf_text(data: bytes) -> str:
    if not data.startswith(b"%PDF"):
        return data.decode("utf-8", errors="ignore")
    try:
        reader = PdfReader(BytesIO(data))
        return "\n".join((page.extract_text() or "") for page in reader.pages).strip()
    except Exception as exc:  # noqa: BLE001
        logger.warning("PDF text extraction failed, using raw bytes: {}", exc)
        return data.decode("utf-8", errors="ignore")


def read_file_text(item: FileItem) -> str:
    if not SETTINGS.s3_bucket:
        return ""
    try:
        data = aws.read_bytes(SETTINGS.s3_bucket, item.s3_key)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not read {}: {}", item.s3_key, exc)
        return ""
    if item.type == "pdf":
        return pdf_text(data)
    return data.decode("utf-8", errors="replace")


def collect_sources(registry: FileRegistry, project: Project) -> tuple[str, str]:
    """Return (guide text, Playwright script) for the project's selected files."""
    guides: list[str] = []
    scripts: list[str] = []
    for file_id in project.selected_files:
        item = registry.get_file(project.tenant_id, file_id)
        if item is None:
            logger.warning("Selected file {} not found for project {}", file_id, project.id)
            continue
        content = read_file_text(item)
        if not content:
            continue
        if item.type == "pdf":
            guides.append(f"--- {item.name} ---\n{content}")
        elif item.type == "playwright":
            scripts.append(content)
    return "\n\n".join(guides), "\n\n".join(scripts)


def generate_manifest(
    store: ProjectStore,
    registry: FileRegistry,
    tenant_id: str,
    project_id: str,
) -> Project:
    """Move the project to GENERATING and attach a narration manifest."""
    project = store.mutate(tenant_id, project_id, lifecycle.start_generation)
    try:
        guide, script = collect_sources(registry, project)
        actions = extract_playwright_actions(script)
        logger.info("Project {}: {} Playwright actions extracted", project_id, len(actions))

        manifest: list[ScriptStep] = []
        if not SETTINGS.use_mock_bedrock and script:
            try:
                manifest = _bedrock_manifest(project.user_prompt, guide, script)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Bedrock manifest failed, using canned narration: {}", exc)
        if not manifest:
            manifest = mock_manifest(actions)
        return store.save(lifecycle.attach_manifest(project, manifest))
    except Exception as exc:
        store.fail(tenant_id, project_id, f"Script generation failed: {exc}")
        raise lifecycle.StageError(str(exc)) from exc


def await_review(store: ProjectStore, tenant_id: str, project_id: str, task_token: str) -> Project:
    return store.mutate(tenant_id, project_id, lambda p: lifecycle.submit_for_review(p, task_token))


def script_generator(state: PipelineState) -> PipelineState:
    state = dict(state)
    bump_attempt(state, "script_generator")
    store = get_project_store()

    try:
        generate_manifest(store, get_file_registry(), state["tenant_id"], state["project_id"])
        project = await_review(store, state["tenant_id"], state["project_id"], state.get("task_token", ""))
        state["status"] = project.status.value
        state["next_action"] = "human_review"
    except Exception as exc:  # noqa: BLE001
        record_failure(state, store, "script_generator", exc)
    return state
