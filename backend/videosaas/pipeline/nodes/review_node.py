from __future__ import annotations

from langgraph.types import interrupt

from ...status import ProjectStatus
from ...store import get_project_store
from ..state import PipelineState
from ..utils import bump_attempt, record_failure


def human_review(state: PipelineState) -> PipelineState:
    state = dict(state)
    bump_attempt(state, "human_review")
    store = get_project_store()

    payload = {
        "message": "Review required",
        "project_id": state.get("project_id", ""),
        "task_token": state.get("task_token", ""),
    }
    feedback = interrupt(payload)
    if isinstance(feedback, dict):
        state["review"] = dict(feedback)

    try:
        project = store.get(state["tenant_id"], state["project_id"])
    except Exception as exc:  # noqa: BLE001
        record_failure(state, store, "human_review", exc)
        return state

    if project.status != ProjectStatus.APPROVED:
        record_failure(
            state,
            store,
            "human_review",
            RuntimeError(f"review resumed while project is {project.status.value}"),
        )
        return state

    state["status"] = project.status.value
    state["next_action"] = "generate_audio"
    return state
