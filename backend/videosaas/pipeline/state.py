from __future__ import annotations

from typing import Any, Dict, List, Literal
from typing_extensions import TypedDict


NextAction = Literal[
    "human_review",
    "generate_audio",
    "sync_script",
    "render_video",
    "complete",
    "failed",
]


class PipelineState(TypedDict, total=False):
    tenant_id: str
    project_id: str
    task_token: str
    voice_id: str
    use_simple_recording: bool
    status: str
    next_action: NextAction
    errors: List[str]
    attempts: Dict[str, int]
    review: Dict[str, Any]
