from __future__ import annotations

from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, StateGraph

from .nodes import (
    audio_generator,
    human_review,
    script_generator,
    script_synchronizer,
    video_renderer,
)
from .state import PipelineState


def build_graph(checkpointer: MemorySaver | None = None):
    workflow = StateGraph(PipelineState)
    workflow.add_node("script_generator", script_generator)
    workflow.add_node("human_review", human_review)
    workflow.add_node("audio_generator", audio_generator)
    workflow.add_node("script_synchronizer", script_synchronizer)
    workflow.add_node("video_renderer", video_renderer)

    workflow.set_entry_point("script_generator")

    workflow.add_conditional_edges(
        "script_generator",
        lambda s: s.get("next_action", "failed"),
        {"human_review": "human_review", "failed": END},
    )
    workflow.add_conditional_edges(
        "human_review",
        lambda s: s.get("next_action", "failed"),
        {"generate_audio": "audio_generator", "failed": END},
    )
    workflow.add_conditional_edges(
        "audio_generator",
        lambda s: s.get("next_action", "failed"),
        {"sync_script": "script_synchronizer", "failed": END},
    )
    workflow.add_conditional_edges(
        "script_synchronizer",
        lambda s: s.get("next_action", "failed"),
        {"render_video": "video_renderer", "failed": END},
    )
    workflow.add_conditional_edges(
        "video_renderer",
        lambda s: s.get("next_action", "failed"),
        {"complete": END, "failed": END},
    )
    return workflow.compile(checkpointer=checkpointer or MemorySaver())
