from .state import NextAction, PipelineState

__all__ = ["NextAction", "PipelineState"]
