from .audio_node import audio_generator
from .review_node import human_review
from .script_node import script_generator
from .sync_node import script_synchronizer
from .video_node import video_renderer

__all__ = [
    "audio_generator",
    "human_review",
    "script_generator",
    "script_synchronizer",
    "video_renderer",
]
