"""Project and video lifecycle states.

Both machines are declared as explicit transition tables. The tables are
checked for exhaustiveness at import time so a status added to an enum
without a matching entry fails loudly instead of silently becoming a dead end.
"""

from __future__ import annotations

from enum import Enum


class InvalidTransitionError(ValueError):
    def __init__(self, current: Enum, target: Enum, reason: str = "") -> None:
        message = f"illegal transition {current.value} -> {target.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target
        self.reason = reason


class ProjectStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    REVIEW = "REVIEW"
    APPROVED = "APPROVED"
    AUDIO_GENERATING = "AUDIO_GENERATING"
    AUDIO_COMPLETE = "AUDIO_COMPLETE"
    SYNCING = "SYNCING"
    RENDERING = "RENDERING"
    VIDEO_GENERATING = "VIDEO_GENERATING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return not PROJECT_TRANSITIONS[self]


class VideoStage(str, Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    PROCESSING = "PROCESSING"
    UPLOADING = "UPLOADING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return not VIDEO_TRANSITIONS[self]


PROJECT_FORWARD_ORDER: tuple[ProjectStatus, ...] = (
    ProjectStatus.DRAFT,
    ProjectStatus.GENERATING,
    ProjectStatus.REVIEW,
    ProjectStatus.APPROVED,
    ProjectStatus.AUDIO_GENERATING,
    ProjectStatus.AUDIO_COMPLETE,
    ProjectStatus.SYNCING,
    ProjectStatus.RENDERING,
    ProjectStatus.VIDEO_GENERATING,
    ProjectStatus.COMPLETE,
)

VIDEO_FORWARD_ORDER: tuple[VideoStage, ...] = (
    VideoStage.STARTING,
    VideoStage.RUNNING,
    VideoStage.PROCESSING,
    VideoStage.UPLOADING,
    VideoStage.COMPLETE,
)


def _project_table() -> dict[ProjectStatus, frozenset[ProjectStatus]]:
    table: dict[ProjectStatus, frozenset[ProjectStatus]] = {}
    for current, following in zip(PROJECT_FORWARD_ORDER, PROJECT_FORWARD_ORDER[1:]):
        table[current] = frozenset({following, ProjectStatus.ERROR})
    table[ProjectStatus.COMPLETE] = frozenset()
    table[ProjectStatus.ERROR] = frozenset()
    return table


def _video_table() -> dict[VideoStage, frozenset[VideoStage]]:
    # Forward skips are legal: the recorder may finish before a RUNNING poll lands.
    table: dict[VideoStage, frozenset[VideoStage]] = {}
    for idx, current in enumerate(VIDEO_FORWARD_ORDER[:-1]):
        table[current] = frozenset(VIDEO_FORWARD_ORDER[idx + 1 :]) | {VideoStage.ERROR}
    table[VideoStage.COMPLETE] = frozenset()
    table[VideoStage.ERROR] = frozenset()
    return table


PROJECT_TRANSITIONS = _project_table()
VIDEO_TRANSITIONS = _video_table()


def _check_exhaustive(enum_cls: type[Enum], table: dict) -> None:
    missing = [member.value for member in enum_cls if member not in table]
    if missing:
        raise RuntimeError(f"{enum_cls.__name__} transition table is missing {missing}")


_check_exhaustive(ProjectStatus, PROJECT_TRANSITIONS)
_check_exhaustive(VideoStage, VIDEO_TRANSITIONS)


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in PROJECT_TRANSITIONS[current]


def can_advance_video(current: VideoStage, target: VideoStage) -> bool:
    return target in VIDEO_TRANSITIONS[current]


def require_transition(current: ProjectStatus, target: ProjectStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def require_video_transition(current: VideoStage, target: VideoStage) -> None:
    if not can_advance_video(current, target):
        raise InvalidTransitionError(current, target)
