"""State machine constants and transition logic for pipeline runs.

A run moves strictly forward through the stages below; any stage may fail,
and any non-terminal stage may be cancelled.
"""

from enum import Enum


class RunStage(str, Enum):
    QUEUED = "queued"
    GENERATING_SCENES = "generating_scenes"
    GENERATING_CLIPS = "generating_clips"
    GENERATING_MUSIC = "generating_music"
    COMPILING = "compiling"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_DESCRIPTIONS = {
    RunStage.QUEUED: "Waiting to start",
    RunStage.GENERATING_SCENES: "Generating scene descriptions",
    RunStage.GENERATING_CLIPS: "Generating video clips",
    RunStage.GENERATING_MUSIC: "Generating background music",
    RunStage.COMPILING: "Compiling final video",
    RunStage.UPLOADING: "Uploading video",
    RunStage.COMPLETED: "Video ready",
    RunStage.FAILED: "Pipeline failed",
    RunStage.CANCELLED: "Pipeline cancelled",
}

# Forward transitions for active stages
STEP_TRANSITIONS = {
    RunStage.QUEUED: RunStage.GENERATING_SCENES,
    RunStage.GENERATING_SCENES: RunStage.GENERATING_CLIPS,
    RunStage.GENERATING_CLIPS: RunStage.GENERATING_MUSIC,
    RunStage.GENERATING_MUSIC: RunStage.COMPILING,
    RunStage.COMPILING: RunStage.UPLOADING,
    RunStage.UPLOADING: RunStage.COMPLETED,
}

TERMINAL_STAGES = frozenset({RunStage.COMPLETED, RunStage.FAILED, RunStage.CANCELLED})


def is_terminal(stage: RunStage) -> bool:
    return stage in TERMINAL_STAGES


def can_transition(current: RunStage, target: RunStage) -> bool:
    """Check whether ``current -> target`` is a legal transition.

    Args:
        current: Stage the run is in
        target: Requested next stage

    Returns:
        True for the single forward step, for failing from any non-terminal
        stage, and for cancelling a non-terminal stage.
    """
    if is_terminal(current):
        return False
    if target in (RunStage.FAILED, RunStage.CANCELLED):
        return True
    return STEP_TRANSITIONS.get(current) == target
