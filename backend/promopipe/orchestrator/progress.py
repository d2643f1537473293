"""Progress bands for a pipeline run and the monotonic merge.

Each stage owns a band of the 0-100 range:

    generating_scenes   0 -> 20
    generating_clips   20 -> 70   (mean of the per-clip fractions)
    generating_music   70 -> 85
    compiling          85 -> 95
    uploading          95
    completed         100

Music runs concurrently with the clips; its fraction is remembered and
applied once the run enters ``generating_music``. A value lower than the
current progress is discarded, and 100 is reserved for ``completed``.
"""

import math
from typing import Optional

from promopipe.orchestrator.state import RunStage

STAGE_BANDS: dict[RunStage, tuple[int, int]] = {
    RunStage.QUEUED: (0, 0),
    RunStage.GENERATING_SCENES: (0, 20),
    RunStage.GENERATING_CLIPS: (20, 70),
    RunStage.GENERATING_MUSIC: (70, 85),
    RunStage.COMPILING: (85, 95),
    RunStage.UPLOADING: (95, 95),
    RunStage.COMPLETED: (100, 100),
}

# Job kind -> stage whose band it drives
KIND_STAGES = {
    "scenes": RunStage.GENERATING_SCENES,
    "clip": RunStage.GENERATING_CLIPS,
    "music": RunStage.GENERATING_MUSIC,
    "compile": RunStage.COMPILING,
}


def band_value(stage: RunStage, fraction: float) -> float:
    start, end = STAGE_BANDS[stage]
    fraction = min(max(fraction, 0.0), 1.0)
    return start + (end - start) * fraction


class ProgressTracker:
    """Tracks per-job fractions for one run and merges them into an int."""

    def __init__(self, weighting: str = "linear"):
        self.weighting = weighting
        self.stage = RunStage.QUEUED
        self.progress = 0
        self._fractions: dict[str, float] = {}
        self._clips: list[float] = []
        self._clip_weights: list[float] = []

    def set_clips(self, durations: list[float]) -> None:
        self._clips = [0.0] * len(durations)
        if self.weighting == "duration" and sum(durations) > 0:
            total = float(sum(durations))
            self._clip_weights = [d / total for d in durations]
        else:
            self._clip_weights = [1.0 / len(durations)] * len(durations) if durations else []

    def _clip_fraction(self) -> float:
        return sum(f * w for f, w in zip(self._clips, self._clip_weights))

    def _stage_fraction(self, stage: RunStage) -> float:
        if stage == RunStage.GENERATING_CLIPS:
            return self._clip_fraction()
        for kind, kind_stage in KIND_STAGES.items():
            if kind_stage == stage:
                return self._fractions.get(kind, 0.0)
        return 0.0

    def _merge(self, candidate: float) -> Optional[int]:
        value = int(math.floor(candidate))
        if self.stage != RunStage.COMPLETED:
            value = min(value, 99)
        if value <= self.progress:
            return None
        self.progress = value
        return value

    def enter(self, stage: RunStage) -> int:
        """Move to ``stage`` and return the merged progress."""
        self.stage = stage
        if stage in STAGE_BANDS:
            self._merge(band_value(stage, self._stage_fraction(stage)))
        return self.progress

    def update(self, kind: str, fraction: float, index: Optional[int] = None) -> Optional[int]:
        """Record a job's fraction; return the new progress if it increased."""
        fraction = min(max(float(fraction), 0.0), 1.0)
        if kind == "clip":
            if index is None or not 0 <= index < len(self._clips):
                return None
            self._clips[index] = max(self._clips[index], fraction)
        else:
            self._fractions[kind] = max(self._fractions.get(kind, 0.0), fraction)

        stage = KIND_STAGES.get(kind)
        if stage is None or stage != self.stage:
            return None
        return self._merge(band_value(stage, self._stage_fraction(stage)))
