"""Pydantic schemas for pipeline requests, scene descriptions and run snapshots."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from promopipe.orchestrator.state import RunStage

Platform = Literal["youtube", "instagram", "tiktok"]


class SubjectAttributes(BaseModel):
    """The vehicle being advertised."""

    make: str
    model: str
    year: Optional[int] = None
    vehicle_type: Optional[str] = None
    features: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        parts = [str(self.year) if self.year else None, self.make, self.model]
        return " ".join(p for p in parts if p)


class SceneDescription(BaseModel):
    scene_number: int = Field(ge=1)
    description: str
    camera_movement: str
    mood: str
    duration: int
    key_elements: list[str] = Field(default_factory=list)


class SceneDescriptionSet(BaseModel):
    """Structured output expected from the description model."""

    scenes: list[SceneDescription]


class PipelineRequest(BaseModel):
    """Input accepted by ``submit_pipeline``."""

    subject: SubjectAttributes
    marketing_idea: str = Field(min_length=1, max_length=2000)
    image_urls: list[str] = Field(min_length=1)
    style: Optional[str] = None
    platform: Optional[Platform] = None
    music_theme: Optional[str] = None
    # Scene number -> replacement description
    custom_prompts: dict[int, str] = Field(default_factory=dict)


class RunError(BaseModel):
    type: str
    message: str
    stage: Optional[str] = None


class PipelineRun(BaseModel):
    """Snapshot of one end-to-end run, as published to the status cache."""

    run_id: str
    owner_id: str
    stage: RunStage = RunStage.QUEUED
    progress: int = 0
    current_step: str = ""
    platform: Platform = "instagram"
    scenes: list[SceneDescription] = Field(default_factory=list)
    clip_urls: list[str] = Field(default_factory=list)
    audio_url: Optional[str] = None
    final_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[RunError] = None
    created_at: float
    updated_at: float
    completed_at: Optional[float] = None
