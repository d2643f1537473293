"""Validated job payloads for the four stage queues."""

from typing import Any, Optional, TypeVar

import pydantic
from pydantic import BaseModel, Field

from promopipe.errors import ValidationError
from promopipe.schemas.pipeline import Platform, SceneDescription, SubjectAttributes

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class ScenePayload(BaseModel):
    run_id: str
    subject: SubjectAttributes
    marketing_idea: str
    scene_count: int = 3
    style: Optional[str] = None
    custom_prompts: dict[int, str] = Field(default_factory=dict)


class ClipPayload(BaseModel):
    run_id: str
    scene_index: int = Field(ge=0)
    scene: SceneDescription
    image_url: str
    aspect_ratio: str = "9:16"


class MusicPayload(BaseModel):
    run_id: str
    subject: SubjectAttributes
    scenes: list[SceneDescription]
    duration: int = Field(gt=0)
    theme: Optional[str] = None


class ClipArtifact(BaseModel):
    scene_index: int
    clip_url: str
    local_path: str
    duration: float


class CompilePayload(BaseModel):
    run_id: str
    clips: list[ClipArtifact] = Field(min_length=1)
    audio_path: Optional[str] = None
    platform: Platform = "instagram"
    transition_seconds: float = 0.5


def load_payload(model: type[PayloadT], payload: dict[str, Any]) -> PayloadT:
    """Validate a raw job payload, mapping schema errors to ``ValidationError``."""
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e.error_count()} error(s): {e}") from e
