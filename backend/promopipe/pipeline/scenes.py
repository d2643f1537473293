"""Scene-generation stage: structured scene descriptions from the LLM.

The stage enforces the scene count strictly. A model that returns two or
four scenes fails the job with ``ValidationError``, which is never retried,
so no clip or music work is ever started for a malformed storyboard.
"""

import logging

from promopipe.errors import ValidationError
from promopipe.pipeline.payloads import ScenePayload, load_payload
from promopipe.queue import Job, JobContext
from promopipe.schemas.pipeline import SceneDescription
from promopipe.services.scene_describer import SceneDescriber, apply_style

logger = logging.getLogger(__name__)

MIN_DURATION = 5
MAX_DURATION = 15


def validate_scenes(scenes: list[SceneDescription], expected: int) -> list[SceneDescription]:
    """Check count and per-scene fields, returning scenes ordered by number.

    Raises:
        ValidationError: Listing every problem found
    """
    if len(scenes) != expected:
        raise ValidationError(f"Expected exactly {expected} scenes, got {len(scenes)}")

    errors = []
    for i, scene in enumerate(scenes, start=1):
        if not scene.description.strip():
            errors.append(f"Scene {i}: missing description")
        if not scene.camera_movement.strip():
            errors.append(f"Scene {i}: missing camera movement")
        if not scene.mood.strip():
            errors.append(f"Scene {i}: missing mood")
        if not MIN_DURATION <= scene.duration <= MAX_DURATION:
            errors.append(
                f"Scene {i}: duration {scene.duration}s outside {MIN_DURATION}-{MAX_DURATION}s"
            )
    numbers = sorted(scene.scene_number for scene in scenes)
    if numbers != list(range(1, expected + 1)):
        errors.append(f"Scene numbers must be 1-{expected}, got {numbers}")
    if errors:
        raise ValidationError("Scene validation failed: " + "; ".join(errors))

    return sorted(scenes, key=lambda s: s.scene_number)


def customize_scenes(
    scenes: list[SceneDescription], style: str | None, custom_prompts: dict[int, str]
) -> list[SceneDescription]:
    """Apply per-scene custom descriptions, then the style modifier."""
    customized = []
    for scene in scenes:
        description = custom_prompts.get(scene.scene_number, scene.description)
        customized.append(
            scene.model_copy(update={"description": apply_style(description, style)})
        )
    return customized


async def generate_scenes(job: Job, ctx: JobContext, *, describer: SceneDescriber) -> dict:
    payload = load_payload(ScenePayload, job.payload)
    ctx.raise_if_cancelled()
    await ctx.report_progress(0.1)

    scenes = await ctx.keepalive(
        describer.describe(payload.subject, payload.marketing_idea, payload.scene_count)
    )
    ctx.raise_if_cancelled()
    scenes = validate_scenes(scenes, payload.scene_count)
    scenes = customize_scenes(scenes, payload.style, payload.custom_prompts)

    logger.info(f"Run {payload.run_id}: {len(scenes)} scenes ready")
    return {"scenes": [scene.model_dump() for scene in scenes]}
