"""Scene description generation through the LLM adapter layer."""

import logging

from promopipe.schemas.pipeline import (
    SceneDescription,
    SceneDescriptionSet,
    SubjectAttributes,
)
from promopipe.services.llm import LLMAdapter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a creative director specializing in automotive video marketing."

STYLE_MODIFIERS = {
    "cinematic": "with cinematic lighting and epic camera movements",
    "documentary": "with realistic, documentary-style presentation",
    "artistic": "with artistic composition and creative visual elements",
    "commercial": "with professional commercial photography style",
    "lifestyle": "with lifestyle-focused, relatable presentation",
    "luxury": "with premium, sophisticated visual treatment",
    "sporty": "with dynamic, high-energy visual style",
    "minimalist": "with clean, minimalist aesthetic",
}


def build_scene_prompt(subject: SubjectAttributes, idea: str, scene_count: int) -> str:
    features = f"\nNotable features: {', '.join(subject.features)}" if subject.features else ""
    return (
        f"Create {scene_count} video scenes (10 seconds each) for a {subject.label} "
        f'based on this marketing idea: "{idea}"{features}\n\n'
        "For each scene provide:\n"
        f"1. scene_number (1-{scene_count})\n"
        "2. description: a visual description of 20-60 words\n"
        "3. camera_movement\n"
        "4. mood\n"
        "5. duration in seconds, between 5 and 15\n"
        "6. key_elements to highlight\n\n"
        "Make it cinematic and engaging for a short social media video. "
        'Return JSON of the form {"scenes": [...]}.'
    )


def apply_style(description: str, style: str | None) -> str:
    modifier = STYLE_MODIFIERS.get(style or "")
    if modifier:
        return f"{description} {modifier}"
    return description


class SceneDescriber:
    """Turns a vehicle and a marketing idea into structured scene descriptions.

    The describer returns whatever the model produced; enforcing the scene
    count and field constraints is the scene-generation stage's job.
    """

    def __init__(self, adapter: LLMAdapter, *, temperature: float = 0.8):
        self.adapter = adapter
        self.temperature = temperature

    async def describe(
        self, subject: SubjectAttributes, idea: str, scene_count: int = 3
    ) -> list[SceneDescription]:
        result = await self.adapter.generate_text(
            build_scene_prompt(subject, idea, scene_count),
            SceneDescriptionSet,
            temperature=self.temperature,
            system_prompt=SYSTEM_PROMPT,
        )
        logger.info(f"Generated {len(result.scenes)} scene(s) for {subject.label}")
        return list(result.scenes)
