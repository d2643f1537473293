"""Sonauto client for background music generation with automotive themes."""

import logging
from typing import Any, Optional

from pydantic import BaseModel

from promopipe.errors import ExternalServiceError
from promopipe.schemas.pipeline import SceneDescription, SubjectAttributes
from promopipe.services.generation import (
    HttpGenerationClient,
    OperationStatus,
    normalize_progress,
    normalize_status,
)

logger = logging.getLogger(__name__)


class MusicTheme(BaseModel):
    name: str
    prompt: str
    style: str
    mood: str
    tempo: str
    energy: str


MUSIC_THEMES: dict[str, MusicTheme] = {
    "luxury": MusicTheme(
        name="Luxury",
        prompt="Sophisticated, elegant instrumental music for luxury car commercial",
        style="orchestral, ambient",
        mood="sophisticated, premium",
        tempo="medium",
        energy="medium",
    ),
    "sporty": MusicTheme(
        name="Sporty",
        prompt="Energetic, driving music for sports car advertisement",
        style="electronic, rock",
        mood="exciting, powerful",
        tempo="fast",
        energy="high",
    ),
    "family": MusicTheme(
        name="Family",
        prompt="Warm, friendly music for family vehicle commercial",
        style="acoustic, pop",
        mood="warm, reliable",
        tempo="medium",
        energy="medium",
    ),
    "adventure": MusicTheme(
        name="Adventure",
        prompt="Epic, adventurous music for SUV or truck commercial",
        style="cinematic, orchestral",
        mood="adventurous, bold",
        tempo="medium",
        energy="high",
    ),
    "eco": MusicTheme(
        name="Eco-Friendly",
        prompt="Clean, modern music for electric or hybrid vehicle",
        style="ambient, electronic",
        mood="clean, futuristic",
        tempo="medium",
        energy="medium",
    ),
}

# Checked in order against "<make> <model> <vehicle_type>"
_THEME_KEYWORDS = [
    ("luxury", ("luxury", "mercedes", "bmw", "audi", "lexus")),
    ("sporty", ("sport", "ferrari", "porsche", "corvette", "coupe")),
    ("adventure", ("suv", "truck", "jeep", "4x4", "pickup")),
    ("eco", ("electric", "hybrid", "tesla", "prius", "ev")),
]


def select_theme(
    subject: SubjectAttributes,
    scenes: list[SceneDescription],
    requested: Optional[str] = None,
) -> MusicTheme:
    """Pick a theme from an explicit request, the vehicle, then the scene moods."""
    if requested and requested in MUSIC_THEMES:
        return MUSIC_THEMES[requested]

    haystack = " ".join(
        p for p in (subject.make, subject.model, subject.vehicle_type) if p
    ).lower()
    words = set(haystack.split())
    for theme, keywords in _THEME_KEYWORDS:
        if any(kw in words or (len(kw) > 3 and kw in haystack) for kw in keywords):
            return MUSIC_THEMES[theme]

    moods = [scene.mood.lower() for scene in scenes]
    if any("exciting" in m or "dynamic" in m for m in moods):
        return MUSIC_THEMES["sporty"]
    if any("elegant" in m or "sophisticated" in m for m in moods):
        return MUSIC_THEMES["luxury"]
    return MUSIC_THEMES["family"]


def build_music_prompt(
    theme: MusicTheme, subject: SubjectAttributes, scenes: list[SceneDescription]
) -> str:
    moods = ", ".join(scene.mood for scene in scenes)
    return (
        f"{theme.prompt} for {subject.label}. Scene moods: {moods}. "
        "Create background music that enhances the visual storytelling without "
        "overwhelming the video. Suitable for social media and automotive marketing."
    )


def build_music_request(
    subject: SubjectAttributes,
    scenes: list[SceneDescription],
    *,
    duration: int,
    theme: Optional[str] = None,
) -> dict[str, Any]:
    chosen = select_theme(subject, scenes, theme)
    logger.info("Music for %s: %ss %s track", subject.label, duration, chosen.name)
    return {
        "prompt": build_music_prompt(chosen, subject, scenes),
        "duration": duration,
        "style": chosen.style,
        "mood": chosen.mood,
        "genre": "commercial",
        "tempo": chosen.tempo,
        "energy_level": chosen.energy,
        "format": "mp3",
        "quality": "high",
    }


class SonautoMusicService(HttpGenerationClient):
    """Music generation through the Sonauto API."""

    name = "Sonauto"

    def __init__(self, api_key: str, *, base_url: str = "https://api.sonauto.ai/v1", **kwargs):
        super().__init__(base_url, api_key, **kwargs)

    async def submit(self, request: dict[str, Any]) -> str:
        data = await self._request("POST", "/generate", json=request)
        generation_id = data.get("id") or data.get("generation_id") or data.get("task_id")
        if not generation_id:
            raise ExternalServiceError(f"{self.name} returned no generation id: {data}")
        logger.info("Sonauto generation queued: %s", generation_id)
        return str(generation_id)

    async def get_status(self, operation_id: str) -> OperationStatus:
        data = await self._request("GET", f"/generations/{operation_id}")
        raw_status = data.get("status")
        status = normalize_status(raw_status)
        logger.debug("Sonauto %s: raw_status=%r -> %s", operation_id, raw_status, status)

        if status == "failed":
            error = data.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return OperationStatus(status="failed", error=error or f"Sonauto generation {raw_status}")

        progress = normalize_progress(data.get("progress"))
        if status == "running":
            return OperationStatus(status="running", progress=progress)

        url = data.get("audio_url") or data.get("download_url")
        if not url:
            return OperationStatus(status="failed", error="No audio URL in Sonauto response")
        return OperationStatus(status="completed", progress=1.0, result_url=url)
