"""fal.ai queue client for image-to-video clip generation.

Usage:
    service = FalVideoService(api_key=settings.services.fal_api_key)
    op_id = await service.submit(build_clip_request(image_url, scene, aspect_ratio="9:16"))
    status = await service.get_status(op_id)
"""

import logging
import random
from typing import Any

from promopipe.errors import ExternalServiceError
from promopipe.schemas.pipeline import SceneDescription
from promopipe.services.generation import (
    HttpGenerationClient,
    OperationStatus,
    normalize_progress,
    normalize_status,
)

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 500

_PROMPT_SUFFIX = (
    "High quality automotive commercial style, professional lighting, "
    "cinematic composition, smooth motion, 4K quality."
)


def build_clip_prompt(scene: SceneDescription) -> str:
    """Fold camera movement and mood into the prompt, capped at 500 characters."""
    prompt = (
        f"{scene.description.rstrip('.')}. Camera movement: {scene.camera_movement}. "
        f"Mood: {scene.mood}. {_PROMPT_SUFFIX}"
    )
    if len(prompt) > MAX_PROMPT_LENGTH:
        prompt = prompt[: MAX_PROMPT_LENGTH - 3] + "..."
    return prompt


def build_clip_request(
    image_url: str,
    scene: SceneDescription,
    *,
    aspect_ratio: str = "9:16",
    mode: str = "std",
) -> dict[str, Any]:
    return {
        "image_url": image_url,
        "prompt": build_clip_prompt(scene),
        "duration": str(scene.duration),
        "aspect_ratio": aspect_ratio,
        "mode": mode,
        "cfg_scale": 0.5,
        "seed": random.randint(0, 999_999),
    }


class FalVideoService(HttpGenerationClient):
    """Image-to-video generation through the fal.ai request queue."""

    name = "fal.ai"
    auth_scheme = "Key"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://queue.fal.run",
        model: str = "fal-ai/kling-video/v1/standard/image-to-video",
        **kwargs,
    ):
        super().__init__(base_url, api_key, **kwargs)
        self.model = model.strip("/")

    async def submit(self, request: dict[str, Any]) -> str:
        data = await self._request("POST", f"/{self.model}", json=request)
        request_id = data.get("request_id") or data.get("id")
        if not request_id:
            raise ExternalServiceError(f"{self.name} returned no request id: {data}")
        logger.info("fal.ai request queued: %s", request_id)
        return str(request_id)

    async def get_status(self, operation_id: str) -> OperationStatus:
        data = await self._request("GET", f"/{self.model}/requests/{operation_id}/status")
        raw_status = data.get("status")
        status = normalize_status(raw_status)
        logger.debug("fal.ai %s: raw_status=%r -> %s", operation_id, raw_status, status)

        if status == "failed":
            error = data.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return OperationStatus(status="failed", error=error or f"fal.ai request {raw_status}")

        if status == "running":
            return OperationStatus(status="running", progress=normalize_progress(data.get("progress")))

        result = await self._request("GET", f"/{self.model}/requests/{operation_id}")
        video = result.get("video") or (result.get("data") or {}).get("video") or {}
        url = video.get("url") if isinstance(video, dict) else None
        if not url:
            return OperationStatus(status="failed", error="No video URL in fal.ai response")
        return OperationStatus(status="completed", progress=1.0, result_url=url)
