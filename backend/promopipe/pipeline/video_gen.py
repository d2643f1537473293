"""Clip-generation stage: one image-to-video operation per scene.

Submits the clip, polls the operation through ExternalTaskPoller,
records the local clip path with the run's artifact ledger before the
download starts and then streams the result to disk.

Usage:
    handler = functools.partial(generate_clip, service=fal, file_manager=fm, ledger=ledger)
    registry.process(VIDEO_QUEUE, handler)
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable

from promopipe.clock import Clock, system_clock
from promopipe.orchestrator.failures import ArtifactLedger
from promopipe.pipeline.payloads import ClipPayload, load_payload
from promopipe.pipeline.poller import ExternalTaskPoller
from promopipe.queue import Job, JobContext
from promopipe.services.fal_client import build_clip_request
from promopipe.services.file_manager import FileManager, download_file
from promopipe.services.generation import GenerationService

logger = logging.getLogger(__name__)

Downloader = Callable[[str, Path], Awaitable[Path]]


async def generate_clip(
    job: Job,
    ctx: JobContext,
    *,
    service: GenerationService,
    file_manager: FileManager,
    ledger: ArtifactLedger,
    clock: Clock = system_clock,
    poll_interval: float = 10.0,
    poll_max: int = 60,
    download: Downloader = download_file,
) -> dict:
    payload = load_payload(ClipPayload, job.payload)
    label = f"Clip {payload.scene_index + 1}"
    ctx.raise_if_cancelled()

    operation_id = await service.submit(
        build_clip_request(payload.image_url, payload.scene, aspect_ratio=payload.aspect_ratio)
    )
    logger.info(f"Run {payload.run_id}: {label} submitted as {operation_id}")

    poller = ExternalTaskPoller(
        service.get_status,
        clock=clock,
        on_progress=ctx.report_progress,
        is_cancelled=lambda: ctx.cancelled,
    )
    result = await poller.wait(operation_id, poll_interval, poll_max)
    clip_url = result.raise_for_state(label)

    dest = file_manager.clip_path(payload.run_id, payload.scene_index)
    ledger.record(payload.run_id, dest)
    ctx.raise_if_cancelled()
    await ctx.keepalive(download(clip_url, dest))

    logger.info(f"Run {payload.run_id}: {label} ready after {result.attempts} poll(s)")
    return {
        "scene_index": payload.scene_index,
        "clip_url": clip_url,
        "local_path": str(dest),
        "duration": float(payload.scene.duration),
        "operation_id": operation_id,
    }
