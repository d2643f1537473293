"""Compilation stage: turn downloaded clips and music into the final video."""

import logging
from pathlib import Path

from promopipe.orchestrator.failures import ArtifactLedger
from promopipe.pipeline.compiler import MediaCompiler
from promopipe.pipeline.payloads import CompilePayload, load_payload
from promopipe.queue import Job, JobContext
from promopipe.services.file_manager import FileManager

logger = logging.getLogger(__name__)


async def compile_video(
    job: Job,
    ctx: JobContext,
    *,
    compiler: MediaCompiler,
    file_manager: FileManager,
    ledger: ArtifactLedger,
    heartbeat_interval: float = 10.0,
) -> dict:
    payload = load_payload(CompilePayload, job.payload)
    ctx.raise_if_cancelled()

    clips = sorted(payload.clips, key=lambda c: c.scene_index)
    output = file_manager.output_path(payload.run_id)
    ledger.record(payload.run_id, output)
    ledger.record(payload.run_id, output.with_suffix(".jpg"))

    compiled = await ctx.keepalive(
        compiler.compile(
            [Path(c.local_path) for c in clips],
            [c.duration for c in clips],
            output,
            platform=payload.platform,
            audio=Path(payload.audio_path) if payload.audio_path else None,
            transition_seconds=payload.transition_seconds,
            on_progress=ctx.report_progress,
        ),
        interval=heartbeat_interval,
    )
    logger.info(f"Run {payload.run_id}: compiled {len(clips)} clips for {payload.platform}")
    return {
        "video_path": str(compiled.video_path),
        "thumbnail_path": str(compiled.thumbnail_path),
        "duration": compiled.duration,
    }
