"""Music-generation stage: one themed background track per run."""

import logging

from promopipe.clock import Clock, system_clock
from promopipe.orchestrator.failures import ArtifactLedger
from promopipe.pipeline.payloads import MusicPayload, load_payload
from promopipe.pipeline.poller import ExternalTaskPoller
from promopipe.pipeline.video_gen import Downloader
from promopipe.queue import Job, JobContext
from promopipe.services.file_manager import FileManager, download_file
from promopipe.services.generation import GenerationService
from promopipe.services.sonauto_client import build_music_request, select_theme

logger = logging.getLogger(__name__)


async def generate_music(
    job: Job,
    ctx: JobContext,
    *,
    service: GenerationService,
    file_manager: FileManager,
    ledger: ArtifactLedger,
    clock: Clock = system_clock,
    poll_interval: float = 5.0,
    poll_max: int = 60,
    download: Downloader = download_file,
) -> dict:
    payload = load_payload(MusicPayload, job.payload)
    ctx.raise_if_cancelled()

    theme = select_theme(payload.subject, payload.scenes, payload.theme)
    operation_id = await service.submit(
        build_music_request(
            payload.subject, payload.scenes, duration=payload.duration, theme=payload.theme,
        )
    )
    logger.info(f"Run {payload.run_id}: music submitted as {operation_id} ({theme.name})")

    poller = ExternalTaskPoller(
        service.get_status,
        clock=clock,
        on_progress=ctx.report_progress,
        is_cancelled=lambda: ctx.cancelled,
    )
    result = await poller.wait(operation_id, poll_interval, poll_max)
    audio_url = result.raise_for_state("Music track")

    dest = file_manager.audio_path(payload.run_id)
    ledger.record(payload.run_id, dest)
    ctx.raise_if_cancelled()
    await ctx.keepalive(download(audio_url, dest))

    return {
        "audio_url": audio_url,
        "local_path": str(dest),
        "theme": theme.name,
        "operation_id": operation_id,
    }
