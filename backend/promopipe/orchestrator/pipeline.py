"""Pipeline orchestrator driving a run through all stages.

    queued -> generating_scenes -> generating_clips -> generating_music
           -> compiling -> uploading -> completed

Any stage may fail; any non-terminal stage may be cancelled. Each stage's
work runs as jobs on the stage queues; the orchestrator only enqueues,
joins, and publishes run status. It is the single writer of a run's
status: job progress events are merged under the run's lock through the
ProgressTracker, so the published progress never decreases.

Usage:
    orchestrator = PipelineOrchestrator(registry, describer=..., ...)
    orchestrator.bind_workers()
    await registry.start()
    run_id = await orchestrator.submit_pipeline("owner-1", request)
    run = await orchestrator.wait(run_id)
"""

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import pydantic
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from promopipe.clock import Clock, system_clock
from promopipe.config import (
    COMPILE_QUEUE,
    MUSIC_QUEUE,
    SCENE_QUEUE,
    VIDEO_QUEUE,
    PipelineConfig,
)
from promopipe.errors import (
    JobCancelled,
    PermanentFailure,
    StorageError,
    ValidationError,
)
from promopipe.orchestrator.failures import ArtifactLedger
from promopipe.orchestrator.progress import ProgressTracker
from promopipe.orchestrator.state import (
    STAGE_DESCRIPTIONS,
    RunStage,
    can_transition,
    is_terminal,
)
from promopipe.pipeline.compile_step import compile_video
from promopipe.pipeline.compiler import MediaCompiler
from promopipe.pipeline.music_gen import generate_music
from promopipe.pipeline.payloads import (
    ClipArtifact,
    ClipPayload,
    CompilePayload,
    MusicPayload,
    ScenePayload,
)
from promopipe.pipeline.scenes import generate_scenes
from promopipe.pipeline.video_gen import generate_clip
from promopipe.queue import Job, JobRequest, JobState, QueueRegistry
from promopipe.schemas.pipeline import (
    PipelineRequest,
    PipelineRun,
    RunError,
    SceneDescription,
)
from promopipe.services.file_manager import FileManager, download_file
from promopipe.services.generation import GenerationService
from promopipe.services.object_store import ObjectStore
from promopipe.services.scene_describer import SceneDescriber
from promopipe.services.status_cache import StatusCache, status_key

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    run: PipelineRun
    request: PipelineRequest
    tracker: ProgressTracker
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    job_ids: list[str] = field(default_factory=list)
    cancel_requested: bool = False


class PipelineOrchestrator:
    def __init__(
        self,
        registry: QueueRegistry,
        *,
        describer: SceneDescriber,
        video_service: GenerationService,
        music_service: GenerationService,
        compiler: MediaCompiler,
        object_store: ObjectStore,
        status_cache: StatusCache,
        file_manager: FileManager,
        ledger: Optional[ArtifactLedger] = None,
        run_repository=None,
        clock: Clock = system_clock,
        config: Optional[PipelineConfig] = None,
        heartbeat_interval: float = 10.0,
        download=download_file,
    ):
        self.registry = registry
        self.describer = describer
        self.video_service = video_service
        self.music_service = music_service
        self.compiler = compiler
        self.object_store = object_store
        self.status_cache = status_cache
        self.file_manager = file_manager
        self.ledger = ledger or ArtifactLedger()
        self.run_repository = run_repository
        self.clock = clock
        self.config = config or PipelineConfig()
        self.heartbeat_interval = heartbeat_interval
        self.download = download

        self._runs: dict[str, _RunState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # job id -> (run id, job kind, scene index)
        self._job_runs: dict[str, tuple[str, str, Optional[int]]] = {}

        registry.on("progress", self._on_job_progress)
        registry.on("completed", self._on_job_completed)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind_workers(self) -> None:
        """Register the stage workers as handlers of the four stage queues."""
        cfg = self.config
        self.registry.process(
            SCENE_QUEUE, functools.partial(generate_scenes, describer=self.describer)
        )
        self.registry.process(
            VIDEO_QUEUE,
            functools.partial(
                generate_clip,
                service=self.video_service,
                file_manager=self.file_manager,
                ledger=self.ledger,
                clock=self.clock,
                poll_interval=cfg.video_poll_interval,
                poll_max=cfg.video_poll_max,
                download=self.download,
            ),
        )
        self.registry.process(
            MUSIC_QUEUE,
            functools.partial(
                generate_music,
                service=self.music_service,
                file_manager=self.file_manager,
                ledger=self.ledger,
                clock=self.clock,
                poll_interval=cfg.music_poll_interval,
                poll_max=cfg.music_poll_max,
                download=self.download,
            ),
        )
        self.registry.process(
            COMPILE_QUEUE,
            functools.partial(
                compile_video,
                compiler=self.compiler,
                file_manager=self.file_manager,
                ledger=self.ledger,
                heartbeat_interval=self.heartbeat_interval,
            ),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_pipeline(self, owner_id: str, request: PipelineRequest | dict[str, Any]) -> str:
        """Validate the request, publish a ``queued`` run and start driving it.

        Raises:
            ValidationError: Malformed request or too few images
        """
        if not isinstance(request, PipelineRequest):
            try:
                request = PipelineRequest.model_validate(request)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid pipeline request: {e}") from e
        if len(request.image_urls) < self.config.min_images:
            raise ValidationError(
                f"At least {self.config.min_images} image(s) required, got {len(request.image_urls)}"
            )

        run_id = uuid.uuid4().hex
        now = self.clock.now()
        run = PipelineRun(
            run_id=run_id,
            owner_id=owner_id,
            platform=request.platform or self.config.default_platform,
            current_step=STAGE_DESCRIPTIONS[RunStage.QUEUED],
            created_at=now,
            updated_at=now,
        )
        state = _RunState(
            run=run,
            request=request,
            tracker=ProgressTracker(self.config.clip_progress_weighting),
        )
        self._runs[run_id] = state
        async with state.lock:
            await self._publish(state)

        self._tasks[run_id] = asyncio.create_task(self._drive(state), name=f"run-{run_id}")
        logger.info(f"Run {run_id}: submitted by {owner_id} for {request.subject.label}")
        return run_id

    async def get_status(self, run_id: str) -> Optional[PipelineRun]:
        cached = await self.status_cache.get(status_key(run_id))
        if cached is not None:
            return PipelineRun.model_validate(cached)
        if self.run_repository is not None:
            return await self.run_repository.get(run_id)
        return None

    async def cancel_pipeline(self, run_id: str) -> bool:
        """Cancel a non-terminal run. Its jobs are cancelled and joined by the driver."""
        state = self._runs.get(run_id)
        if state is None or is_terminal(state.run.stage) or state.cancel_requested:
            return False
        state.cancel_requested = True
        logger.info(f"Run {run_id}: cancellation requested")
        for job_id in list(state.job_ids):
            await self.registry.cancel(job_id)
        return True

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for the run's driver to finish and return the final snapshot.

        A run that already finished is read back through get_status().
        """
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.shield(task)
        run = await self.get_status(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    async def recover(self) -> list[str]:
        """Close out work a previous process left unfinished.

        Its pending and active jobs are cancelled, every run they belonged
        to is published and persisted as failed, and leftover run
        directories are removed. Call before the registry starts. Returns
        the ids of the runs marked failed.
        """
        abandoned = await self.registry.abandon_unfinished()
        run_ids = sorted({job.payload["run_id"] for job in abandoned if job.payload.get("run_id")})
        failed = []
        for run_id in run_ids:
            run = await self.get_status(run_id)
            if run is None or is_terminal(run.stage):
                continue
            now = self.clock.now()
            run = run.model_copy(update={
                "stage": RunStage.FAILED,
                "current_step": STAGE_DESCRIPTIONS[RunStage.FAILED],
                "error": RunError(
                    type="PipelineError",
                    message="Run interrupted by a restart",
                    stage=run.stage.value,
                ),
                "updated_at": now,
                "completed_at": now,
            })
            await self.status_cache.set(
                status_key(run_id), run.model_dump(mode="json"), self.config.terminal_status_ttl
            )
            await self._persist(run)
            failed.append(run_id)
            logger.warning(f"Run {run_id}: interrupted by a restart, marked failed")

        removed = self.file_manager.remove_run_dirs()
        if removed:
            logger.info(f"Removed {len(removed)} leftover run directories")
        return failed

    async def close(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Status publication (single writer per run)
    # ------------------------------------------------------------------

    async def _publish(self, state: _RunState) -> None:
        run = state.run
        ttl = (
            self.config.terminal_status_ttl if is_terminal(run.stage)
            else self.config.active_status_ttl
        )
        await self.status_cache.set(status_key(run.run_id), run.model_dump(mode="json"), ttl)

    async def _advance(self, state: _RunState, stage: RunStage, error: Optional[RunError] = None) -> None:
        async with state.lock:
            run = state.run
            if not can_transition(run.stage, stage):
                raise RuntimeError(f"Illegal transition {run.stage.value} -> {stage.value}")
            run.stage = stage
            run.current_step = STAGE_DESCRIPTIONS[stage]
            run.progress = state.tracker.enter(stage)
            run.updated_at = self.clock.now()
            if error is not None:
                run.error = error
            if is_terminal(stage):
                run.completed_at = run.updated_at
                try:
                    await self._publish(state)
                except Exception as e:
                    logger.error(
                        f"Run {run.run_id}: failed to publish {stage.value} status: {e}",
                        exc_info=True,
                    )
            else:
                await self._publish(state)

        if stage == RunStage.FAILED:
            logger.error(f"Run {run.run_id}: failed ({error.type}: {error.message})")
        else:
            logger.info(f"Run {run.run_id}: {stage.value} ({run.progress}%)")

    async def _on_job_progress(self, job: Job, fraction: float) -> None:
        await self._merge_progress(job, fraction)

    async def _on_job_completed(self, job: Job, result: Any) -> None:
        await self._merge_progress(job, 1.0)

    async def _merge_progress(self, job: Job, fraction: float) -> None:
        entry = self._job_runs.get(job.id)
        if entry is None:
            return
        run_id, kind, index = entry
        state = self._runs.get(run_id)
        if state is None:
            return
        async with state.lock:
            if is_terminal(state.run.stage):
                return
            progress = state.tracker.update(kind, fraction, index)
            if progress is None:
                return
            state.run.progress = progress
            state.run.updated_at = self.clock.now()
            await self._publish(state)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _checkpoint(self, state: _RunState) -> None:
        if state.cancel_requested:
            raise JobCancelled(f"Run {state.run.run_id} cancelled")

    async def _enqueue(
        self, state: _RunState, queue: str, requests: list[JobRequest], kind: str,
        indexes: Optional[list[int]] = None,
    ) -> list[Job]:
        self._checkpoint(state)
        for i, request in enumerate(requests):
            self._job_runs[request.job_id] = (
                state.run.run_id, kind, indexes[i] if indexes else None,
            )
        jobs = await self.registry.enqueue_bulk(queue, requests)
        state.job_ids.extend(job.id for job in jobs)
        if state.cancel_requested:
            # cancel_pipeline() ran during the enqueue and did not see these ids
            for job in jobs:
                await self.registry.cancel(job.id)
            await asyncio.gather(*(self.registry.wait_for(job.id) for job in jobs))
            self._checkpoint(state)
        return jobs

    def _job_failure(self, state: _RunState, job: Job) -> Exception:
        if job.state == JobState.CANCELLED or state.cancel_requested:
            return JobCancelled(f"Job {job.id} cancelled")
        error_type = job.error.type if job.error else "PipelineError"
        message = job.error.message if job.error else f"Job {job.id} {job.state.value}"
        return PermanentFailure(error_type, message, state.run.stage.value)

    async def _join(
        self, state: _RunState, job_ids: list[str], companions: tuple[str, ...] = ()
    ) -> list[Any]:
        """Wait for every job in ``job_ids``, failing fast.

        ``companions`` run alongside: their failure also ends the join, their
        completion is not required. On the first job that does not complete,
        every outstanding job is cancelled and joined before the failure is
        raised. Returns results in the order of ``job_ids``.
        """
        waits = {
            asyncio.ensure_future(self.registry.wait_for(job_id)): job_id
            for job_id in [*job_ids, *companions]
        }
        pending = set(waits)
        results: dict[str, Any] = {}
        failed: Optional[Job] = None
        try:
            while failed is None and not set(job_ids) <= results.keys():
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for fut in done:
                    job = fut.result()
                    if job.state == JobState.COMPLETED:
                        results[job.id] = job.result
                    elif failed is None:
                        failed = job
        finally:
            if failed is None:
                for fut in pending:
                    fut.cancel()

        if failed is None:
            return [results[job_id] for job_id in job_ids]

        outstanding = [waits[fut] for fut in pending]
        if outstanding:
            logger.warning(
                f"Run {state.run.run_id}: {failed.name} ended {failed.state.value}, "
                f"cancelling {len(outstanding)} job(s)"
            )
        for job_id in outstanding:
            await self.registry.cancel(job_id)
        await asyncio.gather(*pending)
        raise self._job_failure(state, failed)

    async def _upload(self, run: PipelineRun, video_path: Path, thumbnail_path: Path) -> tuple[str, str]:
        prefix = f"videos/{run.owner_id}/{run.run_id}"
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(StorageError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                try:
                    video = await asyncio.to_thread(video_path.read_bytes)
                    thumbnail = await asyncio.to_thread(thumbnail_path.read_bytes)
                except OSError as e:
                    raise StorageError(f"Compiled artifact unreadable: {e}") from e
                final_url = await self.object_store.put(f"{prefix}/final.mp4", video, "video/mp4")
                thumbnail_url = await self.object_store.put(
                    f"{prefix}/thumbnail.jpg", thumbnail, "image/jpeg"
                )
        return final_url, thumbnail_url

    async def _run_stages(self, state: _RunState) -> None:
        run, request, cfg = state.run, state.request, self.config
        run_id = run.run_id

        await self._advance(state, RunStage.GENERATING_SCENES)
        scene_payload = ScenePayload(
            run_id=run_id,
            subject=request.subject,
            marketing_idea=request.marketing_idea,
            scene_count=cfg.scene_count,
            style=request.style,
            custom_prompts=request.custom_prompts,
        )
        [scene_job] = await self._enqueue(
            state, SCENE_QUEUE,
            [JobRequest(name="generate-scenes", job_id=f"{run_id}:scenes",
                        payload=scene_payload.model_dump(mode="json"))],
            kind="scenes",
        )
        [scene_result] = await self._join(state, [scene_job.id])
        scenes = [SceneDescription.model_validate(s) for s in scene_result["scenes"]]
        async with state.lock:
            run.scenes = scenes
            state.tracker.set_clips([float(s.duration) for s in scenes])

        await self._advance(state, RunStage.GENERATING_CLIPS)
        clip_requests = []
        for index, scene in enumerate(scenes):
            payload = ClipPayload(
                run_id=run_id,
                scene_index=index,
                scene=scene,
                image_url=request.image_urls[index % len(request.image_urls)],
                aspect_ratio=cfg.aspect_ratio,
            )
            clip_requests.append(JobRequest(
                name=f"generate-clip-{index + 1}",
                job_id=f"{run_id}:clip:{index}",
                payload=payload.model_dump(mode="json"),
            ))
        clip_jobs = await self._enqueue(
            state, VIDEO_QUEUE, clip_requests, kind="clip", indexes=list(range(len(scenes))),
        )
        music_payload = MusicPayload(
            run_id=run_id,
            subject=request.subject,
            scenes=scenes,
            duration=cfg.music_duration,
            theme=request.music_theme,
        )
        [music_job] = await self._enqueue(
            state, MUSIC_QUEUE,
            [JobRequest(name="generate-music", job_id=f"{run_id}:music",
                        payload=music_payload.model_dump(mode="json"))],
            kind="music",
        )

        clip_results = await self._join(
            state, [job.id for job in clip_jobs], companions=(music_job.id,)
        )
        async with state.lock:
            run.clip_urls = [r["clip_url"] for r in sorted(clip_results, key=lambda r: r["scene_index"])]

        await self._advance(state, RunStage.GENERATING_MUSIC)
        [music_result] = await self._join(state, [music_job.id])
        async with state.lock:
            run.audio_url = music_result["audio_url"]

        await self._advance(state, RunStage.COMPILING)
        compile_payload = CompilePayload(
            run_id=run_id,
            clips=[
                ClipArtifact(
                    scene_index=r["scene_index"],
                    clip_url=r["clip_url"],
                    local_path=r["local_path"],
                    duration=r["duration"],
                )
                for r in clip_results
            ],
            audio_path=music_result["local_path"],
            platform=run.platform,
            transition_seconds=cfg.transition_seconds,
        )
        [compile_job] = await self._enqueue(
            state, COMPILE_QUEUE,
            [JobRequest(name="compile-video", job_id=f"{run_id}:compile",
                        payload=compile_payload.model_dump(mode="json"))],
            kind="compile",
        )
        [compiled] = await self._join(state, [compile_job.id])

        await self._advance(state, RunStage.UPLOADING)
        self._checkpoint(state)
        final_url, thumbnail_url = await self._upload(
            run, Path(compiled["video_path"]), Path(compiled["thumbnail_path"])
        )
        async with state.lock:
            run.final_url = final_url
            run.thumbnail_url = thumbnail_url

    async def _drive(self, state: _RunState) -> PipelineRun:
        run_id = state.run.run_id
        try:
            try:
                await self._run_stages(state)
                self._cleanup(run_id)
                await self._advance(state, RunStage.COMPLETED)
            except JobCancelled:
                self._cleanup(run_id)
                await self._advance(state, RunStage.CANCELLED)
            except Exception as e:
                failure = PermanentFailure.wrap(e, state.run.stage.value)
                self._cleanup(run_id)
                await self._advance(
                    state,
                    RunStage.FAILED,
                    RunError(type=failure.error_type, message=failure.message, stage=failure.stage),
                )
            return state.run.model_copy(deep=True)
        finally:
            self._cleanup(run_id)
            if is_terminal(state.run.stage):
                await self._persist(state.run)
            self._forget(run_id)

    async def _persist(self, run: PipelineRun) -> None:
        if self.run_repository is None:
            return
        try:
            await self.run_repository.save(run)
        except Exception as e:
            logger.error(f"Run {run.run_id}: failed to persist run record: {e}", exc_info=True)

    def _cleanup(self, run_id: str) -> None:
        self.ledger.cleanup(run_id, self.file_manager.existing_run_dir(run_id))

    def _forget(self, run_id: str) -> None:
        """Drop in-memory state of a finished run; its status lives on in the cache."""
        self._runs.pop(run_id, None)
        self._tasks.pop(run_id, None)
        self.ledger.forget(run_id)
        for job_id in [j for j, entry in self._job_runs.items() if entry[0] == run_id]:
            del self._job_runs[job_id]
