"""Builds the production runtime (registry, orchestrator, stall monitor) from settings."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from promopipe.config import CacheConfig, Settings, StorageConfig, settings as default_settings
from promopipe.errors import ConfigurationError
from promopipe.orchestrator.failures import ArtifactLedger, StallMonitor
from promopipe.orchestrator.pipeline import PipelineOrchestrator
from promopipe.pipeline.compiler import FfmpegCompiler
from promopipe.queue import InMemoryJobStore, JobStore, QueueRegistry
from promopipe.services.fal_client import FalVideoService
from promopipe.services.file_manager import FileManager
from promopipe.services.llm import get_adapter
from promopipe.services.object_store import LocalObjectStore, ObjectStore, S3ObjectStore
from promopipe.services.scene_describer import SceneDescriber
from promopipe.services.sonauto_client import SonautoMusicService
from promopipe.services.status_cache import InMemoryStatusCache, RedisStatusCache, StatusCache

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    registry: QueueRegistry
    orchestrator: PipelineOrchestrator
    stall_monitor: StallMonitor
    # Objects with an async close() to call on shutdown
    resources: list[Any] = field(default_factory=list)

    async def start(self) -> None:
        await self.orchestrator.recover()
        self.orchestrator.bind_workers()
        await self.registry.start()
        self.stall_monitor.start()
        logger.info(f"Pipeline runtime started ({', '.join(self.registry.queue_names)})")

    async def stop(self) -> None:
        await self.stall_monitor.stop()
        await self.orchestrator.close()
        await self.registry.stop()
        for resource in self.resources:
            await resource.close()
        logger.info("Pipeline runtime stopped")


def build_status_cache(cfg: CacheConfig) -> StatusCache:
    if cfg.backend == "redis":
        return RedisStatusCache(cfg.redis_url, key_prefix=cfg.key_prefix)
    return InMemoryStatusCache()


def build_object_store(cfg: StorageConfig) -> ObjectStore:
    if cfg.object_store == "s3":
        return S3ObjectStore(
            cfg.s3_bucket,
            region=cfg.s3_region,
            endpoint_url=cfg.s3_endpoint_url,
            access_key=cfg.s3_access_key,
            secret_key=cfg.s3_secret_key,
            public_base_url=cfg.public_base_url if cfg.s3_endpoint_url is None else None,
        )
    return LocalObjectStore(cfg.local_root, cfg.public_base_url)


def build_runtime(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[JobStore] = None,
    run_repository=None,
) -> PipelineRuntime:
    """Assemble every component from configuration.

    Raises:
        ConfigurationError: A generation service has no API key configured
    """
    cfg = cfg or default_settings
    if not cfg.services.fal_api_key:
        raise ConfigurationError("services.fal_api_key is not set (PROMOPIPE_SERVICES__FAL_API_KEY)")
    if not cfg.services.sonauto_api_key:
        raise ConfigurationError(
            "services.sonauto_api_key is not set (PROMOPIPE_SERVICES__SONAUTO_API_KEY)"
        )

    registry = QueueRegistry(store or InMemoryJobStore(), cfg.queues, retry=cfg.retry)
    video_service = FalVideoService(
        cfg.services.fal_api_key,
        base_url=cfg.services.fal_base_url,
        model=cfg.services.fal_video_model,
        timeout=cfg.services.request_timeout,
    )
    music_service = SonautoMusicService(
        cfg.services.sonauto_api_key,
        base_url=cfg.services.sonauto_base_url,
        timeout=cfg.services.request_timeout,
    )
    status_cache = build_status_cache(cfg.cache)

    orchestrator = PipelineOrchestrator(
        registry,
        describer=SceneDescriber(get_adapter(cfg.services.scene_llm)),
        video_service=video_service,
        music_service=music_service,
        compiler=FfmpegCompiler(),
        object_store=build_object_store(cfg.storage),
        status_cache=status_cache,
        file_manager=FileManager(cfg.storage.tmp_dir),
        ledger=ArtifactLedger(),
        run_repository=run_repository,
        config=cfg.pipeline,
    )
    monitor = StallMonitor(registry, cfg.retry.stall_window, cfg.retry.stall_check_interval)
    return PipelineRuntime(
        registry=registry,
        orchestrator=orchestrator,
        stall_monitor=monitor,
        resources=[video_service, music_service, status_cache],
    )
