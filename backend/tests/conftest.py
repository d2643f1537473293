"""Shared fixtures: a fake clock and in-memory fakes of the external services."""

import asyncio
import itertools
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from promopipe.config import PipelineConfig, QueueConfig, RetryConfig
from promopipe.orchestrator.failures import ArtifactLedger
from promopipe.orchestrator.pipeline import PipelineOrchestrator
from promopipe.pipeline.compiler import CompiledVideo, MediaCompiler
from promopipe.queue import InMemoryJobStore, QueueRegistry
from promopipe.schemas.pipeline import SceneDescription, SceneDescriptionSet
from promopipe.services.file_manager import FileManager
from promopipe.services.generation import GenerationService, OperationStatus
from promopipe.services.llm import LLMAdapter
from promopipe.services.object_store import LocalObjectStore
from promopipe.services.scene_describer import SceneDescriber
from promopipe.services.status_cache import InMemoryStatusCache


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += max(seconds, 0)
        await asyncio.sleep(0)


def running(progress: float = 0.0) -> OperationStatus:
    return OperationStatus(status="running", progress=progress)


def completed(url: str) -> OperationStatus:
    return OperationStatus(status="completed", progress=1.0, result_url=url)


def failed(error: str) -> OperationStatus:
    return OperationStatus(status="failed", error=error)


class FakeGenerationService(GenerationService):
    """Scripted video/music service.

    ``script(request)`` returns the statuses successive polls will see; the
    last one repeats. ``None`` entries mean "completed with a URL".
    """

    def __init__(self, name: str, script: Optional[Callable[[dict], list]] = None):
        self.name = name
        self.script = script or (lambda request: [running(0.5), None])
        self.submitted: list[dict] = []
        self.polls: dict[str, int] = {}
        self._plans: dict[str, list] = {}
        self._ids = itertools.count(1)
        # When set, polls block until the event fires
        self.hold: Optional[asyncio.Event] = None

    async def submit(self, request: dict[str, Any]) -> str:
        op_id = f"{self.name}-op-{next(self._ids)}"
        self.submitted.append(request)
        self._plans[op_id] = list(self.script(request))
        return op_id

    async def get_status(self, operation_id: str) -> OperationStatus:
        if self.hold is not None:
            await self.hold.wait()
        count = self.polls.get(operation_id, 0)
        self.polls[operation_id] = count + 1
        plan = self._plans[operation_id]
        status = plan[min(count, len(plan) - 1)]
        if status is None:
            return completed(f"https://cdn.test/{operation_id}")
        return status


class FakeLLMAdapter(LLMAdapter):
    def __init__(self, scenes: list[SceneDescription]):
        self.scenes = scenes
        self.prompts: list[str] = []

    async def generate_text(self, prompt, schema, *, temperature=0.7, system_prompt=None, max_retries=3):
        self.prompts.append(prompt)
        return SceneDescriptionSet(scenes=self.scenes)


class FakeCompiler(MediaCompiler):
    def __init__(self):
        self.calls: list[dict] = []

    async def compile(self, clips, durations, output, *, platform, audio=None,
                      transition_seconds=0.5, on_progress=None):
        self.calls.append({
            "clips": list(clips), "durations": list(durations),
            "platform": platform, "audio": audio,
        })
        if on_progress is not None:
            await on_progress(0.5)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"final-video")
        thumbnail = output.with_suffix(".jpg")
        thumbnail.write_bytes(b"thumbnail")
        return CompiledVideo(video_path=output, thumbnail_path=thumbnail, duration=sum(durations))


class RecordingStatusCache(InMemoryStatusCache):
    """Keeps every published snapshot in order."""

    def __init__(self, clock):
        super().__init__(clock)
        self.history: list[dict] = []
        self.ttls: list[int] = []

    async def set(self, key, value, ttl_seconds):
        self.history.append(value)
        self.ttls.append(ttl_seconds)
        await super().set(key, value, ttl_seconds)


class RecordingLedger(ArtifactLedger):
    """Remembers every recorded path, even after the run is forgotten."""

    def __init__(self):
        super().__init__()
        self.recorded: dict[str, list[Path]] = {}

    def record(self, run_id, path):
        path = super().record(run_id, path)
        recorded = self.recorded.setdefault(run_id, [])
        if path not in recorded:
            recorded.append(path)
        return path


def make_scene(number: int, duration: int = 10, **overrides) -> SceneDescription:
    fields = dict(
        scene_number=number,
        description=f"Scene {number}: the car glides along a coastal road at golden hour",
        camera_movement="slow dolly",
        mood="elegant",
        duration=duration,
    )
    fields.update(overrides)
    return SceneDescription(**fields)


async def fake_download(url: str, dest: Path) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(f"downloaded {url}".encode())
    return dest


def pipeline_request(**overrides) -> dict:
    request = {
        "subject": {"make": "BMW", "model": "X5", "year": 2024, "vehicle_type": "SUV"},
        "marketing_idea": "Freedom of the open road for the whole family",
        "image_urls": ["https://img.test/1.jpg", "https://img.test/2.jpg"],
        "platform": "instagram",
    }
    request.update(overrides)
    return request


TEST_QUEUES = {
    "scene-generation": QueueConfig(concurrency=3),
    "video-generation": QueueConfig(concurrency=3),
    "music-generation": QueueConfig(concurrency=2),
    "video-compilation": QueueConfig(concurrency=1),
}


@pytest.fixture
def clock():
    return FakeClock()


class Harness:
    """An orchestrator wired to fakes, with every collaborator exposed."""

    def __init__(self, tmp_path: Path, clock: FakeClock, scenes=None, video_script=None, music_script=None):
        self.clock = clock
        self.registry = QueueRegistry(
            InMemoryJobStore(),
            TEST_QUEUES,
            retry=RetryConfig(base_delay=0.0, max_delay=0.0, idle_interval=0.01),
            clock=clock,
        )
        self.llm = FakeLLMAdapter(scenes if scenes is not None else [make_scene(i) for i in (1, 2, 3)])
        self.video = FakeGenerationService("video", video_script)
        self.music = FakeGenerationService(
            "music", music_script or (lambda request: [running(0.4), running(0.8), None])
        )
        self.compiler = FakeCompiler()
        self.cache = RecordingStatusCache(clock)
        self.ledger = RecordingLedger()
        self.file_manager = FileManager(tmp_path / "work")
        self.object_store = LocalObjectStore(tmp_path / "media", "http://media.test")
        self.orchestrator = PipelineOrchestrator(
            self.registry,
            describer=SceneDescriber(self.llm),
            video_service=self.video,
            music_service=self.music,
            compiler=self.compiler,
            object_store=self.object_store,
            status_cache=self.cache,
            file_manager=self.file_manager,
            ledger=self.ledger,
            clock=clock,
            config=PipelineConfig(video_poll_interval=10.0, video_poll_max=60,
                                  music_poll_interval=5.0, music_poll_max=60),
            download=fake_download,
        )

    async def start(self):
        self.orchestrator.bind_workers()
        await self.registry.start()

    async def stop(self):
        await self.orchestrator.close()
        await self.registry.stop()

    async def run(self, owner: str = "owner-1", **overrides):
        run_id = await self.orchestrator.submit_pipeline(owner, pipeline_request(**overrides))
        return await asyncio.wait_for(self.orchestrator.wait(run_id), timeout=10)


@pytest_asyncio.fixture
async def make_harness(tmp_path, clock):
    harnesses = []

    async def factory(start: bool = True, **kwargs) -> Harness:
        harness = Harness(tmp_path, clock, **kwargs)
        if start:
            await harness.start()
        harnesses.append(harness)
        return harness

    yield factory
    for harness in harnesses:
        await harness.stop()
