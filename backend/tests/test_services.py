"""HTTP clients for the generation services, downloads and prompt builders.

All HTTP traffic goes through ``httpx.MockTransport``; nothing leaves the process.
"""

import json

import httpx
import pytest

from promopipe.errors import ExternalServiceError, StorageError, ValidationError
from promopipe.schemas.pipeline import SubjectAttributes
from promopipe.services.fal_client import (
    MAX_PROMPT_LENGTH,
    FalVideoService,
    build_clip_prompt,
    build_clip_request,
)
from promopipe.services.file_manager import FileManager, download_file
from promopipe.services.generation import normalize_progress, normalize_status
from promopipe.services.sonauto_client import (
    MUSIC_THEMES,
    SonautoMusicService,
    build_music_request,
    select_theme,
)

from conftest import make_scene

FAL_MODEL = "fal-ai/kling-video/v1/standard/image-to-video"


def fal_service(handler, **kwargs) -> FalVideoService:
    return FalVideoService(
        "fal-key",
        base_url="https://queue.fal.test",
        transport=httpx.MockTransport(handler),
        retry_backoff=0,
        **kwargs,
    )


class TestNormalization:
    @pytest.mark.parametrize("raw,expected", [
        ("COMPLETED", "completed"),
        ("succeeded", "completed"),
        ("ERROR", "failed"),
        ("canceled", "failed"),
        ("IN_QUEUE", "running"),
        (None, "running"),
    ])
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        (0.25, 0.25),
        (40, 0.4),
        ("75", 0.75),
        (250, 1.0),
        (-3, 0.0),
        ("n/a", 0.0),
        (None, 0.0),
    ])
    def test_normalize_progress(self, raw, expected):
        assert normalize_progress(raw) == pytest.approx(expected)


class TestFalVideoService:
    @pytest.mark.asyncio
    async def test_submit_poll_and_fetch_result(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            assert request.headers["authorization"] == "Key fal-key"
            if request.method == "POST":
                body = json.loads(request.content)
                assert body["image_url"] == "https://img.test/1.jpg"
                assert body["duration"] == "10"
                assert body["aspect_ratio"] == "9:16"
                return httpx.Response(200, json={"request_id": "req-1"})
            if request.url.path.endswith("/status"):
                status = "IN_PROGRESS" if len(seen) < 3 else "COMPLETED"
                return httpx.Response(200, json={"status": status, "progress": 40})
            return httpx.Response(200, json={"video": {"url": "https://cdn.fal.test/req-1.mp4"}})

        service = fal_service(handler)
        op_id = await service.submit(build_clip_request("https://img.test/1.jpg", make_scene(1)))
        first = await service.get_status(op_id)
        second = await service.get_status(op_id)
        await service.close()

        assert op_id == "req-1"
        assert first.status == "running" and first.progress == pytest.approx(0.4)
        assert second.status == "completed"
        assert second.result_url == "https://cdn.fal.test/req-1.mp4"
        assert seen[0] == ("POST", f"/{FAL_MODEL}")
        assert seen[-1] == ("GET", f"/{FAL_MODEL}/requests/req-1")

    @pytest.mark.asyncio
    async def test_failed_status_carries_provider_error(self):
        def handler(request):
            return httpx.Response(200, json={"status": "FAILED", "error": {"message": "NSFW image"}})

        service = fal_service(handler)
        status = await service.get_status("req-9")
        assert status.status == "failed"
        assert status.error == "NSFW image"

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_raised(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(503, text="upstream busy")

        service = fal_service(handler, max_retries=2)
        with pytest.raises(ExternalServiceError) as exc_info:
            await service.submit({"prompt": "x"})
        assert calls == 2
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_errors_are_validation_errors(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"detail": "image_url is required"})

        service = fal_service(handler)
        with pytest.raises(ValidationError, match="HTTP 400"):
            await service.submit({"prompt": "x"})
        assert calls == 1

    @pytest.mark.asyncio
    async def test_missing_request_id(self):
        service = fal_service(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ExternalServiceError, match="no request id"):
            await service.submit({"prompt": "x"})

    @pytest.mark.asyncio
    async def test_transport_errors_are_external_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = fal_service(handler, max_retries=1)
        with pytest.raises(ExternalServiceError, match="unreachable"):
            await service.get_status("req-1")


class TestClipPrompt:
    def test_prompt_includes_camera_and_mood(self):
        prompt = build_clip_prompt(make_scene(2, camera_movement="aerial orbit", mood="bold"))
        assert prompt.startswith("Scene 2: the car glides")
        assert "Camera movement: aerial orbit." in prompt
        assert "Mood: bold." in prompt

    def test_prompt_is_truncated(self):
        prompt = build_clip_prompt(make_scene(1, description="chrome " * 200))
        assert len(prompt) == MAX_PROMPT_LENGTH
        assert prompt.endswith("...")

    def test_clip_request_fields(self):
        request = build_clip_request("https://img.test/a.jpg", make_scene(1, duration=5), aspect_ratio="16:9")
        assert request["duration"] == "5"
        assert request["aspect_ratio"] == "16:9"
        assert request["mode"] == "std"
        assert 0 <= request["seed"] <= 999_999


class TestMusic:
    @pytest.mark.parametrize("make,model,vehicle_type,theme", [
        ("BMW", "X5", "SUV", "luxury"),
        ("Porsche", "911", "coupe", "sporty"),
        ("Ford", "F-150", "pickup truck", "adventure"),
        ("Tesla", "Model 3", None, "eco"),
        ("Honda", "Odyssey", "minivan", "family"),
    ])
    def test_theme_from_vehicle(self, make, model, vehicle_type, theme):
        subject = SubjectAttributes(make=make, model=model, vehicle_type=vehicle_type)
        assert select_theme(subject, [make_scene(1, mood="calm")]) is MUSIC_THEMES[theme]

    def test_theme_from_scene_moods(self):
        subject = SubjectAttributes(make="Honda", model="Odyssey")
        scenes = [make_scene(1, mood="calm"), make_scene(2, mood="Exciting")]
        assert select_theme(subject, scenes).name == "Sporty"

    def test_explicit_theme_wins(self):
        subject = SubjectAttributes(make="Ferrari", model="Roma")
        assert select_theme(subject, [], "eco").name == "Eco-Friendly"

    def test_music_request(self):
        subject = SubjectAttributes(make="Jeep", model="Wrangler", year=2023)
        request = build_music_request(subject, [make_scene(1, mood="bold")], duration=30)
        assert request["duration"] == 30
        assert request["style"] == MUSIC_THEMES["adventure"].style
        assert "2023 Jeep Wrangler" in request["prompt"]
        assert "Scene moods: bold" in request["prompt"]

    @pytest.mark.asyncio
    async def test_sonauto_round_trip(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer sonauto-key"
            if request.method == "POST":
                assert request.url.path == "/v1/generate"
                return httpx.Response(200, json={"generation_id": "gen-7"})
            assert request.url.path == "/v1/generations/gen-7"
            return httpx.Response(200, json={"status": "SUCCESS", "audio_url": "https://cdn.test/gen-7.mp3"})

        service = SonautoMusicService(
            "sonauto-key",
            base_url="https://api.sonauto.test/v1",
            transport=httpx.MockTransport(handler),
            retry_backoff=0,
        )
        subject = SubjectAttributes(make="BMW", model="X5")
        op_id = await service.submit(build_music_request(subject, [make_scene(1)], duration=30))
        status = await service.get_status(op_id)
        await service.close()

        assert op_id == "gen-7"
        assert status.status == "completed"
        assert status.result_url == "https://cdn.test/gen-7.mp3"

    @pytest.mark.asyncio
    async def test_sonauto_completed_without_url_is_a_failure(self):
        service = SonautoMusicService(
            "k",
            base_url="https://api.sonauto.test/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "done"})),
            retry_backoff=0,
        )
        status = await service.get_status("gen-1")
        assert status.status == "failed"
        assert "No audio URL" in status.error


class TestDownloads:
    @pytest.mark.asyncio
    async def test_download_streams_to_disk(self, tmp_path):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"mp4-bytes"))
        dest = tmp_path / "clips" / "scene_0.mp4"

        result = await download_file("https://cdn.test/a.mp4", dest, transport=transport)

        assert result == dest
        assert dest.read_bytes() == b"mp4-bytes"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [(503, ExternalServiceError), (404, StorageError)])
    async def test_download_errors(self, tmp_path, status, error):
        transport = httpx.MockTransport(lambda request: httpx.Response(status))
        with pytest.raises(error):
            await download_file("https://cdn.test/a.mp4", tmp_path / "a.mp4", transport=transport)


class TestFileManager:
    def test_run_layout(self, tmp_path):
        manager = FileManager(tmp_path)
        assert manager.clip_path("run-1", 2) == tmp_path.resolve() / "run-1" / "clips" / "scene_2.mp4"
        assert manager.audio_path("run-1").name == "music.mp3"
        assert manager.output_path("run-1").parent.name == "output"
        assert manager.existing_run_dir("run-1") is not None
        assert manager.existing_run_dir("run-2") is None

    def test_remove_run_dirs(self, tmp_path):
        manager = FileManager(tmp_path / "work")
        manager.clip_path("run-b", 0).write_bytes(b"clip")
        manager.audio_path("run-a").write_bytes(b"music")
        (tmp_path / "work" / "stray.txt").write_text("kept")

        assert manager.remove_run_dirs() == ["run-a", "run-b"]
        assert manager.existing_run_dir("run-a") is None
        assert manager.existing_run_dir("run-b") is None
        assert (tmp_path / "work" / "stray.txt").exists()
        assert manager.remove_run_dirs() == []

    @pytest.mark.parametrize("run_id", ["../escape", "..", ""])
    def test_path_traversal_is_rejected(self, tmp_path, run_id):
        manager = FileManager(tmp_path / "work")
        with pytest.raises(StorageError):
            manager.run_dir(run_id)
        assert manager.existing_run_dir(run_id) is None
