"""Scene description, validation and per-scene customization."""

import pytest

from promopipe.errors import ValidationError
from promopipe.pipeline.payloads import ClipPayload, MusicPayload, load_payload
from promopipe.pipeline.scenes import customize_scenes, validate_scenes
from promopipe.schemas.pipeline import SubjectAttributes
from promopipe.services.scene_describer import SYSTEM_PROMPT, SceneDescriber, apply_style

from conftest import FakeLLMAdapter, make_scene


class TestValidateScenes:
    def test_returns_scenes_sorted_by_number(self):
        scenes = [make_scene(3), make_scene(1), make_scene(2)]
        assert [s.scene_number for s in validate_scenes(scenes, 3)] == [1, 2, 3]

    @pytest.mark.parametrize("count", [0, 2, 4])
    def test_count_must_match_exactly(self, count):
        scenes = [make_scene(i) for i in range(1, count + 1)]
        with pytest.raises(ValidationError, match=f"Expected exactly 3 scenes, got {count}"):
            validate_scenes(scenes, 3)

    def test_collects_every_field_problem(self):
        scenes = [
            make_scene(1, description="   "),
            make_scene(2, duration=30),
            make_scene(3, mood=" "),
        ]
        with pytest.raises(ValidationError) as exc_info:
            validate_scenes(scenes, 3)
        message = str(exc_info.value)
        assert "Scene 1: missing description" in message
        assert "Scene 2: duration 30s outside 5-15s" in message
        assert "Scene 3: missing mood" in message

    def test_short_descriptions_are_valid(self):
        scenes = [make_scene(i, description=f"Hero shot {i} of X5") for i in (1, 2, 3)]
        assert [s.description for s in validate_scenes(scenes, 3)] == [
            "Hero shot 1 of X5", "Hero shot 2 of X5", "Hero shot 3 of X5",
        ]

    def test_scene_numbers_must_be_contiguous(self):
        scenes = [make_scene(1), make_scene(2), make_scene(5)]
        with pytest.raises(ValidationError, match="Scene numbers must be 1-3"):
            validate_scenes(scenes, 3)


class TestCustomizeScenes:
    def test_custom_prompt_replaces_description(self):
        custom = "A close-up of the grille as rain beads on the chrome"
        scenes = customize_scenes([make_scene(1), make_scene(2)], None, {2: custom})
        assert scenes[0].description.startswith("Scene 1")
        assert scenes[1].description == custom

    def test_style_modifier_is_appended(self):
        [scene] = customize_scenes([make_scene(1)], "cinematic", {})
        assert scene.description.endswith("with cinematic lighting and epic camera movements")

    def test_unknown_style_is_ignored(self):
        assert apply_style("Open road", "vaporwave") == "Open road"
        assert apply_style("Open road", None) == "Open road"


class TestSceneDescriber:
    @pytest.mark.asyncio
    async def test_prompt_mentions_vehicle_idea_and_count(self):
        adapter = FakeLLMAdapter([make_scene(1), make_scene(2), make_scene(3)])
        describer = SceneDescriber(adapter)
        subject = SubjectAttributes(make="Audi", model="Q7", year=2024, features=["quattro", "matrix LED"])

        scenes = await describer.describe(subject, "Weekend escapes", scene_count=3)

        assert len(scenes) == 3
        [prompt] = adapter.prompts
        assert "Create 3 video scenes" in prompt
        assert "2024 Audi Q7" in prompt
        assert '"Weekend escapes"' in prompt
        assert "quattro, matrix LED" in prompt
        assert "automotive" in SYSTEM_PROMPT


class TestPayloads:
    def test_invalid_payload_is_a_validation_error(self):
        with pytest.raises(ValidationError, match="Invalid ClipPayload"):
            load_payload(ClipPayload, {"run_id": "r", "scene_index": -1})

    def test_music_duration_must_be_positive(self):
        payload = {
            "run_id": "r",
            "subject": {"make": "Kia", "model": "EV6"},
            "scenes": [make_scene(1).model_dump()],
            "duration": 0,
        }
        with pytest.raises(ValidationError):
            load_payload(MusicPayload, payload)
        payload["duration"] = 30
        assert load_payload(MusicPayload, payload).duration == 30
