"""ffmpeg command construction and the compile sequence, without running ffmpeg."""

import subprocess
from pathlib import Path

import pytest

from promopipe.errors import StorageError, ValidationError
from promopipe.pipeline.compiler import (
    PLATFORM_PRESETS,
    FfmpegCompiler,
    build_format_command,
    build_thumbnail_command,
    build_xfade_filter,
    get_preset,
    stitched_duration,
)


class RecordingCompiler(FfmpegCompiler):
    """Records each ffmpeg invocation and creates its output file."""

    def __init__(self, fail_on: str | None = None):
        super().__init__(ffmpeg="/opt/ffmpeg/bin/ffmpeg")
        self.commands: list[list[str]] = []
        self.fail_on = fail_on

    def _run(self, cmd: list[str]) -> None:
        cmd = [self.ffmpeg, *cmd[1:]]
        self.commands.append(cmd)
        if self.fail_on and self.fail_on in cmd:
            raise subprocess.CalledProcessError(1, cmd, stderr=b"Invalid data found when processing input")
        Path(cmd[-1]).write_bytes(b"media")


def make_clips(tmp_path, count):
    clips = []
    for i in range(count):
        clip = tmp_path / f"scene_{i}.mp4"
        clip.write_bytes(b"clip")
        clips.append(clip)
    return clips


class TestCommands:
    def test_xfade_offsets(self):
        filter_complex, label = build_xfade_filter([10, 10, 10], 0.5)
        assert filter_complex == (
            "[0:v][1:v]xfade=transition=fade:duration=0.5:offset=9.5[v01];"
            "[v01][2:v]xfade=transition=fade:duration=0.5:offset=19[v02]"
        )
        assert label == "v02"

    def test_stitched_duration(self):
        assert stitched_duration([10, 10, 10], 0.5) == 29.0
        assert stitched_duration([], 0.5) == 0.0

    def test_format_command_muxes_audio_trimmed_to_video(self):
        cmd = build_format_command(
            Path("in.mp4"), Path("out.mp4"), PLATFORM_PRESETS["instagram"], Path("music.mp3"), 29.0,
        )
        assert cmd[:5] == ["ffmpeg", "-y", "-i", "in.mp4", "-i"]
        assert "scale=1080:1920:force_original_aspect_ratio=decrease" in cmd[cmd.index("-vf") + 1]
        assert cmd[cmd.index("-b:v") + 1] == "6000k"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert "-shortest" in cmd
        assert "-t" not in cmd
        assert cmd[-1] == "out.mp4"

    def test_format_command_caps_platform_duration(self):
        cmd = build_format_command(Path("in.mp4"), Path("out.mp4"), PLATFORM_PRESETS["tiktok"], None, 73.0)
        assert "-an" in cmd
        assert cmd[cmd.index("-t") + 1] == "60"

    def test_youtube_shorts_are_capped_at_60_seconds(self):
        cmd = build_format_command(Path("in.mp4"), Path("out.mp4"), PLATFORM_PRESETS["youtube"], None, 300.0)
        assert cmd[cmd.index("-t") + 1] == "60"

    def test_short_video_is_not_trimmed(self):
        cmd = build_format_command(Path("in.mp4"), Path("out.mp4"), PLATFORM_PRESETS["youtube"], None, 45.0)
        assert "-t" not in cmd

    def test_thumbnail_command(self):
        cmd = build_thumbnail_command(Path("out.mp4"), Path("out.jpg"), 0.5)
        assert cmd[cmd.index("-ss") + 1] == "0.5"
        assert cmd[-1] == "out.jpg"

    def test_unknown_platform(self):
        with pytest.raises(ValidationError, match="Unsupported platform"):
            get_preset("myspace")


class TestFfmpegCompiler:
    @pytest.mark.asyncio
    async def test_crossfade_format_and_thumbnail(self, tmp_path):
        compiler = RecordingCompiler()
        clips = make_clips(tmp_path, 3)
        output = tmp_path / "output" / "final.mp4"
        output.parent.mkdir()
        audio = tmp_path / "music.mp3"
        audio.write_bytes(b"mp3")
        progress = []

        async def on_progress(fraction):
            progress.append(fraction)

        result = await compiler.compile(
            clips, [10, 10, 10], output, platform="instagram", audio=audio, on_progress=on_progress,
        )

        stitch, fmt, thumb = compiler.commands
        assert all(cmd[0] == "/opt/ffmpeg/bin/ffmpeg" for cmd in compiler.commands)
        assert "-filter_complex" in stitch
        assert fmt[-1] == str(output)
        assert thumb[-1] == str(output.with_suffix(".jpg"))
        assert progress == [0.5, 0.9, 1.0]
        assert result.duration == 29.0
        assert result.thumbnail_path.exists()
        # The intermediate stitched file does not outlive the compile
        assert not (output.parent / "final_stitched.mp4").exists()

    @pytest.mark.asyncio
    async def test_hard_cuts_use_concat_demuxer(self, tmp_path):
        compiler = RecordingCompiler()
        clips = make_clips(tmp_path, 2)

        await compiler.compile(clips, [5, 5], tmp_path / "final.mp4", platform="youtube", transition_seconds=0.0)

        stitch = compiler.commands[0]
        assert stitch[stitch.index("-f") + 1] == "concat"
        assert not (tmp_path / "concat_list.txt").exists()

    @pytest.mark.asyncio
    async def test_single_clip_is_copied(self, tmp_path):
        compiler = RecordingCompiler()
        [clip] = make_clips(tmp_path, 1)

        result = await compiler.compile([clip], [8], tmp_path / "final.mp4", platform="tiktok")

        assert compiler.commands[0][compiler.commands[0].index("-c") + 1] == "copy"
        assert result.duration == 8

    @pytest.mark.asyncio
    async def test_ffmpeg_failure_is_a_storage_error(self, tmp_path):
        compiler = RecordingCompiler(fail_on="-filter_complex")
        clips = make_clips(tmp_path, 2)

        with pytest.raises(StorageError, match="Invalid data found"):
            await compiler.compile(clips, [10, 10], tmp_path / "final.mp4", platform="instagram")

    @pytest.mark.asyncio
    async def test_missing_clip_file(self, tmp_path):
        compiler = RecordingCompiler()
        with pytest.raises(StorageError, match="Missing clip files"):
            await compiler.compile([tmp_path / "nope.mp4"], [10], tmp_path / "final.mp4", platform="youtube")

    @pytest.mark.asyncio
    async def test_input_checks(self, tmp_path):
        compiler = RecordingCompiler()
        clips = make_clips(tmp_path, 2)
        with pytest.raises(ValidationError):
            await compiler.compile([], [], tmp_path / "final.mp4", platform="youtube")
        with pytest.raises(ValidationError):
            await compiler.compile(clips, [10], tmp_path / "final.mp4", platform="youtube")
        with pytest.raises(ValidationError):
            await compiler.compile(clips, [10, 10], tmp_path / "final.mp4", platform="myspace")
        assert compiler.commands == []
