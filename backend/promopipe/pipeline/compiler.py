"""Video compilation with ffmpeg: stitching, audio mux, platform formatting, thumbnail.

Concatenates downloaded clips into the final output using:
- concat demuxer for hard cuts (transition_seconds=0.0)
- xfade filter for crossfade transitions (transition_seconds>0.0)

The stitched video is then scaled and padded to the platform preset,
muxed with the music track (trimmed to the video length) and capped at
the platform's maximum duration. A JPEG thumbnail is grabbed from the
result.
"""

import asyncio
import inspect
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from promopipe.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformPreset:
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str
    max_duration: Optional[float] = None
    fps: int = 30


PLATFORM_PRESETS: dict[str, PlatformPreset] = {
    "youtube": PlatformPreset(1080, 1920, "8000k", "192k", max_duration=60),
    "instagram": PlatformPreset(1080, 1920, "6000k", "128k", max_duration=90),
    "tiktok": PlatformPreset(1080, 1920, "4000k", "128k", max_duration=60),
}


@dataclass
class CompiledVideo:
    video_path: Path
    thumbnail_path: Path
    duration: float


def get_preset(platform: str) -> PlatformPreset:
    preset = PLATFORM_PRESETS.get(platform)
    if preset is None:
        raise ValidationError(
            f"Unsupported platform {platform!r}; expected one of {sorted(PLATFORM_PRESETS)}"
        )
    return preset


def stitched_duration(durations: list[float], transition: float) -> float:
    if not durations:
        return 0.0
    return sum(durations) - transition * (len(durations) - 1)


def build_xfade_filter(durations: list[float], transition: float) -> tuple[str, str]:
    """Build an xfade chain for the clips and return (filter_complex, output label).

    Chain: [0:v][1:v]xfade[v01] ; [v01][2:v]xfade[v02] ; ...
    Each transition starts ``transition`` seconds before the running end.
    """
    filter_parts = []
    prev_label = "0:v"
    elapsed = durations[0]
    for i in range(1, len(durations)):
        out_label = f"v{i:02d}"
        offset = elapsed - transition * i
        filter_parts.append(
            f"[{prev_label}][{i}:v]xfade=transition=fade:"
            f"duration={transition}:offset={offset:g}[{out_label}]"
        )
        prev_label = out_label
        elapsed += durations[i]
    return ";".join(filter_parts), prev_label


def build_format_command(
    source: Path,
    output: Path,
    preset: PlatformPreset,
    audio: Optional[Path] = None,
    duration: Optional[float] = None,
) -> list[str]:
    w, h = preset.width, preset.height
    cmd = ["ffmpeg", "-y", "-i", str(source)]
    if audio is not None:
        cmd += ["-i", str(audio)]
    cmd += [
        "-vf",
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,fps={preset.fps}",
        "-c:v", "libx264",
        "-preset", "medium",
        "-b:v", preset.video_bitrate,
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
    ]
    if audio is not None:
        # Audio trimmed to the video length
        cmd += ["-map", "0:v:0", "-map", "1:a:0", "-c:a", "aac", "-b:a", preset.audio_bitrate, "-shortest"]
    else:
        cmd += ["-an"]
    if duration is not None and preset.max_duration and duration > preset.max_duration:
        cmd += ["-t", f"{preset.max_duration:g}"]
    cmd.append(str(output))
    return cmd


def build_thumbnail_command(video: Path, thumbnail: Path, at_seconds: float = 1.0) -> list[str]:
    return [
        "ffmpeg", "-y",
        "-ss", f"{at_seconds:g}",
        "-i", str(video),
        "-vframes", "1",
        "-q:v", "2",
        str(thumbnail),
    ]


class MediaCompiler(ABC):
    @abstractmethod
    async def compile(
        self,
        clips: list[Path],
        durations: list[float],
        output: Path,
        *,
        platform: str,
        audio: Optional[Path] = None,
        transition_seconds: float = 0.5,
        on_progress: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> CompiledVideo:
        """Compile ordered clips into ``output`` and grab a thumbnail beside it."""
        ...


class FfmpegCompiler(MediaCompiler):
    """Runs ffmpeg in a worker thread for every step."""

    def __init__(self, ffmpeg: str = "ffmpeg"):
        self.ffmpeg = ffmpeg

    def _run(self, cmd: list[str]) -> None:
        if cmd and cmd[0] == "ffmpeg":
            cmd = [self.ffmpeg, *cmd[1:]]
        subprocess.run(cmd, check=True, capture_output=True)

    def _stitch_concat_demuxer(self, clips: list[Path], output: Path) -> None:
        list_file = output.parent / "concat_list.txt"
        try:
            with open(list_file, "w") as f:
                for clip in clips:
                    f.write(f"file '{clip.resolve()}'\n")
            # -safe 0 allows absolute paths
            self._run([
                "ffmpeg", "-y", "-f", "concat", "-safe", "0",
                "-i", str(list_file), "-c", "copy", str(output),
            ])
        finally:
            if list_file.exists():
                list_file.unlink()

    def _stitch_with_crossfade(
        self, clips: list[Path], durations: list[float], output: Path, transition: float
    ) -> None:
        if len(clips) == 1:
            logger.info("Single clip detected, copying without crossfade")
            self._run(["ffmpeg", "-y", "-i", str(clips[0]), "-c", "copy", str(output)])
            return

        inputs = []
        for clip in clips:
            inputs.extend(["-i", str(clip)])
        filter_complex, label = build_xfade_filter(durations, transition)
        # xfade requires re-encoding
        self._run([
            "ffmpeg", "-y", *inputs,
            "-filter_complex", filter_complex,
            "-map", f"[{label}]",
            "-vsync", "vfr",
            str(output),
        ])

    async def compile(
        self,
        clips: list[Path],
        durations: list[float],
        output: Path,
        *,
        platform: str,
        audio: Optional[Path] = None,
        transition_seconds: float = 0.5,
        on_progress: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> CompiledVideo:
        if not clips:
            raise ValidationError("No clips to compile")
        if len(durations) != len(clips):
            raise ValidationError(f"Got {len(durations)} durations for {len(clips)} clips")
        missing = [str(p) for p in clips if not p.exists()]
        if missing:
            raise StorageError(f"Missing clip files: {missing}")
        preset = get_preset(platform)

        async def report(fraction: float) -> None:
            if on_progress is not None:
                result = on_progress(fraction)
                if inspect.isawaitable(result):
                    await result

        stitched = output.with_name(f"{output.stem}_stitched.mp4")
        thumbnail = output.with_suffix(".jpg")
        duration = stitched_duration(durations, transition_seconds)
        try:
            if transition_seconds == 0.0:
                logger.info(f"Stitching {len(clips)} clips with concat demuxer (hard cuts)")
                await asyncio.to_thread(self._stitch_concat_demuxer, clips, stitched)
            else:
                logger.info(
                    f"Stitching {len(clips)} clips with xfade (crossfade={transition_seconds}s)"
                )
                await asyncio.to_thread(
                    self._stitch_with_crossfade, clips, durations, stitched, transition_seconds
                )
            await report(0.5)

            await asyncio.to_thread(
                self._run, build_format_command(stitched, output, preset, audio, duration)
            )
            await report(0.9)

            await asyncio.to_thread(
                self._run, build_thumbnail_command(output, thumbnail, min(1.0, duration / 2))
            )
            await report(1.0)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
            logger.error(f"ffmpeg error: {stderr}")
            raise StorageError(f"Video compilation failed: {stderr[:500]}") from e
        except OSError as e:
            raise StorageError(f"Video compilation failed: {e}") from e
        finally:
            stitched.unlink(missing_ok=True)

        if preset.max_duration:
            duration = min(duration, preset.max_duration)
        logger.info(f"Compiled {platform} video ({duration:.1f}s) -> {output}")
        return CompiledVideo(video_path=output, thumbnail_path=thumbnail, duration=duration)
