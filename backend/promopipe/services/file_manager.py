"""
File management service for promopipe.

Handles per-run temporary artifact storage with path traversal protection,
and streams remote results (clips, audio) to local files.
"""
import logging
import shutil
from pathlib import Path
from typing import Optional

import httpx

from promopipe.errors import ExternalServiceError, StorageError

logger = logging.getLogger(__name__)


class FileManager:
    """
    Manage temporary filesystem artifacts for pipeline runs.

    Creates structured directories:
    - {base_dir}/{run_id}/clips/ - Downloaded scene clips
    - {base_dir}/{run_id}/audio/ - Downloaded music track
    - {base_dir}/{run_id}/output/ - Compiled video and thumbnail

    Everything under a run directory is temporary and is removed when the
    run reaches a terminal stage.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def run_dir(self, run_id: str) -> Path:
        """
        Get or create the run directory with its subdirectories.

        Raises:
            StorageError: If run_id resolves outside base_dir
        """
        run_dir = (self.base_dir / str(run_id)).resolve()

        # Path traversal protection
        if not run_dir.is_relative_to(self.base_dir) or run_dir == self.base_dir:
            raise StorageError("Invalid run path")

        run_dir.mkdir(exist_ok=True)
        for sub in ("clips", "audio", "output"):
            (run_dir / sub).mkdir(exist_ok=True)
        return run_dir

    def existing_run_dir(self, run_id: str) -> Optional[Path]:
        run_dir = (self.base_dir / str(run_id)).resolve()
        if not run_dir.is_relative_to(self.base_dir) or run_dir == self.base_dir:
            return None
        return run_dir if run_dir.exists() else None

    def clip_path(self, run_id: str, scene_index: int) -> Path:
        return self.run_dir(run_id) / "clips" / f"scene_{scene_index}.mp4"

    def audio_path(self, run_id: str, extension: str = "mp3") -> Path:
        return self.run_dir(run_id) / "audio" / f"music.{extension}"

    def output_path(self, run_id: str, filename: str = "final.mp4") -> Path:
        return self.run_dir(run_id) / "output" / filename

    def remove_run_dirs(self) -> list[str]:
        """Delete every run directory under base_dir. Returns the run ids removed."""
        removed = []
        for child in sorted(self.base_dir.iterdir()):
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
                removed.append(child.name)
        return removed


async def download_file(
    url: str,
    dest: Path,
    *,
    timeout: float = 120.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Path:
    """Stream ``url`` into ``dest``.

    Raises:
        ExternalServiceError: Remote returned 5xx/429 or the connection failed
        StorageError: Any other HTTP error, or the local write failed
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
    except httpx.HTTPStatusError as e:
        code = e.response.status_code
        if code == 429 or code >= 500:
            raise ExternalServiceError(f"Download of {url} failed: HTTP {code}", code) from e
        raise StorageError(f"Download of {url} failed: HTTP {code}") from e
    except httpx.TransportError as e:
        raise ExternalServiceError(f"Download of {url} failed: {e}") from e
    except OSError as e:
        raise StorageError(f"Could not write {dest}: {e}") from e

    logger.debug("Downloaded %s -> %s (%d bytes)", url, dest, dest.stat().st_size)
    return dest
