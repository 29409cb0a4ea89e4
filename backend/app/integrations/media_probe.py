import asyncio
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from app.config import get_settings
from app.core.exceptions import PermanentMediaError, TransientInfraError

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class MediaInfo:
    duration_seconds: float | None
    codec: str
    width: int
    height: int


class MediaProbe:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def probe(self, file_path: Path) -> MediaInfo:
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TransientInfraError(f"ffprobe not found at {self.ffprobe_path}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.communicate()
            raise TransientInfraError(f"ffprobe timed out after {self.timeout}s")

        if process.returncode != 0:
            raise PermanentMediaError(
                f"Unreadable media: {stderr.decode('utf-8', errors='replace').strip() or 'ffprobe failed'}"
            )
        return parse_probe_output(stdout.decode("utf-8", errors="replace"))


def parse_probe_output(raw: str) -> MediaInfo:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise PermanentMediaError("Unreadable media: ffprobe produced no metadata")

    # Find video stream
    video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
    if not video_stream:
        raise PermanentMediaError("No video stream found")

    duration = data.get("format", {}).get("duration") or video_stream.get("duration")
    try:
        duration_seconds = float(duration) if duration is not None else None
    except ValueError:
        duration_seconds = None

    return MediaInfo(
        duration_seconds=duration_seconds,
        codec=video_stream.get("codec_name", "unknown"),
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
    )


class NullMediaProbe:
    """Skips extraction when probing is disabled; duration stays unset."""

    async def probe(self, file_path: Path) -> MediaInfo | None:
        return None


@lru_cache
def get_media_probe():
    if not settings.media_probe_enabled:
        return NullMediaProbe()
    return MediaProbe(settings.ffprobe_path, timeout=settings.media_probe_timeout_seconds)
