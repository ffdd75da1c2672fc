"""Media file information utilities using FFprobe."""

import json
from dataclasses import dataclass

from hologen.config import get_settings
from hologen.utils.process import ProcessRunner, run_process


@dataclass
class MediaInfo:
    """Media file information."""

    duration_ms: int | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    pix_fmt: str | None = None
    has_video: bool = False
    has_audio: bool = False

    @property
    def duration_seconds(self) -> float | None:
        return self.duration_ms / 1000 if self.duration_ms is not None else None


def _parse_rate(rate: str) -> float | None:
    if "/" in rate:
        num, den = rate.split("/")
        return float(num) / float(den) if float(den) > 0 else None
    try:
        return float(rate)
    except ValueError:
        return None


async def probe_media(file_path: str, runner: ProcessRunner = run_process) -> MediaInfo:
    """
    Get media file information.

    Args:
        file_path: Path to media file
        runner: Subprocess runner (injectable for tests)

    Returns:
        MediaInfo for the first video and audio streams

    Raises:
        RuntimeError: If ffprobe fails or its output is not JSON
    """
    settings = get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        file_path,
    ]
    result = await runner(cmd, timeout=30)
    if not result.ok:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")

    info = MediaInfo()
    format_info = data.get("format", {})
    if "duration" in format_info:
        info.duration_ms = int(float(format_info["duration"]) * 1000)

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
            info.pix_fmt = stream.get("pix_fmt")
            info.fps = _parse_rate(stream.get("avg_frame_rate") or stream.get("r_frame_rate", "0/1"))
        elif codec_type == "audio":
            info.has_audio = True

    return info
