"""FFmpeg argument builders for loop and merge post-processing.

Generated clips arrive with variable frame rates and irregular timestamps,
so every operation first re-encodes to constant frame rate with a fixed GOP.
Builders are pure; ``Compositor`` runs them.
"""

import math
from collections.abc import Sequence
from pathlib import Path


def _cfr_encode_args(fps: int, crf: int, preset: str) -> list[str]:
    return [
        "-c:v", "libx264",
        "-preset", preset,
        "-crf", str(crf),
        "-r", str(fps),
        "-g", str(fps),  # One keyframe per second for frame-accurate seeking
        "-sc_threshold", "0",
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        "-an",
    ]


def sanitize_args(
    source: Path,
    output: Path,
    *,
    fps: int = 30,
    crf: int = 18,
    preset: str = "ultrafast",
    crop_square: bool = False,
    trim_seconds: float | None = None,
    width: int | None = None,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Re-encode to CFR H.264, optionally center-cropping to a square and trimming."""
    cmd = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error", "-i", str(source)]
    if trim_seconds:
        cmd.extend(["-t", f"{trim_seconds:g}"])

    filters = []
    if crop_square:
        filters.append("crop='min(iw,ih)':'min(iw,ih)':(iw-min(iw,ih))/2:(ih-min(iw,ih))/2")
    if width:
        filters.append(f"scale={width}:-2")
    if filters:
        cmd.extend(["-vf", ",".join(filters)])

    cmd.extend(_cfr_encode_args(fps, crf, preset))
    cmd.append(str(output))
    return cmd


def reverse_args(
    source: Path,
    output: Path,
    *,
    fps: int = 30,
    crf: int = 18,
    preset: str = "ultrafast",
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Reverse ``source`` and drop its first frame so the ping-pong seam has no duplicate."""
    first_frame = 1 / fps
    return [
        ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error",
        "-i", str(source),
        "-vf", f"reverse,trim=start={first_frame:.3f},setpts=PTS-STARTPTS",
        *_cfr_encode_args(fps, crf, preset),
        str(output),
    ]


def concat_list(paths: Sequence[Path]) -> str:
    """Concat demuxer list file contents."""
    lines = []
    for path in paths:
        escaped = str(path).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def concat_args(list_path: Path, output: Path, *, ffmpeg_path: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error",
        "-f", "concat", "-safe", "0",
        "-i", str(list_path),
        "-c", "copy",
        str(output),
    ]


def ping_pong_repeats(loop_count: int) -> int:
    """Extra repeats of one forward+reverse cycle needed for ``loop_count`` passes."""
    return max(math.ceil(loop_count / 2) - 1, 0)


def stream_loop_args(source: Path, output: Path, repeat: int, *, ffmpeg_path: str = "ffmpeg") -> list[str]:
    return [
        ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error",
        "-stream_loop", str(repeat),
        "-i", str(source),
        "-c", "copy",
        str(output),
    ]


def frames_to_video_args(
    pattern: Path,
    output: Path,
    *,
    fps: int = 30,
    crf: int = 18,
    preset: str = "ultrafast",
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Encode a numbered PNG sequence (``frame_%05d.png``) starting at 1."""
    return [
        ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error",
        "-framerate", str(fps),
        "-start_number", "1",
        "-i", str(pattern),
        *_cfr_encode_args(fps, crf, preset),
        str(output),
    ]


def xfade_offsets(durations: Sequence[float], fade_seconds: float) -> list[float]:
    """Start offset of each crossfade, measured on the merged timeline."""
    offsets = []
    elapsed = 0.0
    for duration in durations[:-1]:
        elapsed += duration - fade_seconds
        offsets.append(round(elapsed, 3))
    return offsets


def crossfade_args(
    sources: Sequence[Path],
    durations: Sequence[float],
    output: Path,
    *,
    width: int,
    height: int,
    fps: int = 30,
    fade_seconds: float = 1.0,
    crf: int = 18,
    preset: str = "ultrafast",
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Merge ``sources`` with an ``xfade`` crossfade between consecutive clips."""
    if len(sources) != len(durations):
        raise ValueError("sources and durations must have the same length")

    cmd = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
    for source in sources:
        cmd.extend(["-i", str(source)])

    filters = []
    for idx in range(len(sources)):
        filters.append(
            f"[{idx}:v]scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},setsar=1,fps={fps},format=yuv420p,settb=AVTB[v{idx}]"
        )

    current = "[v0]"
    for idx, offset in enumerate(xfade_offsets(durations, fade_seconds), start=1):
        out = f"[x{idx}]"
        filters.append(
            f"{current}[v{idx}]xfade=transition=fade:duration={fade_seconds:g}:offset={offset:g}{out}"
        )
        current = out

    cmd.extend(["-filter_complex", ";".join(filters), "-map", current])
    cmd.extend(_cfr_encode_args(fps, crf, preset))
    cmd.append(str(output))
    return cmd
