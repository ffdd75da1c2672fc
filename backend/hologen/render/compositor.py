"""Layer compositing with FFmpeg filter_complex.

A ``CompositionSpec`` is an immutable description of one compositing
operation. ``build_ffmpeg_args`` turns a spec plus local input paths into an
FFmpeg argument list without side effects; ``Compositor`` materializes
inputs, runs the command through an injectable runner, and guarantees that
every temp file of the call is gone before it returns.

Overlay policy (``CompositionSpec.overlay``):
L1: background image, held static for the whole output
L2: foreground clip, fit into a square with letterbox padding, then
    screen-blended so near-black pixels disappear
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from hologen.config import Settings, get_settings
from hologen.exceptions import CompositingFailedError
from hologen.render import video_ops
from hologen.services.media_fetcher import MediaAsset, MediaFetcher
from hologen.utils.media_info import probe_media
from hologen.utils.process import ProcessRunner, run_process
from hologen.utils.temp_files import TempFileScope

logger = logging.getLogger(__name__)


class BlendMode(str, Enum):
    NORMAL = "normal"
    SCREEN = "screen"  # Near-black foreground pixels become transparent


class FitMode(str, Enum):
    CONTAIN = "contain"  # Scale down and letterbox
    COVER = "cover"  # Scale up and crop


class HoldMode(str, Enum):
    HOLD_LAST = "hold_last"  # Freeze the last frame (tpad clone)
    LOOP = "loop"  # Restart from the beginning


@dataclass(frozen=True)
class LayerTransform:
    """Placement of one layer on the output canvas.

    ``box`` is the (width, height) the layer is fit into; ``None`` means the
    full canvas. The box is centered unless ``x``/``y`` are given.
    """

    box: tuple[int, int] | None = None
    fit: FitMode = FitMode.CONTAIN
    pad_color: str = "black"
    x: int | None = None
    y: int | None = None


@dataclass(frozen=True)
class CompositionLayer:
    """One input stream, bottom to top in ``CompositionSpec.layers`` order."""

    transform: LayerTransform = field(default_factory=LayerTransform)
    blend: BlendMode = BlendMode.NORMAL
    hold: HoldMode = HoldMode.HOLD_LAST


@dataclass(frozen=True)
class CompositionSpec:
    layers: tuple[CompositionLayer, ...]
    width: int = 1080
    height: int = 1080
    fps: int = 30
    duration_seconds: float = 5.0
    pix_fmt: str = "yuv420p"
    video_codec: str = "libx264"
    crf: int = 18
    preset: str = "ultrafast"

    def __post_init__(self):
        if not self.layers:
            raise ValueError("CompositionSpec needs at least one layer")
        if self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        if self.width % 2 or self.height % 2:
            raise ValueError("Output dimensions must be even for yuv420p")

    @classmethod
    def overlay(
        cls,
        *,
        size: int = 1080,
        duration_seconds: float = 5.0,
        fps: int = 30,
        foreground_hold: HoldMode = HoldMode.HOLD_LAST,
        pix_fmt: str = "yuv420p",
        crf: int = 18,
        preset: str = "ultrafast",
    ) -> "CompositionSpec":
        """Background image + screen-blended square foreground clip."""
        return cls(
            layers=(
                CompositionLayer(transform=LayerTransform(fit=FitMode.COVER)),
                CompositionLayer(
                    transform=LayerTransform(box=(size, size), fit=FitMode.CONTAIN),
                    blend=BlendMode.SCREEN,
                    hold=foreground_hold,
                ),
            ),
            width=size,
            height=size,
            fps=fps,
            duration_seconds=duration_seconds,
            pix_fmt=pix_fmt,
            crf=crf,
            preset=preset,
        )

    def to_dict(self) -> dict:
        return {
            "layers": [
                {
                    "blend": layer.blend.value,
                    "hold": layer.hold.value,
                    "fit": layer.transform.fit.value,
                    "box": list(layer.transform.box) if layer.transform.box else None,
                }
                for layer in self.layers
            ],
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "duration_seconds": self.duration_seconds,
            "pix_fmt": self.pix_fmt,
        }


# =============================================================================
# Command builder (pure)
# =============================================================================


def _fit_filter(layer: CompositionLayer, spec: CompositionSpec) -> list[str]:
    t = layer.transform
    box_w, box_h = t.box or (spec.width, spec.height)
    if t.fit == FitMode.COVER:
        chain = [
            f"scale={box_w}:{box_h}:force_original_aspect_ratio=increase",
            f"crop={box_w}:{box_h}",
        ]
    else:
        chain = [
            f"scale={box_w}:{box_h}:force_original_aspect_ratio=decrease",
            f"pad={box_w}:{box_h}:(ow-iw)/2:(oh-ih)/2:color={t.pad_color}",
        ]
    chain.append("setsar=1")
    return chain


def _position(layer: CompositionLayer, spec: CompositionSpec) -> tuple[int, int]:
    t = layer.transform
    box_w, box_h = t.box or (spec.width, spec.height)
    x = t.x if t.x is not None else (spec.width - box_w) // 2
    y = t.y if t.y is not None else (spec.height - box_h) // 2
    return x, y


def _input_args(path: Path, layer: CompositionLayer, spec: CompositionSpec, still: bool) -> list[str]:
    if still:
        return ["-loop", "1", "-framerate", str(spec.fps), "-t", f"{spec.duration_seconds:g}", "-i", str(path)]
    if layer.hold == HoldMode.LOOP:
        return ["-stream_loop", "-1", "-i", str(path)]
    return ["-i", str(path)]


def build_filter_complex(spec: CompositionSpec, still_inputs: Sequence[bool]) -> str:
    """Build the filter graph; every layer is normalized to exactly the output duration."""
    duration = f"{spec.duration_seconds:g}"
    filters: list[str] = []

    for idx, layer in enumerate(spec.layers):
        chain = _fit_filter(layer, spec)
        chain.append(f"fps={spec.fps}")
        if not still_inputs[idx] and layer.hold == HoldMode.HOLD_LAST:
            # Pad past the target, trim below cuts it to length
            chain.append(f"tpad=stop_mode=clone:stop_duration={duration}")
        chain.append(f"trim=duration={duration}")
        chain.append("setpts=PTS-STARTPTS")

        x, y = _position(layer, spec)
        if idx > 0 and layer.blend == BlendMode.SCREEN:
            # blend needs both inputs on the full canvas in the same RGB format
            box_w, box_h = layer.transform.box or (spec.width, spec.height)
            if (box_w, box_h) != (spec.width, spec.height):
                chain.append(f"pad={spec.width}:{spec.height}:{x}:{y}:color=black")
            chain.append("format=gbrp")
        elif idx == 0:
            chain.append("format=gbrp")
        else:
            chain.append("format=yuva444p")

        filters.append(f"[{idx}:v]{','.join(chain)}[l{idx}]")

    current = "[l0]"
    for idx in range(1, len(spec.layers)):
        layer = spec.layers[idx]
        out = f"[c{idx}]"
        if layer.blend == BlendMode.SCREEN:
            filters.append(f"{current}[l{idx}]blend=all_mode=screen:shortest=1,format=gbrp{out}")
        else:
            x, y = _position(layer, spec)
            filters.append(f"{current}[l{idx}]overlay={x}:{y}:shortest=1,format=gbrp{out}")
        current = out

    filters.append(f"{current}format={spec.pix_fmt}[out]")
    return ";".join(filters)


def build_ffmpeg_args(
    spec: CompositionSpec,
    input_paths: Sequence[Path],
    output_path: Path,
    *,
    still_inputs: Sequence[bool] | None = None,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build the complete FFmpeg command for ``spec``.

    Args:
        spec: Composition to render
        input_paths: One local file per layer, same order as ``spec.layers``
        output_path: Where FFmpeg writes the result
        still_inputs: Per-input flag marking still images
        ffmpeg_path: FFmpeg executable

    Returns:
        Argument list, executable first
    """
    if len(input_paths) != len(spec.layers):
        raise ValueError(f"Expected {len(spec.layers)} inputs, got {len(input_paths)}")
    stills = list(still_inputs) if still_inputs is not None else [False] * len(input_paths)

    cmd = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
    for path, layer, still in zip(input_paths, spec.layers, stills):
        cmd.extend(_input_args(path, layer, spec, still))

    cmd.extend(["-filter_complex", build_filter_complex(spec, stills)])
    cmd.extend(["-map", "[out]"])
    cmd.extend([
        "-r", str(spec.fps),
        "-c:v", spec.video_codec,
        "-preset", spec.preset,
        "-crf", str(spec.crf),
        "-pix_fmt", spec.pix_fmt,
        "-t", f"{spec.duration_seconds:g}",
        "-an",
        "-movflags", "+faststart",
    ])
    cmd.append(str(output_path))
    return cmd


# =============================================================================
# Executor
# =============================================================================


class Compositor:
    """Runs compositing operations; one ``TempFileScope`` per call."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        fetcher: MediaFetcher | None = None,
        runner: ProcessRunner = run_process,
    ):
        self.settings = settings or get_settings()
        self.fetcher = fetcher or MediaFetcher(self.settings)
        self.runner = runner

    @property
    def _timeout(self) -> float:
        return self.settings.composite_budget_seconds

    async def _run(self, cmd: list[str], step: str) -> None:
        result = await self.runner(cmd, timeout=self._timeout)
        if not result.ok:
            logger.error(f"{step} FFmpeg failed (rc={result.returncode}). stderr (last 2000): {result.stderr[-2000:]}")
            raise CompositingFailedError(result.stderr, returncode=result.returncode)

    async def _read_output(self, path: Path) -> MediaAsset:
        if not path.exists() or path.stat().st_size == 0:
            raise CompositingFailedError("FFmpeg exited cleanly but produced no output")
        data = await asyncio.to_thread(path.read_bytes)
        return MediaAsset.from_bytes(data, "video/mp4")

    async def compose(self, spec: CompositionSpec, inputs: Sequence[MediaAsset]) -> MediaAsset:
        """Composite ``inputs`` according to ``spec``.

        Raises:
            CompositingFailedError: FFmpeg exited non-zero or wrote nothing.
            DownloadFailedError: a remote input could not be fetched.
        """
        if len(inputs) != len(spec.layers):
            raise ValueError(f"Expected {len(spec.layers)} inputs, got {len(inputs)}")

        with TempFileScope(self.settings.temp_dir) as scope:
            paths = [
                await self.fetcher.materialize(asset, scope, prefix=f"layer{idx}")
                for idx, asset in enumerate(inputs)
            ]
            output_path = scope.new_path("composite", ".mp4")
            cmd = build_ffmpeg_args(
                spec,
                paths,
                output_path,
                still_inputs=[asset.is_image for asset in inputs],
                ffmpeg_path=self.settings.ffmpeg_path,
            )
            logger.info(
                f"Compositing {len(inputs)} layers -> {spec.width}x{spec.height} "
                f"@{spec.fps}fps for {spec.duration_seconds:g}s"
            )
            await self._run(cmd, "compose")
            return await self._read_output(output_path)

    async def loop_video(
        self,
        asset: MediaAsset,
        *,
        loop_count: int = 2,
        crop_square: bool = False,
        trim_seconds: float | None = None,
    ) -> MediaAsset:
        """Ping-pong loop: forward + reversed, repeated to ``loop_count`` passes."""
        if loop_count < 1:
            raise ValueError("loop_count must be at least 1")

        fps = self.settings.output_fps
        with TempFileScope(self.settings.temp_dir) as scope:
            source = await self.fetcher.materialize(asset, scope, prefix="loop_input")

            sanitized = scope.new_path("loop_cfr", ".mp4")
            await self._run(
                video_ops.sanitize_args(
                    source, sanitized,
                    fps=fps, crf=self.settings.video_crf, preset=self.settings.video_preset,
                    crop_square=crop_square, trim_seconds=trim_seconds,
                    ffmpeg_path=self.settings.ffmpeg_path,
                ),
                "sanitize",
            )
            if loop_count == 1:
                return await self._read_output(sanitized)

            reversed_path = scope.new_path("loop_reverse", ".mp4")
            await self._run(
                video_ops.reverse_args(
                    sanitized, reversed_path,
                    fps=fps, crf=self.settings.video_crf, preset=self.settings.video_preset,
                    ffmpeg_path=self.settings.ffmpeg_path,
                ),
                "reverse",
            )

            concat_list = scope.new_path("loop_concat", ".txt")
            concat_list.write_text(video_ops.concat_list([sanitized, reversed_path]))
            ping_pong = scope.new_path("loop_pingpong", ".mp4")
            await self._run(video_ops.concat_args(concat_list, ping_pong, ffmpeg_path=self.settings.ffmpeg_path), "concat")

            repeat = video_ops.ping_pong_repeats(loop_count)
            if repeat == 0:
                return await self._read_output(ping_pong)

            looped = scope.new_path("loop_output", ".mp4")
            await self._run(video_ops.stream_loop_args(ping_pong, looped, repeat, ffmpeg_path=self.settings.ffmpeg_path), "stream_loop")
            logger.info(f"Looped video {loop_count} passes ({repeat} extra ping-pong repeats)")
            return await self._read_output(looped)

    async def merge_videos(
        self,
        assets: Sequence[MediaAsset],
        *,
        square: bool = True,
        crossfade_seconds: float | None = None,
    ) -> MediaAsset:
        """Concatenate clips with a crossfade between each consecutive pair."""
        if len(assets) < 2:
            raise ValueError("merge_videos needs at least two clips")

        fade = self.settings.crossfade_seconds if crossfade_seconds is None else crossfade_seconds
        size = self.settings.overlay_size
        width, height = (size, size) if square else (1920, 1080)

        with TempFileScope(self.settings.temp_dir) as scope:
            paths = [
                await self.fetcher.materialize(asset, scope, prefix=f"merge{idx}")
                for idx, asset in enumerate(assets)
            ]
            durations = []
            for path in paths:
                info = await probe_media(str(path), runner=self.runner)
                if info.duration_seconds is None:
                    raise CompositingFailedError(f"Could not read duration of {path.name}")
                durations.append(info.duration_seconds)

            fade = min(fade, *(d / 2 for d in durations))
            if fade <= 0:
                raise ValueError("Clips are too short to crossfade")

            output_path = scope.new_path("merged", ".mp4")
            await self._run(
                video_ops.crossfade_args(
                    paths, durations, output_path,
                    width=width, height=height, fps=self.settings.output_fps, fade_seconds=fade,
                    crf=self.settings.video_crf, preset=self.settings.video_preset,
                    ffmpeg_path=self.settings.ffmpeg_path,
                ),
                "crossfade",
            )
            return await self._read_output(output_path)
