"""Headless-browser overlay rendering.

The animation template (``templates/hologram_overlay``) is compiled once per
process into a static bundle. Each render opens the bundle in Chromium via
Playwright, hands it the render props, steps through every frame in a pool
of parallel tabs, screenshots each frame, and encodes the frames with
FFmpeg.

Compositions:
- HologramTextOverlay: base video + timed text scenes (+ reference image)
- VideoOnImageOverlay: background image + screen-blended text video

Local inputs reach the browser through ``TempMediaServer`` URLs; inline
data URLs of full videos are known to crash the browser control channel.
"""

import asyncio
import hashlib
import logging
import os
import random
import shutil
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from hologen.config import Settings, get_settings
from hologen.exceptions import CompositingFailedError, GenerationTimeoutError, RenderFailedError
from hologen.render import video_ops
from hologen.render.fonts import resolve_font
from hologen.services.media_fetcher import MediaAsset, MediaFetcher
from hologen.services.temp_media_server import TempMediaServer
from hologen.utils.process import ProcessRunner, run_process
from hologen.utils.temp_files import TempFileScope

logger = logging.getLogger(__name__)

TEXT_OVERLAY_COMPOSITION = "HologramTextOverlay"
VIDEO_ON_IMAGE_COMPOSITION = "VideoOnImageOverlay"

SCENE_SECONDS = 5.0
VIDEO_ON_IMAGE_SECONDS = 5.0


class TextPosition(str, Enum):
    RANDOM = "random"
    TOP = "top"
    CENTER = "center"
    BOTTOM = "bottom"


@dataclass(frozen=True)
class TextCue:
    """A text string and, optionally, its display window in seconds."""

    text: str
    start_seconds: float | None = None
    end_seconds: float | None = None


@dataclass(frozen=True)
class TextStyle:
    font_family: str | None = None
    font_size: int = 65
    text_color: str = "#ffffff"
    glow_color: str = "#00ffff"
    effects: tuple[str, ...] = ()
    position: TextPosition = TextPosition.RANDOM


@dataclass
class RenderRequest:
    """Inputs for one overlay render; one request yields one output video."""

    base_video: MediaAsset | None = None
    texts: list[TextCue] = field(default_factory=list)
    style: TextStyle = field(default_factory=TextStyle)
    reference_image: MediaAsset | None = None
    background_image: MediaAsset | None = None
    width: int = 1080
    height: int = 1080
    fps: int = 30
    duration_seconds: float | None = None


@dataclass(frozen=True)
class TextScene:
    text: str
    start_frame: int
    end_frame: int
    seed: float


@dataclass(frozen=True)
class CompositionInfo:
    id: str
    width: int
    height: int
    fps: int
    duration_in_frames: int


@dataclass(frozen=True)
class BundleHandle:
    """A compiled template bundle on disk."""

    path: Path
    content_hash: str
    built_at: datetime

    @property
    def entry(self) -> Path:
        return self.path / "index.html"

    def is_valid(self) -> bool:
        return self.entry.is_file()


# =============================================================================
# Composition selection
# =============================================================================


def build_text_scenes(cues: list[TextCue], fps: int, scene_seconds: float = SCENE_SECONDS) -> list[TextScene]:
    """Cues without an explicit window get consecutive ``scene_seconds`` slots."""
    scenes = []
    cursor = 0.0
    for idx, cue in enumerate(cues):
        start = cue.start_seconds if cue.start_seconds is not None else cursor
        end = cue.end_seconds if cue.end_seconds is not None else start + scene_seconds
        if end <= start:
            raise ValueError(f"Text cue {idx} ends before it starts")
        scenes.append(
            TextScene(
                text=cue.text,
                start_frame=round(start * fps),
                end_frame=round(end * fps),
                seed=random.Random(idx * 123).random(),
            )
        )
        cursor = end
    return scenes


def select_composition(request: RenderRequest) -> CompositionInfo:
    """Pick the composition matching the request's shape.

    A background image plus a video is the image overlay; anything with a
    base video and texts is the text overlay.
    """
    if request.background_image is not None:
        if request.base_video is None:
            raise ValueError("VideoOnImageOverlay needs a text video")
        seconds = request.duration_seconds or VIDEO_ON_IMAGE_SECONDS
        composition_id = VIDEO_ON_IMAGE_COMPOSITION
    else:
        if request.base_video is None:
            raise ValueError("HologramTextOverlay needs a base video")
        if not request.texts:
            raise ValueError("HologramTextOverlay needs at least one text")
        scenes = build_text_scenes(request.texts, request.fps)
        seconds = request.duration_seconds or max(scene.end_frame for scene in scenes) / request.fps
        composition_id = TEXT_OVERLAY_COMPOSITION

    return CompositionInfo(
        id=composition_id,
        width=request.width,
        height=request.height,
        fps=request.fps,
        duration_in_frames=max(1, round(seconds * request.fps)),
    )


def split_frames(total: int, workers: int) -> list[range]:
    """Contiguous, near-equal frame ranges, one per tab."""
    workers = max(1, min(workers, total))
    size, extra = divmod(total, workers)
    ranges = []
    start = 0
    for idx in range(workers):
        end = start + size + (1 if idx < extra else 0)
        ranges.append(range(start, end))
        start = end
    return ranges


# =============================================================================
# Template bundle
# =============================================================================

_STYLE_FILES = ("overlay.css",)
_SCRIPT_FILES = ("effects.js", "overlay.js")


def _template_hash(template_dir: Path) -> str:
    digest = hashlib.sha256()
    for path in sorted(p for p in template_dir.rglob("*") if p.is_file()):
        digest.update(str(path.relative_to(template_dir)).encode())
        digest.update(path.read_bytes())
    return digest.hexdigest()[:16]


def compile_template(template_dir: Path, bundle_root: Path) -> BundleHandle:
    """Inline styles and scripts into index.html and stage the bundle.

    The output directory is content-addressed, so concurrent builders of the
    same template produce identical directories and the loser discards its copy.
    """
    if not (template_dir / "index.html").is_file():
        raise RenderFailedError(f"Render template not found: {template_dir}")

    content_hash = _template_hash(template_dir)
    target = bundle_root / f"bundle-{content_hash}"
    handle = BundleHandle(path=target, content_hash=content_hash, built_at=datetime.now(timezone.utc))
    if handle.is_valid():
        return handle

    bundle_root.mkdir(parents=True, exist_ok=True)
    staging = bundle_root / f".staging-{uuid4().hex}"
    shutil.copytree(template_dir, staging)

    styles = "\n".join((template_dir / name).read_text(encoding="utf-8") for name in _STYLE_FILES)
    scripts = "\n".join((template_dir / name).read_text(encoding="utf-8") for name in _SCRIPT_FILES)
    html = (template_dir / "index.html").read_text(encoding="utf-8")
    html = html.replace("<!-- STYLES -->", f"<style>\n{styles}\n</style>")
    html = html.replace("<!-- SCRIPTS -->", f"<script>\n{scripts}\n</script>")
    (staging / "index.html").write_text(html, encoding="utf-8")

    try:
        os.replace(staging, target)
    except OSError:
        shutil.rmtree(staging, ignore_errors=True)
        if not handle.is_valid():
            raise
    return handle


# =============================================================================
# Bridge
# =============================================================================

BrowserFactory = Callable[[Settings], AbstractAsyncContextManager[Any]]


@asynccontextmanager
async def launch_chromium(settings: Settings):
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=True, args=settings.chromium_args)
        try:
            yield browser
        finally:
            await browser.close()


class RenderBridge:
    """Owns the compiled bundle and renders overlay requests against it."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        fetcher: MediaFetcher | None = None,
        runner: ProcessRunner = run_process,
        browser_factory: BrowserFactory = launch_chromium,
    ):
        self.settings = settings or get_settings()
        self.fetcher = fetcher or MediaFetcher(self.settings)
        self.runner = runner
        self.browser_factory = browser_factory
        self._bundle: BundleHandle | None = None

    async def build_template_once(self) -> BundleHandle:
        """Return the cached bundle, rebuilding only if its directory vanished.

        No lock: concurrent rebuilds produce the same content-addressed bundle.
        """
        bundle = self._bundle
        if bundle is not None and bundle.is_valid():
            return bundle

        logger.info("Building render template bundle")
        bundle = await asyncio.to_thread(
            compile_template,
            Path(self.settings.render_template_dir),
            Path(self.settings.render_bundle_root),
        )
        self._bundle = bundle
        logger.info(f"Render bundle ready: {bundle.path}")
        return bundle

    async def render(self, request: RenderRequest, bundle: BundleHandle) -> MediaAsset:
        """Render ``request`` into an MP4.

        Raises:
            GenerationTimeoutError: browser setup or frame rendering exceeded its tier.
            RenderFailedError: the bundle is gone or the browser failed.
            CompositingFailedError: encoding the captured frames failed.
        """
        if not bundle.is_valid():
            raise RenderFailedError(f"Render bundle missing: {bundle.path}")

        composition = select_composition(request)
        concurrency = (
            self.settings.render_overlay_concurrency
            if composition.id == VIDEO_ON_IMAGE_COMPOSITION
            else self.settings.render_concurrency
        )
        logger.info(
            f"Rendering {composition.id}: {composition.duration_in_frames} frames "
            f"at {composition.width}x{composition.height}, {concurrency} tabs"
        )

        with TempFileScope(self.settings.temp_dir) as scope:
            media_dir = scope.new_dir("render_media")
            frames_dir = scope.new_dir("render_frames")

            async with TempMediaServer(media_dir, bundle.path) as server:
                props = await self._prepare_props(request, composition, bundle, scope, media_dir, server)
                await self._capture_frames(server.bundle_url(), props, composition, frames_dir, concurrency)

            output_path = scope.new_path("overlay_output", ".mp4")
            result = await self.runner(
                video_ops.frames_to_video_args(
                    frames_dir / "frame_%05d.png",
                    output_path,
                    fps=composition.fps,
                    crf=self.settings.video_crf,
                    preset=self.settings.video_preset,
                    ffmpeg_path=self.settings.ffmpeg_path,
                ),
                timeout=self.settings.render_timeout_seconds,
            )
            if not result.ok:
                logger.error(f"Frame encode failed (rc={result.returncode}): {result.stderr[-2000:]}")
                raise CompositingFailedError(result.stderr, returncode=result.returncode)

            if not output_path.exists():
                raise RenderFailedError("Encoder produced no output")
            data = await asyncio.to_thread(output_path.read_bytes)

        logger.info(f"Rendered {composition.id} ({len(data)} bytes)")
        return MediaAsset.from_bytes(data, "video/mp4")

    async def _prepare_video(self, asset: MediaAsset, scope: TempFileScope, media_dir: Path, prefix: str) -> str:
        """Convert to CFR at render width; fall back to the raw file if that fails."""
        source = await self.fetcher.materialize(asset, scope, prefix=f"{prefix}_src")
        target = scope.new_path(prefix, ".mp4", directory=media_dir)
        result = await self.runner(
            video_ops.sanitize_args(
                source,
                target,
                fps=self.settings.output_fps,
                crf=self.settings.video_crf,
                preset=self.settings.video_preset,
                width=self.settings.render_input_width,
                ffmpeg_path=self.settings.ffmpeg_path,
            ),
            timeout=self.settings.render_setup_timeout_seconds,
        )
        if not result.ok or not target.exists():
            logger.warning(f"CFR conversion failed for {prefix}, using raw input: {result.stderr[-500:]}")
            await asyncio.to_thread(shutil.copyfile, source, target)
        return target.name

    async def _prepare_image(self, asset: MediaAsset, scope: TempFileScope, media_dir: Path, prefix: str) -> str:
        resolved = await self.fetcher.resolve(asset)
        extension = resolved.extension if resolved.extension in (".png", ".jpg", ".jpeg", ".webp") else ".png"
        target = scope.new_path(prefix, extension, directory=media_dir)
        await asyncio.to_thread(target.write_bytes, resolved.read_bytes())
        return target.name

    async def _prepare_props(
        self,
        request: RenderRequest,
        composition: CompositionInfo,
        bundle: BundleHandle,
        scope: TempFileScope,
        media_dir: Path,
        server: TempMediaServer,
    ) -> dict:
        props: dict[str, Any] = {
            "composition": composition.id,
            "width": composition.width,
            "height": composition.height,
            "fps": composition.fps,
            "duration_in_frames": composition.duration_in_frames,
        }

        if composition.id == VIDEO_ON_IMAGE_COMPOSITION:
            bg_name = await self._prepare_image(request.background_image, scope, media_dir, "bg")
            video_name = await self._prepare_video(request.base_video, scope, media_dir, "text_video")
            props["background_image_src"] = server.media_url(bg_name)
            props["text_video_src"] = server.media_url(video_name)
            return props

        video_name = await self._prepare_video(request.base_video, scope, media_dir, "render_input")
        props["video_src"] = server.media_url(video_name)
        if request.reference_image is not None:
            ref_name = await self._prepare_image(request.reference_image, scope, media_dir, "ref")
            props["reference_image_src"] = server.media_url(ref_name)

        style = request.style
        props["scenes"] = [asdict(scene) for scene in build_text_scenes(request.texts, composition.fps)]
        props["style"] = {
            "font": resolve_font(style.font_family, bundle.path).to_props(),
            "font_size": style.font_size,
            "text_color": style.text_color,
            "glow_color": style.glow_color,
            "effects": list(style.effects),
            "position": style.position.value,
        }
        return props

    async def _open_page(self, browser, url: str, props: dict, composition: CompositionInfo):
        page = await browser.new_page(
            viewport={"width": composition.width, "height": composition.height},
            device_scale_factor=1,
        )
        await page.goto(url)
        await page.evaluate("props => window.hologen.setup(props)", props)
        return page

    async def _capture_range(self, page, frames: range, frames_dir: Path) -> None:
        for frame in frames:
            await page.evaluate("frame => window.hologen.renderFrame(frame)", frame)
            await page.screenshot(path=str(frames_dir / f"frame_{frame + 1:05d}.png"), type="png")

    async def _capture_frames(
        self,
        url: str,
        props: dict,
        composition: CompositionInfo,
        frames_dir: Path,
        concurrency: int,
    ) -> None:
        chunks = split_frames(composition.duration_in_frames, concurrency)
        try:
            async with self.browser_factory(self.settings) as browser:
                try:
                    pages = await asyncio.wait_for(
                        asyncio.gather(*(self._open_page(browser, url, props, composition) for _ in chunks)),
                        timeout=self.settings.render_setup_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    raise GenerationTimeoutError(
                        f"Render setup exceeded {self.settings.render_setup_timeout_seconds:.0f}s"
                    )

                try:
                    await asyncio.wait_for(
                        asyncio.gather(*(
                            self._capture_range(page, chunk, frames_dir)
                            for page, chunk in zip(pages, chunks)
                        )),
                        timeout=self.settings.render_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    raise GenerationTimeoutError(
                        f"Frame rendering exceeded {self.settings.render_timeout_seconds:.0f}s"
                    )
        except PlaywrightError as e:
            logger.error(f"Headless browser failed: {e}")
            raise RenderFailedError(f"Headless browser failed: {e}") from e
