"""Tests for the headless-browser render bridge.

Chromium is replaced by an in-memory fake browser and the temp media server
by a stub, so these tests exercise props, frame scheduling, timeout tiers
and cleanup without launching anything.
"""

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import PNG_1X1, FakeRunner
from hologen.api.temp_media import is_allowed_media_name
from hologen.exceptions import CompositingFailedError, GenerationTimeoutError, RenderFailedError
from hologen.render import render_bridge
from hologen.render.render_bridge import (
    TEXT_OVERLAY_COMPOSITION,
    VIDEO_ON_IMAGE_COMPOSITION,
    BundleHandle,
    RenderBridge,
    RenderRequest,
    TextCue,
    build_text_scenes,
    compile_template,
    select_composition,
    split_frames,
)
from hologen.services.media_fetcher import MediaAsset

MP4_STUB = b"\x00\x00\x00\x18ftypmp42stub"


def video_asset() -> MediaAsset:
    return MediaAsset.from_bytes(MP4_STUB, "video/mp4")


def image_asset() -> MediaAsset:
    return MediaAsset.from_bytes(PNG_1X1, "image/png")


# =============================================================================
# Fakes
# =============================================================================


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser

    async def goto(self, url: str) -> None:
        if self.browser.goto_delay:
            await asyncio.sleep(self.browser.goto_delay)
        if self.browser.goto_error:
            raise self.browser.goto_error
        self.browser.urls.append(url)

    async def evaluate(self, script: str, arg) -> None:
        if "setup" in script:
            self.browser.setup_props.append(arg)
        elif self.browser.frame_delay:
            await asyncio.sleep(self.browser.frame_delay)

    async def screenshot(self, path: str, type: str) -> None:
        Path(path).write_bytes(PNG_1X1)
        self.browser.frames.append(Path(path).name)


class FakeBrowser:
    def __init__(self, goto_delay: float = 0, frame_delay: float = 0, goto_error: Exception | None = None):
        self.goto_delay = goto_delay
        self.frame_delay = frame_delay
        self.goto_error = goto_error
        self.pages: list[FakePage] = []
        self.urls: list[str] = []
        self.setup_props: list[dict] = []
        self.frames: list[str] = []
        self.viewports: list[dict] = []
        self.closed = False

    async def new_page(self, viewport: dict, device_scale_factor: int = 1) -> FakePage:
        self.viewports.append(viewport)
        page = FakePage(self)
        self.pages.append(page)
        return page

    @asynccontextmanager
    async def _session(self):
        try:
            yield self
        finally:
            self.closed = True

    def factory(self, settings):
        return self._session()


class StubMediaServer:
    def __init__(self, media_dir: Path, bundle_dir: Path | None = None):
        self.media_dir = media_dir
        self.bundle_dir = bundle_dir

    async def __aenter__(self) -> "StubMediaServer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        pass

    def media_url(self, name: str) -> str:
        assert (self.media_dir / name).is_file()
        return f"http://media.test/temp-media/{name}"

    def bundle_url(self, path: str = "index.html") -> str:
        return f"http://media.test/bundle/{path}"


@pytest.fixture
def stub_server(monkeypatch):
    monkeypatch.setattr(render_bridge, "TempMediaServer", StubMediaServer)


@pytest.fixture
def bundle(settings) -> BundleHandle:
    return compile_template(Path(settings.render_template_dir), Path(settings.render_bundle_root))


def text_request(**overrides) -> RenderRequest:
    values = dict(base_video=video_asset(), texts=[TextCue("hello")], fps=10, width=540, height=540)
    values.update(overrides)
    return RenderRequest(**values)


# =============================================================================
# Pure helpers
# =============================================================================


class TestBuildTextScenes:
    def test_consecutive_default_windows(self):
        scenes = build_text_scenes([TextCue("a"), TextCue("b")], fps=30)
        assert [(s.start_frame, s.end_frame) for s in scenes] == [(0, 150), (150, 300)]

    def test_explicit_window(self):
        scenes = build_text_scenes([TextCue("a", start_seconds=1, end_seconds=2.5)], fps=30)
        assert (scenes[0].start_frame, scenes[0].end_frame) == (30, 75)

    def test_seeds_are_stable(self):
        first = build_text_scenes([TextCue("a"), TextCue("b")], fps=30)
        second = build_text_scenes([TextCue("x"), TextCue("y")], fps=30)
        assert [s.seed for s in first] == [s.seed for s in second]

    def test_inverted_window(self):
        with pytest.raises(ValueError):
            build_text_scenes([TextCue("a", start_seconds=3, end_seconds=2)], fps=30)


class TestSelectComposition:
    def test_text_overlay_duration_from_scenes(self):
        info = select_composition(text_request(texts=[TextCue("a"), TextCue("b")], fps=30))
        assert info.id == TEXT_OVERLAY_COMPOSITION
        assert info.duration_in_frames == 300

    def test_explicit_duration_wins(self):
        info = select_composition(text_request(fps=30, duration_seconds=2))
        assert info.duration_in_frames == 60

    def test_background_image_selects_video_on_image(self):
        info = select_composition(RenderRequest(base_video=video_asset(), background_image=image_asset()))
        assert info.id == VIDEO_ON_IMAGE_COMPOSITION
        assert info.duration_in_frames == 150

    def test_text_overlay_needs_texts(self):
        with pytest.raises(ValueError):
            select_composition(RenderRequest(base_video=video_asset()))

    def test_needs_a_video(self):
        with pytest.raises(ValueError):
            select_composition(RenderRequest(background_image=image_asset()))


class TestSplitFrames:
    def test_covers_every_frame_once(self):
        ranges = split_frames(50, 8)
        frames = [frame for chunk in ranges for frame in chunk]
        assert frames == list(range(50))
        assert len(ranges) == 8
        assert max(len(r) for r in ranges) - min(len(r) for r in ranges) <= 1

    def test_fewer_frames_than_workers(self):
        assert split_frames(3, 8) == [range(0, 1), range(1, 2), range(2, 3)]


# =============================================================================
# Bundle
# =============================================================================


class TestTemplateBundle:
    def test_styles_and_scripts_inlined(self, bundle):
        html = bundle.entry.read_text(encoding="utf-8")
        assert "<!-- STYLES -->" not in html
        assert "<!-- SCRIPTS -->" not in html
        assert "<style>" in html and "<script>" in html

    def test_content_addressed(self, settings, bundle):
        again = compile_template(Path(settings.render_template_dir), Path(settings.render_bundle_root))
        assert again.path == bundle.path
        assert again.content_hash == bundle.content_hash

    def test_missing_template(self, tmp_path):
        with pytest.raises(RenderFailedError):
            compile_template(tmp_path / "nope", tmp_path / "bundles")

    @pytest.mark.asyncio
    async def test_build_once_then_rebuild_when_deleted(self, settings):
        bridge = RenderBridge(settings, runner=FakeRunner())

        first = await bridge.build_template_once()
        assert await bridge.build_template_once() is first

        shutil.rmtree(first.path)
        rebuilt = await bridge.build_template_once()
        assert rebuilt.is_valid()
        assert rebuilt.path == first.path


# =============================================================================
# Render
# =============================================================================


@pytest.mark.usefixtures("stub_server")
class TestRender:
    @pytest.mark.asyncio
    async def test_text_overlay(self, settings, temp_dir, bundle, fake_runner):
        browser = FakeBrowser()
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=browser.factory)

        output = await bridge.render(text_request(), bundle)

        assert output.data == fake_runner.output
        assert len(browser.pages) == settings.render_concurrency
        assert sorted(browser.frames) == [f"frame_{n:05d}.png" for n in range(1, 51)]
        assert browser.viewports[0] == {"width": 540, "height": 540}
        props = browser.setup_props[0]
        assert props["composition"] == TEXT_OVERLAY_COMPOSITION
        assert props["scenes"][0]["text"] == "hello"
        assert is_allowed_media_name(props["video_src"].rsplit("/", 1)[-1])
        assert browser.closed
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_video_on_image_uses_fewer_tabs(self, settings, temp_dir, bundle, fake_runner):
        browser = FakeBrowser()
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=browser.factory)
        request = RenderRequest(base_video=video_asset(), background_image=image_asset(), fps=10)

        await bridge.render(request, bundle)

        assert len(browser.pages) == settings.render_overlay_concurrency
        props = browser.setup_props[0]
        assert is_allowed_media_name(props["background_image_src"].rsplit("/", 1)[-1])
        assert is_allowed_media_name(props["text_video_src"].rsplit("/", 1)[-1])
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_encode_uses_frame_sequence(self, settings, temp_dir, bundle, fake_runner):
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=FakeBrowser().factory)

        await bridge.render(text_request(), bundle)

        encode = fake_runner.calls[-1]
        assert encode[encode.index("-i") + 1].endswith("frame_%05d.png")
        assert fake_runner.timeouts[-1] == settings.render_timeout_seconds

    @pytest.mark.asyncio
    async def test_cfr_failure_falls_back_to_raw_input(self, settings, temp_dir, bundle, caplog):
        class FailingSanitize(FakeRunner):
            async def __call__(self, cmd, *, timeout=None):
                if "-vf" in cmd:
                    self.calls.append(list(cmd))
                    return await FakeRunner(returncode=1, stderr="bad input")(cmd, timeout=timeout)
                return await super().__call__(cmd, timeout=timeout)

        bridge = RenderBridge(settings, runner=FailingSanitize(), browser_factory=FakeBrowser().factory)
        with caplog.at_level(logging.WARNING, logger="hologen.render.render_bridge"):
            output = await bridge.render(text_request(), bundle)

        assert output.mime_type == "video/mp4"
        assert "using raw input" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_bundle(self, settings, temp_dir, bundle, fake_runner):
        shutil.rmtree(bundle.path)
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=FakeBrowser().factory)
        with pytest.raises(RenderFailedError):
            await bridge.render(text_request(), bundle)

    @pytest.mark.asyncio
    async def test_setup_timeout(self, settings, temp_dir, bundle, fake_runner):
        settings.render_setup_timeout_seconds = 0.05
        browser = FakeBrowser(goto_delay=5)
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=browser.factory)

        with pytest.raises(GenerationTimeoutError):
            await bridge.render(text_request(), bundle)
        assert browser.closed
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_render_timeout(self, settings, temp_dir, bundle, fake_runner):
        settings.render_timeout_seconds = 0.05
        browser = FakeBrowser(frame_delay=5)
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=browser.factory)

        with pytest.raises(GenerationTimeoutError):
            await bridge.render(text_request(), bundle)
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_browser_error(self, settings, temp_dir, bundle, fake_runner):
        browser = FakeBrowser(goto_error=PlaywrightError("Target closed"))
        bridge = RenderBridge(settings, runner=fake_runner, browser_factory=browser.factory)

        with pytest.raises(RenderFailedError):
            await bridge.render(text_request(), bundle)
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_encode_failure(self, settings, temp_dir, bundle):
        class FailingEncode(FakeRunner):
            async def __call__(self, cmd, *, timeout=None):
                if "-start_number" in cmd:
                    self.calls.append(list(cmd))
                    return await FakeRunner(returncode=1, stderr="encoder died")(cmd, timeout=timeout)
                return await super().__call__(cmd, timeout=timeout)

        bridge = RenderBridge(settings, runner=FailingEncode(), browser_factory=FakeBrowser().factory)
        with pytest.raises(CompositingFailedError):
            await bridge.render(text_request(), bundle)
        assert list(temp_dir.iterdir()) == []
