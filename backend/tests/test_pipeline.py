"""Tests for the pipeline coordinator and its run state machine.

The provider and the CDN it hands results out from are both served by one
``httpx.MockTransport``; FFmpeg and the poll clock are faked.
"""

import asyncio
import base64
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import PNG_1X1, FakeRunner
from hologen.exceptions import (
    ConfigurationError,
    GenerationFailedError,
    InvalidStateTransitionError,
)
from hologen.render.compositor import Compositor
from hologen.render.render_bridge import RenderBridge, RenderRequest, TextCue
from hologen.services.error_messages import ErrorCategory
from hologen.services.job_client import JobClient
from hologen.services.media_fetcher import MediaAsset, MediaFetcher
from hologen.services.persistence_gateway import PersistenceGateway, derive_artifact_id
from hologen.services.pipeline import (
    PipelineCoordinator,
    PipelineOutcome,
    PipelineRun,
    PipelineState,
)
from hologen.services.storage_service import LocalStorageService

MP4_STUB = b"\x00\x00\x00\x18ftypmp42stub"
IMAGE_URL = "https://cdn.test/results/image.png"
VIDEO_URL = "https://cdn.test/results/video.mp4"

S = PipelineState


class FakeProvider:
    """Provider + CDN. ``image_statuses``/``video_statuses`` are replayed per status poll."""

    def __init__(self, image_statuses=None, video_statuses=None, submit_errors=None):
        self.image_statuses = list(image_statuses or [{"status": "completed", "images": [{"url": IMAGE_URL}]}])
        self.video_statuses = list(video_statuses or [{"status": "completed", "video": {"url": VIDEO_URL}}])
        self.submit_errors = list(submit_errors or [])
        self.submits: list[str] = []
        self.polls = {"img": 0, "vid": 0}

    def _next(self, statuses: list[dict]) -> dict:
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "cdn.test":
            if request.url.path.endswith(".png"):
                return httpx.Response(200, content=PNG_1X1, headers={"content-type": "image/png"})
            return httpx.Response(200, content=MP4_STUB, headers={"content-type": "video/mp4"})

        if request.method == "POST":
            self.submits.append(request.url.path)
            if self.submit_errors:
                error = self.submit_errors.pop(0)
                if isinstance(error, Exception):
                    raise error
                return error
            job_id = "img" if "nano-banana" in request.url.path else "vid"
            return httpx.Response(200, json={
                "status": "queued",
                "request_id": job_id,
                "status_url": f"https://provider.test/requests/{job_id}/status",
            })

        job_id = request.url.path.split("/")[2]
        self.polls[job_id] += 1
        statuses = self.image_statuses if job_id == "img" else self.video_statuses
        return httpx.Response(200, json=self._next(statuses))


class BrokenStorage(LocalStorageService):
    def save(self, data, path, content_type):
        raise OSError("bucket unavailable")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def build_coordinator(settings, session_maker, fake_clock, fake_runner, temp_dir):
    """Factory so tests can swap the provider script, storage or render bridge."""

    def build(provider, *, storage=None, render_bridge=None, runner=None):
        transport = httpx.MockTransport(provider)
        fetcher = MediaFetcher(settings, transport=transport)
        storage = storage or LocalStorageService(settings)
        return PipelineCoordinator(
            settings,
            job_client=JobClient(settings, transport=transport, clock=fake_clock, sleep=fake_clock.sleep),
            fetcher=fetcher,
            compositor=Compositor(settings, fetcher=fetcher, runner=runner or fake_runner),
            render_bridge=render_bridge or RenderBridge(settings, fetcher=fetcher, runner=fake_runner),
            gateway=PersistenceGateway(storage, session_maker, settings, fetcher=fetcher),
            storage=storage,
        )

    return build


# =============================================================================
# State machine
# =============================================================================


class TestPipelineRun:
    def test_image_path(self):
        run = PipelineRun("generate_image")
        for state in (S.IMAGE_REQUESTED, S.IMAGE_READY, S.PERSISTED):
            run.advance(state)
        assert run.history == [S.STARTED, S.IMAGE_REQUESTED, S.IMAGE_READY, S.PERSISTED]
        assert run.state.is_terminal

    def test_full_video_path(self):
        run = PipelineRun("generate_video")
        for state in (S.IMAGE_REQUESTED, S.IMAGE_READY, S.VIDEO_REQUESTED, S.VIDEO_READY, S.COMPOSITED, S.PERSISTED):
            run.advance(state)
        assert run.state == S.PERSISTED

    def test_skipping_a_stage_is_rejected(self):
        run = PipelineRun("generate_image")
        with pytest.raises(InvalidStateTransitionError):
            run.advance(S.IMAGE_READY)

    def test_errored_only_through_fail(self):
        run = PipelineRun("generate_image")
        with pytest.raises(InvalidStateTransitionError):
            run.advance(S.ERRORED)

    def test_fail_from_any_non_terminal_state(self):
        run = PipelineRun("generate_video")
        run.advance(S.VIDEO_REQUESTED)
        run.fail(GenerationFailedError("boom"))
        assert run.state == S.ERRORED
        assert run.history[-1] == S.ERRORED

    def test_terminal_states_are_final(self):
        run = PipelineRun("generate_image")
        run.fail(GenerationFailedError("boom"))
        with pytest.raises(InvalidStateTransitionError):
            run.fail(GenerationFailedError("again"))
        with pytest.raises(InvalidStateTransitionError):
            run.advance(S.IMAGE_REQUESTED)

    def test_outcome_from_failed_run(self):
        run = PipelineRun("generate_image")
        run.fail(GenerationFailedError("quota exceeded"))
        outcome = PipelineOutcome.from_run(run)
        assert not outcome.ok
        assert outcome.error_kind == "GENERATION_FAILED"
        assert outcome.error_category == ErrorCategory.QUOTA
        assert outcome.user_message
        assert outcome.durable_url is None


class TestBudgets:
    @pytest.mark.asyncio
    async def test_budgets_must_fit_platform_ceiling(self, settings, build_coordinator, provider):
        settings.platform_max_duration_seconds = 100
        with pytest.raises(ConfigurationError):
            build_coordinator(provider)

    @pytest.mark.asyncio
    async def test_default_budgets_fit(self, settings, build_coordinator, provider):
        assert settings.pipeline_budget_seconds < settings.platform_max_duration_seconds
        build_coordinator(provider)

    def test_worst_case_path_counts_every_stage(self, settings):
        expected = (
            2 * settings.upload_budget_seconds
            + settings.image_submit_budget_seconds
            + settings.image_poll_budget_seconds
            + settings.image_poll_interval_seconds
            + settings.video_submit_budget_seconds
            + settings.video_poll_budget_seconds
            + settings.video_poll_interval_seconds
            + settings.composite_budget_seconds
            + settings.persist_budget_seconds
        )
        assert settings.pipeline_budget_seconds == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_whole_run_cut_off_at_pipeline_deadline(self, settings, build_coordinator, provider):
        for name in (
            "upload_budget_seconds", "image_submit_budget_seconds", "image_poll_budget_seconds",
            "video_submit_budget_seconds", "video_poll_budget_seconds", "composite_budget_seconds",
        ):
            setattr(settings, name, 0.05)
        settings.image_poll_interval_seconds = 0.01
        settings.video_poll_interval_seconds = 0.01
        settings.persist_budget_seconds = 0.1
        coordinator = build_coordinator(provider)

        async def slow_resolve(ref):
            await asyncio.sleep(5)

        coordinator.fetcher.resolve = slow_resolve
        outcome = await asyncio.wait_for(
            coordinator.composite_overlay("user-1", "https://cdn.test/bg.png", VIDEO_URL),
            timeout=2,
        )

        assert outcome.state == S.ERRORED
        assert outcome.error_kind == "GENERATION_TIMEOUT"
        assert outcome.error.location.stage == "pipeline"


# =============================================================================
# Image
# =============================================================================


class TestGenerateImage:
    @pytest.mark.asyncio
    async def test_completes_on_first_poll(self, build_coordinator, provider, fake_clock, settings):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "a glowing jellyfish")

        assert outcome.ok
        assert outcome.history == [S.STARTED, S.IMAGE_REQUESTED, S.IMAGE_READY, S.PERSISTED]
        assert provider.polls["img"] == 1
        assert fake_clock.sleeps == [settings.image_poll_interval_seconds]
        assert outcome.provider_urls == {"image": IMAGE_URL}
        assert outcome.artifact.id == derive_artifact_id("user-1", IMAGE_URL)
        assert outcome.durable_url.startswith("http://testserver/api/storage/files/")

    @pytest.mark.asyncio
    async def test_immediate_result_needs_no_poll(self, build_coordinator, provider):
        provider.submit_errors = [httpx.Response(200, json={
            "status": "completed", "request_id": "img", "images": [{"url": IMAGE_URL}],
        })]
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.ok
        assert provider.polls["img"] == 0

    @pytest.mark.asyncio
    async def test_content_policy_is_not_retried(self, build_coordinator):
        provider = FakeProvider(image_statuses=[{"status": "nsfw"}])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.state == S.ERRORED
        assert outcome.history == [S.STARTED, S.IMAGE_REQUESTED, S.ERRORED]
        assert outcome.error_kind == "CONTENT_POLICY_VIOLATION"
        assert outcome.error_category == ErrorCategory.CONTENT_POLICY
        assert outcome.retryable is False
        assert len(provider.submits) == 1

    @pytest.mark.asyncio
    async def test_poll_timeout(self, build_coordinator, settings):
        provider = FakeProvider(image_statuses=[{"status": "in_progress"}])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.error_kind == "GENERATION_TIMEOUT"
        assert outcome.error_category == ErrorCategory.TIMEOUT
        assert provider.polls["img"] == int(settings.image_poll_budget_seconds / settings.image_poll_interval_seconds)

    @pytest.mark.asyncio
    async def test_transport_failure_retried_once(self, build_coordinator):
        provider = FakeProvider(submit_errors=[httpx.ConnectError("refused")])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.ok
        assert len(provider.submits) == 2

    @pytest.mark.asyncio
    async def test_transport_failure_exhausts_retries(self, build_coordinator):
        provider = FakeProvider(submit_errors=[httpx.ConnectError("refused"), httpx.ConnectError("refused")])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.error_kind == "PROVIDER_UNAVAILABLE"
        assert outcome.retryable is True
        assert len(provider.submits) == 2

    @pytest.mark.asyncio
    async def test_rejection_not_retried(self, build_coordinator):
        provider = FakeProvider(submit_errors=[httpx.Response(400, json={"detail": "bad prompt"})])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.error_kind == "PROVIDER_REJECTED"
        assert len(provider.submits) == 1

    @pytest.mark.asyncio
    async def test_upload_failure_degrades_to_provider_url(self, build_coordinator, provider, settings):
        coordinator = build_coordinator(provider, storage=BrokenStorage(settings))

        outcome = await coordinator.generate_image("user-1", "prompt")

        assert outcome.ok
        assert outcome.artifact.degraded is True
        assert outcome.durable_url == IMAGE_URL

    @pytest.mark.asyncio
    async def test_inline_reference_uploaded_before_submit(self, build_coordinator, provider, settings):
        coordinator = build_coordinator(provider)
        reference = "data:image/png;base64," + base64.b64encode(PNG_1X1).decode()

        outcome = await coordinator.generate_image("user-1", "prompt", reference_image=reference)

        assert outcome.ok
        references = list((Path(settings.local_storage_path) / settings.reference_folder / "user-1").iterdir())
        assert len(references) == 1
        assert references[0].name.startswith("ref_")

    @pytest.mark.asyncio
    async def test_repeat_request_is_duplicate(self, build_coordinator, provider):
        coordinator = build_coordinator(provider)

        first = await coordinator.generate_image("user-1", "prompt")
        second = await coordinator.generate_image("user-1", "prompt")

        assert second.ok
        assert second.artifact.is_duplicate is True
        assert second.durable_url == first.durable_url


# =============================================================================
# Video
# =============================================================================


class TestGenerateVideo:
    @pytest.mark.asyncio
    async def test_image_then_video(self, build_coordinator, provider):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video("user-1", "slow spin", metadata={"title": "Spin"})

        assert outcome.ok
        assert outcome.history == [
            S.STARTED, S.IMAGE_REQUESTED, S.IMAGE_READY, S.VIDEO_REQUESTED, S.VIDEO_READY, S.PERSISTED,
        ]
        assert outcome.provider_urls == {"image": IMAGE_URL, "video": VIDEO_URL}
        assert outcome.artifact.id == derive_artifact_id("user-1", VIDEO_URL)
        assert outcome.artifact.storage_path.endswith(".mp4")

    @pytest.mark.asyncio
    async def test_supplied_start_frame_skips_image_job(self, build_coordinator, provider):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video("user-1", "spin", image="https://cdn.test/start.png")

        assert outcome.history == [S.STARTED, S.VIDEO_REQUESTED, S.VIDEO_READY, S.PERSISTED]
        assert len(provider.submits) == 1
        assert provider.polls["img"] == 0

    @pytest.mark.asyncio
    async def test_video_failure_keeps_image_url(self, build_coordinator):
        provider = FakeProvider(video_statuses=[{"status": "failed", "error": "model crashed"}])
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video("user-1", "spin")

        assert outcome.history[-1] == S.ERRORED
        assert outcome.history[-2] == S.VIDEO_REQUESTED
        assert outcome.error_kind == "GENERATION_FAILED"
        assert outcome.provider_urls == {"image": IMAGE_URL}

    @pytest.mark.asyncio
    async def test_overlay_background_composites(self, build_coordinator, provider, fake_runner, temp_dir):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video(
            "user-1", "spin", image=IMAGE_URL, overlay_background="https://cdn.test/bg.png",
        )

        assert outcome.ok
        assert S.COMPOSITED in outcome.history
        assert outcome.artifact.degraded is False
        assert len(fake_runner.calls) == 1
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_overlay_lasts_as_long_as_requested_clip(self, build_coordinator, provider, fake_runner, settings):
        settings.video_crf = 23
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video(
            "user-1", "spin", image=IMAGE_URL, duration=10, overlay_background="https://cdn.test/bg.png",
        )

        assert outcome.ok
        cmd = fake_runner.calls[-1]
        assert cmd[cmd.index("-t", cmd.index("-map")) + 1] == "10"
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-pix_fmt") + 1] == settings.output_pix_fmt

    @pytest.mark.asyncio
    async def test_looped_overlay_covers_every_pass(self, build_coordinator, provider, fake_runner, settings):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.generate_video(
            "user-1", "spin", image=IMAGE_URL, loop_count=3, overlay_background="https://cdn.test/bg.png",
        )

        assert outcome.ok
        cmd = fake_runner.calls[-1]
        expected = 3 * settings.default_video_duration_seconds
        assert cmd[cmd.index("-t", cmd.index("-map")) + 1] == f"{expected:g}"

    @pytest.mark.asyncio
    async def test_post_processed_upload_failure_is_fatal(self, build_coordinator, provider, settings):
        coordinator = build_coordinator(provider, storage=BrokenStorage(settings))

        outcome = await coordinator.generate_video("user-1", "spin", image=IMAGE_URL, loop_count=2)

        assert outcome.error_kind == "ARTIFACT_UPLOAD_FAILED"
        assert outcome.history[-2] == S.COMPOSITED


# =============================================================================
# Compositing and render entry points
# =============================================================================


def _data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64," + base64.b64encode(data).decode()


class TestCompositeOverlay:
    @pytest.mark.asyncio
    async def test_composite_and_persist(self, build_coordinator, provider, temp_dir):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.composite_overlay(
            "user-1", _data_url(PNG_1X1, "image/png"), _data_url(MP4_STUB, "video/mp4"),
        )

        assert outcome.ok
        assert outcome.history == [S.STARTED, S.COMPOSITED, S.PERSISTED]
        assert outcome.artifact.source_location_key.startswith("sha256:")
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_stage_budget_enforced(self, build_coordinator, provider, settings, temp_dir):
        async def slow_runner(cmd, *, timeout=None):
            await asyncio.sleep(5)

        settings.composite_budget_seconds = 0.05
        coordinator = build_coordinator(provider, runner=slow_runner)

        outcome = await coordinator.composite_overlay(
            "user-1", _data_url(PNG_1X1, "image/png"), _data_url(MP4_STUB, "video/mp4"),
        )

        assert outcome.error_kind == "GENERATION_TIMEOUT"
        assert outcome.error.location.stage == "composite"
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_compositing_failure(self, build_coordinator, provider):
        coordinator = build_coordinator(provider, runner=FakeRunner(returncode=1, stderr="bad graph"))

        outcome = await coordinator.composite_overlay(
            "user-1", _data_url(PNG_1X1, "image/png"), _data_url(MP4_STUB, "video/mp4"),
        )

        assert outcome.error_kind == "COMPOSITING_FAILED"
        assert outcome.history == [S.STARTED, S.ERRORED]


class TestRenderTextOverlay:
    def _bridge(self, **render_kwargs) -> MagicMock:
        bridge = MagicMock(spec=RenderBridge)
        bridge.build_template_once = AsyncMock(return_value=MagicMock())
        bridge.render = AsyncMock(**render_kwargs)
        return bridge

    @pytest.mark.asyncio
    async def test_render_and_persist(self, build_coordinator, provider):
        bridge = self._bridge(return_value=MediaAsset.from_bytes(MP4_STUB, "video/mp4"))
        coordinator = build_coordinator(provider, render_bridge=bridge)
        request = RenderRequest(base_video=MediaAsset.from_bytes(MP4_STUB, "video/mp4"), texts=[TextCue("hi")])

        outcome = await coordinator.render_text_overlay("user-1", request, source_location_key="order-7")

        assert outcome.ok
        assert outcome.history == [S.STARTED, S.COMPOSITED, S.PERSISTED]
        assert outcome.artifact.id == derive_artifact_id("user-1", "order-7")
        bridge.render.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal_error(self, build_coordinator, provider):
        bridge = self._bridge(side_effect=RuntimeError("renderer exploded"))
        coordinator = build_coordinator(provider, render_bridge=bridge)
        request = RenderRequest(base_video=MediaAsset.from_bytes(MP4_STUB, "video/mp4"), texts=[TextCue("hi")])

        outcome = await coordinator.render_text_overlay("user-1", request)

        assert outcome.error_kind == "INTERNAL_ERROR"
        assert outcome.error_category == ErrorCategory.GENERIC


class TestLoopVideo:
    @pytest.mark.asyncio
    async def test_loop_and_persist(self, build_coordinator, provider, fake_runner):
        coordinator = build_coordinator(provider)

        outcome = await coordinator.loop_video("user-1", VIDEO_URL, loop_count=4)

        assert outcome.ok
        assert len(fake_runner.calls) == 4
        assert outcome.history == [S.STARTED, S.COMPOSITED, S.PERSISTED]
