"""End-to-end generation pipeline.

One ``PipelineCoordinator`` call handles one user request: it drives the job
client, compositor, render bridge and persistence gateway in strict sequence,
tracks progress in a ``PipelineRun`` state machine, and bounds every stage
with its own budget. The whole run is bounded by the worst-case sum of the
budgets, which is checked against the hosting platform's execution ceiling
when the coordinator is constructed.

Entry points never raise for stage failures; they return a
``PipelineOutcome`` that is either PERSISTED with a durable URL or ERRORED
with the error kind and a user-facing category.
"""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

from hologen.config import Settings, get_settings
from hologen.exceptions import (
    ArtifactUploadError,
    ConfigurationError,
    GenerationTimeoutError,
    HologenError,
    InvalidStateTransitionError,
    ProviderUnavailableError,
)
from hologen.render.compositor import CompositionSpec, Compositor, HoldMode
from hologen.render.render_bridge import RenderBridge, RenderRequest
from hologen.schemas.envelope import ErrorLocation
from hologen.services import higgsfield
from hologen.services.error_messages import ErrorCategory, classify_error, user_message
from hologen.services.job_client import GenerationRequest, JobClient, TerminalResult
from hologen.services.media_fetcher import MediaAsset, MediaFetcher
from hologen.services.persistence_gateway import PersistedArtifact, PersistenceGateway
from hologen.services.storage_service import BlobStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# State machine
# =============================================================================


class PipelineState(str, Enum):
    STARTED = "started"
    IMAGE_REQUESTED = "image_requested"
    IMAGE_READY = "image_ready"
    VIDEO_REQUESTED = "video_requested"
    VIDEO_READY = "video_ready"
    COMPOSITED = "composited"
    PERSISTED = "persisted"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.PERSISTED, PipelineState.ERRORED)


# ERRORED is reachable from every non-terminal state and is not listed here.
# STARTED -> VIDEO_REQUESTED covers a caller-supplied start frame;
# STARTED -> COMPOSITED covers compositing and rendering of existing media.
_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.STARTED: frozenset({
        PipelineState.IMAGE_REQUESTED,
        PipelineState.VIDEO_REQUESTED,
        PipelineState.COMPOSITED,
    }),
    PipelineState.IMAGE_REQUESTED: frozenset({PipelineState.IMAGE_READY}),
    PipelineState.IMAGE_READY: frozenset({PipelineState.VIDEO_REQUESTED, PipelineState.PERSISTED}),
    PipelineState.VIDEO_REQUESTED: frozenset({PipelineState.VIDEO_READY}),
    PipelineState.VIDEO_READY: frozenset({PipelineState.COMPOSITED, PipelineState.PERSISTED}),
    PipelineState.COMPOSITED: frozenset({PipelineState.PERSISTED}),
    PipelineState.PERSISTED: frozenset(),
    PipelineState.ERRORED: frozenset(),
}


@dataclass
class PipelineRun:
    """Progress of one coordinator invocation."""

    operation: str
    id: str = field(default_factory=lambda: uuid4().hex)
    state: PipelineState = PipelineState.STARTED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.STARTED])
    error: HologenError | None = None

    def advance(self, state: PipelineState) -> None:
        if state == PipelineState.ERRORED:
            raise InvalidStateTransitionError("Use fail() to enter the errored state")
        if state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Cannot move {self.operation} run from {self.state.value} to {state.value}"
            )
        logger.info(f"[{self.operation} {self.id[:8]}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: HologenError) -> None:
        if self.state.is_terminal:
            raise InvalidStateTransitionError(
                f"Cannot fail {self.operation} run in terminal state {self.state.value}"
            )
        logger.warning(f"[{self.operation} {self.id[:8]}] {self.state.value} -> errored ({error.code})")
        self.error = error
        self.state = PipelineState.ERRORED
        self.history.append(PipelineState.ERRORED)


@dataclass
class PipelineOutcome:
    """What an entry point returns: a durable URL or a structured error."""

    run_id: str
    state: PipelineState
    history: list[PipelineState]
    durable_url: str | None = None
    artifact: PersistedArtifact | None = None
    provider_urls: dict[str, str] = field(default_factory=dict)
    error_kind: str | None = None
    error_category: ErrorCategory | None = None
    error_message: str | None = None
    user_message: str | None = None
    retryable: bool = False
    error: HologenError | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.PERSISTED

    @classmethod
    def from_run(
        cls,
        run: PipelineRun,
        artifact: PersistedArtifact | None = None,
        provider_urls: dict[str, str] | None = None,
    ) -> "PipelineOutcome":
        outcome = cls(
            run_id=run.id,
            state=run.state,
            history=list(run.history),
            artifact=artifact,
            durable_url=artifact.durable_url if artifact else None,
            provider_urls=dict(provider_urls or {}),
        )
        if run.error is not None:
            category = classify_error(run.error)
            outcome.error = run.error
            outcome.error_kind = run.error.code
            outcome.error_category = category
            outcome.error_message = run.error.message
            outcome.user_message = user_message(category)
            outcome.retryable = run.error.retryable
        return outcome

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "durable_url": self.durable_url,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "provider_urls": self.provider_urls,
        }


# =============================================================================
# Coordinator
# =============================================================================


class PipelineCoordinator:
    """Runs one user request end to end under per-stage budgets."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        job_client: JobClient,
        fetcher: MediaFetcher,
        compositor: Compositor,
        render_bridge: RenderBridge,
        gateway: PersistenceGateway,
        storage: BlobStorage,
    ):
        self.settings = settings or get_settings()
        self.job_client = job_client
        self.fetcher = fetcher
        self.compositor = compositor
        self.render_bridge = render_bridge
        self.gateway = gateway
        self.storage = storage
        self._check_budgets()

    def _check_budgets(self) -> None:
        total = self.settings.pipeline_budget_seconds
        ceiling = self.settings.platform_max_duration_seconds
        if total >= ceiling:
            raise ConfigurationError(
                f"Stage budgets sum to {total:.0f}s, which must stay below the "
                f"{ceiling:.0f}s platform ceiling"
            )

    # -------------------------------------------------------------------------
    # Stage helpers
    # -------------------------------------------------------------------------

    async def _stage(self, awaitable: Awaitable[T], budget: float, stage: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=budget)
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(
                f"Stage '{stage}' exceeded its {budget:.0f}s budget",
                location=ErrorLocation(stage=stage),
            )

    async def _submit_and_poll(
        self,
        run: PipelineRun,
        request: GenerationRequest,
        *,
        submit_budget: float,
        poll_budget: float,
        interval: float,
    ) -> TerminalResult:
        """Submit with transport retries inside ``submit_budget``, then poll.

        Only ``ProviderUnavailableError`` is retried. Rejections, failures
        and content blocks surface immediately.
        """
        stage = f"{request.kind.value}_submit"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + submit_budget
        attempts = 1 + max(self.settings.submit_retry_attempts, 0)

        for attempt in range(1, attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise GenerationTimeoutError(
                    f"Stage '{stage}' exceeded its {submit_budget:.0f}s budget",
                    location=ErrorLocation(stage=stage),
                )
            try:
                job = await self._stage(self.job_client.submit(request), remaining, stage)
                break
            except ProviderUnavailableError as e:
                if attempt == attempts:
                    raise
                logger.warning(f"[{run.operation} {run.id[:8]}] submit attempt {attempt} failed, retrying: {e.message}")

        # The poll loop ends at most one interval past its budget
        hard_cap = poll_budget + interval
        return await self._stage(
            self.job_client.poll_until_terminal(job, max_wait=poll_budget, interval=interval),
            hard_cap,
            f"{request.kind.value}_poll",
        )

    async def _provider_image_url(self, owner_id: str, ref: str) -> str:
        """Providers only accept URLs; upload inline or local images first."""
        if ref.startswith(("http://", "https://")):
            return ref

        asset = await self.fetcher.resolve(ref)
        data = asset.read_bytes()
        digest = hashlib.sha256(data).hexdigest()[:16]
        path = f"{self.settings.reference_folder}/{owner_id}/ref_{digest}{asset.extension}"
        try:
            await asyncio.to_thread(self.storage.save, data, path, asset.mime_type)
            url = await asyncio.to_thread(self.storage.make_public, path)
        except Exception as e:
            raise ArtifactUploadError(f"Reference image upload failed: {e}") from e
        logger.info(f"Uploaded reference image to {path}")
        return url

    async def _generate_image_url(
        self,
        run: PipelineRun,
        owner_id: str,
        prompt: str,
        *,
        reference_image: str | None,
        aspect_ratio: str | None,
    ) -> str:
        reference_url = None
        if reference_image:
            reference_url = await self._stage(
                self._provider_image_url(owner_id, reference_image),
                self.settings.upload_budget_seconds,
                "reference_upload",
            )

        request = higgsfield.build_image_request(
            prompt,
            reference_image_url=reference_url,
            aspect_ratio=aspect_ratio,
            settings=self.settings,
        )
        run.advance(PipelineState.IMAGE_REQUESTED)
        result = await self._submit_and_poll(
            run,
            request,
            submit_budget=self.settings.image_submit_budget_seconds,
            poll_budget=self.settings.image_poll_budget_seconds,
            interval=self.settings.image_poll_interval_seconds,
        )
        run.advance(PipelineState.IMAGE_READY)
        return result.result_url

    async def _persist(
        self,
        run: PipelineRun,
        owner_id: str,
        source_location_key: str,
        asset: MediaAsset,
        metadata: dict[str, Any] | None,
        fallback_url: str | None = None,
    ) -> PersistedArtifact:
        artifact = await self._stage(
            self.gateway.persist(owner_id, source_location_key, asset, metadata, fallback_url=fallback_url),
            self.settings.persist_budget_seconds,
            "persist",
        )
        run.advance(PipelineState.PERSISTED)
        return artifact

    async def _execute(
        self,
        run: PipelineRun,
        body: Awaitable[PipelineOutcome],
        *,
        bounded: bool = True,
    ) -> PipelineOutcome:
        """Await ``body`` and fold any failure into an ERRORED outcome.

        Bounded runs are cut off at ``pipeline_budget_seconds`` whatever their
        stages do; the render bridge carries its own timeout tiers instead.
        """
        deadline = self.settings.pipeline_budget_seconds if bounded else None
        try:
            return await asyncio.wait_for(body, timeout=deadline)
        except asyncio.TimeoutError:
            logger.error(f"[{run.operation} {run.id[:8]}] exceeded the {deadline:.0f}s pipeline deadline in {run.state.value}")
            run.fail(GenerationTimeoutError(
                f"Pipeline exceeded its {deadline:.0f}s deadline",
                location=ErrorLocation(stage="pipeline"),
            ))
        except HologenError as e:
            run.fail(e)
        except Exception as e:
            logger.exception(f"[{run.operation} {run.id[:8]}] unexpected failure: {e}")
            run.fail(HologenError(f"Unexpected pipeline failure: {e}"))
        return PipelineOutcome.from_run(run)

    @staticmethod
    def _output_key(asset: MediaAsset) -> str:
        return f"sha256:{hashlib.sha256(asset.read_bytes()).hexdigest()}"

    def _overlay_spec(
        self,
        *,
        duration_seconds: float,
        size: int | None = None,
        foreground_hold: HoldMode = HoldMode.HOLD_LAST,
    ) -> CompositionSpec:
        return CompositionSpec.overlay(
            size=size or self.settings.overlay_size,
            duration_seconds=duration_seconds,
            fps=self.settings.output_fps,
            foreground_hold=foreground_hold,
            pix_fmt=self.settings.output_pix_fmt,
            crf=self.settings.video_crf,
            preset=self.settings.video_preset,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def generate_image(
        self,
        owner_id: str,
        prompt: str,
        *,
        reference_image: str | None = None,
        aspect_ratio: str | None = None,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        """Image job -> poll -> persist. The key defaults to the provider image URL."""
        run = PipelineRun("generate_image")

        async def body() -> PipelineOutcome:
            image_url = await self._generate_image_url(
                run, owner_id, prompt,
                reference_image=reference_image,
                aspect_ratio=aspect_ratio,
            )
            asset = MediaAsset.from_url(image_url)
            artifact = await self._persist(
                run, owner_id, source_location_key or image_url, asset, metadata,
                fallback_url=image_url,
            )
            return PipelineOutcome.from_run(run, artifact, {"image": image_url})

        return await self._execute(run, body())

    async def generate_video(
        self,
        owner_id: str,
        prompt: str,
        *,
        image: str | None = None,
        end_image: str | None = None,
        image_prompt: str | None = None,
        reference_image: str | None = None,
        aspect_ratio: str | None = None,
        duration: int | None = None,
        model: str | None = None,
        overlay_background: str | None = None,
        loop_count: int | None = None,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        """Image job (unless ``image`` is given) -> video job -> optional post-processing -> persist.

        ``end_image`` switches to the start/end frame model. ``overlay_background``
        screen-blends the generated clip onto that image; ``loop_count`` turns
        it into a ping-pong loop. Post-processed outputs have no provider URL to
        fall back to, so their upload failures are fatal.
        """
        run = PipelineRun("generate_video")
        provider_urls: dict[str, str] = {}

        async def body() -> PipelineOutcome:
            if image:
                start_url = await self._stage(
                    self._provider_image_url(owner_id, image),
                    self.settings.upload_budget_seconds,
                    "start_frame_upload",
                )
            else:
                start_url = await self._generate_image_url(
                    run, owner_id, image_prompt or prompt,
                    reference_image=reference_image,
                    aspect_ratio=aspect_ratio,
                )
            provider_urls["image"] = start_url

            if end_image:
                end_url = await self._stage(
                    self._provider_image_url(owner_id, end_image),
                    self.settings.upload_budget_seconds,
                    "end_frame_upload",
                )
                request = higgsfield.build_start_end_video_request(
                    start_url, end_url, prompt,
                    duration=duration, model=model, settings=self.settings,
                )
            else:
                request = higgsfield.build_video_request(
                    start_url, prompt,
                    duration=duration, model=model, settings=self.settings,
                )

            run.advance(PipelineState.VIDEO_REQUESTED)
            result = await self._submit_and_poll(
                run,
                request,
                submit_budget=self.settings.video_submit_budget_seconds,
                poll_budget=self.settings.video_poll_budget_seconds,
                interval=self.settings.video_poll_interval_seconds,
            )
            run.advance(PipelineState.VIDEO_READY)
            video_url = result.result_url
            provider_urls["video"] = video_url

            asset = MediaAsset.from_url(video_url, "video/mp4")
            fallback_url: str | None = video_url
            key = source_location_key or video_url

            if overlay_background or loop_count:
                asset = await self._stage(
                    self._post_process(
                        asset, overlay_background, loop_count,
                        clip_seconds=float(duration or self.settings.default_video_duration_seconds),
                    ),
                    self.settings.composite_budget_seconds,
                    "composite",
                )
                run.advance(PipelineState.COMPOSITED)
                fallback_url = None

            artifact = await self._persist(run, owner_id, key, asset, metadata, fallback_url=fallback_url)
            return PipelineOutcome.from_run(run, artifact, provider_urls)

        outcome = await self._execute(run, body())
        outcome.provider_urls = dict(provider_urls)
        return outcome

    async def _post_process(
        self,
        video: MediaAsset,
        overlay_background: str | None,
        loop_count: int | None,
        *,
        clip_seconds: float,
    ) -> MediaAsset:
        """Loop and/or overlay the generated clip.

        The overlay lasts as long as the clip the provider was asked for, times
        the number of loop passes.
        """
        passes = 1
        if loop_count and loop_count > 1:
            video = await self.compositor.loop_video(video, loop_count=loop_count, crop_square=True)
            passes = loop_count
        if overlay_background:
            background = await self.fetcher.resolve(overlay_background)
            spec = self._overlay_spec(duration_seconds=clip_seconds * passes)
            video = await self.compositor.compose(spec, [background, video])
        return video

    async def composite_overlay(
        self,
        owner_id: str,
        background: str,
        foreground: str,
        *,
        duration_seconds: float = 5.0,
        size: int | None = None,
        loop_foreground: bool = False,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        """Screen-blend ``foreground`` (a black-background clip) onto ``background`` and persist."""
        run = PipelineRun("composite_overlay")

        async def body() -> PipelineOutcome:
            spec = self._overlay_spec(
                duration_seconds=duration_seconds,
                size=size,
                foreground_hold=HoldMode.LOOP if loop_foreground else HoldMode.HOLD_LAST,
            )
            inputs = [await self.fetcher.resolve(background), await self.fetcher.resolve(foreground)]
            output = await self._stage(
                self.compositor.compose(spec, inputs),
                self.settings.composite_budget_seconds,
                "composite",
            )
            run.advance(PipelineState.COMPOSITED)
            artifact = await self._persist(
                run, owner_id, source_location_key or self._output_key(output), output, metadata,
            )
            return PipelineOutcome.from_run(run, artifact)

        return await self._execute(run, body())

    async def render_text_overlay(
        self,
        owner_id: str,
        request: RenderRequest,
        *,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        """Headless-browser text overlay. The render tiers carry their own timeouts."""
        run = PipelineRun("render_text_overlay")

        async def body() -> PipelineOutcome:
            bundle = await self.render_bridge.build_template_once()
            output = await self.render_bridge.render(request, bundle)
            run.advance(PipelineState.COMPOSITED)
            artifact = await self._persist(
                run, owner_id, source_location_key or self._output_key(output), output, metadata,
            )
            return PipelineOutcome.from_run(run, artifact)

        return await self._execute(run, body(), bounded=False)

    async def loop_video(
        self,
        owner_id: str,
        video: str,
        *,
        loop_count: int = 2,
        crop_square: bool = False,
        trim_seconds: float | None = None,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        run = PipelineRun("loop_video")

        async def body() -> PipelineOutcome:
            source = await self.fetcher.resolve(video)
            output = await self._stage(
                self.compositor.loop_video(
                    source, loop_count=loop_count, crop_square=crop_square, trim_seconds=trim_seconds,
                ),
                self.settings.composite_budget_seconds,
                "loop",
            )
            run.advance(PipelineState.COMPOSITED)
            artifact = await self._persist(
                run, owner_id, source_location_key or self._output_key(output), output, metadata,
            )
            return PipelineOutcome.from_run(run, artifact)

        return await self._execute(run, body())

    async def merge_videos(
        self,
        owner_id: str,
        videos: Sequence[str],
        *,
        square: bool = True,
        source_location_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineOutcome:
        run = PipelineRun("merge_videos")

        async def body() -> PipelineOutcome:
            sources = [await self.fetcher.resolve(ref) for ref in videos]
            output = await self._stage(
                self.compositor.merge_videos(sources, square=square),
                self.settings.composite_budget_seconds,
                "merge",
            )
            run.advance(PipelineState.COMPOSITED)
            artifact = await self._persist(
                run, owner_id, source_location_key or self._output_key(output), output, metadata,
            )
            return PipelineOutcome.from_run(run, artifact)

        return await self._execute(run, body())
