"""Generation, compositing and render endpoints.

Thin wrappers around ``PipelineCoordinator``: every endpoint returns the
standard envelope, with ``data`` on success and ``error`` (carrying the
user-facing category) when the run ended in the errored state.
"""

from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from hologen.api.deps import CoordinatorDep, JobClientDep
from hologen.exceptions import HologenError, InvalidMediaReferenceError
from hologen.middleware.request_context import RequestContext, build_meta, get_request_context
from hologen.render.render_bridge import RenderRequest, TextCue, TextPosition, TextStyle
from hologen.schemas.envelope import EnvelopeResponse
from hologen.schemas.generation import (
    CompositeOverlayRequest,
    GenerateImageRequest,
    GenerateVideoRequest,
    JobStatusResponse,
    LoopVideoRequest,
    MergeVideosRequest,
    PipelineResponse,
    RenderTextOverlayRequest,
)
from hologen.services.job_client import GenerationJob, JobKind
from hologen.services.media_fetcher import MediaAsset, decode_data_url
from hologen.services.pipeline import PipelineOutcome

router = APIRouter()

ContextDep = Annotated[RequestContext, Depends(get_request_context)]


def envelope_success(context: RequestContext, data: object) -> EnvelopeResponse:
    return EnvelopeResponse(
        request_id=context.request_id,
        data=data,
        meta=build_meta(context),
    )


def envelope_error_from_exception(context: RequestContext, exc: HologenError) -> JSONResponse:
    envelope = EnvelopeResponse(
        request_id=context.request_id,
        error=exc.to_error_info(),
        meta=build_meta(context),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(envelope.model_dump(exclude_none=True)),
    )


def media_ref_to_asset(ref: str | None) -> MediaAsset | None:
    """Decode inline data now; remote URLs are fetched by the render stage."""
    if ref is None:
        return None
    if ref.startswith("data:"):
        return decode_data_url(ref)
    return MediaAsset.from_url(ref)


def outcome_response(context: RequestContext, outcome: PipelineOutcome) -> EnvelopeResponse | JSONResponse:
    if outcome.error is not None:
        return envelope_error_from_exception(context, outcome.error)
    if outcome.artifact is not None and outcome.artifact.degraded:
        context.warnings.append("Durable upload failed; durable_url points at the provider-hosted copy")
    return envelope_success(context, PipelineResponse.model_validate(outcome.to_dict()))


# =============================================================================
# Provider generation
# =============================================================================


@router.post("/generate/image", response_model=EnvelopeResponse)
async def generate_image(body: GenerateImageRequest, coordinator: CoordinatorDep, context: ContextDep):
    outcome = await coordinator.generate_image(
        body.owner_id,
        body.prompt,
        reference_image=body.reference_image,
        aspect_ratio=body.aspect_ratio,
        source_location_key=body.source_location_key,
        metadata=body.artifact_metadata("image"),
    )
    return outcome_response(context, outcome)


@router.post("/generate/video", response_model=EnvelopeResponse)
async def generate_video(body: GenerateVideoRequest, coordinator: CoordinatorDep, context: ContextDep):
    outcome = await coordinator.generate_video(
        body.owner_id,
        body.prompt,
        image=body.image,
        end_image=body.end_image,
        image_prompt=body.image_prompt,
        reference_image=body.reference_image,
        aspect_ratio=body.aspect_ratio,
        duration=body.duration,
        model=body.model,
        overlay_background=body.overlay_background,
        loop_count=body.loop_count,
        source_location_key=body.source_location_key,
        metadata=body.artifact_metadata("start_end" if body.end_image else "video"),
    )
    return outcome_response(context, outcome)


@router.get("/generate/status", response_model=EnvelopeResponse)
async def get_generation_status(
    job_client: JobClientDep,
    context: ContextDep,
    status_url: str = Query(..., min_length=1),
    kind: JobKind = JobKind.VIDEO,
):
    """Single status check for a job submitted elsewhere."""
    if not status_url.startswith(job_client.base_url + "/"):
        return envelope_error_from_exception(
            context, InvalidMediaReferenceError("status_url must point at the generation provider")
        )

    job = GenerationJob(
        id=status_url.rstrip("/").split("/")[-2] if status_url.endswith("/status") else status_url,
        kind=kind,
        status_url=status_url,
        submitted_at=datetime.now(timezone.utc),
    )
    try:
        await job_client.check_status(job)
    except HologenError as e:
        return envelope_error_from_exception(context, e)

    return envelope_success(
        context,
        JobStatusResponse(
            status_url=status_url,
            state=job.state.value,
            result_url=job.result_url,
            failure_reason=job.failure_reason,
        ),
    )


# =============================================================================
# Compositing and rendering
# =============================================================================


@router.post("/composite/overlay", response_model=EnvelopeResponse)
async def composite_overlay(body: CompositeOverlayRequest, coordinator: CoordinatorDep, context: ContextDep):
    outcome = await coordinator.composite_overlay(
        body.owner_id,
        body.background_image,
        body.foreground_video,
        duration_seconds=body.duration_seconds,
        size=body.size,
        loop_foreground=body.loop_foreground,
        source_location_key=body.source_location_key,
        metadata={**body.artifact_metadata("overlay"), "duration_seconds": body.duration_seconds},
    )
    return outcome_response(context, outcome)


@router.post("/render/text-overlay", response_model=EnvelopeResponse)
async def render_text_overlay(body: RenderTextOverlayRequest, coordinator: CoordinatorDep, context: ContextDep):
    try:
        base_video = media_ref_to_asset(body.video)
        reference = media_ref_to_asset(body.reference_image)
        background = media_ref_to_asset(body.background_image)
    except HologenError as e:
        return envelope_error_from_exception(context, e)

    request = RenderRequest(
        base_video=base_video,
        texts=[TextCue(cue.text, cue.start_seconds, cue.end_seconds) for cue in body.texts],
        style=TextStyle(
            font_family=body.style.font_family,
            font_size=body.style.font_size,
            text_color=body.style.text_color,
            glow_color=body.style.glow_color,
            effects=tuple(body.style.effects),
            position=TextPosition(body.style.position),
        ),
        reference_image=reference,
        background_image=background,
        width=body.width,
        height=body.height,
        fps=body.fps,
        duration_seconds=body.duration_seconds,
    )
    outcome = await coordinator.render_text_overlay(
        body.owner_id,
        request,
        source_location_key=body.source_location_key,
        metadata=body.artifact_metadata("text_overlay"),
    )
    return outcome_response(context, outcome)


@router.post("/video/loop", response_model=EnvelopeResponse)
async def loop_video(body: LoopVideoRequest, coordinator: CoordinatorDep, context: ContextDep):
    outcome = await coordinator.loop_video(
        body.owner_id,
        body.video,
        loop_count=body.loop_count,
        crop_square=body.crop_square,
        trim_seconds=body.trim_seconds,
        source_location_key=body.source_location_key,
        metadata=body.artifact_metadata("loop"),
    )
    return outcome_response(context, outcome)


@router.post("/video/merge", response_model=EnvelopeResponse)
async def merge_videos(body: MergeVideosRequest, coordinator: CoordinatorDep, context: ContextDep):
    outcome = await coordinator.merge_videos(
        body.owner_id,
        body.videos,
        square=body.square,
        source_location_key=body.source_location_key,
        metadata=body.artifact_metadata("merge"),
    )
    return outcome_response(context, outcome)
