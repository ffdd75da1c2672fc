"""Schemas for the generation, compositing and render endpoints."""

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Media references accepted over HTTP. Local paths are internal only.
_MEDIA_REF_PATTERN = re.compile(r"^(https?://|data:)", re.IGNORECASE)
_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _check_media_ref(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not _MEDIA_REF_PATTERN.match(value):
        raise ValueError("must be an http(s) URL or a data: URL")
    return value


class OwnedRequest(BaseModel):
    """Fields shared by every request that persists an artifact."""

    owner_id: str = Field(min_length=1, max_length=255)
    source_location_key: str | None = Field(
        default=None,
        max_length=2048,
        description="Idempotency key; repeated requests with the same key return the same artifact",
    )
    title: str | None = None
    category: str | None = None
    style: str | None = None
    order_id: str | None = None

    def artifact_metadata(self, mode: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {"mode": mode}
        for key in ("title", "category", "style", "order_id"):
            value = getattr(self, key)
            if value is not None:
                metadata[key] = value
        return metadata


# =============================================================================
# Provider generation
# =============================================================================


class GenerateImageRequest(OwnedRequest):
    prompt: str = Field(min_length=1, max_length=4000)
    reference_image: str | None = None
    aspect_ratio: Literal["auto", "1:1", "4:3", "3:4", "3:2"] | None = None

    @field_validator("reference_image")
    @classmethod
    def validate_reference_image(cls, v: str | None) -> str | None:
        return _check_media_ref(v)


class GenerateVideoRequest(OwnedRequest):
    prompt: str = Field(min_length=1, max_length=4000)
    image: str | None = Field(default=None, description="Start frame; generated from the prompt when omitted")
    end_image: str | None = None
    image_prompt: str | None = None
    reference_image: str | None = None
    aspect_ratio: Literal["auto", "1:1", "4:3", "3:4", "3:2"] | None = None
    duration: int | None = Field(default=None, ge=1, le=10)
    model: str | None = None
    overlay_background: str | None = None
    loop_count: int | None = Field(default=None, ge=1, le=10)

    @field_validator("image", "end_image", "reference_image", "overlay_background")
    @classmethod
    def validate_media_refs(cls, v: str | None) -> str | None:
        return _check_media_ref(v)


# =============================================================================
# Compositing
# =============================================================================


class CompositeOverlayRequest(OwnedRequest):
    background_image: str
    foreground_video: str
    duration_seconds: float = Field(default=5.0, gt=0, le=60)
    size: int | None = Field(default=None, ge=64, le=2160)
    loop_foreground: bool = False

    @field_validator("background_image", "foreground_video")
    @classmethod
    def validate_media_refs(cls, v: str) -> str:
        return _check_media_ref(v)

    @field_validator("size")
    @classmethod
    def validate_even_size(cls, v: int | None) -> int | None:
        if v is not None and v % 2:
            raise ValueError("size must be even")
        return v


class LoopVideoRequest(OwnedRequest):
    video: str
    loop_count: int = Field(default=2, ge=1, le=10)
    crop_square: bool = False
    trim_seconds: float | None = Field(default=None, gt=0)

    @field_validator("video")
    @classmethod
    def validate_media_ref(cls, v: str) -> str:
        return _check_media_ref(v)


class MergeVideosRequest(OwnedRequest):
    videos: list[str] = Field(min_length=2, max_length=10)
    square: bool = True

    @field_validator("videos")
    @classmethod
    def validate_media_refs(cls, v: list[str]) -> list[str]:
        return [_check_media_ref(ref) for ref in v]


# =============================================================================
# Text overlay render
# =============================================================================


class TextCueInput(BaseModel):
    text: str = Field(min_length=1, max_length=200)
    start_seconds: float | None = Field(default=None, ge=0)
    end_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_window(self) -> "TextCueInput":
        if self.start_seconds is not None and self.end_seconds is not None:
            if self.end_seconds <= self.start_seconds:
                raise ValueError("end_seconds must be after start_seconds")
        return self


class TextStyleInput(BaseModel):
    font_family: str | None = None
    font_size: int = Field(default=65, ge=8, le=400)
    text_color: str = "#ffffff"
    glow_color: str = "#00ffff"
    effects: list[str] = Field(default_factory=list)
    position: Literal["random", "top", "center", "bottom"] = "random"

    @field_validator("text_color", "glow_color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if not _COLOR_PATTERN.match(v):
            raise ValueError(f"Invalid color: {v}. Use #RRGGBB")
        return v


class RenderTextOverlayRequest(OwnedRequest):
    video: str
    texts: list[TextCueInput] = Field(default_factory=list, max_length=20)
    style: TextStyleInput = Field(default_factory=TextStyleInput)
    reference_image: str | None = None
    background_image: str | None = Field(
        default=None,
        description="When set, ``video`` is a black-background text clip screen-blended onto this image",
    )
    width: int = Field(default=1080, ge=64, le=2160)
    height: int = Field(default=1080, ge=64, le=2160)
    fps: int = Field(default=30, ge=1, le=60)
    duration_seconds: float | None = Field(default=None, gt=0, le=120)

    @field_validator("video", "reference_image", "background_image")
    @classmethod
    def validate_media_refs(cls, v: str | None) -> str | None:
        return _check_media_ref(v)

    @field_validator("width", "height")
    @classmethod
    def validate_even_dimension(cls, v: int) -> int:
        if v % 2:
            raise ValueError("dimensions must be even")
        return v

    @model_validator(mode="after")
    def validate_texts(self) -> "RenderTextOverlayRequest":
        if self.background_image is None and not self.texts:
            raise ValueError("texts is required unless background_image is set")
        return self


# =============================================================================
# Responses
# =============================================================================


class ArtifactResponse(BaseModel):
    id: str
    owner_id: str
    source_location_key: str
    durable_url: str
    is_duplicate: bool
    degraded: bool
    provider_url: str | None = None


class PipelineResponse(BaseModel):
    run_id: str
    state: str
    history: list[str]
    durable_url: str | None = None
    artifact: ArtifactResponse | None = None
    provider_urls: dict[str, str] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    status_url: str
    state: str
    result_url: str | None = None
    failure_reason: str | None = None
