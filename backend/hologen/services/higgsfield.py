"""Request builders for the Higgsfield generation API.

Only request shapes live here; transport and polling are in ``job_client``.
"""

from hologen.config import Settings, get_settings
from hologen.services.job_client import GenerationRequest, JobKind

SUPPORTED_ASPECT_RATIOS = ("auto", "1:1", "4:3", "3:4", "3:2")
DEFAULT_ASPECT_RATIO = "1:1"

SUPPORTED_VIDEO_MODELS = {
    "dop-lite": "higgsfield-ai/dop/lite",
    "dop-preview": "higgsfield-ai/dop/preview",
    "dop-turbo": "higgsfield-ai/dop/turbo",
    "kling-2.5": "kling-video/v2.5-turbo/pro/image-to-video",
}


def normalize_aspect_ratio(aspect_ratio: str | None) -> str:
    if aspect_ratio in SUPPORTED_ASPECT_RATIOS:
        return aspect_ratio
    return DEFAULT_ASPECT_RATIO


def resolve_video_model(model: str | None, default: str) -> str:
    """Accept either a short key (``dop-turbo``) or a full model path."""
    if not model:
        return default
    return SUPPORTED_VIDEO_MODELS.get(model, model)


def build_image_request(
    prompt: str,
    *,
    reference_image_url: str | None = None,
    aspect_ratio: str | None = None,
    settings: Settings | None = None,
) -> GenerationRequest:
    settings = settings or get_settings()
    payload: dict = {
        "prompt": prompt,
        "num_images": 1,
        "aspect_ratio": normalize_aspect_ratio(aspect_ratio),
        "output_format": "png",
    }
    if reference_image_url:
        payload["input_images"] = [{"type": "image_url", "image_url": reference_image_url}]
    return GenerationRequest(kind=JobKind.IMAGE, endpoint=settings.image_model, payload=payload)


def build_video_request(
    image_url: str,
    prompt: str,
    *,
    duration: int | None = None,
    model: str | None = None,
    settings: Settings | None = None,
) -> GenerationRequest:
    settings = settings or get_settings()
    payload = {
        "image_url": image_url,
        "prompt": prompt,
        "duration": duration or settings.default_video_duration_seconds,
    }
    return GenerationRequest(
        kind=JobKind.VIDEO,
        endpoint=resolve_video_model(model, settings.video_model),
        payload=payload,
    )


def build_start_end_video_request(
    start_image_url: str,
    end_image_url: str,
    prompt: str,
    *,
    duration: int | None = None,
    motion_strength: float = 0.5,
    model: str | None = None,
    settings: Settings | None = None,
) -> GenerationRequest:
    """Video interpolating between a start and an end frame.

    Kling and DoP models name the end frame differently.
    """
    settings = settings or get_settings()
    model_id = resolve_video_model(model, settings.start_end_video_model)
    duration = duration or settings.default_video_duration_seconds

    if model_id.startswith("kling"):
        payload = {
            "image_url": start_image_url,
            "last_image_url": end_image_url,
            "prompt": prompt,
            "duration": duration,
            "cfg_scale": motion_strength,
            "negative_prompt": "",
            "aspect_ratio": "1:1",
        }
    else:
        payload = {
            "input_images": [start_image_url],
            "input_images_end": [end_image_url],
            "prompt": prompt,
            "motions_strength": motion_strength,
            "enhance_prompt": True,
            "duration": duration,
            "aspect_ratio": "1:1",
        }
    return GenerationRequest(kind=JobKind.VIDEO, endpoint=model_id, payload=payload)
