"""Error codes dictionary for the generation pipeline.

Single source of truth for every error code, whether the caller may retry
the failed stage, and the suggested recovery action. Used by exception
handlers and by the pipeline coordinator when it builds a structured error.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_action: str
    suggested_fix: str
    parameters: dict[str, Any]


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Transport errors (caller may retry the whole stage)
    # ==========================================================================
    "PROVIDER_UNAVAILABLE": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    "DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 1000, "max_retries": 2},
    },
    "ARTIFACT_UPLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 1},
    },
    # ==========================================================================
    # Provider outcomes (never retried automatically)
    # ==========================================================================
    "PROVIDER_REJECTED": {
        "retryable": False,
        "suggested_fix": "Check the request parameters and provider credentials",
    },
    "UNEXPECTED_PROVIDER_RESPONSE": {
        "retryable": False,
    },
    "GENERATION_FAILED": {
        "retryable": False,
        "suggested_fix": "Adjust the prompt or reference image and submit again",
    },
    "CONTENT_POLICY_VIOLATION": {
        "retryable": False,
        "suggested_fix": "Rephrase the prompt or use a different reference image",
    },
    "GENERATION_TIMEOUT": {
        "retryable": False,
        "suggested_fix": "The provider took longer than the stage budget; submit a new request later",
    },
    # ==========================================================================
    # Local processing errors
    # ==========================================================================
    "COMPOSITING_FAILED": {
        "retryable": False,
    },
    "RENDER_FAILED": {
        "retryable": False,
    },
    "INVALID_MEDIA_REFERENCE": {
        "retryable": False,
        "suggested_fix": "Pass a data: URL, an http(s) URL or an existing local path",
    },
    # ==========================================================================
    # Internal errors
    # ==========================================================================
    "INVALID_STATE_TRANSITION": {
        "retryable": False,
    },
    "CONFIGURATION_ERROR": {
        "retryable": False,
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
    # ==========================================================================
    # Request errors
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "NOT_FOUND": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
