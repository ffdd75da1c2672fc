"""Custom exceptions for the generation pipeline.

Every stage failure is a ``HologenError`` subclass carrying a machine-readable
code (see ``constants.error_codes``), an HTTP status, and optionally a fixed
user-facing category. ``UploadDegraded`` and ``DuplicateArtifact`` are not
errors; they are flags on ``PersistedArtifact``.
"""

from hologen.constants.error_codes import get_error_spec
from hologen.schemas.envelope import ErrorInfo, ErrorLocation, SuggestedAction
from hologen.services.error_messages import classify_error


class HologenError(Exception):
    """Base exception for all pipeline errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"
    category: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            suggested_actions.append(
                SuggestedAction(
                    action=spec["suggested_action"],
                    parameters=spec.get("parameters", {}),
                )
            )

        return ErrorInfo(
            code=self.code,
            message=self.message,
            category=classify_error(self).value,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_actions=suggested_actions,
        )


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderUnavailableError(HologenError):
    """Network or transport failure talking to the generation provider."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    message = "Generation provider is unavailable"


class ProviderRejectedError(HologenError):
    """Provider answered with a non-success HTTP status."""

    code = "PROVIDER_REJECTED"
    status_code = 502
    message = "Generation provider rejected the request"

    def __init__(self, http_status: int, body: str = ""):
        self.http_status = http_status
        self.body = body
        detail = f": {body[:500]}" if body else ""
        super().__init__(f"Provider returned HTTP {http_status}{detail}")


class UnexpectedProviderResponseError(HologenError):
    """Provider answered 2xx with a payload shape we do not understand."""

    code = "UNEXPECTED_PROVIDER_RESPONSE"
    status_code = 502
    message = "Unexpected response from generation provider"


class GenerationTimeoutError(HologenError):
    """A poll loop, subprocess or stage exceeded its time budget."""

    code = "GENERATION_TIMEOUT"
    status_code = 504
    message = "Generation timed out"
    category = "timeout"


class GenerationFailedError(HologenError):
    """Provider reported the job as failed."""

    code = "GENERATION_FAILED"
    status_code = 502
    message = "Generation failed"

    def __init__(self, reason: str | None = None, *, job_id: str | None = None):
        self.reason = reason or "unknown"
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(f"Generation failed: {self.reason}", location=location)


class ContentPolicyViolationError(HologenError):
    """Provider blocked the request for policy reasons. Never retried."""

    code = "CONTENT_POLICY_VIOLATION"
    status_code = 422
    message = "Content blocked by provider policy"
    category = "content_policy"

    def __init__(self, message: str | None = None, *, job_id: str | None = None):
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(message, location=location)


# =============================================================================
# Media Errors
# =============================================================================


class DownloadFailedError(HologenError):
    """Fetching a remote media reference failed."""

    code = "DOWNLOAD_FAILED"
    status_code = 502
    message = "Failed to download media"


class InvalidMediaReferenceError(HologenError):
    """A media reference is neither inline data, a URL nor an existing path."""

    code = "INVALID_MEDIA_REFERENCE"
    status_code = 400
    message = "Invalid media reference"


class CompositingFailedError(HologenError):
    """FFmpeg exited with a non-zero status."""

    code = "COMPOSITING_FAILED"
    status_code = 500
    message = "Video compositing failed"

    def __init__(self, stderr: str = "", *, returncode: int | None = None):
        self.stderr = stderr
        self.returncode = returncode
        tail = stderr.strip()[-1000:]
        super().__init__(f"FFmpeg failed (exit {returncode}): {tail}" if tail else self.message)


class RenderFailedError(HologenError):
    """The headless browser render could not produce an output."""

    code = "RENDER_FAILED"
    status_code = 500
    message = "Overlay render failed"


# =============================================================================
# Persistence Errors
# =============================================================================


class ArtifactUploadError(HologenError):
    """Durable upload failed and there was no provider URL to fall back to."""

    code = "ARTIFACT_UPLOAD_FAILED"
    status_code = 502
    message = "Failed to upload artifact to durable storage"


# =============================================================================
# Internal Errors
# =============================================================================


class InvalidStateTransitionError(HologenError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 500
    message = "Invalid pipeline state transition"


class ConfigurationError(HologenError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
    message = "Invalid configuration"
