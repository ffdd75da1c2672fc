"""Generation job client.

Submits generation requests to the provider and polls them to a terminal
state. Two things are normalized at this boundary:

- Submit responses come in several shapes (a queued-job envelope, a bare
  resource id, or an already-finished result). ``parse_submit_response``
  maps each into a tagged variant, and every variant becomes one
  ``GenerationJob``.
- Status responses put the state and the result URL in different places
  depending on the endpoint. ``parse_status_response`` reduces them to a
  ``StatusSnapshot``.

Polling is a deadline-bounded loop: transport and parse errors skip a tick,
a terminal state ends the loop, and the deadline raises
``GenerationTimeoutError`` no earlier than ``max_wait`` and no later than one
interval past it.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from hologen.config import Settings, get_settings
from hologen.exceptions import (
    ContentPolicyViolationError,
    GenerationFailedError,
    GenerationTimeoutError,
    ProviderRejectedError,
    ProviderUnavailableError,
    UnexpectedProviderResponseError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Job model
# =============================================================================


class JobKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class JobState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CONTENT_BLOCKED = "content_blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CONTENT_BLOCKED)


_STATUS_ALIASES: dict[str, JobState] = {
    "queued": JobState.QUEUED,
    "pending": JobState.QUEUED,
    "in_queue": JobState.QUEUED,
    "in_progress": JobState.IN_PROGRESS,
    "processing": JobState.IN_PROGRESS,
    "running": JobState.IN_PROGRESS,
    "completed": JobState.COMPLETED,
    "success": JobState.COMPLETED,
    "succeeded": JobState.COMPLETED,
    "failed": JobState.FAILED,
    "error": JobState.FAILED,
    "cancelled": JobState.FAILED,
    "canceled": JobState.FAILED,
    "nsfw": JobState.CONTENT_BLOCKED,
    "content_blocked": JobState.CONTENT_BLOCKED,
    "content-blocked": JobState.CONTENT_BLOCKED,
    "blocked": JobState.CONTENT_BLOCKED,
}


@dataclass
class GenerationRequest:
    """One request to a provider endpoint (path relative to the API base)."""

    kind: JobKind
    endpoint: str
    payload: dict[str, Any]


@dataclass
class GenerationJob:
    """An outstanding provider job.

    Owned by the coordinator run that submitted it. Once the state is
    terminal, ``apply`` ignores every further update.
    """

    id: str
    kind: JobKind
    status_url: str
    submitted_at: datetime
    state: JobState = JobState.QUEUED
    result_url: str | None = None
    failure_reason: str | None = None
    poll_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def apply(self, snapshot: "StatusSnapshot") -> bool:
        """Apply a status snapshot. Returns False when the job is already terminal."""
        if self.is_terminal:
            return False
        self.state = snapshot.state
        if snapshot.result_url:
            self.result_url = snapshot.result_url
        if snapshot.reason:
            self.failure_reason = snapshot.reason
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status_url": self.status_url,
            "submitted_at": self.submitted_at.isoformat(),
            "state": self.state.value,
            "result_url": self.result_url,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class TerminalResult:
    """A completed job and the URL of the asset it produced."""

    job_id: str
    kind: JobKind
    result_url: str
    poll_count: int = 0


# =============================================================================
# Response normalization
# =============================================================================


@dataclass(frozen=True)
class StatusSnapshot:
    state: JobState
    result_url: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class QueuedEnvelope:
    """``{"status": "queued", "request_id": ..., "status_url": ...}``"""

    request_id: str
    status_url: str | None


@dataclass(frozen=True)
class BareResourceId:
    """``{"id": ...}``"""

    id: str


@dataclass(frozen=True)
class ImmediateResult:
    """A submit response that already carries a terminal state."""

    request_id: str
    status_url: str | None
    snapshot: StatusSnapshot


SubmitResponse = QueuedEnvelope | BareResourceId | ImmediateResult


def _dig(payload: Any, *path: str | int) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


# Order matters: image endpoints report images[0].url, video endpoints
# report video.url, and job-style envelopes nest the result under jobs[0].
_RESULT_URL_PATHS: list[tuple[str | int, ...]] = [
    ("images", 0, "url"),
    ("video", "url"),
    ("jobs", 0, "result", "url"),
    ("jobs", 0, "output", "url"),
    ("jobs", 0, "images", 0, "url"),
    ("result", "url"),
    ("output", "url"),
    ("image_url",),
    ("imageUrl",),
    ("video_url",),
    ("videoUrl",),
    ("url",),
]


def extract_result_url(payload: dict[str, Any]) -> str | None:
    for path in _RESULT_URL_PATHS:
        value = _dig(payload, *path)
        if isinstance(value, str) and value:
            return value
    return None


def _raw_status(payload: dict[str, Any]) -> str | None:
    status = payload.get("status")
    if not isinstance(status, str):
        status = _dig(payload, "jobs", 0, "status")
    return status.strip().lower() if isinstance(status, str) else None


def parse_status_response(payload: Any) -> StatusSnapshot:
    """Reduce a provider status payload to a ``StatusSnapshot``.

    Raises:
        UnexpectedProviderResponseError: payload has no recognizable status.
    """
    if not isinstance(payload, dict):
        raise UnexpectedProviderResponseError(f"Status payload is not an object: {str(payload)[:200]}")

    raw = _raw_status(payload)
    if raw is None or raw not in _STATUS_ALIASES:
        raise UnexpectedProviderResponseError(f"Unrecognized job status: {raw!r}")

    state = _STATUS_ALIASES[raw]
    reason = None
    if state in (JobState.FAILED, JobState.CONTENT_BLOCKED):
        reason = payload.get("error") or payload.get("message") or _dig(payload, "jobs", 0, "error") or raw
        reason = str(reason)

    result_url = extract_result_url(payload)
    if state == JobState.COMPLETED and not result_url:
        raise UnexpectedProviderResponseError("Job completed without a result URL")

    return StatusSnapshot(state=state, result_url=result_url, reason=reason)


def parse_submit_response(payload: Any) -> SubmitResponse:
    """Classify a submit response into one of the accepted shapes.

    Raises:
        UnexpectedProviderResponseError: none of the shapes match.
    """
    if not isinstance(payload, dict):
        raise UnexpectedProviderResponseError(f"Submit payload is not an object: {str(payload)[:200]}")

    request_id = payload.get("request_id") or payload.get("requestId")
    status_url = payload.get("status_url") or payload.get("statusUrl")
    raw = _raw_status(payload)

    if request_id and raw in _STATUS_ALIASES and _STATUS_ALIASES[raw].is_terminal:
        return ImmediateResult(
            request_id=str(request_id),
            status_url=status_url,
            snapshot=parse_status_response(payload),
        )
    if request_id:
        return QueuedEnvelope(request_id=str(request_id), status_url=status_url)
    if payload.get("id"):
        return BareResourceId(id=str(payload["id"]))

    raise UnexpectedProviderResponseError(f"Unrecognized submit response: {str(payload)[:200]}")


# =============================================================================
# Client
# =============================================================================


class JobClient:
    """HTTP client for the generation provider."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.higgsfield_api_base.rstrip("/")
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {
            "hf-api-key": self.settings.higgsfield_api_key,
            "hf-secret": self.settings.higgsfield_api_secret,
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    def default_status_url(self, request_id: str) -> str:
        return f"{self.base_url}/requests/{request_id}/status"

    def to_job(self, response: SubmitResponse, kind: JobKind) -> GenerationJob:
        now = datetime.now(timezone.utc)
        if isinstance(response, BareResourceId):
            return GenerationJob(
                id=response.id,
                kind=kind,
                status_url=self.default_status_url(response.id),
                submitted_at=now,
            )
        job = GenerationJob(
            id=response.request_id,
            kind=kind,
            status_url=response.status_url or self.default_status_url(response.request_id),
            submitted_at=now,
        )
        if isinstance(response, ImmediateResult):
            job.apply(response.snapshot)
        return job

    async def submit(self, request: GenerationRequest) -> GenerationJob:
        """Post a generation request and normalize the response into a job.

        Raises:
            ProviderUnavailableError: transport failure or submit timeout.
            ProviderRejectedError: non-2xx HTTP status.
            UnexpectedProviderResponseError: 2xx with an unknown body shape.
        """
        url = f"{self.base_url}/{request.endpoint.lstrip('/')}"
        try:
            async with self._client(self.settings.provider_submit_timeout_seconds) as client:
                response = await client.post(url, json=request.payload, headers=self._headers())
        except httpx.TransportError as e:
            logger.error(f"Provider submit failed for {request.kind.value} job: {e!r}")
            raise ProviderUnavailableError(f"Could not reach generation provider: {e}") from e

        if not response.is_success:
            logger.error(f"Provider rejected {request.kind.value} job: {response.status_code} {response.text[:500]}")
            raise ProviderRejectedError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise UnexpectedProviderResponseError(f"Submit response is not JSON: {response.text[:200]}") from e

        job = self.to_job(parse_submit_response(payload), request.kind)
        logger.info(f"Submitted {job.kind.value} job {job.id} (state={job.state.value})")
        return job

    async def check_status(self, job: GenerationJob) -> JobState:
        """Fetch the job status once and apply it.

        A terminal job is returned as-is without contacting the provider.
        """
        if job.is_terminal:
            return job.state

        try:
            async with self._client(self.settings.provider_poll_request_timeout_seconds) as client:
                response = await client.get(job.status_url, headers=self._headers())
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Status check failed: {e}") from e
        finally:
            job.poll_count += 1

        if not response.is_success:
            raise ProviderRejectedError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise UnexpectedProviderResponseError(f"Status response is not JSON: {response.text[:200]}") from e

        job.apply(parse_status_response(payload))
        return job.state

    async def poll_until_terminal(
        self,
        job: GenerationJob,
        max_wait: float,
        interval: float,
    ) -> TerminalResult:
        """Poll ``job`` every ``interval`` seconds until terminal or ``max_wait`` elapses.

        Raises:
            GenerationFailedError: provider reported failure.
            ContentPolicyViolationError: provider blocked the content.
            GenerationTimeoutError: still non-terminal after ``max_wait``.
        """
        deadline = self._clock() + max_wait

        while not job.is_terminal:
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"{job.kind.value} job {job.id} still {job.state.value} after {max_wait:.0f}s")
                raise GenerationTimeoutError(
                    f"{job.kind.value.capitalize()} generation did not finish within {max_wait:.0f}s"
                )

            await self._sleep(min(interval, remaining))

            # An in-flight status request may not carry the loop past deadline + interval
            tick_timeout = max(deadline + interval - self._clock(), 0.0)
            try:
                state = await asyncio.wait_for(self.check_status(job), timeout=tick_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Status check for job {job.id} still pending at the {max_wait:.0f}s deadline")
                raise GenerationTimeoutError(
                    f"{job.kind.value.capitalize()} generation did not finish within {max_wait:.0f}s"
                )
            except (ProviderUnavailableError, ProviderRejectedError, UnexpectedProviderResponseError) as e:
                logger.warning(f"Skipping poll tick {job.poll_count} for job {job.id}: {e.message}")
                continue

            logger.debug(f"Poll {job.poll_count} for job {job.id}: {state.value}")

        return self._terminal_result(job)

    def _terminal_result(self, job: GenerationJob) -> TerminalResult:
        if job.state == JobState.CONTENT_BLOCKED:
            raise ContentPolicyViolationError(
                f"Content blocked by provider: {job.failure_reason or 'nsfw'}",
                job_id=job.id,
            )
        if job.state == JobState.FAILED:
            raise GenerationFailedError(job.failure_reason, job_id=job.id)
        return TerminalResult(
            job_id=job.id,
            kind=job.kind,
            result_url=job.result_url or "",
            poll_count=job.poll_count,
        )
