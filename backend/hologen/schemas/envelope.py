from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ResponseMeta(BaseModel):
    api_version: str = "1.0"
    processing_time_ms: int
    timestamp: datetime
    warnings: list[str] = Field(default_factory=list)


class ErrorLocation(BaseModel):
    field: str | None = None
    stage: str | None = None
    job_id: str | None = None


class SuggestedAction(BaseModel):
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ErrorInfo(BaseModel):
    code: str
    message: str
    category: str = "generic"  # User-facing message category
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = None
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)


class EnvelopeResponse(BaseModel):
    request_id: str
    data: Any | None = None
    error: ErrorInfo | None = None
    meta: ResponseMeta
