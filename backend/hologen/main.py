import logging
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hologen.api import generation, storage
from hologen.config import get_settings
from hologen.constants.error_codes import get_error_spec
from hologen.exceptions import HologenError
from hologen.middleware.request_context import RequestContextMiddleware, build_meta, get_request_context
from hologen.models.database import get_engine, init_db
from hologen.schemas.envelope import EnvelopeResponse, ErrorInfo
from hologen.services.storage_service import get_storage_service

settings = get_settings()
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    yield
    # Shutdown
    await get_engine().dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


def _envelope_error(request: Request, error: ErrorInfo, status_code: int) -> JSONResponse:
    context = get_request_context(request)
    envelope = EnvelopeResponse(
        request_id=context.request_id,
        error=error,
        meta=build_meta(context),
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump(exclude_none=True)),
    )


@app.exception_handler(HologenError)
async def hologen_exception_handler(request: Request, exc: HologenError) -> JSONResponse:
    return _envelope_error(request, exc.to_error_info(), exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    spec = get_error_spec("VALIDATION_ERROR")

    # Build a human-readable message from validation errors
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    else:
        message = "Request validation failed"

    error = ErrorInfo(
        code="VALIDATION_ERROR",
        message=message,
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _envelope_error(request, error, 422)


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _envelope_error(request, error, 500)


# Routers
app.include_router(generation.router, prefix="/api", tags=["generation"])
app.include_router(storage.router, prefix="/api/storage", tags=["storage"])


@app.get("/health")
async def health_check() -> dict:
    """Report whether the pipeline's external dependencies are usable."""
    checks = {
        "provider_credentials": settings.provider_configured,
        "storage": True,
        "ffmpeg": shutil.which(settings.ffmpeg_path) is not None,
    }
    try:
        get_storage_service()
    except Exception as e:
        logger.warning(f"Storage backend unavailable: {e}")
        checks["storage"] = False

    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "version": settings.app_version,
        "checks": checks,
    }
