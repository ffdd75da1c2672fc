from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from hologen.config import Settings, get_settings
from hologen.models.database import get_session_maker
from hologen.render.compositor import Compositor
from hologen.render.render_bridge import RenderBridge
from hologen.services.job_client import JobClient
from hologen.services.media_fetcher import MediaFetcher
from hologen.services.persistence_gateway import PersistenceGateway
from hologen.services.pipeline import PipelineCoordinator
from hologen.services.storage_service import get_storage_service


@lru_cache
def get_render_bridge() -> RenderBridge:
    """Process-wide: the compiled bundle is shared by every request."""
    return RenderBridge(get_settings())


def get_job_client() -> JobClient:
    return JobClient(get_settings())


def get_pipeline_coordinator(
    render_bridge: Annotated[RenderBridge, Depends(get_render_bridge)],
) -> PipelineCoordinator:
    """A fresh coordinator per request; only the render bridge is shared."""
    settings: Settings = get_settings()
    storage = get_storage_service()
    fetcher = MediaFetcher(settings)
    return PipelineCoordinator(
        settings,
        job_client=JobClient(settings),
        fetcher=fetcher,
        compositor=Compositor(settings, fetcher=fetcher),
        render_bridge=render_bridge,
        gateway=PersistenceGateway(storage, get_session_maker(), settings, fetcher=fetcher),
        storage=storage,
    )


CoordinatorDep = Annotated[PipelineCoordinator, Depends(get_pipeline_coordinator)]
JobClientDep = Annotated[JobClient, Depends(get_job_client)]
