"""In-process HTTP server exposing one render's media and the template bundle.

Started per render on an ephemeral loopback port and shut down as soon as
the frames are captured.
"""

import asyncio
import contextlib
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from hologen.api.temp_media import create_temp_media_router
from hologen.exceptions import RenderFailedError

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handlers alone."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def create_temp_media_app(media_dir: Path, bundle_dir: Path | None = None) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.include_router(create_temp_media_router(media_dir))
    if bundle_dir is not None:
        app.mount("/bundle", StaticFiles(directory=str(bundle_dir)), name="bundle")
    return app


class TempMediaServer:
    """Async context manager; ``base_url`` is valid inside the block."""

    def __init__(
        self,
        media_dir: Path,
        bundle_dir: Path | None = None,
        *,
        host: str = "127.0.0.1",
        startup_timeout: float = 10.0,
    ):
        self.media_dir = media_dir
        self.bundle_dir = bundle_dir
        self.host = host
        self.startup_timeout = startup_timeout
        self.port: int | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    @property
    def base_url(self) -> str:
        if self.port is None:
            raise RuntimeError("TempMediaServer is not running")
        return f"http://{self.host}:{self.port}"

    def media_url(self, name: str) -> str:
        return f"{self.base_url}/temp-media/{name}"

    def bundle_url(self, path: str = "index.html") -> str:
        return f"{self.base_url}/bundle/{path}"

    async def start(self) -> None:
        config = uvicorn.Config(
            create_temp_media_app(self.media_dir, self.bundle_dir),
            host=self.host,
            port=0,
            log_level="warning",
            lifespan="off",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RenderFailedError("Temp media server exited during startup")
            if loop.time() > deadline:
                await self.stop()
                raise RenderFailedError("Temp media server did not start in time")
            await asyncio.sleep(0.02)

        sockets = self._server.servers[0].sockets
        self.port = sockets[0].getsockname()[1]
        logger.debug(f"Temp media server listening on {self.base_url}")

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("Temp media server did not shut down cleanly")
        finally:
            self._server = None
            self._task = None
            self.port = None

    async def __aenter__(self) -> "TempMediaServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
