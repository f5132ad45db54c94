import logging
import os
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from notifyhub.config import Settings, get_settings
from notifyhub.container import ServiceContainer, build_container
from notifyhub.interfaces.api.routes import register_routes

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the pipeline on startup, run background loops, release resources on shutdown."""

        services = container or build_container(settings)
        app.state.container = services
        async with anyio.create_task_group() as tg:
            tg.start_soon(services.broker.run)
            if settings.worker_enabled:
                tg.start_soon(services.worker.run)
            try:
                yield
            finally:
                await services.aclose()
                tg.cancel_scope.cancel()
        app.state.container = None

    app = FastAPI(title="notifyhub", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_routes(app)
    return app


configure_logging()
app = create_app()
