"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from playbook_engine.api.routes import router
from playbook_engine.config import get_settings
from playbook_engine.database.session import close_db, init_db
from playbook_engine.errors import PlaybookError
from playbook_engine.services import Services, build_services


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application. Tests pass their own ``services``."""
    owns_services = services is None
    services = services or build_services()
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        if owns_services and settings.environment == "development":
            await init_db()
            logger.info("Database initialized")

        yield

        logger.info("Shutting down...")
        await services.close()
        if owns_services:
            await close_db()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Playbook Engine API - governed bulk catalog fixes",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PlaybookError)
    async def playbook_error_handler(request: Request, exc: PlaybookError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def app_factory() -> FastAPI:
    """uvicorn factory: ``uvicorn playbook_engine.api.main:app_factory --factory``."""
    configure_logging(get_settings().debug)
    return create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "playbook_engine.api.main:app_factory",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
