"""FastAPI application for the call relay service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .core.config import settings
from .core.errors import CallControlError
from .db.session import SessionLocal, engine as default_engine
from .models.base import Base
from .routers import agents, calls, realtime, webhooks
from .services.provider import VoiceProviderClient, build_provider_client
from .services.runtime import build_runtime

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    *,
    engine: AsyncEngine | None = None,
    provider: VoiceProviderClient | None = None,
    init_schema: bool = False,
) -> FastAPI:
    """Assemble the app; tests pass their own engine and provider client."""

    session_factory = (
        async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession) if engine is not None else SessionLocal
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if init_schema:
            bind = engine or default_engine
            async with bind.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        runtime = build_runtime(settings, provider or build_provider_client(), session_factory)
        app.state.runtime = runtime
        logger.info("Call relay started (%s)", settings.app_env)
        try:
            yield
        finally:
            await runtime.aclose()
            logger.info("Call relay stopped")

    app = FastAPI(title="Call Relay API", version="0.1.0", lifespan=lifespan)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(CallControlError)
    async def call_control_error_handler(request: Request, exc: CallControlError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "code": exc.code, "message": exc.message},
        )

    @app.get("/api/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Simple liveness probe."""

        return {"status": "ok"}

    @app.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    app.include_router(calls.router, prefix="/api")
    app.include_router(agents.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/api")
    app.include_router(realtime.router, prefix="/api")
    return app


configure_logging()
app = create_app()
