from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lapsewatch.api.routes import analysis, audit, entitlements, ghost_accounts, health
from lapsewatch.config import get_settings
from lapsewatch.core.errors import LapseWatchError
from lapsewatch.db.session import dispose_engine, init_engine
from lapsewatch.logging import configure_logging
from lapsewatch.orchestration.runtime import Runtime

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging()
    init_engine(settings)
    runtime = Runtime(settings)
    app.state.runtime = runtime
    if settings.scheduler_enabled:
        runtime.scheduler.start()
    yield
    if settings.scheduler_enabled:
        await runtime.scheduler.stop()
    await dispose_engine()


async def handle_domain_error(request: Request, exc: LapseWatchError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            "api_error",
            error_type=type(exc).__name__,
            message=exc.message,
            path=request.url.path,
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="LapseWatch API",
        version="0.1.0",
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.cors_origins],
            allow_methods=["*"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    app.add_exception_handler(LapseWatchError, handle_domain_error)  # type: ignore[arg-type]
    app.include_router(analysis.router, prefix=settings.api_prefix, tags=["analysis"])
    app.include_router(entitlements.router, prefix=settings.api_prefix, tags=["entitlements"])
    app.include_router(ghost_accounts.router, prefix=settings.api_prefix, tags=["ghost-accounts"])
    app.include_router(audit.router, prefix=settings.api_prefix, tags=["audit"])
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()
