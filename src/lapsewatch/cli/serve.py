"""serve: run the HTTP API under uvicorn."""

from __future__ import annotations

import uvicorn

from lapsewatch.cli.ux import info
from lapsewatch.config import Settings
from lapsewatch.core.errors import ExitCode


def serve_command(settings: Settings, host: str = "127.0.0.1", port: int = 8000) -> int:
    info(f"Serving LapseWatch API on http://{host}:{port}{settings.api_prefix}")
    if settings.scheduler_enabled:
        info(f"Scheduled analysis every {settings.scheduler_interval_seconds}s")
    uvicorn.run(
        "lapsewatch.api.main:app",
        host=host,
        port=port,
        log_level="debug" if settings.debug else "info",
    )
    return ExitCode.SUCCESS
