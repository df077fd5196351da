import logging
import sys

import structlog

RUN_CONTEXT_KEYS = ("run_id", "trigger")


def configure_logging(level: int | str = logging.INFO, *, json_output: bool = True) -> None:
    """Route structlog through stdlib logging.

    The API emits JSON lines; the CLI renders for a terminal on stderr so
    command output on stdout stays clean.
    """

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)


def bind_run_context(run_id: str, trigger: str) -> None:
    """Attach run identifiers to every log line emitted in this task."""
    structlog.contextvars.bind_contextvars(run_id=run_id, trigger=trigger)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars(*RUN_CONTEXT_KEYS)
