"""
Error types shared by the pipeline, the API and the CLI.

Each error carries the process exit code the CLI returns for it and the
HTTP status the API answers with.

Exit Codes:
- 0: Success
- 1: Warning (run finished with skipped records or deferred accounts)
- 10: Configuration error
- 11: Record source unavailable
- 12: Malformed record
- 13: Persistence conflict
- 14: Review state preservation violation
- 15: Not found
- 16: Another analysis run is in progress
- 127: Unknown/internal error
- 130: Interrupted
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()

INTERRUPTED = 130


class ExitCode(IntEnum):
    SUCCESS = 0
    WARNING = 1
    CONFIG_ERROR = 10
    SOURCE_UNAVAILABLE = 11
    MALFORMED_RECORD = 12
    PERSISTENCE_CONFLICT = 13
    REVIEW_STATE_VIOLATION = 14
    NOT_FOUND = 15
    RUN_IN_PROGRESS = 16
    UNKNOWN_ERROR = 127


class LapseWatchError(Exception):
    """Base error; ``details`` are rendered into logs, CLI messages and API bodies."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    http_status: int = 500
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        return {"detail": self.message, **self.details}


class ConfigurationError(LapseWatchError):
    exit_code = ExitCode.CONFIG_ERROR


class SourceUnavailable(LapseWatchError):
    """The record source could not be reached; the run aborts untouched."""

    exit_code = ExitCode.SOURCE_UNAVAILABLE
    http_status = 503


class MalformedRecord(LapseWatchError):
    """A single raw record could not be normalized."""

    exit_code = ExitCode.MALFORMED_RECORD
    http_status = 422


class PersistenceConflict(LapseWatchError):
    """A concurrent write won the race and the retry lost as well."""

    exit_code = ExitCode.PERSISTENCE_CONFLICT
    http_status = 409


class ReviewStatePreservationViolation(LapseWatchError):
    """An analysis write tried to change the review fields of a reviewed candidate."""

    exit_code = ExitCode.REVIEW_STATE_VIOLATION
    http_status = 409
    show_traceback = True


class NotFoundError(LapseWatchError):
    exit_code = ExitCode.NOT_FOUND
    http_status = 404


class RunInProgress(LapseWatchError):
    """The run log shows another analysis run that has not finished yet."""

    exit_code = ExitCode.RUN_IN_PROGRESS
    http_status = 409


F = TypeVar("F", bound=Callable[..., int])


def _report(event: str, error: BaseException, exit_code: int, details: dict[str, Any]) -> None:
    logger.error(
        event,
        error_type=type(error).__name__,
        message=str(error),
        exit_code=exit_code,
        **details,
    )


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """Turn exceptions escaping a CLI entry point into exit codes.

    LapseWatchError subclasses map to their own ``exit_code``, Ctrl+C to 130
    and anything else to 127.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except LapseWatchError as e:
                if log_errors:
                    _report("command_error", e, e.exit_code, e.details)
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return INTERRUPTED
            except Exception as e:
                if log_errors:
                    _report("unexpected_error", e, ExitCode.UNKNOWN_ERROR, {})
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: LapseWatchError) -> str:
    """``message (key=value, ...)`` for terminal output."""
    if not error.details:
        return error.message
    detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
    return f"{error.message} ({detail_str})"
