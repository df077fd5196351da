"""Tests for exit codes and the CLI error decorator."""

import pytest

from lapsewatch.core.errors import (
    ConfigurationError,
    ExitCode,
    LapseWatchError,
    MalformedRecord,
    NotFoundError,
    PersistenceConflict,
    ReviewStatePreservationViolation,
    RunInProgress,
    SourceUnavailable,
    format_error_message,
    main_with_error_handling,
)


@pytest.mark.parametrize(
    "error_type,code",
    [
        (ConfigurationError, ExitCode.CONFIG_ERROR),
        (SourceUnavailable, ExitCode.SOURCE_UNAVAILABLE),
        (MalformedRecord, ExitCode.MALFORMED_RECORD),
        (PersistenceConflict, ExitCode.PERSISTENCE_CONFLICT),
        (ReviewStatePreservationViolation, ExitCode.REVIEW_STATE_VIOLATION),
        (NotFoundError, ExitCode.NOT_FOUND),
        (RunInProgress, ExitCode.RUN_IN_PROGRESS),
    ],
)
def test_error_exit_codes(error_type, code):
    @main_with_error_handling(log_errors=False)
    def command() -> int:
        raise error_type("boom")

    assert issubclass(error_type, LapseWatchError)
    assert command() == code


def test_success_passes_through():
    @main_with_error_handling()
    def command() -> int:
        return ExitCode.SUCCESS

    assert command() == 0


def test_unexpected_error_is_unknown():
    @main_with_error_handling(log_errors=False)
    def command() -> int:
        raise ValueError("surprise")

    assert command() == ExitCode.UNKNOWN_ERROR


def test_keyboard_interrupt():
    @main_with_error_handling(log_errors=False)
    def command() -> int:
        raise KeyboardInterrupt

    assert command() == 130


def test_format_error_message_includes_details():
    error = SourceUnavailable("Salesforce query failed", {"path": "/query", "status": 503})

    assert format_error_message(error) == "Salesforce query failed (path=/query, status=503)"
    assert format_error_message(NotFoundError("gone")) == "gone"
