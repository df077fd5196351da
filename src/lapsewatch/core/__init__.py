"""Core error types shared across LapseWatch."""

from lapsewatch.core.errors import (
    ConfigurationError,
    ExitCode,
    LapseWatchError,
    MalformedRecord,
    NotFoundError,
    PersistenceConflict,
    ReviewStatePreservationViolation,
    SourceUnavailable,
    main_with_error_handling,
)

__all__ = [
    "ConfigurationError",
    "ExitCode",
    "LapseWatchError",
    "MalformedRecord",
    "NotFoundError",
    "PersistenceConflict",
    "ReviewStatePreservationViolation",
    "SourceUnavailable",
    "main_with_error_handling",
]
