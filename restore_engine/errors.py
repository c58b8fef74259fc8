"""
Domain exceptions for the restore engine.

Notes
-----
Engine code avoids raising generic exceptions. Every expected failure mode maps
to a domain exception with a stable ``code`` that callers (the CLI, operators,
alerting) can match on without parsing messages.
"""

from __future__ import annotations


class RestoreEngineError(RuntimeError):
    """Base exception for all restore engine failures."""

    code = "RESTORE_ERROR"


class InvalidModeError(RestoreEngineError):
    """Raised when a restore mode is not one of the recognized values."""

    code = "INVALID_MODE"


class OperationInProgressError(RestoreEngineError):
    """Raised when a restore is submitted while another one is non-terminal."""

    code = "OPERATION_IN_PROGRESS"


class UnknownOperationError(RestoreEngineError):
    """Raised when an operation id has no persisted record."""

    code = "UNKNOWN_OPERATION"


class IllegalTransitionError(RestoreEngineError):
    """Raised when a status change is not permitted by the transition table."""

    code = "ILLEGAL_TRANSITION"


class PreflightError(RestoreEngineError):
    """Base class for local pre-flight check failures."""

    code = "PREFLIGHT_FAILED"


class BackupUnreachableError(PreflightError):
    """Raised when the backup reference cannot be resolved to a readable file."""

    code = "BACKUP_UNREACHABLE"


class InsufficientSpaceError(PreflightError):
    """Raised when scratch space cannot hold the extracted backup."""

    code = "INSUFFICIENT_SPACE"


class SnapshotCaptureError(RestoreEngineError):
    """Raised when a rollback snapshot cannot be captured."""

    code = "SNAPSHOT_CAPTURE_FAILED"


class NoSnapshotError(RestoreEngineError):
    """Raised when a rollback is requested for an operation without a snapshot."""

    code = "NO_SNAPSHOT"


class ConfigError(RestoreEngineError):
    """Raised when orchestrator settings cannot be loaded or are invalid."""

    code = "CONFIG_ERROR"


class RecorderError(RestoreEngineError):
    """
    Raised when the outcome recorder cannot read or persist a record.

    Recorder errors are integrity failures and are never masked by the
    orchestrator.
    """

    code = "RECORDER_ERROR"


class AlreadyFinalizedError(RecorderError):
    """Raised when an operation record is finalized a second time."""

    code = "ALREADY_FINALIZED"


class ArtifactIOError(RestoreEngineError):
    """Raised when a JSON artifact cannot be read or written."""

    code = "ARTIFACT_IO"


class LockError(RestoreEngineError):
    """
    Raised when acquiring, releasing, or breaking the restore lock fails.

    The message is user-facing and explains how to proceed (e.g. using --force
    or --break-lock) without requiring a stack trace.
    """

    code = "LOCK_ERROR"
