"""Data models for the restore engine.

This module defines the canonical, typed representation of a restore operation,
its pipeline steps and its rollback snapshot. Persisted operation records are
the source of truth; every status view is derived from them.

The models are standard-library-only frozen dataclasses. Mutation happens by
building a new instance (``dataclasses.replace``) inside the outcome recorder,
never in place.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Self

from .clock import Clock
from .errors import InvalidModeError

ISO_8601_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
OPERATION_ID_PREFIX = "restore"
_OPERATION_ID_STAMP_FORMAT = "%Y%m%d-%H%M%S-%f"
_OPERATION_ID_PATTERN = re.compile(rf"^{OPERATION_ID_PREFIX}-(\d{{8}}-\d{{6}}-\d{{6}})-[0-9a-f]{{8}}$")


class RestoreMode(str, Enum):
    """What part of the application stack a restore replaces."""

    FULL = "full"
    DATABASE_ONLY = "database_only"
    VOLUMES_ONLY = "volumes_only"
    CONFIG_ONLY = "config_only"
    DISASTER_RECOVERY = "disaster_recovery"


_MODE_ALIASES: dict[str, RestoreMode] = {
    "full_restore": RestoreMode.FULL,
}


class OperationStatus(str, Enum):
    """Operation-level status; also the states of the orchestrator state machine."""

    PENDING = "PENDING"
    INITIALIZING = "INITIALIZING"
    PREFLIGHT = "PREFLIGHT"
    PREPARING = "PREPARING"
    EXECUTING = "EXECUTING"
    VALIDATING = "VALIDATING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    CLEANING_UP = "CLEANING_UP"
    COMPLETED = "COMPLETED"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class StepName(str, Enum):
    """Pipeline stage identifiers, as recorded in step records."""

    PREFLIGHT = "preflight"
    PREPARE_ENVIRONMENT = "prepare_environment"
    EXECUTE_RESTORE = "execute_restore"
    VALIDATE_RESTORE = "validate_restore"
    HEALTH_CHECK = "health_check"
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"


class StepStatus(str, Enum):
    """Per-step status. COMPLETED and FAILED are terminal."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not StepStatus.RUNNING


def datetime_to_iso_utc(dt: datetime) -> str:
    """Serialize a datetime as a UTC ISO-8601 string.

    Parameters
    ----------
    dt
        A timezone-aware datetime.

    Returns
    -------
    str
        ISO-8601 UTC timestamp, normalized to the `Z` suffix.

    Raises
    ------
    ValueError
        If `dt` is naive (has no timezone).
    """

    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).strftime(ISO_8601_UTC_FORMAT)


def datetime_from_iso_utc(value: str) -> datetime:
    """Parse an ISO-8601 UTC timestamp in the exact ``YYYY-MM-DDTHH:MM:SSZ`` format."""

    dt = datetime.strptime(value, ISO_8601_UTC_FORMAT)
    return dt.replace(tzinfo=timezone.utc)


def _require_keys(payload: Mapping[str, Any], keys: set[str], *, context: str) -> None:
    missing = keys.difference(payload.keys())
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ValueError(f"Missing required keys in {context}: {missing_str}")


def parse_restore_mode(value: str) -> RestoreMode:
    """
    Parse a user-supplied restore mode.

    Parameters
    ----------
    value:
        Mode string, e.g. ``"full"`` or ``"database_only"``.

    Returns
    -------
    RestoreMode
        The recognized mode.

    Raises
    ------
    InvalidModeError
        If `value` is not a recognized mode.
    """
    cleaned = str(value).strip().lower()
    if cleaned in _MODE_ALIASES:
        return _MODE_ALIASES[cleaned]
    try:
        return RestoreMode(cleaned)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in RestoreMode)
        raise InvalidModeError(f"Invalid restore mode: {value!r} (expected one of: {allowed})") from exc


def new_operation_id(clock: Clock, *, after: str | None = None) -> str:
    """
    Allocate a unique, time-ordered operation id.

    The id has the form ``restore-YYYYMMDD-HHMMSS-ffffff-<8 hex>``; sorting ids
    lexicographically sorts them by creation time.

    Parameters
    ----------
    clock:
        Time source for the timestamp part.
    after:
        Most recent id already allocated. When the clock has not moved past its
        timestamp, the new id is placed one microsecond after it so ids stay
        strictly increasing.
    """
    moment = clock.now().astimezone(timezone.utc)
    floor = operation_id_timestamp(after) if after is not None else None
    if floor is not None and moment <= floor:
        moment = floor + timedelta(microseconds=1)
    stamp = moment.strftime(_OPERATION_ID_STAMP_FORMAT)
    return f"{OPERATION_ID_PREFIX}-{stamp}-{secrets.token_hex(4)}"


def operation_id_timestamp(operation_id: str) -> datetime | None:
    """Return the UTC time encoded in `operation_id`, or None if it is not a generated id."""
    match = _OPERATION_ID_PATTERN.match(operation_id)
    if match is None:
        return None
    return datetime.strptime(match.group(1), _OPERATION_ID_STAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class StepRecord:
    """
    Outcome of one pipeline stage.

    Attributes
    ----------
    name:
        Stage identifier.
    status:
        RUNNING while the stage executes, then COMPLETED or FAILED.
    timestamp:
        Time the record was last written (start time while RUNNING).
    details:
        Free-form diagnostic text, possibly empty.
    """

    name: StepName
    status: StepStatus
    timestamp: datetime
    details: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        _require_keys(payload, {"step", "status", "timestamp"}, context="step")
        return cls(
            name=StepName(str(payload["step"])),
            status=StepStatus(str(payload["status"])),
            timestamp=datetime_from_iso_utc(str(payload["timestamp"])),
            details=str(payload.get("details", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.name.value,
            "status": self.status.value,
            "timestamp": datetime_to_iso_utc(self.timestamp),
            "details": self.details,
        }


@dataclass(frozen=True, slots=True)
class RestoreOperation:
    """
    One end-to-end restore attempt.

    Notes
    -----
    `id`, `backup_reference` and `mode` never change after submission. `steps`
    is append-only and kept in execution order.
    """

    id: str
    backup_reference: str
    mode: RestoreMode
    status: OperationStatus
    started_at: datetime
    ended_at: datetime | None = None
    steps: tuple[StepRecord, ...] = field(default_factory=tuple)

    @property
    def running_step(self) -> StepRecord | None:
        """Return the step currently RUNNING, if any."""
        for step in self.steps:
            if step.status is StepStatus.RUNNING:
                return step
        return None

    def find_step(self, name: StepName) -> StepRecord | None:
        """Return the last step recorded under `name`, if any."""
        for step in reversed(self.steps):
            if step.name is name:
                return step
        return None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        """Construct a :class:`RestoreOperation` from its persisted mapping."""

        _require_keys(
            payload,
            {"id", "backup_reference", "mode", "status", "started_at", "steps"},
            context="operation",
        )
        steps_raw = payload["steps"]
        if not isinstance(steps_raw, list):
            raise ValueError("operation.steps must be a list")
        ended_raw = payload.get("ended_at")
        return cls(
            id=str(payload["id"]),
            backup_reference=str(payload["backup_reference"]),
            mode=RestoreMode(str(payload["mode"])),
            status=OperationStatus(str(payload["status"])),
            started_at=datetime_from_iso_utc(str(payload["started_at"])),
            ended_at=datetime_from_iso_utc(str(ended_raw)) if ended_raw else None,
            steps=tuple(StepRecord.from_dict(s) for s in steps_raw),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert this model to a JSON-serializable dict."""

        return {
            "id": self.id,
            "backup_reference": self.backup_reference,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": datetime_to_iso_utc(self.started_at),
            "ended_at": datetime_to_iso_utc(self.ended_at) if self.ended_at is not None else None,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True, slots=True)
class RollbackSnapshot:
    """
    Pre-restore copy of live data, owned by exactly one operation.

    Attributes
    ----------
    operation_id:
        Owning operation.
    location:
        Directory holding the database dump and volume archives.
    created_at:
        Capture time.
    artifacts:
        Names of the files written into `location`, in capture order.
    """

    operation_id: str
    location: str
    created_at: datetime
    artifacts: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        _require_keys(payload, {"operation_id", "location", "created_at"}, context="snapshot")
        artifacts_raw = payload.get("artifacts", [])
        if not isinstance(artifacts_raw, list):
            raise ValueError("snapshot.artifacts must be a list")
        return cls(
            operation_id=str(payload["operation_id"]),
            location=str(payload["location"]),
            created_at=datetime_from_iso_utc(str(payload["created_at"])),
            artifacts=tuple(str(a) for a in artifacts_raw),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "location": self.location,
            "created_at": datetime_to_iso_utc(self.created_at),
            "artifacts": list(self.artifacts),
        }
