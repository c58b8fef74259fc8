"""
Orchestrator settings.

Settings are a JSON document (``<data_root>/restore_config.json`` by default)
mapped onto a frozen dataclass. A missing file means defaults. Unlike UI
preferences, a malformed file is an error: the orchestrator drives destructive
actions and must not run on half-read settings.

Example
-------
{
  "rollback_on_failure": true,
  "restore_timeout_seconds": 3600,
  "commands": {
    "backup_validator": ["scripts/validate-backup.sh", "{backup_reference}"],
    "restore_executor": ["scripts/restore.sh", "{backup_reference}", "{mode}"],
    "restore_validator": ["scripts/restore-validator.sh", "all"],
    "health_prober": ["scripts/health-check.sh"],
    "database_dump": ["pg_dump", "-U", "app", "-f", "{dump_path}", "app"],
    "database_restore": ["psql", "-U", "app", "-f", "{dump_path}", "app"]
  },
  "volumes": {"uploads": "/srv/app/uploads"}
}
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Final, Mapping

from .errors import ArtifactIOError, ConfigError
from .json_io import read_json_object

COMMAND_KEYS: Final[frozenset[str]] = frozenset(
    {
        "backup_validator",
        "restore_executor",
        "restore_validator",
        "health_prober",
        "cleanup",
        "database_dump",
        "database_restore",
    }
)

_BOOL_KEYS: Final[tuple[str, ...]] = ("rollback_on_failure", "notifications_enabled")
_POSITIVE_NUMBER_KEYS: Final[tuple[str, ...]] = (
    "preflight_timeout_seconds",
    "snapshot_timeout_seconds",
    "restore_timeout_seconds",
    "validation_timeout_seconds",
    "health_probe_timeout_seconds",
    "cleanup_timeout_seconds",
    "rollback_timeout_seconds",
    "scratch_space_multiplier",
)
_NON_NEGATIVE_NUMBER_KEYS: Final[tuple[str, ...]] = ("health_check_interval_seconds",)


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """
    Tunables for one orchestrator instance.

    Attributes
    ----------
    rollback_on_failure:
        Replay the rollback snapshot when a stage fails.
    notifications_enabled:
        Dispatch a terminal-status notification after finalize.
    preflight_timeout_seconds:
        Budget for the backup validator.
    snapshot_timeout_seconds:
        Budget for capturing the rollback snapshot.
    restore_timeout_seconds:
        Budget for the restore executor.
    validation_timeout_seconds:
        Budget for the post-restore validator.
    health_check_attempts:
        Maximum number of health probes.
    health_check_interval_seconds:
        Fixed delay between failed probes.
    health_probe_timeout_seconds:
        Budget for a single probe.
    cleanup_timeout_seconds:
        Budget for the cleanup collaborator.
    rollback_timeout_seconds:
        Budget for replaying the snapshot.
    scratch_space_multiplier:
        Required free scratch space as a multiple of the backup size.
    commands:
        Argv templates for command-backed collaborators, keyed by role.
    volumes:
        Volume name to live directory, captured in rollback snapshots.
    """

    rollback_on_failure: bool = True
    notifications_enabled: bool = False
    preflight_timeout_seconds: float = 300
    snapshot_timeout_seconds: float = 1800
    restore_timeout_seconds: float = 3600
    validation_timeout_seconds: float = 600
    health_check_attempts: int = 30
    health_check_interval_seconds: float = 30
    health_probe_timeout_seconds: float = 60
    cleanup_timeout_seconds: float = 300
    rollback_timeout_seconds: float = 3600
    scratch_space_multiplier: float = 2.0
    commands: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    volumes: Mapping[str, Path] = field(default_factory=dict)

    @staticmethod
    def defaults() -> "OrchestratorSettings":
        return OrchestratorSettings()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        payload: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "commands":
                value = {k: list(v) for k, v in sorted(value.items())}
            elif f.name == "volumes":
                value = {k: str(v) for k, v in sorted(value.items())}
            payload[f.name] = value
        return payload


def load_settings(path: Path | None) -> OrchestratorSettings:
    """
    Load settings from disk.

    Parameters
    ----------
    path:
        Settings file. None or a missing file yields defaults.

    Returns
    -------
    OrchestratorSettings
        Parsed settings.

    Raises
    ------
    ConfigError
        If the file cannot be parsed or holds invalid values.
    """
    if path is None or not path.exists():
        return OrchestratorSettings.defaults()
    try:
        payload = read_json_object(path)
    except ArtifactIOError as exc:
        raise ConfigError(str(exc)) from exc
    try:
        return settings_from_mapping(payload)
    except ConfigError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def settings_from_mapping(payload: Mapping[str, Any]) -> OrchestratorSettings:
    """Build settings from a mapping, validating every known key."""
    known = {f.name for f in fields(OrchestratorSettings)}
    unknown = sorted(set(payload) - known - {"schema_version"})
    if unknown:
        raise ConfigError(f"Unknown settings keys: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key in _BOOL_KEYS:
        if key in payload:
            if not isinstance(payload[key], bool):
                raise ConfigError(f"{key} must be true or false")
            values[key] = payload[key]

    for key in _POSITIVE_NUMBER_KEYS + _NON_NEGATIVE_NUMBER_KEYS:
        if key in payload:
            values[key] = _number(key, payload[key], allow_zero=key in _NON_NEGATIVE_NUMBER_KEYS)

    if "health_check_attempts" in payload:
        attempts = payload["health_check_attempts"]
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            raise ConfigError("health_check_attempts must be an integer >= 1")
        values["health_check_attempts"] = attempts

    if "commands" in payload:
        values["commands"] = _commands(payload["commands"])
    if "volumes" in payload:
        values["volumes"] = _volumes(payload["volumes"])

    return OrchestratorSettings(**values)


def _number(key: str, value: object, *, allow_zero: bool) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{key} must be {'>= 0' if allow_zero else '> 0'}")
    return float(value)


def _commands(raw: object) -> dict[str, tuple[str, ...]]:
    if not isinstance(raw, dict):
        raise ConfigError("commands must be an object of role -> argv list")
    out: dict[str, tuple[str, ...]] = {}
    for role, argv in raw.items():
        if role not in COMMAND_KEYS:
            raise ConfigError(f"Unknown command role: {role!r} (expected one of: {', '.join(sorted(COMMAND_KEYS))})")
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) and a for a in argv):
            raise ConfigError(f"commands.{role} must be a non-empty list of strings")
        out[role] = tuple(argv)
    return out


def _volumes(raw: object) -> dict[str, Path]:
    if not isinstance(raw, dict):
        raise ConfigError("volumes must be an object of name -> directory")
    out: dict[str, Path] = {}
    for name, directory in raw.items():
        if not isinstance(directory, str) or not directory.strip():
            raise ConfigError(f"volumes.{name} must be a non-empty path string")
        out[str(name)] = Path(directory).expanduser()
    return out
