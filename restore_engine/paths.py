"""
Filesystem path policy for the restore engine.

This module is the single choke point for determining where the engine keeps
its own state:

- Runtime data lives under a "data root" (``STACKRESTORE_DATA_ROOT`` or a
  per-user default).
- Operation records, rollback snapshots, the global lock and scratch space all
  live below that root, never elsewhere.
- The backup archive itself is only ever read.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import RestoreEngineError

DATA_ROOT_ENV_VAR = "STACKRESTORE_DATA_ROOT"


class SafetyViolationError(RestoreEngineError):
    """Raised when an operation is blocked by path safety policy."""

    code = "SAFETY_VIOLATION"


@dataclass(frozen=True, slots=True)
class EnginePaths:
    """
    Concrete resolved paths for the restore engine.

    Attributes
    ----------
    data_root:
        Root directory for all engine runtime data.
    operations_root:
        One directory per operation: record, summary and journal.
    snapshots_root:
        Rollback snapshots, one directory per owning operation.
    locks_root:
        Global single-flight lock file.
    scratch_root:
        Working space for extraction; free space here is checked at pre-flight.
    logs_root:
        Log files written by the CLI.
    """

    data_root: Path
    operations_root: Path
    snapshots_root: Path
    locks_root: Path
    scratch_root: Path
    logs_root: Path

    @property
    def lock_path(self) -> Path:
        return self.locks_root / "restore.lock"

    @property
    def config_path(self) -> Path:
        return self.data_root / "restore_config.json"

    def operation_dir(self, operation_id: str) -> Path:
        return self.operations_root / _safe_component(operation_id, purpose="operation id")

    def snapshot_dir(self, operation_id: str) -> Path:
        return self.snapshots_root / _safe_component(operation_id, purpose="operation id")

    def scratch_dir(self, operation_id: str) -> Path:
        return self.scratch_root / _safe_component(operation_id, purpose="operation id")


def default_data_root() -> Path:
    """
    Resolve the default engine data root.

    Preference order:
    1) ``STACKRESTORE_DATA_ROOT`` if set
    2) ``%LOCALAPPDATA%\\stackrestore`` on Windows
    3) ``$XDG_DATA_HOME/stackrestore``, falling back to ``~/.local/share/stackrestore``
    """
    override = os.environ.get(DATA_ROOT_ENV_VAR)
    if override:
        return Path(override).expanduser()

    if os.name == "nt":
        local = os.environ.get("LOCALAPPDATA")
        if local:
            return Path(local) / "stackrestore"

    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "stackrestore"
    return Path.home() / ".local" / "share" / "stackrestore"


def resolve_engine_paths(data_root: Path | None = None) -> EnginePaths:
    """
    Resolve all engine paths below a data root.

    Parameters
    ----------
    data_root:
        Optional override for the data root.

    Returns
    -------
    EnginePaths
        Resolved paths. Nothing is created on disk.

    Raises
    ------
    SafetyViolationError
        If the data root is a filesystem root.
    """
    root = (data_root or default_data_root()).expanduser().resolve()
    if len(root.parts) <= 1:
        raise SafetyViolationError(f"Refusing to use filesystem root as data root: {root}")

    return EnginePaths(
        data_root=root,
        operations_root=root / "operations",
        snapshots_root=root / "snapshots",
        locks_root=root / "locks",
        scratch_root=root / "scratch",
        logs_root=root / "logs",
    )


def ensure_engine_directories(paths: EnginePaths) -> None:
    """
    Create the engine directory structure if it does not already exist.

    Notes
    -----
    This function creates directories only. It performs no deletion.
    """
    for directory in (
        paths.data_root,
        paths.operations_root,
        paths.snapshots_root,
        paths.locks_root,
        paths.scratch_root,
        paths.logs_root,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def _safe_component(value: str, *, purpose: str) -> str:
    cleaned = value.strip()
    if not cleaned or cleaned in {".", ".."}:
        raise SafetyViolationError(f"Invalid {purpose}: {value!r}")
    if any(ch in cleaned for ch in r'\/:*?"<>|'):
        raise SafetyViolationError(f"{purpose} contains invalid characters: {value!r}")
    return cleaned
