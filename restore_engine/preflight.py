"""
Local pre-flight checks.

These run before any collaborator is called. They exist to reject a restore
that is doomed to fail partway through extraction: an unreachable backup, or
scratch space smaller than a multiple of the backup's compressed size.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

from .errors import BackupUnreachableError, InsufficientSpaceError


@dataclass(frozen=True, slots=True)
class PreflightReport:
    """Facts gathered by the local checks, recorded in the preflight step details."""

    backup_path: Path
    backup_size_bytes: int
    required_bytes: int
    available_bytes: int

    def describe(self) -> str:
        return (
            f"backup={self.backup_path} size={self.backup_size_bytes}B "
            f"required_scratch={self.required_bytes}B available_scratch={self.available_bytes}B"
        )


def check_backup_reachable(reference: str) -> Path:
    """
    Resolve a backup reference to a readable local file.

    Parameters
    ----------
    reference:
        Plain filesystem path or ``file://`` URI.

    Returns
    -------
    pathlib.Path
        Resolved path to the backup archive.

    Raises
    ------
    BackupUnreachableError
        If the reference is empty, uses an unsupported scheme, or does not name
        an existing regular file.
    """
    cleaned = reference.strip()
    if not cleaned:
        raise BackupUnreachableError("Backup reference must not be empty.")

    parsed = urlparse(cleaned)
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme and len(parsed.scheme) > 1:
        # Single-letter schemes are Windows drive letters.
        raise BackupUnreachableError(
            f"Backup reference scheme {parsed.scheme!r} is not reachable locally: {reference}"
        )
    else:
        path = Path(cleaned)

    path = path.expanduser()
    try:
        resolved = path.resolve(strict=True)
    except (FileNotFoundError, RuntimeError) as exc:
        raise BackupUnreachableError(f"Backup file not found: {reference}") from exc
    except OSError as exc:
        raise BackupUnreachableError(f"Backup file is not accessible: {reference} ({exc})") from exc

    if not resolved.is_file():
        raise BackupUnreachableError(f"Backup reference is not a regular file: {resolved}")
    return resolved


def check_scratch_space(
    backup_path: Path,
    scratch_root: Path,
    *,
    multiplier: float = 2.0,
) -> PreflightReport:
    """
    Require free scratch space of at least `multiplier` times the backup size.

    Raises
    ------
    InsufficientSpaceError
        If available space is below the requirement.
    BackupUnreachableError
        If the backup size cannot be read.
    """
    try:
        size = backup_path.stat().st_size
    except OSError as exc:
        raise BackupUnreachableError(f"Cannot stat backup file: {backup_path} ({exc})") from exc

    scratch_root.mkdir(parents=True, exist_ok=True)
    available = shutil.disk_usage(scratch_root).free
    required = int(size * multiplier)

    report = PreflightReport(
        backup_path=backup_path,
        backup_size_bytes=size,
        required_bytes=required,
        available_bytes=available,
    )
    if available < required:
        raise InsufficientSpaceError(f"Insufficient disk space: {report.describe()}")
    return report


def run_local_checks(reference: str, scratch_root: Path, *, multiplier: float = 2.0) -> PreflightReport:
    """Run both local checks in order: reachability, then scratch space."""
    backup_path = check_backup_reachable(reference)
    return check_scratch_space(backup_path, scratch_root, multiplier=multiplier)
