"""
Rollback coordination.

A rollback snapshot is captured once per operation, during PREPARING and before
anything destructive touches live data. If the pipeline fails later, the
snapshot is replayed: database first, then volumes (volumes may reference
database-issued identifiers).

Failure policy
--------------
- Capture failure raises `SnapshotCaptureError`; the orchestrator treats it as a
  stage failure and never proceeds into a destructive restore without a
  snapshot.
- Replay failure is reported, never retried. The system is then in an
  indeterminate state that needs an operator.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Final, Mapping, Protocol, Sequence

import zstandard as zstd

from .clock import Clock
from .collaborators import StageOutcome, run_command
from .compression import TAR_ZST_SUFFIX, archive_directory, extract_archive
from .data_models import RollbackSnapshot
from .errors import ArtifactIOError, NoSnapshotError, SnapshotCaptureError
from .json_io import read_json_object, write_json_atomic

logger = logging.getLogger("stackrestore.rollback")

SNAPSHOT_SCHEMA_VERSION: Final[str] = "stackrestore_snapshot_v1"
SNAPSHOT_METADATA_FILENAME: Final[str] = "snapshot.json"
DATABASE_DUMP_FILENAME: Final[str] = "database.sql"
VOLUME_ARCHIVE_PREFIX: Final[str] = "volume-"

_DATA_ERRORS = (OSError, ValueError, tarfile.TarError, zstd.ZstdError)


class RollbackDataSource(Protocol):
    """Reads and writes the live data a snapshot protects."""

    def dump_database(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        """Write a database dump into `dest_dir`; give up once `stop_event` is set."""
        ...

    def archive_volumes(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        """Write one archive per volume into `dest_dir`."""
        ...

    def restore_database(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        """Load the dump found in `src_dir` into the live database."""
        ...

    def restore_volumes(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        """Replace live volume contents with the archives found in `src_dir`."""
        ...


@dataclass(frozen=True, slots=True)
class ReplayResult:
    """
    Outcome of replaying a snapshot.

    Attributes
    ----------
    success:
        True only if both the database and the volumes were restored.
    details:
        Human-readable summary for the rollback step record.
    database:
        Database replay outcome.
    volumes:
        Volume replay outcome; None when skipped after a database failure.
    """

    success: bool
    details: str
    database: StageOutcome
    volumes: StageOutcome | None


class RollbackCoordinator:
    """
    Capture and replay rollback snapshots.

    Parameters
    ----------
    snapshots_root:
        Directory holding one snapshot directory per operation.
    source:
        Live data access used for capture and replay.
    clock:
        Time source for `created_at`.
    capture_timeout_seconds:
        Budget handed to each capture call on `source`.
    replay_timeout_seconds:
        Budget handed to each replay call on `source`.
    """

    def __init__(
        self,
        *,
        snapshots_root: Path,
        source: RollbackDataSource,
        clock: Clock,
        capture_timeout_seconds: float = 1800,
        replay_timeout_seconds: float = 3600,
    ) -> None:
        self._snapshots_root = snapshots_root
        self._source = source
        self._clock = clock
        self._capture_timeout = capture_timeout_seconds
        self._replay_timeout = replay_timeout_seconds

    def snapshot_location(self, operation_id: str) -> Path:
        return self._snapshots_root / operation_id

    def capture(self, operation_id: str, *, stop_event: threading.Event | None = None) -> RollbackSnapshot:
        """
        Capture the pre-restore state for `operation_id`.

        `stop_event` is forwarded to the data source so an abandoned capture
        stops its dump and archive work.

        Returns
        -------
        RollbackSnapshot
            The write-once snapshot record.

        Raises
        ------
        SnapshotCaptureError
            If a snapshot already exists for the operation, or any part of the
            capture fails.
        """
        location = self.snapshot_location(operation_id)
        metadata_path = location / SNAPSHOT_METADATA_FILENAME
        if metadata_path.exists():
            raise SnapshotCaptureError(f"A rollback snapshot already exists for {operation_id}: {location}")

        try:
            location.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SnapshotCaptureError(f"Cannot create snapshot directory {location}: {exc}") from exc

        logger.info("Capturing rollback snapshot for %s into %s", operation_id, location)
        for label, step in (
            ("database dump", self._source.dump_database),
            ("volume archives", self._source.archive_volumes),
        ):
            try:
                outcome = step(location, self._capture_timeout, stop_event=stop_event)
            except _DATA_ERRORS as exc:
                raise SnapshotCaptureError(f"Snapshot {label} failed: {exc}") from exc
            if not outcome.success:
                raise SnapshotCaptureError(f"Snapshot {label} failed: {outcome.details}")
            logger.debug("Snapshot %s captured: %s", label, outcome.details)

        artifacts = tuple(
            sorted(p.name for p in location.iterdir() if p.is_file() and p.name != SNAPSHOT_METADATA_FILENAME)
        )
        snapshot = RollbackSnapshot(
            operation_id=operation_id,
            location=str(location),
            created_at=self._clock.now(),
            artifacts=artifacts,
        )
        try:
            write_json_atomic(metadata_path, {"schema_version": SNAPSHOT_SCHEMA_VERSION, **snapshot.to_dict()})
        except ArtifactIOError as exc:
            raise SnapshotCaptureError(f"Cannot record snapshot metadata: {exc}") from exc
        return snapshot

    def load_snapshot(self, operation_id: str) -> RollbackSnapshot:
        """
        Load the snapshot captured for `operation_id`.

        Raises
        ------
        NoSnapshotError
            If no complete snapshot was captured for the operation.
        """
        metadata_path = self.snapshot_location(operation_id) / SNAPSHOT_METADATA_FILENAME
        if not metadata_path.is_file():
            raise NoSnapshotError(f"No rollback snapshot recorded for operation {operation_id}")
        try:
            payload = read_json_object(metadata_path)
            return RollbackSnapshot.from_dict(payload)
        except (ArtifactIOError, KeyError, ValueError) as exc:
            raise NoSnapshotError(f"Rollback snapshot metadata is unreadable: {metadata_path}") from exc

    def replay(self, snapshot: RollbackSnapshot, *, stop_event: threading.Event | None = None) -> ReplayResult:
        """
        Restore the snapshot: database first, then volumes.

        Never raises for data-source failures; they are reported in the result.
        """
        location = Path(snapshot.location)
        if not location.is_dir():
            failed = StageOutcome(False, f"Snapshot location is missing: {location}")
            return ReplayResult(False, failed.details, failed, None)

        logger.info("Replaying rollback snapshot for %s from %s", snapshot.operation_id, location)
        database = self._guarded(self._source.restore_database, location, stop_event)
        if not database.success:
            details = f"Database rollback failed: {database.details}"
            return ReplayResult(False, details, database, None)

        volumes = self._guarded(self._source.restore_volumes, location, stop_event)
        if not volumes.success:
            details = f"Database restored, volume rollback failed: {volumes.details}"
            return ReplayResult(False, details, database, volumes)

        details = "Rollback snapshot replayed (database, volumes)"
        return ReplayResult(True, details, database, volumes)

    def _guarded(
        self,
        call: Callable[..., StageOutcome],
        location: Path,
        stop_event: threading.Event | None,
    ) -> StageOutcome:
        try:
            return call(location, self._replay_timeout, stop_event=stop_event)
        except _DATA_ERRORS as exc:
            return StageOutcome(False, f"{type(exc).__name__}: {exc}")


class FilesystemRollbackSource:
    """
    Rollback data source for a database reachable by command-line tools and
    volumes that are plain directories.

    Parameters
    ----------
    database_dump_argv:
        Command writing a dump to ``{dump_path}``, e.g.
        ``["pg_dump", "-U", "app", "-f", "{dump_path}", "app"]``.
    database_restore_argv:
        Command loading ``{dump_path}`` into the live database, e.g.
        ``["psql", "-U", "app", "-f", "{dump_path}", "app"]``.
    volumes:
        Volume name to live directory. Each is archived as
        ``volume-<name>.tar.zst``.
    """

    def __init__(
        self,
        *,
        database_dump_argv: Sequence[str],
        database_restore_argv: Sequence[str],
        volumes: Mapping[str, Path] | None = None,
    ) -> None:
        if not database_dump_argv or not database_restore_argv:
            raise ValueError("Database dump and restore commands are required for rollback snapshots.")
        self._dump_argv = tuple(database_dump_argv)
        self._restore_argv = tuple(database_restore_argv)
        self._volumes = dict(volumes or {})
        for name in self._volumes:
            if not name or any(ch in name for ch in r'\/:*?"<>|') or name in {".", ".."}:
                raise ValueError(f"Invalid volume name: {name!r}")

    def dump_database(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        dump_path = dest_dir / DATABASE_DUMP_FILENAME
        outcome = run_command(
            _render(self._dump_argv, dump_path), timeout_seconds=timeout_seconds, stop_event=stop_event
        )
        if outcome.success and not dump_path.is_file():
            return StageOutcome(False, f"Dump command succeeded but did not write {dump_path}")
        return outcome

    def restore_database(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        dump_path = src_dir / DATABASE_DUMP_FILENAME
        if not dump_path.is_file():
            return StageOutcome(False, f"Database dump missing from snapshot: {dump_path}")
        return run_command(
            _render(self._restore_argv, dump_path), timeout_seconds=timeout_seconds, stop_event=stop_event
        )

    def archive_volumes(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        _ = timeout_seconds
        written: list[str] = []
        for name, live_dir in sorted(self._volumes.items()):
            if stop_event is not None and stop_event.is_set():
                return StageOutcome(False, f"Volume archiving stopped before {name!r}, the call was abandoned")
            if not live_dir.is_dir():
                return StageOutcome(False, f"Volume {name!r} directory does not exist: {live_dir}")
            result = archive_directory(
                source_dir=live_dir,
                output_path=dest_dir / f"{VOLUME_ARCHIVE_PREFIX}{name}{TAR_ZST_SUFFIX}",
            )
            written.append(f"{name} ({result.file_count} files)")
        if not written:
            return StageOutcome(True, "No volumes configured")
        return StageOutcome(True, "Archived volumes: " + ", ".join(written))

    def restore_volumes(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        _ = timeout_seconds
        restored: list[str] = []
        for name, live_dir in sorted(self._volumes.items()):
            if stop_event is not None and stop_event.is_set():
                return StageOutcome(False, f"Volume restore stopped before {name!r}, the call was abandoned")
            archive_path = src_dir / f"{VOLUME_ARCHIVE_PREFIX}{name}{TAR_ZST_SUFFIX}"
            if not archive_path.is_file():
                return StageOutcome(False, f"Volume archive missing from snapshot: {archive_path}")
            _replace_directory_from_archive(archive_path=archive_path, live_dir=live_dir)
            restored.append(name)
        if not restored:
            return StageOutcome(True, "No volumes configured")
        return StageOutcome(True, "Restored volumes: " + ", ".join(restored))


def _render(argv: Sequence[str], dump_path: Path) -> list[str]:
    return [part.replace("{dump_path}", str(dump_path)) for part in argv]


def _replace_directory_from_archive(*, archive_path: Path, live_dir: Path) -> None:
    """
    Stage the archive next to `live_dir`, then swap it in with renames.

    The displaced tree is removed only after the staged tree is in place.
    """
    stage_dir = live_dir.with_name(f".{live_dir.name}.stackrestore_stage")
    displaced_dir = live_dir.with_name(f".{live_dir.name}.stackrestore_displaced")
    for leftover in (stage_dir, displaced_dir):
        if leftover.exists():
            shutil.rmtree(leftover)

    extract_archive(archive_path=archive_path, destination_dir=stage_dir)
    if live_dir.exists():
        live_dir.rename(displaced_dir)
    stage_dir.rename(live_dir)
    if displaced_dir.exists():
        shutil.rmtree(displaced_dir)
