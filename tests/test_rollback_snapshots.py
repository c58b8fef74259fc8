from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import FakeRollbackSource
from restore_engine.clock import FixedClock
from restore_engine.compression import archive_directory, extract_archive
from restore_engine.errors import NoSnapshotError, SnapshotCaptureError
from restore_engine.rollback import FilesystemRollbackSource, RollbackCoordinator

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
OP = "restore-20240101-120000-000000-0000abcd"

# Dump/restore stand-ins: copy between the live "database" file and the snapshot dump.
COPY = "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])"


def _coordinator(tmp_path: Path, source: object) -> RollbackCoordinator:
    return RollbackCoordinator(snapshots_root=tmp_path / "snapshots", source=source, clock=FixedClock(T0))  # type: ignore[arg-type]


def test_capture_writes_metadata_once(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path, FakeRollbackSource())

    snapshot = coordinator.capture(OP)

    assert snapshot.operation_id == OP
    assert snapshot.created_at == T0
    assert snapshot.artifacts == ("database.sql",)
    metadata = json.loads((Path(snapshot.location) / "snapshot.json").read_text(encoding="utf-8"))
    assert metadata["schema_version"] == "stackrestore_snapshot_v1"
    assert coordinator.load_snapshot(OP) == snapshot

    with pytest.raises(SnapshotCaptureError, match="already exists"):
        coordinator.capture(OP)


def test_capture_failure_raises_and_leaves_no_metadata(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path, FakeRollbackSource(dump_ok=False))

    with pytest.raises(SnapshotCaptureError) as excinfo:
        coordinator.capture(OP)

    assert excinfo.value.code == "SNAPSHOT_CAPTURE_FAILED"
    with pytest.raises(NoSnapshotError):
        coordinator.load_snapshot(OP)


def test_replay_skips_volumes_when_database_fails(tmp_path: Path) -> None:
    source = FakeRollbackSource(restore_database_ok=False)
    coordinator = _coordinator(tmp_path, source)
    snapshot = coordinator.capture(OP)

    result = coordinator.replay(snapshot)

    assert result.success is False
    assert result.volumes is None
    assert result.details.startswith("Database rollback failed")
    assert "restore_volumes" not in source.calls


def test_replay_with_missing_location_fails(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path, FakeRollbackSource())
    snapshot = coordinator.capture(OP)
    for child in Path(snapshot.location).iterdir():
        child.unlink()
    Path(snapshot.location).rmdir()

    result = coordinator.replay(snapshot)

    assert result.success is False
    assert "missing" in result.details


def test_filesystem_source_round_trip(tmp_path: Path) -> None:
    live_db = tmp_path / "live" / "db.sql"
    live_db.parent.mkdir(parents=True)
    live_db.write_text("original rows\n", encoding="utf-8")
    uploads = tmp_path / "live" / "uploads"
    (uploads / "avatars").mkdir(parents=True)
    (uploads / "avatars" / "a.png").write_bytes(b"PNG-original")
    (uploads / "empty").mkdir()

    source = FilesystemRollbackSource(
        database_dump_argv=[sys.executable, "-c", COPY, str(live_db), "{dump_path}"],
        database_restore_argv=[sys.executable, "-c", COPY, "{dump_path}", str(live_db)],
        volumes={"uploads": uploads},
    )
    coordinator = _coordinator(tmp_path, source)
    snapshot = coordinator.capture(OP)
    assert snapshot.artifacts == ("database.sql", "volume-uploads.tar.zst")

    # A destructive restore that then fails.
    live_db.write_text("half-restored rows\n", encoding="utf-8")
    (uploads / "avatars" / "a.png").write_bytes(b"PNG-corrupt")
    (uploads / "new.txt").write_text("should disappear", encoding="utf-8")

    result = coordinator.replay(snapshot)

    assert result.success, result.details
    assert live_db.read_text(encoding="utf-8") == "original rows\n"
    assert (uploads / "avatars" / "a.png").read_bytes() == b"PNG-original"
    assert not (uploads / "new.txt").exists()
    assert (uploads / "empty").is_dir()
    assert not any(p.name.startswith(".uploads.stackrestore") for p in uploads.parent.iterdir())


def test_filesystem_source_reports_missing_volume(tmp_path: Path) -> None:
    source = FilesystemRollbackSource(
        database_dump_argv=["true"],
        database_restore_argv=["true"],
        volumes={"uploads": tmp_path / "nope"},
    )
    outcome = source.archive_volumes(tmp_path, 10)
    assert not outcome.success
    assert "does not exist" in outcome.details


def test_filesystem_source_stops_when_the_call_is_abandoned(tmp_path: Path) -> None:
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    marker = tmp_path / "dumped"
    touch = "import pathlib, sys; pathlib.Path(sys.argv[1]).touch()"
    source = FilesystemRollbackSource(
        database_dump_argv=[sys.executable, "-c", touch, str(marker)],
        database_restore_argv=["true"],
        volumes={"uploads": uploads},
    )
    stop = threading.Event()
    stop.set()

    dump = source.dump_database(tmp_path, 10, stop_event=stop)
    volumes = source.archive_volumes(tmp_path, 10, stop_event=stop)

    assert not dump.success
    assert not marker.exists()
    assert not volumes.success
    assert "abandoned" in volumes.details
    assert not list(tmp_path.glob("volume-*"))


def test_filesystem_source_rejects_bad_volume_names() -> None:
    with pytest.raises(ValueError):
        FilesystemRollbackSource(database_dump_argv=["x"], database_restore_argv=["y"], volumes={"../etc": Path("/")})


def test_archive_refuses_overwrite(tmp_path: Path) -> None:
    src = tmp_path / "src"
    src.mkdir()
    (src / "f.txt").write_text("x", encoding="utf-8")
    out = tmp_path / "a.tar.zst"
    result = archive_directory(source_dir=src, output_path=out)
    assert result.file_count == 1

    with pytest.raises(ValueError, match="Refusing to overwrite"):
        archive_directory(source_dir=src, output_path=out)

    dest = extract_archive(archive_path=out, destination_dir=tmp_path / "dest")
    assert (dest / "f.txt").read_text(encoding="utf-8") == "x"
