from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest

import restore_engine.preflight as preflight_module
from restore_engine.clock import Clock, SteppingClock
from restore_engine.collaborators import CollaboratorSet, StageOutcome, StageRequest
from restore_engine.config import OrchestratorSettings
from restore_engine.notifications import Notification
from restore_engine.orchestrator import RestoreOrchestrator
from restore_engine.paths import EnginePaths, ensure_engine_directories, resolve_engine_paths
from restore_engine.recorder import OutcomeRecorder
from restore_engine.restore_lock import RestoreLock
from restore_engine.rollback import DATABASE_DUMP_FILENAME, RollbackCoordinator

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedCollaborator:
    """Answers with queued outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: StageOutcome | BaseException) -> None:
        self._outcomes = list(outcomes) or [StageOutcome(True, "ok")]
        self.requests: list[StageRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def run(self, request: StageRequest) -> StageOutcome:
        self.requests.append(request)
        item = self._outcomes[min(len(self.requests), len(self._outcomes)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class BlockingCollaborator:
    """
    Blocks until released, then succeeds.

    Honors the request's stop event unless `honor_stop` is False; `stop_delay`
    simulates a collaborator that takes a while to wind down.
    """

    def __init__(self, *, honor_stop: bool = True, stop_delay: float = 0.0) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.stopped = threading.Event()
        self.running = False
        self.honor_stop = honor_stop
        self.stop_delay = stop_delay

    def run(self, request: StageRequest) -> StageOutcome:
        self.running = True
        self.started.set()
        try:
            deadline = time.monotonic() + 10
            while not self.release.wait(0.01) and time.monotonic() < deadline:
                stop = request.stop_event
                if self.honor_stop and stop is not None and stop.is_set():
                    time.sleep(self.stop_delay)
                    self.stopped.set()
                    return StageOutcome(False, "stopped")
            return StageOutcome(True, "finished late")
        finally:
            self.running = False


class FakeRollbackSource:
    """In-memory rollback data source recording every call."""

    def __init__(
        self,
        *,
        dump_ok: bool = True,
        restore_database_ok: bool = True,
        restore_volumes_ok: bool = True,
        on_dump: Callable[[], None] | None = None,
        on_restore_database: Callable[[], None] | None = None,
    ) -> None:
        self.dump_ok = dump_ok
        self.restore_database_ok = restore_database_ok
        self.restore_volumes_ok = restore_volumes_ok
        self.on_dump = on_dump
        self.on_restore_database = on_restore_database
        self.calls: list[str] = []

    def dump_database(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        self.calls.append("dump_database")
        if self.on_dump is not None:
            self.on_dump()
        if not self.dump_ok:
            return StageOutcome(False, "pg_dump: connection refused")
        (dest_dir / DATABASE_DUMP_FILENAME).write_text("-- dump\n", encoding="utf-8")
        return StageOutcome(True, "dumped")

    def archive_volumes(
        self, dest_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        self.calls.append("archive_volumes")
        return StageOutcome(True, "No volumes configured")

    def restore_database(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        self.calls.append("restore_database")
        if self.on_restore_database is not None:
            self.on_restore_database()
        if not self.restore_database_ok:
            return StageOutcome(False, "psql: relation already exists")
        return StageOutcome(True, "database restored")

    def restore_volumes(
        self, src_dir: Path, timeout_seconds: float, *, stop_event: threading.Event | None = None
    ) -> StageOutcome:
        self.calls.append("restore_volumes")
        if not self.restore_volumes_ok:
            return StageOutcome(False, "volume archive corrupt")
        return StageOutcome(True, "volumes restored")


@dataclass
class RecordingDispatcher:
    fail: bool = False
    notifications: list[Notification] = field(default_factory=list)

    def dispatch(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("smtp unreachable")
        self.notifications.append(notification)


@dataclass
class Harness:
    orchestrator: RestoreOrchestrator
    paths: EnginePaths
    collaborators: dict[str, Any]
    source: FakeRollbackSource
    dispatcher: RecordingDispatcher
    backup: Path


def fast_settings(**overrides: Any) -> OrchestratorSettings:
    base = OrchestratorSettings(
        notifications_enabled=True,
        health_check_attempts=3,
        health_check_interval_seconds=0,
    )
    return replace(base, **overrides)


@pytest.fixture(autouse=True)
def _reset_stackrestore_logger() -> Any:
    yield
    logger = logging.getLogger("stackrestore")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def free_space(monkeypatch: pytest.MonkeyPatch) -> Callable[[int], None]:
    """Pin the free space reported for the scratch volume."""

    def _set(free_bytes: int) -> None:
        monkeypatch.setattr(
            preflight_module.shutil,
            "disk_usage",
            lambda _path: SimpleNamespace(total=free_bytes, used=0, free=free_bytes),
        )

    _set(10**12)
    return _set


@pytest.fixture
def backup_file(tmp_path: Path) -> Path:
    path = tmp_path / "backups" / "b1.tar"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"x" * 1024)
    return path


@pytest.fixture
def make_harness(tmp_path: Path, backup_file: Path, free_space: Callable[[int], None]) -> Callable[..., Harness]:
    def _make(
        *,
        settings: OrchestratorSettings | None = None,
        source: FakeRollbackSource | None = None,
        clock: Clock | None = None,
        **collaborator_overrides: Any,
    ) -> Harness:
        paths = resolve_engine_paths(tmp_path / "data")
        ensure_engine_directories(paths)
        settings = settings or fast_settings()
        clock = clock or SteppingClock(start=T0)
        collaborators: dict[str, Any] = {
            name: ScriptedCollaborator(StageOutcome(True, f"{name} ok"))
            for name in ("backup_validator", "restore_executor", "restore_validator", "health_prober", "cleanup")
        }
        collaborators.update(collaborator_overrides)
        source = source or FakeRollbackSource()
        dispatcher = RecordingDispatcher()
        coordinator = RollbackCoordinator(
            snapshots_root=paths.snapshots_root,
            source=source,
            clock=clock,
            capture_timeout_seconds=settings.snapshot_timeout_seconds,
            replay_timeout_seconds=settings.rollback_timeout_seconds,
        )
        orchestrator = RestoreOrchestrator(
            settings=settings,
            collaborators=CollaboratorSet(**collaborators),
            rollback=coordinator,
            recorder=OutcomeRecorder(paths.operations_root),
            lock=RestoreLock(paths.lock_path),
            scratch_root=paths.scratch_root,
            dispatcher=dispatcher,
            clock=clock,
        )
        return Harness(orchestrator, paths, collaborators, source, dispatcher, backup_file)

    return _make


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
