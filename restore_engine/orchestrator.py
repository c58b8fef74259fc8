"""
Restore orchestrator.

Drives one restore operation from submission to a terminal status:

PENDING -> INITIALIZING -> preflight -> prepare_environment -> execute_restore
-> validate_restore -> health_check -> cleanup -> COMPLETED

Stages run strictly one after another on the calling thread. Each stage
appends a RUNNING step, invokes its collaborator through
`invoke_collaborator` (deadline plus cancellation), and resolves the step
before anything else happens. A failing stage short-circuits to the rollback
branch.

Safety posture
--------------
- One operation at a time: the global restore lock is taken at `submit` and
  released only after the record is finalized.
- Nothing destructive runs before a rollback snapshot exists: a failed capture
  fails `prepare_environment` and the executor is never called.
- Every run ends in `finalize`, even when the rollback itself fails. An
  internal error finalizes the record FAILED (an operation aborted before its
  first stage gets a FAILED preflight step); if that is impossible too, the
  lock stays in place.
- An abandoned stage (deadline or cancellation) is stopped and awaited before
  the rollback replay starts.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Mapping

from .clock import Clock, SystemClock
from .collaborators import (
    CollaboratorSet,
    CommandCollaborator,
    ScratchCleanup,
    StageCollaborator,
    StageOutcome,
    StageRequest,
    StageResult,
    StageResultKind,
    invoke_collaborator,
)
from .config import OrchestratorSettings
from .data_models import (
    OperationStatus,
    RestoreMode,
    RestoreOperation,
    RollbackSnapshot,
    StepName,
    StepRecord,
    StepStatus,
    new_operation_id,
    parse_restore_mode,
)
from .errors import (
    ConfigError,
    IllegalTransitionError,
    LockError,
    OperationInProgressError,
    PreflightError,
    RestoreEngineError,
)
from .journal import JOURNAL_FILENAME, OperationJournal
from .notifications import LoggingNotificationDispatcher, Notification, NotificationDispatcher, deliver
from .paths import EnginePaths
from .preflight import run_local_checks
from .recorder import OutcomeRecorder
from .restore_lock import LockHeldError, RestoreLock, hold_restore_lock
from .rollback import FilesystemRollbackSource, ReplayResult, RollbackCoordinator
from .state_machine import PIPELINE_ORDER, is_terminal, status_for_stage

logger = logging.getLogger("stackrestore.orchestrator")

MANUAL_INTERVENTION_NOTE: Final[str] = "Manual intervention required."

REQUIRED_COMMANDS: Final[tuple[str, ...]] = (
    "backup_validator",
    "restore_executor",
    "restore_validator",
    "health_prober",
    "database_dump",
    "database_restore",
)


class _Preflight:
    """Local checks (reachability, scratch space), then the backup validator."""

    def __init__(self, validator: StageCollaborator, scratch_root: Path, multiplier: float) -> None:
        self._validator = validator
        self._scratch_root = scratch_root
        self._multiplier = multiplier

    def run(self, request: StageRequest) -> StageOutcome:
        try:
            report = run_local_checks(request.backup_reference, self._scratch_root, multiplier=self._multiplier)
        except PreflightError as exc:
            return StageOutcome(False, f"{exc.code}: {exc}")
        outcome = self._validator.run(request)
        details = report.describe()
        if outcome.details:
            details = f"{details}; {outcome.details}"
        return StageOutcome(outcome.success, details)


class _PrepareEnvironment:
    """Create the operation's scratch directory and capture the rollback snapshot."""

    def __init__(self, coordinator: RollbackCoordinator, scratch_dir: Path) -> None:
        self._coordinator = coordinator
        self._scratch_dir = scratch_dir
        self.snapshot: RollbackSnapshot | None = None

    def run(self, request: StageRequest) -> StageOutcome:
        self._scratch_dir.mkdir(parents=True, exist_ok=True)
        self.snapshot = self._coordinator.capture(request.operation_id, stop_event=request.stop_event)
        return StageOutcome(True, f"Rollback snapshot captured at {self.snapshot.location}")


class _SnapshotReplay:
    """Adapter so snapshot replay is bounded like any other collaborator call."""

    def __init__(self, coordinator: RollbackCoordinator, snapshot: RollbackSnapshot) -> None:
        self._coordinator = coordinator
        self._snapshot = snapshot
        self.result: ReplayResult | None = None

    def run(self, request: StageRequest) -> StageOutcome:
        self.result = self._coordinator.replay(self._snapshot, stop_event=request.stop_event)
        return StageOutcome(self.result.success, self.result.details)


class RestoreOrchestrator:
    """
    Single-flight restore pipeline.

    Parameters
    ----------
    settings:
        Timeouts, retry budgets and rollback policy.
    collaborators:
        Stage collaborators.
    rollback:
        Snapshot capture and replay.
    recorder:
        Durable operation records.
    lock:
        Global restore lock; held from `submit` until finalize.
    scratch_root:
        Working space checked at pre-flight.
    dispatcher:
        Receives one notification per finished operation when
        ``settings.notifications_enabled`` is true.
    clock:
        Time source for record timestamps.
    """

    def __init__(
        self,
        *,
        settings: OrchestratorSettings,
        collaborators: CollaboratorSet,
        rollback: RollbackCoordinator,
        recorder: OutcomeRecorder,
        lock: RestoreLock,
        scratch_root: Path,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._collaborators = collaborators
        self._rollback = rollback
        self._recorder = recorder
        self._lock = lock
        self._scratch_root = scratch_root
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._clock = clock or SystemClock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_mutex = threading.Lock()

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    @property
    def recorder(self) -> OutcomeRecorder:
        return self._recorder

    def journal_path(self, operation_id: str) -> Path:
        return self._recorder.root / operation_id / JOURNAL_FILENAME

    def submit(
        self,
        backup_reference: str,
        mode: RestoreMode | str,
        *,
        force: bool = False,
        break_lock: bool = False,
    ) -> str:
        """
        Register a new restore operation and take the global lock.

        Parameters
        ----------
        backup_reference:
            Locator of the backup to restore.
        mode:
            Restore mode or its string form.
        force:
            Break the global lock if it is provably stale (dead PID, same host).
        break_lock:
            Break the global lock unconditionally.

        Returns
        -------
        str
            The new operation id.

        Raises
        ------
        InvalidModeError
            If `mode` is not recognized. Checked before the lock is touched.
        OperationInProgressError
            If another operation holds the global lock.
        """
        parsed_mode = mode if isinstance(mode, RestoreMode) else parse_restore_mode(mode)
        operation_id = new_operation_id(self._clock, after=self._recorder.latest_operation_id())
        try:
            self._lock.acquire(operation_id=operation_id, command="run", force=force, break_lock=break_lock)
        except LockHeldError as exc:
            raise OperationInProgressError(str(exc)) from exc

        operation = RestoreOperation(
            id=operation_id,
            backup_reference=backup_reference,
            mode=parsed_mode,
            status=OperationStatus.PENDING,
            started_at=self._clock.now(),
        )
        try:
            self._recorder.create(operation)
        except RestoreEngineError:
            self._lock.release()
            raise
        try:
            self._journal(operation_id).append(
                "operation_submitted",
                {"backup_reference": backup_reference, "mode": parsed_mode.value},
            )
        except RestoreEngineError as exc:
            if self._fail_closed(operation_id, exc):
                self._lock.release()
            raise

        with self._cancel_mutex:
            self._cancel_events[operation_id] = threading.Event()
        logger.info("Submitted restore %s (mode=%s, backup=%s)", operation_id, parsed_mode.value, backup_reference)
        return operation_id

    def run(self, operation_id: str) -> RestoreOperation:
        """
        Drive a submitted operation to its terminal status.

        Blocks until the pipeline (and rollback, if any) has finished. The
        global lock is released and the notification sent before returning.

        An internal error (record or journal I/O) finalizes the record FAILED
        and propagates. If even that fails, the global lock is kept so no other
        restore starts over an operation without a terminal record; it becomes
        breakable with ``--force`` once this process has exited.

        Returns
        -------
        RestoreOperation
            The finalized record.

        Raises
        ------
        UnknownOperationError
            If `operation_id` was never submitted.
        IllegalTransitionError
            If the operation is not PENDING.
        LockError
            If this orchestrator does not hold the global lock for the operation.
        RestoreEngineError
            Any internal error that aborted the run.
        """
        operation = self._recorder.get(operation_id)
        if operation.status is not OperationStatus.PENDING:
            raise IllegalTransitionError(
                f"Operation {operation_id} cannot be run from status {operation.status.value}"
            )
        if self._lock.held_by != operation_id:
            raise LockError(f"The restore lock is not held for operation {operation_id}")

        with self._cancel_mutex:
            cancel_event = self._cancel_events.setdefault(operation_id, threading.Event())
        journal = self._journal(operation_id)

        finalized = True
        try:
            try:
                final = self._drive(operation, journal, cancel_event)
            except Exception as exc:
                logger.error("Restore %s aborted by an internal error: %s", operation_id, exc)
                finalized = self._fail_closed(operation_id, exc)
                raise
        finally:
            with self._cancel_mutex:
                self._cancel_events.pop(operation_id, None)
            if finalized:
                self._lock.release()
            else:
                logger.critical(
                    "Restore lock %s left in place: operation %s has no terminal record. %s",
                    self._lock.path,
                    operation_id,
                    MANUAL_INTERVENTION_NOTE,
                )

        self._notify(final)
        return final

    def restore(self, backup_reference: str, mode: RestoreMode | str) -> RestoreOperation:
        """Submit and run in one call."""
        return self.run(self.submit(backup_reference, mode))

    def cancel(self, operation_id: str) -> bool:
        """
        Request cooperative cancellation of an in-flight operation.

        The current stage is abandoned as if its deadline had passed, and the
        normal failure policy (including rollback) applies.

        Returns
        -------
        bool
            True if a cancellation was requested; False if the operation is
            already terminal or not driven by this orchestrator.

        Raises
        ------
        UnknownOperationError
            If `operation_id` was never submitted.
        """
        operation = self._recorder.get(operation_id)
        if is_terminal(operation.status):
            return False
        with self._cancel_mutex:
            event = self._cancel_events.get(operation_id)
        if event is None:
            return False
        event.set()
        self._journal(operation_id).append("cancel_requested", {"status": operation.status.value})
        logger.warning("Cancellation requested for restore %s (status %s)", operation_id, operation.status.value)
        return True

    def rollback(self, operation_id: str, *, force: bool = False, break_lock: bool = False) -> ReplayResult:
        """
        Replay a finished operation's snapshot on operator request.

        The finalized record is left untouched; the replay is recorded in the
        operation journal.

        Raises
        ------
        UnknownOperationError
            If `operation_id` was never submitted.
        OperationInProgressError
            If the operation is still running or another one holds the lock.
        NoSnapshotError
            If no snapshot was captured for the operation.
        """
        operation = self._recorder.get(operation_id)
        if not is_terminal(operation.status):
            raise OperationInProgressError(
                f"Operation {operation_id} is still {operation.status.value}; it cannot be rolled back manually."
            )
        snapshot = self._rollback.load_snapshot(operation_id)

        try:
            with hold_restore_lock(
                self._lock, operation_id=operation_id, command="rollback", force=force, break_lock=break_lock
            ):
                return self._manual_replay(operation, snapshot)
        except LockHeldError as exc:
            raise OperationInProgressError(str(exc)) from exc

    def _manual_replay(self, operation: RestoreOperation, snapshot: RollbackSnapshot) -> ReplayResult:
        operation_id = operation.id
        journal = self._journal(operation_id)
        journal.append("manual_rollback_started", {"snapshot": snapshot.location})
        logger.info("Manual rollback of %s from %s", operation_id, snapshot.location)
        replay = _SnapshotReplay(self._rollback, snapshot)
        result = invoke_collaborator(replay, self._request(operation, StepName.ROLLBACK))
        if replay.result is not None and result.succeeded:
            outcome = replay.result
        else:
            failed = StageOutcome(False, result.details)
            outcome = ReplayResult(False, result.details, failed, None)

        if outcome.success:
            journal.append("manual_rollback_completed", {"details": outcome.details})
            logger.info("Manual rollback of %s completed: %s", operation_id, outcome.details)
        else:
            journal.append("manual_rollback_failed", {"details": outcome.details})
            logger.critical(
                "Manual rollback of %s failed: %s. %s", operation_id, outcome.details, MANUAL_INTERVENTION_NOTE
            )
        return outcome

    def _drive(
        self,
        operation: RestoreOperation,
        journal: OperationJournal,
        cancel_event: threading.Event,
    ) -> RestoreOperation:
        operation_id = operation.id
        self._recorder.set_status(operation_id, OperationStatus.INITIALIZING)
        journal.append("operation_started", {"settings": self._settings.to_dict()})
        logger.info("Starting restore %s", operation_id)

        snapshot: RollbackSnapshot | None = None
        for stage in PIPELINE_ORDER:
            self._recorder.set_status(operation_id, status_for_stage(stage))
            self._recorder.append_step(operation_id, StepRecord(stage, StepStatus.RUNNING, self._clock.now()))
            journal.append("stage_started", {"stage": stage.value})
            logger.info("[%s] %s", operation_id, stage.value)

            prepare: _PrepareEnvironment | None = None
            if stage is StepName.PREPARE_ENVIRONMENT:
                prepare = _PrepareEnvironment(self._rollback, self._scratch_root / operation_id)
                result = invoke_collaborator(prepare, self._request(operation, stage), cancel_event=cancel_event)
            elif stage is StepName.HEALTH_CHECK:
                result = self._health_check(operation, cancel_event)
            else:
                collaborator = self._collaborator_for(stage)
                result = invoke_collaborator(collaborator, self._request(operation, stage), cancel_event=cancel_event)

            if result.succeeded:
                if prepare is not None:
                    snapshot = prepare.snapshot
                self._resolve(operation_id, StepStatus.COMPLETED, result.details)
                journal.append(
                    "stage_completed",
                    {"stage": stage.value, "elapsed_seconds": round(result.elapsed_seconds, 3)},
                )
                continue

            self._resolve(operation_id, StepStatus.FAILED, result.details)
            journal.append(
                "stage_failed",
                {"stage": stage.value, "kind": result.kind.value, "details": result.details},
            )
            if stage is StepName.CLEANUP:
                # Restored data is already live and verified.
                logger.warning("[%s] cleanup failed, restore stands: %s", operation_id, result.details)
                continue

            logger.error("[%s] %s %s: %s", operation_id, stage.value, result.kind.value, result.details)
            return self._fail(operation, stage, snapshot, journal)

        final = self._recorder.finalize(operation_id, OperationStatus.COMPLETED, self._clock.now())
        journal.append("operation_finalized", {"status": final.status.value})
        logger.info("Restore %s completed", operation_id)
        return final

    def _fail(
        self,
        operation: RestoreOperation,
        failed_stage: StepName,
        snapshot: RollbackSnapshot | None,
        journal: OperationJournal,
    ) -> RestoreOperation:
        operation_id = operation.id
        self._recorder.set_status(operation_id, OperationStatus.ROLLING_BACK)
        if snapshot is None or not self._settings.rollback_on_failure:
            # No rollback step: the branch is passed through, not executed.
            reason = "rollback disabled" if snapshot is not None else "no rollback snapshot was captured"
            journal.append("rollback_skipped", {"failed_stage": failed_stage.value, "reason": reason})
            logger.error("Restore %s failed at %s (%s)", operation_id, failed_stage.value, reason)
            final = self._recorder.finalize(operation_id, OperationStatus.FAILED, self._clock.now())
            journal.append("operation_finalized", {"status": final.status.value})
            return final

        self._recorder.append_step(
            operation_id, StepRecord(StepName.ROLLBACK, StepStatus.RUNNING, self._clock.now())
        )
        journal.append("rollback_started", {"failed_stage": failed_stage.value, "snapshot": snapshot.location})
        logger.warning("Rolling back restore %s after %s failure", operation_id, failed_stage.value)

        # Not cancellable: abandoning a half-applied rollback leaves the worst possible state.
        replay = _SnapshotReplay(self._rollback, snapshot)
        result = invoke_collaborator(replay, self._request(operation, StepName.ROLLBACK))

        if result.succeeded:
            self._resolve(operation_id, StepStatus.COMPLETED, result.details)
            journal.append("rollback_completed", {"details": result.details})
            status = OperationStatus.ROLLED_BACK
            logger.info("Restore %s rolled back", operation_id)
        else:
            details = f"{result.details}. {MANUAL_INTERVENTION_NOTE}"
            self._resolve(operation_id, StepStatus.FAILED, details)
            journal.append("rollback_failed", {"kind": result.kind.value, "details": result.details})
            status = OperationStatus.FAILED
            logger.critical("Rollback of restore %s failed: %s", operation_id, details)

        final = self._recorder.finalize(operation_id, status, self._clock.now())
        journal.append("operation_finalized", {"status": final.status.value})
        return final

    def _health_check(self, operation: RestoreOperation, cancel_event: threading.Event) -> StageResult:
        attempts = self._settings.health_check_attempts
        interval = self._settings.health_check_interval_seconds
        started = time.monotonic()
        last: StageResult | None = None

        for attempt in range(1, attempts + 1):
            request = self._request(operation, StepName.HEALTH_CHECK, attempt=attempt)
            result = invoke_collaborator(self._collaborators.health_prober, request, cancel_event=cancel_event)
            if result.succeeded:
                details = f"Healthy after {attempt} attempt(s)"
                if result.details:
                    details = f"{details}: {result.details}"
                return StageResult(StageResultKind.SUCCEEDED, details, time.monotonic() - started)
            if result.kind is StageResultKind.CANCELLED:
                return result

            last = result
            logger.debug("[%s] health probe %d/%d failed: %s", operation.id, attempt, attempts, result.details)
            if attempt < attempts and cancel_event.wait(interval):
                return StageResult(
                    StageResultKind.CANCELLED,
                    f"Stage {StepName.HEALTH_CHECK.value} cancelled by request",
                    time.monotonic() - started,
                )

        details = f"Health checks failed after {attempts} attempts"
        if last is not None and last.details:
            details = f"{details}: {last.details}"
        return StageResult(StageResultKind.FAILED, details, time.monotonic() - started)

    def _collaborator_for(self, stage: StepName) -> StageCollaborator:
        if stage is StepName.PREFLIGHT:
            return _Preflight(
                self._collaborators.backup_validator,
                self._scratch_root,
                self._settings.scratch_space_multiplier,
            )
        if stage is StepName.EXECUTE_RESTORE:
            return self._collaborators.restore_executor
        if stage is StepName.VALIDATE_RESTORE:
            return self._collaborators.restore_validator
        if stage is StepName.CLEANUP:
            return self._collaborators.cleanup
        raise ValueError(f"No collaborator is bound to stage {stage.value}")

    def _request(self, operation: RestoreOperation, stage: StepName, *, attempt: int = 1) -> StageRequest:
        return StageRequest(
            operation_id=operation.id,
            backup_reference=operation.backup_reference,
            mode=operation.mode,
            stage=stage,
            timeout_seconds=self._timeout_for(stage),
            attempt=attempt,
        )

    def _timeout_for(self, stage: StepName) -> float:
        s = self._settings
        return {
            StepName.PREFLIGHT: s.preflight_timeout_seconds,
            StepName.PREPARE_ENVIRONMENT: s.snapshot_timeout_seconds,
            StepName.EXECUTE_RESTORE: s.restore_timeout_seconds,
            StepName.VALIDATE_RESTORE: s.validation_timeout_seconds,
            StepName.HEALTH_CHECK: s.health_probe_timeout_seconds,
            StepName.CLEANUP: s.cleanup_timeout_seconds,
            StepName.ROLLBACK: s.rollback_timeout_seconds,
        }[stage]

    def _resolve(self, operation_id: str, status: StepStatus, details: str) -> None:
        self._recorder.resolve_step(operation_id, status=status, details=details, timestamp=self._clock.now())

    def _journal(self, operation_id: str) -> OperationJournal:
        return OperationJournal(self.journal_path(operation_id), clock=self._clock)

    def _fail_closed(self, operation_id: str, cause: Exception) -> bool:
        """
        Leave the record FAILED after an internal error.

        Returns
        -------
        bool
            True when the record is terminal afterwards. False means the outcome
            could not be recorded and the caller must keep the global lock.
        """
        code = getattr(cause, "code", type(cause).__name__)
        try:
            operation = self._recorder.get(operation_id)
            if is_terminal(operation.status):
                return True
            details = f"{code}: {cause}"
            if operation.running_step is not None:
                self._resolve(operation_id, StepStatus.FAILED, details)
            elif not operation.steps:
                # A terminal record always names the step it stopped at.
                self._recorder.append_step(
                    operation_id, StepRecord(PIPELINE_ORDER[0], StepStatus.FAILED, self._clock.now(), details)
                )
            self._recorder.finalize(operation_id, OperationStatus.FAILED, self._clock.now())
        except RestoreEngineError as exc:
            logger.critical("Could not finalize restore %s after internal error: %s", operation_id, exc)
            return False
        logger.error("Restore %s finalized FAILED after internal error (%s)", operation_id, code)
        return True

    def _notify(self, operation: RestoreOperation) -> None:
        if not self._settings.notifications_enabled:
            return
        notification = Notification(
            operation_id=operation.id,
            status=operation.status,
            message=notification_message(operation),
        )
        deliver(self._dispatcher, notification)


def notification_message(operation: RestoreOperation) -> str:
    """Operator-facing one-line outcome for a finalized operation."""
    if operation.status is OperationStatus.COMPLETED:
        cleanup = operation.find_step(StepName.CLEANUP)
        if cleanup is not None and cleanup.status is StepStatus.FAILED:
            return "Restore completed; cleanup failed and temporary data may remain."
        return "Restore completed successfully."

    failed = next(
        (s for s in operation.steps if s.status is StepStatus.FAILED and s.name is not StepName.ROLLBACK),
        None,
    )
    where = f" at {failed.name.value}" if failed is not None else ""
    rollback = operation.find_step(StepName.ROLLBACK)
    if operation.status is OperationStatus.ROLLED_BACK:
        return f"Restore failed{where}; the previous state was restored."
    if rollback is not None and rollback.status is StepStatus.FAILED:
        return f"Restore failed{where} and rollback failed. {MANUAL_INTERVENTION_NOTE}"
    return f"Restore failed{where}; no rollback was performed."


@dataclass(frozen=True, slots=True)
class _Wiring:
    collaborators: CollaboratorSet
    rollback_source: FilesystemRollbackSource


def _wire_commands(settings: OrchestratorSettings, paths: EnginePaths) -> _Wiring:
    commands: Mapping[str, tuple[str, ...]] = settings.commands
    missing = [key for key in REQUIRED_COMMANDS if key not in commands]
    if missing:
        raise ConfigError(
            f"Missing command configuration for: {', '.join(missing)} (set 'commands' in {paths.config_path})"
        )
    cleanup: StageCollaborator
    if "cleanup" in commands:
        cleanup = CommandCollaborator(commands["cleanup"])
    else:
        cleanup = ScratchCleanup(paths.scratch_root, operations_root=paths.operations_root)
    collaborators = CollaboratorSet(
        backup_validator=CommandCollaborator(commands["backup_validator"]),
        restore_executor=CommandCollaborator(commands["restore_executor"]),
        restore_validator=CommandCollaborator(commands["restore_validator"]),
        health_prober=CommandCollaborator(commands["health_prober"]),
        cleanup=cleanup,
    )
    try:
        source = FilesystemRollbackSource(
            database_dump_argv=commands["database_dump"],
            database_restore_argv=commands["database_restore"],
            volumes=settings.volumes,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return _Wiring(collaborators=collaborators, rollback_source=source)


def build_orchestrator(
    paths: EnginePaths,
    settings: OrchestratorSettings,
    *,
    dispatcher: NotificationDispatcher | None = None,
    clock: Clock | None = None,
) -> RestoreOrchestrator:
    """
    Wire an orchestrator whose collaborators are the configured commands.

    Raises
    ------
    ConfigError
        If a required command is not configured or a volume name is invalid.
    """
    clock = clock or SystemClock()
    wiring = _wire_commands(settings, paths)
    coordinator = RollbackCoordinator(
        snapshots_root=paths.snapshots_root,
        source=wiring.rollback_source,
        clock=clock,
        capture_timeout_seconds=settings.snapshot_timeout_seconds,
        replay_timeout_seconds=settings.rollback_timeout_seconds,
    )
    return RestoreOrchestrator(
        settings=settings,
        collaborators=wiring.collaborators,
        rollback=coordinator,
        recorder=OutcomeRecorder(paths.operations_root),
        lock=RestoreLock(paths.lock_path),
        scratch_root=paths.scratch_root,
        dispatcher=dispatcher,
        clock=clock,
    )
