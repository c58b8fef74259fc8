"""
Stage collaborators and the bounded invocation contract.

Collaborators are opaque units of work (backup validator, restore executor,
post-restore validator, health prober, cleanup). Each receives a
`StageRequest` and answers with a `StageOutcome`; it cannot signal partial
success.

The orchestrator never calls a collaborator directly. It goes through
`invoke_collaborator`, which runs the call on a worker thread and converts a
missed deadline or a cancellation request into a first-class result.

Abandoned calls
---------------
When a call is abandoned (deadline or cancellation), the request's
``stop_event`` is set and `invoke_collaborator` waits a bounded grace period
for the worker to return. Collaborators that start processes honor the event:
`run_command` terminates the child's process group and returns only once the
child has exited, so nothing the engine started is still writing when the
rollback replay begins. A collaborator that ignores the event may keep running
externally; its eventual answer is ignored.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from .compression import TAR_ZST_SUFFIX, archive_files
from .data_models import RestoreMode, StepName
from .journal import JOURNAL_FILENAME

logger = logging.getLogger("stackrestore.collaborators")

_MAX_DETAILS_CHARS = 2000

STOP_GRACE_SECONDS = 5.0
LOGS_ARCHIVE_FILENAME = f"logs{TAR_ZST_SUFFIX}"


@dataclass(frozen=True, slots=True)
class StageRequest:
    """
    Input handed to every collaborator.

    Attributes
    ----------
    operation_id:
        Owning operation.
    backup_reference:
        Opaque locator of the source backup.
    mode:
        Restore mode.
    stage:
        Stage the call belongs to.
    timeout_seconds:
        Budget for this single call.
    attempt:
        1-based attempt number (health probes are polled).
    stop_event:
        Set by `invoke_collaborator` when the call is abandoned. Long-running
        collaborators should stop their work and return promptly once it is set.
    """

    operation_id: str
    backup_reference: str
    mode: RestoreMode
    stage: StepName
    timeout_seconds: float
    attempt: int = 1
    stop_event: threading.Event | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """What a collaborator reports: success flag plus free-form diagnostics."""

    success: bool
    details: str = ""


class StageResultKind(str, Enum):
    """How a bounded collaborator call ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class StageResult:
    """
    Result of a bounded collaborator call, as seen by the orchestrator.

    Notes
    -----
    FAILED, TIMED_OUT and CANCELLED all fail the stage; they stay distinct so
    the recorded details say which one happened.
    """

    kind: StageResultKind
    details: str
    elapsed_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.kind is StageResultKind.SUCCEEDED


class StageCollaborator(Protocol):
    """A unit of work invoked by one pipeline stage."""

    def run(self, request: StageRequest) -> StageOutcome:
        """Perform the stage's work and report success or failure."""
        ...


@dataclass(slots=True)
class _CallBox:
    outcome: StageOutcome | None = None
    error: BaseException | None = None
    done: threading.Event = field(default_factory=threading.Event)


def invoke_collaborator(
    collaborator: StageCollaborator,
    request: StageRequest,
    *,
    cancel_event: threading.Event | None = None,
    poll_interval: float = 0.05,
    stop_grace_seconds: float = 2 * STOP_GRACE_SECONDS,
) -> StageResult:
    """
    Invoke a collaborator with a deadline and cooperative cancellation.

    Parameters
    ----------
    collaborator:
        Collaborator to run.
    request:
        Request to pass on; `request.timeout_seconds` is the deadline. The
        collaborator receives a copy carrying this call's ``stop_event``.
    cancel_event:
        When set, the call is abandoned and CANCELLED is returned.
    poll_interval:
        How often the cancel event is checked while waiting.
    stop_grace_seconds:
        How long an abandoned call is given to return after its stop event is set.

    Returns
    -------
    StageResult
        SUCCEEDED or FAILED from the collaborator's own answer (exceptions map
        to FAILED), TIMED_OUT when the deadline passes, CANCELLED on request.
    """
    started = time.monotonic()
    deadline = started + max(0.0, float(request.timeout_seconds))
    stop = threading.Event()
    request = replace(request, stop_event=stop)
    box = _CallBox()

    def _target() -> None:
        try:
            box.outcome = collaborator.run(request)
        except BaseException as exc:  # noqa: BLE001
            box.error = exc
        finally:
            box.done.set()

    worker = threading.Thread(
        target=_target,
        name=f"collaborator-{request.stage.value}-{request.operation_id}",
        daemon=True,
    )
    worker.start()

    def _abandon(kind: StageResultKind, details: str) -> StageResult:
        stop.set()
        if not box.done.wait(stop_grace_seconds):
            logger.warning(
                "[%s] %s did not stop within %gs of being abandoned",
                request.operation_id,
                request.stage.value,
                stop_grace_seconds,
            )
            details = f"{details}; the collaborator did not stop and may still be running"
        return StageResult(kind, details, time.monotonic() - started)

    while True:
        if cancel_event is not None and cancel_event.is_set():
            return _abandon(StageResultKind.CANCELLED, f"Stage {request.stage.value} cancelled by request")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if box.done.is_set():
                break
            return _abandon(
                StageResultKind.TIMED_OUT,
                f"Stage {request.stage.value} timed out after {request.timeout_seconds:g}s",
            )
        if box.done.wait(min(poll_interval, remaining)):
            break

    elapsed = time.monotonic() - started
    if box.error is not None:
        return StageResult(
            StageResultKind.FAILED,
            f"{type(box.error).__name__}: {box.error}",
            elapsed,
        )
    outcome = box.outcome
    if not isinstance(outcome, StageOutcome):
        return StageResult(
            StageResultKind.FAILED,
            f"Collaborator returned an invalid outcome: {type(outcome).__name__}",
            elapsed,
        )
    kind = StageResultKind.SUCCEEDED if outcome.success else StageResultKind.FAILED
    return StageResult(kind, outcome.details, elapsed)


class CommandCollaborator:
    """
    Collaborator backed by an external program.

    Parameters
    ----------
    argv_template:
        Program and arguments. ``{operation_id}``, ``{backup_reference}``,
        ``{mode}``, ``{stage}`` and ``{attempt}`` are substituted per call.
    env:
        Extra environment variables for the child process.
    cwd:
        Working directory for the child process.

    Notes
    -----
    Exit status 0 is success; any other status, a missing program, the stage
    timeout expiring or the call being abandoned is failure.
    """

    def __init__(
        self,
        argv_template: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        if not argv_template:
            raise ValueError("argv_template must not be empty")
        self._argv_template = tuple(str(a) for a in argv_template)
        self._env = dict(env) if env else None
        self._cwd = cwd

    @property
    def argv_template(self) -> tuple[str, ...]:
        return self._argv_template

    def build_argv(self, request: StageRequest) -> list[str]:
        fields = {
            "operation_id": request.operation_id,
            "backup_reference": request.backup_reference,
            "mode": request.mode.value,
            "stage": request.stage.value,
            "attempt": str(request.attempt),
        }
        try:
            return [part.format(**fields) for part in self._argv_template]
        except (KeyError, IndexError, ValueError) as exc:
            raise ValueError(f"Invalid placeholder in command template: {exc}") from exc

    def run(self, request: StageRequest) -> StageOutcome:
        argv = self.build_argv(request)
        return run_command(
            argv,
            timeout_seconds=request.timeout_seconds,
            env=self._env,
            cwd=self._cwd,
            stop_event=request.stop_event,
        )


def run_command(
    argv: Sequence[str],
    *,
    timeout_seconds: float,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    stop_event: threading.Event | None = None,
    poll_interval: float = 0.1,
) -> StageOutcome:
    """
    Run an external program and translate its termination into a StageOutcome.

    Parameters
    ----------
    argv:
        Program and arguments.
    timeout_seconds:
        The child is stopped when this budget runs out.
    env:
        Extra environment variables for the child.
    cwd:
        Working directory for the child.
    stop_event:
        When set, the child is stopped and the call fails.
    poll_interval:
        How often `stop_event` is checked while the child runs.

    Notes
    -----
    On POSIX the child leads its own process group, and stopping it signals
    the whole group (SIGTERM, then SIGKILL after `STOP_GRACE_SECONDS`). The
    function returns only after the child has exited.
    """
    if stop_event is not None and stop_event.is_set():
        return StageOutcome(False, f"Command not started, the call was abandoned: {argv[0]}")

    logger.debug("Running command: %s", " ".join(argv))
    child_env = {**os.environ, **env} if env else None
    try:
        process = subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=child_env,
            cwd=str(cwd) if cwd is not None else None,
            start_new_session=os.name != "nt",
        )
    except FileNotFoundError:
        return StageOutcome(False, f"Command not found: {argv[0]}")
    except OSError as exc:
        return StageOutcome(False, f"Command could not be started: {argv[0]} ({exc})")

    deadline = time.monotonic() + max(0.0, float(timeout_seconds))
    while True:
        if stop_event is not None and stop_event.is_set():
            stop_process(process)
            return StageOutcome(False, f"Command stopped, the call was abandoned: {argv[0]}")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            stop_process(process)
            return StageOutcome(False, f"Command timed out after {timeout_seconds:g}s: {argv[0]}")
        try:
            stdout, stderr = process.communicate(timeout=min(poll_interval, remaining))
            break
        except subprocess.TimeoutExpired:
            continue

    output = "\n".join(part.strip() for part in (stdout, stderr) if part and part.strip())
    details = _trim(output)
    if process.returncode != 0:
        prefix = f"{argv[0]} exited with status {process.returncode}"
        return StageOutcome(False, f"{prefix}: {details}" if details else prefix)
    return StageOutcome(True, details)


def stop_process(process: subprocess.Popen[str], *, grace_seconds: float = STOP_GRACE_SECONDS) -> None:
    """
    Stop a child started by `run_command` and wait until it has exited.

    The child's process group is sent SIGTERM, then SIGKILL if it is still
    running after `grace_seconds`. Remaining output is drained and discarded.
    """
    _signal_group(process, kill=False)
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM for %gs; killing it", process.pid, grace_seconds)
        _signal_group(process, kill=True)
        process.wait()
    process.communicate()


def _signal_group(process: subprocess.Popen[str], *, kill: bool) -> None:
    if os.name == "nt":
        if kill:
            process.kill()
        else:
            process.terminate()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)
    except ProcessLookupError:
        # Group already gone.
        return


class ScratchCleanup:
    """
    Default cleanup collaborator.

    Removes the operation's scratch directory and, when `operations_root` is
    given, archives the operation journal into ``logs.tar.zst`` beside it.

    Parameters
    ----------
    scratch_root:
        Engine scratch root; only ``scratch_root / operation_id`` is removed.
    operations_root:
        Root of the operation records holding each operation's journal.
    """

    def __init__(self, scratch_root: Path, *, operations_root: Path | None = None) -> None:
        self._scratch_root = scratch_root
        self._operations_root = operations_root

    def run(self, request: StageRequest) -> StageOutcome:
        target = self._scratch_root / request.operation_id
        if target.parent != self._scratch_root:
            return StageOutcome(False, f"Refusing to remove path outside scratch root: {target}")

        notes: list[str] = []
        if target.exists():
            try:
                shutil.rmtree(target)
            except OSError as exc:
                return StageOutcome(False, f"Failed to remove scratch data {target}: {exc}")
            notes.append(f"Removed scratch data {target}")
        else:
            notes.append("No scratch data to remove")

        if self._operations_root is not None:
            journal = self._operations_root / request.operation_id / JOURNAL_FILENAME
            if journal.is_file():
                archive_path = journal.parent / LOGS_ARCHIVE_FILENAME
                try:
                    archive_files(files=[journal], output_path=archive_path, overwrite=True)
                except (OSError, ValueError) as exc:
                    return StageOutcome(False, f"Failed to archive operation logs to {archive_path}: {exc}")
                notes.append(f"archived operation logs to {archive_path}")

        return StageOutcome(True, "; ".join(notes))


@dataclass(frozen=True, slots=True)
class CollaboratorSet:
    """
    Collaborators used by the pipeline stages.

    Attributes
    ----------
    backup_validator:
        Pre-flight backup integrity check.
    restore_executor:
        Applies the backup to the live database, volumes and configuration.
    restore_validator:
        Post-restore validation.
    health_prober:
        Polled until it succeeds or the attempt budget runs out.
    cleanup:
        Removes temporary data after a successful restore.
    """

    backup_validator: StageCollaborator
    restore_executor: StageCollaborator
    restore_validator: StageCollaborator
    health_prober: StageCollaborator
    cleanup: StageCollaborator


def _trim(text: str) -> str:
    if len(text) <= _MAX_DETAILS_CHARS:
        return text
    return "..." + text[-_MAX_DETAILS_CHARS:]
