"""
Global single-flight locking for restore operations.

Restores drop and recreate the live database and overwrite volumes, so at most
one operation may be non-terminal at a time. The lock is a plain JSON file
created with exclusive-create semantics; it is acquired at submission and
released when the operation is finalized.

Design goals
------------
- Deterministic and inspectable: lock metadata is plain JSON.
- Safe by default: an existing lock blocks unless explicitly overridden.
- Conservative stale detection: a lock is provably stale only when the recorded
  PID is known not to be running on the same host.
"""

from __future__ import annotations

import json
import os
import platform
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from .errors import LockError

LOCK_SCHEMA_VERSION = "stackrestore_lock_v1"


class LockHeldError(LockError):
    """Raised when the lock is held by another operation and may not be broken."""


@dataclass(frozen=True, slots=True)
class LockInfo:
    """
    Metadata recorded in the lock file.

    Attributes
    ----------
    schema_version:
        Schema identifier for the lock JSON.
    created_at_utc:
        Lock acquisition time in UTC (ISO 8601 with 'Z').
    hostname:
        Hostname where the lock was created.
    pid:
        Process ID of the creating process.
    command:
        High-level command name, e.g. "run" or "rollback".
    operation_id:
        Operation holding the lock.
    """

    schema_version: str
    created_at_utc: str
    hostname: str
    pid: int
    command: str
    operation_id: str


class RestoreLock:
    """
    Exclusive lock file guarding the live database and volumes.

    Parameters
    ----------
    lock_path:
        Filesystem path of the lock file.
    """

    def __init__(self, lock_path: Path) -> None:
        self._lock_path = lock_path.expanduser()
        self._held: LockInfo | None = None
        self._mutex = threading.Lock()

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def held_by(self) -> str | None:
        """Operation id holding the lock through this instance, if any."""
        return self._held.operation_id if self._held is not None else None

    def acquire(
        self,
        *,
        operation_id: str,
        command: str,
        force: bool = False,
        break_lock: bool = False,
    ) -> LockInfo:
        """
        Acquire the lock for `operation_id`.

        Parameters
        ----------
        operation_id:
            Operation that will hold the lock.
        command:
            High-level command name recorded for inspection.
        force:
            If True, break the lock only when it is provably stale (same host, dead PID).
        break_lock:
            If True, break an existing lock even when it is not provably stale.

        Raises
        ------
        LockHeldError
            If the lock is held and cannot be broken under the provided flags.
        LockError
            If the lock file cannot be written.
        """
        with self._mutex:
            if self._held is not None:
                raise LockHeldError(
                    f"Restore lock is already held by operation {self._held.operation_id!r}."
                )

            try:
                self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise LockError(f"Failed to create lock directory: {self._lock_path.parent} ({exc})") from exc

            info = _build_lock_info(operation_id=operation_id, command=command)

            # Fast path: exclusive create.
            try:
                _write_lock_exclusive(self._lock_path, info)
                self._held = info
                return info
            except FileExistsError:
                pass

            existing = _try_read_lock(self._lock_path)
            decision = _evaluate_existing_lock(existing=existing, force=force, break_lock=break_lock)
            if not decision.allow_break:
                raise LockHeldError(decision.message)

            try:
                self._lock_path.unlink(missing_ok=True)
            except OSError as exc:
                raise LockError(f"Failed to remove existing lock: {self._lock_path} ({exc})") from exc

            try:
                _write_lock_exclusive(self._lock_path, info)
            except FileExistsError:
                # A race: someone else acquired between unlink and create.
                raise LockHeldError(f"Lock is held by another process: {self._lock_path}")

            self._held = info
            return info

    def release(self) -> None:
        """
        Release the lock if this instance holds it.

        Notes
        -----
        The file is only removed when its recorded PID and hostname still match
        this process, so a lock broken and re-acquired elsewhere is left alone.
        """
        with self._mutex:
            info = self._held
            if info is None:
                return
            self._held = None
            _release_lock(self._lock_path, info)


@contextmanager
def hold_restore_lock(
    lock: RestoreLock,
    *,
    operation_id: str,
    command: str,
    force: bool = False,
    break_lock: bool = False,
) -> Iterator[LockInfo]:
    """Acquire `lock` for the duration of a ``with`` block."""
    info = lock.acquire(operation_id=operation_id, command=command, force=force, break_lock=break_lock)
    try:
        yield info
    finally:
        lock.release()


def _build_lock_info(*, operation_id: str, command: str) -> LockInfo:
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return LockInfo(
        schema_version=LOCK_SCHEMA_VERSION,
        created_at_utc=created,
        hostname=platform.node(),
        pid=os.getpid(),
        command=command,
        operation_id=operation_id,
    )


def _write_lock_exclusive(lock_path: Path, info: LockInfo) -> None:
    payload = json.dumps(asdict(info), sort_keys=True) + "\n"
    with lock_path.open("x", encoding="utf-8", newline="\n") as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())


def _release_lock(lock_path: Path, info: LockInfo) -> None:
    try:
        existing = _try_read_lock(lock_path)
        if existing is not None:
            same_owner = (
                str(existing.get("pid")) == str(info.pid)
                and str(existing.get("hostname", "")).lower() == str(info.hostname).lower()
                and str(existing.get("operation_id", "")) == info.operation_id
            )
            if not same_owner:
                return
        lock_path.unlink(missing_ok=True)
    except OSError as exc:
        raise LockError(f"Failed to release lock: {lock_path} ({exc})") from exc


def _try_read_lock(lock_path: Path) -> Mapping[str, object] | None:
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


@dataclass(frozen=True, slots=True)
class _BreakDecision:
    allow_break: bool
    message: str


def _evaluate_existing_lock(
    *,
    existing: Mapping[str, object] | None,
    force: bool,
    break_lock: bool,
) -> _BreakDecision:
    details = _format_lock_details(existing)
    if existing is None:
        if break_lock:
            return _BreakDecision(True, "Breaking lock with unreadable metadata.")
        return _BreakDecision(
            False,
            "Lock exists but could not be read. Inspect the lock file and re-run with --break-lock if necessary.\n"
            + details,
        )

    if _is_provably_stale(existing):
        if force:
            return _BreakDecision(True, "Breaking provably stale lock due to --force.")
        return _BreakDecision(
            False, "Lock appears to be stale. Re-run with --force to break it.\n" + details
        )

    if break_lock:
        return _BreakDecision(True, "Breaking lock due to --break-lock.")
    return _BreakDecision(
        False,
        "A restore operation is in progress (lock is held and is not provably stale). "
        "Re-run with --break-lock to override.\n" + details,
    )


def _format_lock_details(existing: Mapping[str, object] | None) -> str:
    if not existing:
        return ""
    fields = ["operation_id", "command", "created_at_utc", "hostname", "pid"]
    parts: list[str] = []
    for field in fields:
        if field in existing:
            parts.append(f"{field}={existing.get(field)!r}")
    return "Lock details: " + ", ".join(parts) if parts else ""


def _is_provably_stale(existing: Mapping[str, object]) -> bool:
    host = existing.get("hostname")
    pid = existing.get("pid")

    if not isinstance(host, str):
        return False
    if not isinstance(pid, int):
        return False

    if host.lower() != platform.node().lower():
        return False

    running = is_pid_running(pid)
    if running is None:
        return False
    return running is False


def is_pid_running(pid: int) -> bool | None:
    """
    Determine whether a process is running.

    Parameters
    ----------
    pid:
        Process ID to check.

    Returns
    -------
    bool | None
        True if running, False if not running, None if indeterminate or unsupported.
    """
    if pid <= 0:
        return None
    if os.name == "nt":
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return None
    return True
