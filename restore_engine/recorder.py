"""
Durable outcome recorder for restore operations.

Each operation owns one directory below the operations root:

- ``operation.json``: the canonical record (id, reference, mode, status,
  timestamps, ordered steps), rewritten atomically on every mutation.
- ``summary.json``: the terminal summary, written once at finalize.

Every mutating call persists before it returns, so a crash between stages
leaves a record whose last resolved step shows exactly how far the pipeline
got.

Threading
---------
All access goes through one re-entrant lock. The orchestrator is the only
writer; status queries may read concurrently from other threads.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Final

from .data_models import OperationStatus, RestoreOperation, StepRecord, StepStatus
from .errors import (
    AlreadyFinalizedError,
    ArtifactIOError,
    IllegalTransitionError,
    RecorderError,
    UnknownOperationError,
)
from .json_io import read_json_object, write_json_atomic
from .state_machine import assert_transition, is_terminal
from .summary import OperationSummary, build_summary

OPERATION_SCHEMA_VERSION: Final[str] = "stackrestore_operation_v1"
SUMMARY_SCHEMA_VERSION: Final[str] = "stackrestore_summary_v1"
RECORD_FILENAME: Final[str] = "operation.json"
SUMMARY_FILENAME: Final[str] = "summary.json"


class OutcomeRecorder:
    """
    Append-only, file-backed record of restore operations.

    Parameters
    ----------
    operations_root:
        Directory holding one sub-directory per operation.
    """

    def __init__(self, operations_root: Path) -> None:
        self._root = operations_root
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    def record_path(self, operation_id: str) -> Path:
        return self._root / operation_id / RECORD_FILENAME

    def summary_path(self, operation_id: str) -> Path:
        return self._root / operation_id / SUMMARY_FILENAME

    def create(self, operation: RestoreOperation) -> None:
        """
        Persist a newly submitted operation.

        Raises
        ------
        RecorderError
            If a record with the same id already exists or cannot be written.
        """
        with self._lock:
            path = self.record_path(operation.id)
            if path.exists():
                raise RecorderError(f"Operation record already exists: {operation.id}")
            if operation.steps or operation.ended_at is not None:
                raise RecorderError("A new operation record must have no steps and no end time.")
            self._write(operation)

    def get(self, operation_id: str) -> RestoreOperation:
        """
        Load one operation record.

        Raises
        ------
        UnknownOperationError
            If no record exists for `operation_id`.
        RecorderError
            If the record exists but cannot be read or parsed.
        """
        with self._lock:
            path = self.record_path(operation_id)
            if not path.is_file():
                raise UnknownOperationError(f"Restore operation not found: {operation_id}")
            return self._read(path)

    def list(self, limit: int | None = None) -> list[RestoreOperation]:
        """
        Return operations, most recent first.

        Parameters
        ----------
        limit:
            Maximum number of records to return. None returns all.
        """
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        with self._lock:
            if not self._root.is_dir():
                return []
            operations: list[RestoreOperation] = []
            for entry in self._root.iterdir():
                path = entry / RECORD_FILENAME
                if entry.is_dir() and path.is_file():
                    operations.append(self._read(path))
        # Ids are time-ordered and strictly increasing per data root.
        operations.sort(key=lambda op: op.id, reverse=True)
        return operations if limit is None else operations[:limit]

    def latest_operation_id(self) -> str | None:
        """Return the greatest recorded operation id, or None when nothing is recorded."""
        with self._lock:
            if not self._root.is_dir():
                return None
            ids = [entry.name for entry in self._root.iterdir() if (entry / RECORD_FILENAME).is_file()]
        return max(ids, default=None)

    def append_step(self, operation_id: str, step: StepRecord) -> RestoreOperation:
        """
        Append a step record.

        Raises
        ------
        RecorderError
            If the operation is finalized, or `step` is RUNNING while another
            step is still RUNNING.
        """
        with self._lock:
            operation = self.get(operation_id)
            self._require_open(operation)
            if step.status is StepStatus.RUNNING and operation.running_step is not None:
                raise RecorderError(
                    f"Cannot start step {step.name.value!r}: step "
                    f"{operation.running_step.name.value!r} is still RUNNING ({operation_id})"
                )
            updated = replace(operation, steps=operation.steps + (step,))
            self._write(updated)
            return updated

    def resolve_step(
        self,
        operation_id: str,
        *,
        status: StepStatus,
        details: str,
        timestamp: datetime,
    ) -> RestoreOperation:
        """
        Move the RUNNING step to a terminal status.

        Raises
        ------
        RecorderError
            If no step is RUNNING or `status` is not terminal.
        """
        if not status.is_terminal:
            raise RecorderError("A step can only be resolved to COMPLETED or FAILED.")
        with self._lock:
            operation = self.get(operation_id)
            self._require_open(operation)
            steps = list(operation.steps)
            for index in range(len(steps) - 1, -1, -1):
                if steps[index].status is StepStatus.RUNNING:
                    steps[index] = replace(
                        steps[index], status=status, details=details, timestamp=timestamp
                    )
                    break
            else:
                raise RecorderError(f"No RUNNING step to resolve for operation {operation_id}")
            updated = replace(operation, steps=tuple(steps))
            self._write(updated)
            return updated

    def set_status(self, operation_id: str, status: OperationStatus) -> RestoreOperation:
        """
        Advance the operation to a non-terminal status.

        Terminal statuses are only reachable through `finalize`.
        """
        if is_terminal(status):
            raise IllegalTransitionError(
                f"Terminal status {status.value} must be set through finalize()."
            )
        with self._lock:
            operation = self.get(operation_id)
            self._require_open(operation)
            assert_transition(operation.status, status)
            updated = replace(operation, status=status)
            self._write(updated)
            return updated

    def finalize(
        self, operation_id: str, status: OperationStatus, ended_at: datetime
    ) -> RestoreOperation:
        """
        Set the terminal status and end time exactly once, then write the summary.

        Raises
        ------
        AlreadyFinalizedError
            If the operation was already finalized; nothing is changed.
        IllegalTransitionError
            If `status` is not terminal or not reachable from the current status.
        RecorderError
            If a step is still RUNNING or the record cannot be written.
        """
        with self._lock:
            operation = self.get(operation_id)
            if operation.ended_at is not None or is_terminal(operation.status):
                raise AlreadyFinalizedError(
                    f"Operation {operation_id} is already finalized with status {operation.status.value}."
                )
            if not is_terminal(status):
                raise IllegalTransitionError(f"finalize() requires a terminal status, got {status.value}")
            assert_transition(operation.status, status)
            if operation.running_step is not None:
                raise RecorderError(
                    f"Cannot finalize {operation_id}: step {operation.running_step.name.value!r} is still RUNNING"
                )
            updated = replace(operation, status=status, ended_at=ended_at)
            self._write(updated)
            self._write_summary(build_summary(updated))
            return updated

    def read_summary(self, operation_id: str) -> OperationSummary | None:
        """Return the persisted terminal summary, or None if not finalized yet."""
        path = self.summary_path(operation_id)
        if not path.is_file():
            return None
        try:
            payload = read_json_object(path)
            return OperationSummary(
                operation_id=str(payload["operation_id"]),
                status=str(payload["status"]),
                duration=float(payload["duration"]) if payload.get("duration") is not None else None,
                total_steps=int(payload["total_steps"]),
                successful_steps=int(payload["successful_steps"]),
                failed_steps=int(payload["failed_steps"]),
            )
        except (ArtifactIOError, KeyError, TypeError, ValueError) as exc:
            raise RecorderError(f"Invalid summary document: {path}") from exc

    @staticmethod
    def _require_open(operation: RestoreOperation) -> None:
        if operation.ended_at is not None or is_terminal(operation.status):
            raise RecorderError(f"Operation {operation.id} is finalized; its record is read-only.")

    def _read(self, path: Path) -> RestoreOperation:
        try:
            payload = read_json_object(path)
        except ArtifactIOError as exc:
            raise RecorderError(str(exc)) from exc
        schema_version = payload.get("schema_version")
        if schema_version != OPERATION_SCHEMA_VERSION:
            raise RecorderError(f"Unsupported operation record schema_version: {schema_version!r} ({path})")
        try:
            return RestoreOperation.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise RecorderError(f"Operation record validation failed: {path}") from exc

    def _write(self, operation: RestoreOperation) -> None:
        payload = {"schema_version": OPERATION_SCHEMA_VERSION, **operation.to_dict()}
        try:
            write_json_atomic(self.record_path(operation.id), payload)
        except ArtifactIOError as exc:
            raise RecorderError(str(exc)) from exc

    def _write_summary(self, summary: OperationSummary) -> None:
        payload = {"schema_version": SUMMARY_SCHEMA_VERSION, **summary.to_dict()}
        try:
            write_json_atomic(self.summary_path(summary.operation_id), payload)
        except ArtifactIOError as exc:
            raise RecorderError(str(exc)) from exc
