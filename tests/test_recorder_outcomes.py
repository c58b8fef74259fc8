from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from restore_engine.data_models import (
    OperationStatus,
    RestoreMode,
    RestoreOperation,
    StepName,
    StepRecord,
    StepStatus,
)
from restore_engine.errors import (
    AlreadyFinalizedError,
    IllegalTransitionError,
    RecorderError,
    UnknownOperationError,
)
from restore_engine.recorder import OutcomeRecorder

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _new(
    recorder: OutcomeRecorder,
    operation_id: str = "restore-20240101-120000-000000-aaaaaaaa",
    *,
    at: datetime = T0,
) -> str:
    recorder.create(
        RestoreOperation(
            id=operation_id,
            backup_reference="b1.tar",
            mode=RestoreMode.FULL,
            status=OperationStatus.PENDING,
            started_at=at,
        )
    )
    return operation_id


def _advance_to_preflight(recorder: OutcomeRecorder, operation_id: str) -> None:
    recorder.set_status(operation_id, OperationStatus.INITIALIZING)
    recorder.set_status(operation_id, OperationStatus.PREFLIGHT)


def test_create_and_get_roundtrip(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)

    loaded = recorder.get(op_id)
    assert loaded.status is OperationStatus.PENDING
    assert loaded.backup_reference == "b1.tar"
    assert loaded.steps == ()

    payload = json.loads(recorder.record_path(op_id).read_text(encoding="utf-8"))
    assert payload["schema_version"] == "stackrestore_operation_v1"
    assert payload["started_at"] == "2024-01-01T12:00:00Z"
    assert payload["ended_at"] is None


def test_create_rejects_duplicate_id(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    with pytest.raises(RecorderError):
        _new(recorder, op_id)


def test_get_unknown_operation(tmp_path: Path) -> None:
    with pytest.raises(UnknownOperationError) as excinfo:
        OutcomeRecorder(tmp_path).get("missing")
    assert excinfo.value.code == "UNKNOWN_OPERATION"


def test_only_one_step_may_be_running(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))

    with pytest.raises(RecorderError, match="still RUNNING"):
        recorder.append_step(op_id, StepRecord(StepName.PREPARE_ENVIRONMENT, StepStatus.RUNNING, T0))


def test_resolve_step_sets_terminal_status_and_details(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))

    updated = recorder.resolve_step(
        op_id, status=StepStatus.COMPLETED, details="ok", timestamp=T0 + timedelta(seconds=5)
    )

    assert updated.steps[0].status is StepStatus.COMPLETED
    assert updated.steps[0].details == "ok"
    assert updated.running_step is None
    with pytest.raises(RecorderError):
        recorder.resolve_step(op_id, status=StepStatus.FAILED, details="", timestamp=T0)


def test_set_status_enforces_transition_table(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)

    with pytest.raises(IllegalTransitionError):
        recorder.set_status(op_id, OperationStatus.EXECUTING)
    with pytest.raises(IllegalTransitionError):
        recorder.set_status(op_id, OperationStatus.COMPLETED)

    assert recorder.get(op_id).status is OperationStatus.PENDING


def test_finalize_twice_is_rejected_and_second_call_is_not_applied(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))
    recorder.resolve_step(op_id, status=StepStatus.FAILED, details="boom", timestamp=T0)

    first_end = T0 + timedelta(minutes=1)
    recorder.finalize(op_id, OperationStatus.FAILED, first_end)

    with pytest.raises(AlreadyFinalizedError) as excinfo:
        recorder.finalize(op_id, OperationStatus.ROLLED_BACK, T0 + timedelta(minutes=2))
    assert excinfo.value.code == "ALREADY_FINALIZED"

    stored = recorder.get(op_id)
    assert stored.status is OperationStatus.FAILED
    assert stored.ended_at == first_end


def test_finalize_writes_summary(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))
    recorder.resolve_step(op_id, status=StepStatus.FAILED, details="boom", timestamp=T0)
    recorder.finalize(op_id, OperationStatus.FAILED, T0 + timedelta(seconds=90))

    summary = recorder.read_summary(op_id)
    assert summary is not None
    assert summary.status == "FAILED"
    assert summary.duration == 90.0
    assert (summary.total_steps, summary.successful_steps, summary.failed_steps) == (1, 0, 1)


def test_finalize_refuses_running_step(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))

    with pytest.raises(RecorderError, match="still RUNNING"):
        recorder.finalize(op_id, OperationStatus.FAILED, T0)
    assert recorder.read_summary(op_id) is None


def test_finalized_record_is_read_only(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    _advance_to_preflight(recorder, op_id)
    recorder.append_step(op_id, StepRecord(StepName.PREFLIGHT, StepStatus.RUNNING, T0))
    recorder.resolve_step(op_id, status=StepStatus.FAILED, details="", timestamp=T0)
    recorder.finalize(op_id, OperationStatus.FAILED, T0)

    with pytest.raises(RecorderError):
        recorder.append_step(op_id, StepRecord(StepName.ROLLBACK, StepStatus.RUNNING, T0))


def test_list_is_most_recent_first_and_limited(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    _new(recorder, "restore-20240101-120000-000000-00000001", at=T0)
    _new(recorder, "restore-20240101-130000-000000-00000002", at=T0 + timedelta(hours=1))
    _new(recorder, "restore-20240101-140000-000000-00000003", at=T0 + timedelta(hours=2))

    ids = [op.id for op in recorder.list()]
    assert ids == [
        "restore-20240101-140000-000000-00000003",
        "restore-20240101-130000-000000-00000002",
        "restore-20240101-120000-000000-00000001",
    ]
    assert [op.id for op in recorder.list(limit=1)] == ids[:1]


def test_unsupported_schema_version_is_rejected(tmp_path: Path) -> None:
    recorder = OutcomeRecorder(tmp_path)
    op_id = _new(recorder)
    path = recorder.record_path(op_id)
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["schema_version"] = "something_else"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(RecorderError, match="schema_version"):
        recorder.get(op_id)
