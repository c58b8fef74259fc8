from __future__ import annotations

import threading
from typing import Callable

import pytest

from conftest import (
    BlockingCollaborator,
    FakeRollbackSource,
    Harness,
    ScriptedCollaborator,
    fast_settings,
    wait_for,
)
from restore_engine.collaborators import StageOutcome
from restore_engine.data_models import OperationStatus, RestoreOperation, StepName, StepStatus
from restore_engine.errors import InvalidModeError, OperationInProgressError, UnknownOperationError


def test_submit_while_operation_is_preparing_is_rejected(make_harness: Callable[..., Harness]) -> None:
    seen: dict[str, object] = {}
    source = FakeRollbackSource()
    h = make_harness(source=source)

    def _submit_during_snapshot() -> None:
        running_id = h.orchestrator.recorder.list()[0].id
        seen["status"] = h.orchestrator.recorder.get(running_id).status
        try:
            h.orchestrator.submit(str(h.backup), "full")
        except OperationInProgressError as exc:
            seen["error"] = exc

    source.on_dump = _submit_during_snapshot

    final = h.orchestrator.restore(str(h.backup), "full")

    assert final.status is OperationStatus.COMPLETED
    assert seen["status"] is OperationStatus.PREPARING
    assert isinstance(seen["error"], OperationInProgressError)
    assert seen["error"].code == "OPERATION_IN_PROGRESS"
    assert len(h.orchestrator.recorder.list()) == 1


def test_second_orchestrator_on_same_data_root_is_rejected(make_harness: Callable[..., Harness]) -> None:
    first = make_harness()
    second = make_harness()

    operation_id = first.orchestrator.submit(str(first.backup), "full")
    with pytest.raises(OperationInProgressError) as excinfo:
        second.orchestrator.submit(str(second.backup), "full")
    assert "in progress" in str(excinfo.value)

    first.orchestrator.run(operation_id)
    # Released at finalize: the next submit goes through.
    next_id = second.orchestrator.submit(str(second.backup), "full")
    assert second.orchestrator.run(next_id).status is OperationStatus.COMPLETED


def test_invalid_mode_is_rejected_before_taking_the_lock(make_harness: Callable[..., Harness]) -> None:
    h = make_harness()

    with pytest.raises(InvalidModeError) as excinfo:
        h.orchestrator.submit(str(h.backup), "everything")

    assert excinfo.value.code == "INVALID_MODE"
    assert not h.paths.lock_path.exists()
    assert h.orchestrator.recorder.list() == []


def test_full_restore_alias_is_accepted(make_harness: Callable[..., Harness]) -> None:
    h = make_harness()
    operation_id = h.orchestrator.submit(str(h.backup), "full_restore")
    assert h.orchestrator.recorder.get(operation_id).mode.value == "full"
    h.orchestrator.run(operation_id)


def test_execute_timeout_fails_stage_and_rolls_back(make_harness: Callable[..., Harness]) -> None:
    executor = BlockingCollaborator()
    h = make_harness(settings=fast_settings(restore_timeout_seconds=0.2), restore_executor=executor)
    try:
        final = h.orchestrator.restore(str(h.backup), "full")
    finally:
        executor.release.set()

    execute = final.find_step(StepName.EXECUTE_RESTORE)
    assert execute is not None
    assert execute.status is StepStatus.FAILED
    assert execute.details == "Stage execute_restore timed out after 0.2s"
    assert final.status is OperationStatus.ROLLED_BACK


def test_cancel_abandons_current_stage_and_applies_rollback_policy(make_harness: Callable[..., Harness]) -> None:
    executor = BlockingCollaborator()
    h = make_harness(restore_executor=executor)
    operation_id = h.orchestrator.submit(str(h.backup), "full")
    result: dict[str, RestoreOperation] = {}

    worker = threading.Thread(target=lambda: result.update(final=h.orchestrator.run(operation_id)))
    worker.start()
    try:
        assert executor.started.wait(5)
        assert h.orchestrator.cancel(operation_id) is True
        worker.join(5)
    finally:
        executor.release.set()
        worker.join(5)

    final = result["final"]
    assert final.status is OperationStatus.ROLLED_BACK
    assert final.find_step(StepName.EXECUTE_RESTORE).details == "Stage execute_restore cancelled by request"
    assert final.steps[-1].name is StepName.ROLLBACK
    assert final.steps[-1].status is StepStatus.COMPLETED


def test_cancel_finished_operation_returns_false(make_harness: Callable[..., Harness]) -> None:
    h = make_harness()
    final = h.orchestrator.restore(str(h.backup), "full")
    assert h.orchestrator.cancel(final.id) is False


def test_cancel_unknown_operation_raises(make_harness: Callable[..., Harness]) -> None:
    h = make_harness()
    with pytest.raises(UnknownOperationError):
        h.orchestrator.cancel("restore-20240101-000000-000000-00000000")


def test_cancel_during_health_check_wait(make_harness: Callable[..., Harness]) -> None:
    prober = ScriptedCollaborator(StageOutcome(False, "api: 503"))
    settings = fast_settings(health_check_attempts=5, health_check_interval_seconds=30)
    h = make_harness(settings=settings, health_prober=prober)
    operation_id = h.orchestrator.submit(str(h.backup), "full")
    result: dict[str, RestoreOperation] = {}

    worker = threading.Thread(target=lambda: result.update(final=h.orchestrator.run(operation_id)))
    worker.start()
    assert wait_for(lambda: prober.calls >= 1)
    assert h.orchestrator.cancel(operation_id) is True
    worker.join(5)

    assert not worker.is_alive()
    final = result["final"]
    assert prober.calls == 1
    assert final.find_step(StepName.HEALTH_CHECK).details == "Stage health_check cancelled by request"
    assert final.status is OperationStatus.ROLLED_BACK


def test_timed_out_executor_is_stopped_before_rollback_replay(make_harness: Callable[..., Harness]) -> None:
    executor = BlockingCollaborator(stop_delay=0.3)
    seen: dict[str, bool] = {}
    source = FakeRollbackSource(on_restore_database=lambda: seen.update(executor_running=executor.running))
    h = make_harness(
        settings=fast_settings(restore_timeout_seconds=0.1),
        source=source,
        restore_executor=executor,
    )
    try:
        final = h.orchestrator.restore(str(h.backup), "full")
    finally:
        executor.release.set()

    assert final.status is OperationStatus.ROLLED_BACK
    assert executor.stopped.is_set()
    assert seen == {"executor_running": False}
