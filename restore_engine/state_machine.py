"""
Restore pipeline state machine.

The pipeline is a fixed, strictly sequential chain of states with one failure
branch. Every status change in the engine goes through `assert_transition`, so
an out-of-order change fails immediately instead of surfacing later as a
corrupt record.

Happy path
----------
PENDING -> INITIALIZING -> PREFLIGHT -> PREPARING -> EXECUTING -> VALIDATING
-> HEALTH_CHECKING -> CLEANING_UP -> COMPLETED

Failure branch
--------------
{PREFLIGHT, PREPARING, EXECUTING, VALIDATING, HEALTH_CHECKING}
-> ROLLING_BACK -> ROLLED_BACK | FAILED, or directly -> FAILED when no
rollback is attempted.

Internal abort
--------------
Any non-terminal status may go straight to FAILED. The orchestrator uses this
only to close out a record after an internal error (an unwritable journal or
record), so no operation is left non-terminal with its lock released.
"""

from __future__ import annotations

from typing import Final, Mapping

from .data_models import OperationStatus, StepName
from .errors import IllegalTransitionError

S = OperationStatus

TERMINAL_STATUSES: Final[frozenset[OperationStatus]] = frozenset(
    {S.COMPLETED, S.FAILED, S.ROLLED_BACK}
)

FAILABLE_STATUSES: Final[frozenset[OperationStatus]] = frozenset(
    {S.PREFLIGHT, S.PREPARING, S.EXECUTING, S.VALIDATING, S.HEALTH_CHECKING}
)

PIPELINE_ORDER: Final[tuple[StepName, ...]] = (
    StepName.PREFLIGHT,
    StepName.PREPARE_ENVIRONMENT,
    StepName.EXECUTE_RESTORE,
    StepName.VALIDATE_RESTORE,
    StepName.HEALTH_CHECK,
    StepName.CLEANUP,
)

STAGE_STATUS: Final[Mapping[StepName, OperationStatus]] = {
    StepName.PREFLIGHT: S.PREFLIGHT,
    StepName.PREPARE_ENVIRONMENT: S.PREPARING,
    StepName.EXECUTE_RESTORE: S.EXECUTING,
    StepName.VALIDATE_RESTORE: S.VALIDATING,
    StepName.HEALTH_CHECK: S.HEALTH_CHECKING,
    StepName.CLEANUP: S.CLEANING_UP,
    StepName.ROLLBACK: S.ROLLING_BACK,
}


def _build_transitions() -> dict[OperationStatus, frozenset[OperationStatus]]:
    chain = [
        S.PENDING,
        S.INITIALIZING,
        S.PREFLIGHT,
        S.PREPARING,
        S.EXECUTING,
        S.VALIDATING,
        S.HEALTH_CHECKING,
        S.CLEANING_UP,
        S.COMPLETED,
    ]
    table: dict[OperationStatus, set[OperationStatus]] = {status: set() for status in S}
    for current, following in zip(chain, chain[1:]):
        table[current].add(following)
    for status in FAILABLE_STATUSES:
        table[status].add(S.ROLLING_BACK)
    table[S.ROLLING_BACK].add(S.ROLLED_BACK)
    for status in S:
        if status not in TERMINAL_STATUSES:
            table[status].add(S.FAILED)
    return {status: frozenset(targets) for status, targets in table.items()}


TRANSITIONS: Final[Mapping[OperationStatus, frozenset[OperationStatus]]] = _build_transitions()


def is_terminal(status: OperationStatus) -> bool:
    """Return True if no further automatic transition leaves `status`."""
    return status in TERMINAL_STATUSES


def can_transition(current: OperationStatus, target: OperationStatus) -> bool:
    """Return True if `current -> target` is in the transition table."""
    return target in TRANSITIONS[current]


def assert_transition(current: OperationStatus, target: OperationStatus) -> None:
    """
    Validate a status change.

    Parameters
    ----------
    current:
        Status currently recorded for the operation.
    target:
        Requested next status.

    Raises
    ------
    IllegalTransitionError
        If the change is not in the transition table.
    """
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"Illegal status transition: {current.value} -> {target.value}"
        )


def status_for_stage(stage: StepName) -> OperationStatus:
    """Return the operation status held while `stage` runs."""
    return STAGE_STATUS[stage]
