"""Terminal summary documents derived from operation records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .data_models import RestoreOperation, StepStatus


@dataclass(frozen=True, slots=True)
class OperationSummary:
    """
    Terminal summary of a restore operation.

    Attributes
    ----------
    operation_id:
        Operation the summary describes.
    status:
        Terminal status value.
    duration:
        Seconds between start and end; None while the operation is running.
    total_steps, successful_steps, failed_steps:
        Step counts by status.
    """

    operation_id: str
    status: str
    duration: float | None
    total_steps: int
    successful_steps: int
    failed_steps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": self.status,
            "duration": self.duration,
            "total_steps": self.total_steps,
            "successful_steps": self.successful_steps,
            "failed_steps": self.failed_steps,
        }


def operation_duration_seconds(operation: RestoreOperation) -> float | None:
    """Return ``ended_at - started_at`` in seconds, or None if not ended."""
    if operation.ended_at is None:
        return None
    return (operation.ended_at - operation.started_at).total_seconds()


def build_summary(operation: RestoreOperation) -> OperationSummary:
    """Build the summary document for `operation` without modifying it."""
    successful = sum(1 for s in operation.steps if s.status is StepStatus.COMPLETED)
    failed = sum(1 for s in operation.steps if s.status is StepStatus.FAILED)
    return OperationSummary(
        operation_id=operation.id,
        status=operation.status.value,
        duration=operation_duration_seconds(operation),
        total_steps=len(operation.steps),
        successful_steps=successful,
        failed_steps=failed,
    )
