"""
Read-only status views over persisted operation records.

Views are derived on every call from the outcome recorder; nothing here
writes to disk or caches state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Self

from .data_models import (
    OperationStatus,
    RestoreOperation,
    StepName,
    StepStatus,
    datetime_to_iso_utc,
)
from .recorder import OutcomeRecorder
from .summary import OperationSummary, build_summary, operation_duration_seconds


@dataclass(frozen=True, slots=True)
class OperationView:
    """
    An operation record plus derived fields.

    Attributes
    ----------
    operation:
        The persisted record.
    duration_seconds:
        ``ended_at - started_at``; None while the operation is running.
    success_ratio:
        COMPLETED steps divided by all steps; 0.0 when there are no steps.
    failed_step:
        First pipeline stage that failed (the rollback step is not counted).
    rollback_status:
        Status of the rollback step, or None if no rollback was attempted.
    """

    operation: RestoreOperation
    duration_seconds: float | None
    success_ratio: float
    failed_step: StepName | None
    rollback_status: StepStatus | None

    @classmethod
    def from_operation(cls, operation: RestoreOperation) -> Self:
        total = len(operation.steps)
        completed = sum(1 for s in operation.steps if s.status is StepStatus.COMPLETED)
        failed = next(
            (s.name for s in operation.steps if s.status is StepStatus.FAILED and s.name is not StepName.ROLLBACK),
            None,
        )
        rollback = operation.find_step(StepName.ROLLBACK)
        return cls(
            operation=operation,
            duration_seconds=operation_duration_seconds(operation),
            success_ratio=(completed / total) if total else 0.0,
            failed_step=failed,
            rollback_status=rollback.status if rollback is not None else None,
        )

    @property
    def id(self) -> str:
        return self.operation.id

    @property
    def status(self) -> OperationStatus:
        return self.operation.status

    @property
    def needs_manual_intervention(self) -> bool:
        """True for FAILED operations whose rollback also failed."""
        return self.operation.status is OperationStatus.FAILED and self.rollback_status is StepStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        payload = self.operation.to_dict()
        payload.update(
            {
                "duration_seconds": self.duration_seconds,
                "success_ratio": self.success_ratio,
                "failed_step": self.failed_step.value if self.failed_step is not None else None,
                "rollback_status": self.rollback_status.value if self.rollback_status is not None else None,
            }
        )
        return payload


class StatusQuery:
    """Query past and in-flight operations."""

    def __init__(self, recorder: OutcomeRecorder) -> None:
        self._recorder = recorder

    def get(self, operation_id: str) -> OperationView:
        """
        Return the view of one operation.

        Raises
        ------
        UnknownOperationError
            If no record exists for `operation_id`.
        """
        return OperationView.from_operation(self._recorder.get(operation_id))

    def list(self, limit: int | None = None) -> list[OperationView]:
        """Return views, most recent first."""
        return [OperationView.from_operation(op) for op in self._recorder.list(limit=limit)]

    def summary(self, operation_id: str) -> OperationSummary:
        """Build the summary for `operation_id` from its current record."""
        return build_summary(self._recorder.get(operation_id))


def _format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def render_operation_table(views: Iterable[OperationView]) -> str:
    """Render a fixed-width table, one line per operation."""
    rows = [
        (
            v.id,
            v.status.value,
            v.operation.mode.value,
            datetime_to_iso_utc(v.operation.started_at),
            _format_duration(v.duration_seconds),
            f"{v.success_ratio:.0%}",
        )
        for v in views
    ]
    if not rows:
        return "No restore operations recorded."
    header = ("OPERATION", "STATUS", "MODE", "STARTED", "DURATION", "STEPS OK")
    widths = [max(len(header[i]), *(len(r[i]) for r in rows)) for i in range(len(header))]
    lines = ["  ".join(h.ljust(widths[i]) for i, h in enumerate(header))]
    lines.extend("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)) for row in rows)
    return "\n".join(line.rstrip() for line in lines)


def render_operation_detail(view: OperationView) -> str:
    """Render one operation with its steps."""
    op = view.operation
    lines = [
        f"Operation:  {op.id}",
        f"Status:     {op.status.value}",
        f"Mode:       {op.mode.value}",
        f"Backup:     {op.backup_reference}",
        f"Started:    {datetime_to_iso_utc(op.started_at)}",
        f"Ended:      {datetime_to_iso_utc(op.ended_at) if op.ended_at is not None else '-'}",
        f"Duration:   {_format_duration(view.duration_seconds)}",
        f"Steps OK:   {view.success_ratio:.0%}",
    ]
    if view.failed_step is not None:
        lines.append(f"Failed at:  {view.failed_step.value}")
    if view.rollback_status is not None:
        lines.append(f"Rollback:   {view.rollback_status.value}")
    if view.needs_manual_intervention:
        lines.append("ATTENTION:  rollback failed; manual intervention required")
    lines.append("Steps:")
    for step in op.steps:
        line = f"  {datetime_to_iso_utc(step.timestamp)}  {step.name.value:<20} {step.status.value}"
        if step.details:
            first_line = step.details.splitlines()[0]
            line = f"{line}  {first_line}"
        lines.append(line)
    return "\n".join(lines)
