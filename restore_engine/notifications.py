"""
Notification boundary.

On finalize the orchestrator emits one `Notification` per operation. Delivery
belongs to an external dispatcher; a delivery failure is logged and never
changes the restore result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from .data_models import OperationStatus

logger = logging.getLogger("stackrestore.notifications")


@dataclass(frozen=True, slots=True)
class Notification:
    """Terminal status message for one operation."""

    operation_id: str
    status: OperationStatus
    message: str

    @property
    def subject(self) -> str:
        return f"Restore Operation {self.status.value} - {self.operation_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": self.status.value,
            "message": self.message,
        }


class NotificationDispatcher(Protocol):
    """Delivers notifications to operators."""

    def dispatch(self, notification: Notification) -> None:
        """Deliver `notification`; may raise on delivery failure."""
        ...


class LoggingNotificationDispatcher:
    """Dispatcher that writes notifications to the engine log."""

    def dispatch(self, notification: Notification) -> None:
        level = logging.INFO if notification.status is OperationStatus.COMPLETED else logging.WARNING
        logger.log(level, "Notification sent: %s: %s", notification.subject, notification.message)


def deliver(dispatcher: NotificationDispatcher, notification: Notification) -> bool:
    """
    Dispatch a notification, logging instead of raising on failure.

    Returns
    -------
    bool
        True if the dispatcher returned normally.
    """
    try:
        dispatcher.dispatch(notification)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Notification delivery failed for %s (%s: %s)",
            notification.operation_id,
            type(exc).__name__,
            exc,
        )
        return False
    return True
