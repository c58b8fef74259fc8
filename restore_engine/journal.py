from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping

from .clock import Clock
from .data_models import datetime_to_iso_utc
from .errors import ArtifactIOError

JOURNAL_FILENAME = "journal.jsonl"


@dataclass(frozen=True)
class JournalEvent:
    """
    A single append-only journal record.

    Parameters
    ----------
    timestamp : datetime
        Event time (timezone-aware).
    event : str
        Stable event identifier (e.g., 'stage_started', 'rollback_failed').
    data : Mapping[str, Any]
        Structured event payload. Must be JSON-serializable.
    """

    timestamp: datetime
    event: str
    data: Mapping[str, Any]


class OperationJournal:
    """
    Append-only JSONL journal for one restore operation.

    Notes
    -----
    - Each call to `append()` writes one JSON object per line (JSONL).
    - The journal is an inspectable artifact intended for debugging and audit;
      the operation record remains the source of truth for status.
    """

    def __init__(self, journal_path: Path, *, clock: Clock) -> None:
        self._journal_path = journal_path
        self._clock = clock
        self._lock = threading.Lock()
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        """Return the on-disk path to the journal file."""
        return self._journal_path

    def append(self, event: str, data: Mapping[str, Any]) -> None:
        """
        Append a new event record.

        Parameters
        ----------
        event : str
            Stable event identifier.
        data : Mapping[str, Any]
            JSON-serializable event payload.

        Raises
        ------
        ArtifactIOError
            If the journal cannot be written or `data` is not serializable.
        """
        record = JournalEvent(timestamp=self._clock.now(), event=event, data=data)
        try:
            line = json.dumps(
                {
                    "ts": datetime_to_iso_utc(record.timestamp),
                    "event": record.event,
                    "data": record.data,
                },
                ensure_ascii=False,
                sort_keys=True,
                separators=(",", ":"),
            )
        except (TypeError, ValueError) as exc:
            raise ArtifactIOError(f"Journal event {event!r} is not JSON-serializable") from exc

        with self._lock:
            try:
                with self._journal_path.open("a", encoding="utf-8", newline="\n") as handle:
                    handle.write(line + "\n")
                    handle.flush()
            except OSError as exc:
                raise ArtifactIOError(f"Failed to append to journal: {self._journal_path}") from exc

    def events(self) -> Iterator[dict[str, Any]]:
        """Yield recorded events in append order; a missing journal yields nothing."""
        try:
            lines = self._journal_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ArtifactIOError(f"Failed to read journal: {self._journal_path}") from exc
        for line in lines:
            if line.strip():
                yield json.loads(line)
