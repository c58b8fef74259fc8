import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from restore_engine.clock import FixedClock
from restore_engine.errors import ArtifactIOError
from restore_engine.journal import OperationJournal


def test_journal_appends_jsonl_records(tmp_path: Path) -> None:
    journal_path = tmp_path / "op" / "journal.jsonl"
    clock = FixedClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))

    journal = OperationJournal(journal_path, clock=clock)

    journal.append("stage_started", {"stage": "preflight"})
    journal.append("stage_failed", {"stage": "preflight", "details": "x"})

    lines = journal_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2

    first = json.loads(lines[0])
    second = json.loads(lines[1])

    assert first["ts"] == "2024-01-01T12:00:00Z"
    assert first["event"] == "stage_started"
    assert first["data"] == {"stage": "preflight"}

    assert second["event"] == "stage_failed"
    assert [e["event"] for e in journal.events()] == ["stage_started", "stage_failed"]


def test_journal_rejects_unserializable_payload(tmp_path: Path) -> None:
    journal = OperationJournal(tmp_path / "journal.jsonl", clock=FixedClock(datetime(2024, 1, 1)))

    with pytest.raises(ArtifactIOError):
        journal.append("bad", {"value": object()})
    assert list(journal.events()) == []
