"""
JSON artifact I/O.

Operation records, summaries, snapshot metadata and settings are plain JSON
documents. This module provides the atomic read/write helpers they share.

Design constraints
------------------
- Writes are atomic (temp file + replace) so a crash never leaves a torn record.
- Serialization is deterministic for a given payload (sorted keys).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import ArtifactIOError


@dataclass(frozen=True, slots=True)
class JsonWriteOptions:
    """Options controlling JSON serialization."""

    pretty: bool = True
    indent: int = 2
    sort_keys: bool = True
    ensure_ascii: bool = False


def write_json_atomic(
    json_path: Path,
    payload: Mapping[str, Any],
    *,
    options: JsonWriteOptions | None = None,
) -> None:
    """
    Write JSON atomically to disk.

    Parameters
    ----------
    json_path:
        Destination file. Parent directories are created.
    payload:
        JSON-serializable mapping.
    options:
        Serialization options.

    Raises
    ------
    ArtifactIOError
        If the file cannot be written or the payload is not serializable.
    """
    opts = options or JsonWriteOptions()
    json_path = json_path.expanduser()
    json_path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = json_path.with_suffix(json_path.suffix + ".tmp")

    try:
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            if opts.pretty:
                json.dump(
                    payload,
                    handle,
                    indent=opts.indent,
                    sort_keys=opts.sort_keys,
                    ensure_ascii=opts.ensure_ascii,
                )
                handle.write("\n")
            else:
                json.dump(
                    payload,
                    handle,
                    separators=(",", ":"),
                    sort_keys=opts.sort_keys,
                    ensure_ascii=opts.ensure_ascii,
                )
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, json_path)
    except (OSError, TypeError, ValueError) as exc:
        try:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise ArtifactIOError(f"Failed to write JSON: {json_path} ({exc!s})") from exc


def read_json_object(json_path: Path) -> dict[str, Any]:
    """
    Read a JSON document whose top level is an object.

    Raises
    ------
    ArtifactIOError
        If the file cannot be read, is not valid JSON, or is not an object.
    """
    try:
        text = json_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ArtifactIOError(f"Failed to read JSON: {json_path}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ArtifactIOError(f"Invalid JSON in {json_path}: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ArtifactIOError(f"Expected a JSON object in {json_path}")
    return payload
