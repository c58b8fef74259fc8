from __future__ import annotations

import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import zstandard as zstd

TAR_ZST_SUFFIX = ".tar.zst"


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    """
    Result of writing one archive.

    Attributes
    ----------
    archive_path:
        Path to the created ``.tar.zst`` file.
    file_count:
        Number of regular files written.
    """

    archive_path: Path
    file_count: int


def archive_directory(
    *,
    source_dir: Path,
    output_path: Path,
    overwrite: bool = False,
    level: int = 3,
) -> ArchiveResult:
    """
    Write a zstandard-compressed tar of a directory's contents.

    Parameters
    ----------
    source_dir:
        Directory to archive. Member names are relative to it.
    output_path:
        Target archive file path (should end in ``.tar.zst``).
    overwrite:
        If True, overwrite an existing output_path.
    level:
        zstandard compression level.

    Returns
    -------
    ArchiveResult
        Archive path and number of files written.

    Raises
    ------
    ValueError
        If inputs are invalid.
    OSError
        If filesystem reads or writes fail.
    """
    source_dir = source_dir.resolve()
    if not source_dir.exists() or not source_dir.is_dir():
        raise ValueError(f"source_dir must be an existing directory: {source_dir}")

    entries = ((path, path.relative_to(source_dir).as_posix()) for path in _iter_entries(source_dir))
    return _write_archive(entries, output_path=output_path, overwrite=overwrite, level=level)


def archive_files(
    *,
    files: Iterable[Path],
    output_path: Path,
    overwrite: bool = False,
    level: int = 3,
) -> ArchiveResult:
    """
    Write a zstandard-compressed tar of individual files, stored under their base names.

    Raises
    ------
    ValueError
        If a file does not exist, two files share a base name, or the output
        exists and `overwrite` is False.
    OSError
        If filesystem reads or writes fail.
    """
    entries: list[tuple[Path, str]] = []
    seen: set[str] = set()
    for path in files:
        if not path.is_file():
            raise ValueError(f"Not a regular file: {path}")
        if path.name in seen:
            raise ValueError(f"Duplicate archive member name: {path.name}")
        seen.add(path.name)
        entries.append((path, path.name))
    return _write_archive(entries, output_path=output_path, overwrite=overwrite, level=level)


def _write_archive(
    entries: Iterable[tuple[Path, str]],
    *,
    output_path: Path,
    overwrite: bool,
    level: int,
) -> ArchiveResult:
    output_path = output_path.resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if output_path.exists():
        if not overwrite:
            raise ValueError(f"Refusing to overwrite existing archive: {output_path}")
        output_path.unlink()

    count = 0
    with output_path.open("wb") as raw:
        cctx = zstd.ZstdCompressor(level=level)
        with cctx.stream_writer(raw) as zst_stream:
            with tarfile.open(fileobj=zst_stream, mode="w|") as tf:
                for path, arcname in entries:
                    tf.add(path, arcname=arcname, recursive=False)
                    if path.is_file():
                        count += 1
    return ArchiveResult(archive_path=output_path, file_count=count)


def extract_archive(*, archive_path: Path, destination_dir: Path) -> Path:
    """
    Extract a ``.tar.zst`` archive into destination_dir.

    Raises
    ------
    ValueError
        If the archive extension is unsupported.
    OSError
        If extraction fails.
    tarfile.TarError
        If the archive is corrupt or contains unsafe members.
    """
    archive_path = archive_path.resolve()
    destination_dir = destination_dir.resolve()

    if not archive_path.name.lower().endswith(TAR_ZST_SUFFIX):
        raise ValueError(f"Unsupported archive type: {archive_path}")

    destination_dir.mkdir(parents=True, exist_ok=True)
    with archive_path.open("rb") as raw:
        dctx = zstd.ZstdDecompressor()
        with dctx.stream_reader(raw) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tf:
                tf.extractall(destination_dir, filter="data")
    return destination_dir


def _iter_entries(root: Path) -> Iterable[Path]:
    # Directories are included so empty ones survive a round trip.
    for p in sorted(root.rglob("*")):
        if p.is_dir() or p.is_file():
            yield p
