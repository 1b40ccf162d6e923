"""Decide how produced files are delivered and build zip archives on the fly."""

from __future__ import annotations

import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Optional

from config.settings import STREAM_CHUNK_SIZE
from engine.errors import NoOutputProduced

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".avi", ".mov", ".flv", ".m4v")

_SIDECAR_SUFFIXES = (".info.json", ".description", ".annotations.xml", ".part", ".ytdl", ".log")


class PackagingMode(str, Enum):
    SINGLE_STREAM = "single_stream"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class PackagingDecision:
    mode: PackagingMode
    ordered_files: tuple[Path, ...]

    @property
    def primary(self) -> Path:
        return self.ordered_files[0]


def is_sidecar_file(path) -> bool:
    name = Path(path).name.lower()
    return name.endswith(_SIDECAR_SUFFIXES) or "thumbnail" in name


def is_video_file(path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def filter_media_files(paths: Iterable) -> list[Path]:
    return [Path(p) for p in paths if Path(p).is_file() and not is_sidecar_file(p)]


def order_files(paths: Iterable) -> list[Path]:
    """Videos before everything else; lexical by name within each group."""
    return sorted((Path(p) for p in paths), key=lambda p: (0 if is_video_file(p) else 1, p.name))


def decide_packaging(files: Iterable, *, allows_multi_file: bool) -> PackagingDecision:
    ordered = order_files(filter_media_files(files))
    if not ordered:
        raise NoOutputProduced("No file was downloaded")
    if allows_multi_file and len(ordered) > 1:
        return PackagingDecision(PackagingMode.ARCHIVE, tuple(ordered))
    return PackagingDecision(PackagingMode.SINGLE_STREAM, tuple(ordered))


def archive_entries(files: Iterable[Path]) -> list[tuple[Path, str]]:
    return [(path, f"carousel_item_{n}_{path.name}") for n, path in enumerate(files, start=1)]


def download_filename(requested: Optional[str], produced: Path) -> str:
    requested = (requested or "").strip()
    if not requested:
        return produced.name
    if not Path(requested).suffix:
        return f"{requested}{produced.suffix}"
    return requested


def archive_filename(requested: Optional[str], platform: str) -> str:
    stem = (requested or "").strip()
    if stem.lower().endswith(".zip"):
        stem = stem[:-4]
    return f"{stem or f'{platform}_carousel'}.zip"


class _ArchiveSink:
    """Write-only target for ``ZipFile``; compressed bytes are drained between writes."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def write(self, data) -> int:
        if data:
            self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def drain(self) -> list[bytes]:
        chunks, self._chunks = self._chunks, []
        return chunks


def iter_zip_archive(
    entries: Iterable[tuple[Path, str]],
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield a deflate zip of ``entries`` incrementally, never holding a whole file."""
    sink = _ArchiveSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for path, arcname in entries:
            # Opened by name so the entry inherits the archive's compression level.
            with open(path, "rb") as source, archive.open(arcname, mode="w", force_zip64=True) as target:
                while True:
                    chunk = source.read(chunk_size)
                    if not chunk:
                        break
                    target.write(chunk)
                    yield from sink.drain()
            yield from sink.drain()
    yield from sink.drain()
