from __future__ import annotations

import logging
import re
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

SQL_CHUNK_PATTERN = re.compile(r"^database-(\d+)\.sql$")
ARCHIVE_CHUNK_PATTERN = re.compile(r"^files-(\d+)\.zip$")


def sql_chunk_name(index: int) -> str:
    return f"database-{index}.sql"


def archive_chunk_name(index: int) -> str:
    return f"files-{index}.zip"


def list_chunks(work_dir: Path, pattern: re.Pattern[str]) -> list[Path]:
    """Chunk files in ``work_dir`` matching ``pattern``, in chunk-index order."""
    if not work_dir.is_dir():
        return []
    found: list[tuple[int, Path]] = []
    for entry in work_dir.iterdir():
        match = pattern.match(entry.name)
        if match and entry.is_file():
            found.append((int(match.group(1)), entry))
    return [path for _, path in sorted(found)]


def _remove_chunks_after(work_dir: Path, pattern: re.Pattern[str], index: int) -> None:
    for path in list_chunks(work_dir, pattern):
        match = pattern.match(path.name)
        assert match is not None
        if int(match.group(1)) > index:
            logger.info("Removing chunk %s written after the last checkpoint", path.name)
            path.unlink(missing_ok=True)


class SqlChunkWriter:
    """Appends SQL text to numbered ``database-N.sql`` files.

    A chunk is closed once its size reaches ``max_bytes``; the next write opens
    ``N+1``. Opening a chunk truncates it back to the checkpointed byte count so
    statements written by a batch that died before persisting its state are not
    emitted twice.
    """

    def __init__(self, work_dir: Path, max_bytes: int, index: int, current_bytes: int):
        self._work_dir = work_dir
        self._max_bytes = max_bytes
        self.index = index
        self.bytes_written = current_bytes
        self._handle: IO[bytes] | None = None

    @property
    def path(self) -> Path:
        return self._work_dir / sql_chunk_name(self.index)

    def open(self) -> None:
        if self._handle is not None:
            return
        _remove_chunks_after(self._work_dir, SQL_CHUNK_PATTERN, self.index)
        path = self.path
        handle = open(path, "ab")
        try:
            actual = handle.seek(0, 2)
            if actual > self.bytes_written:
                handle.truncate(self.bytes_written)
                handle.seek(self.bytes_written)
            else:
                self.bytes_written = actual
        except OSError:
            handle.close()
            raise
        self._handle = handle
        if self.bytes_written == 0:
            stamp = datetime.now(tz=timezone.utc).isoformat()
            self._write_raw(f"-- SafeBackup database dump, chunk {self.index}\n-- Created: {stamp}\n\n")

    def _write_raw(self, text: str) -> None:
        assert self._handle is not None
        data = text.encode("utf-8")
        self._handle.write(data)
        self.bytes_written += len(data)

    def write(self, text: str) -> None:
        self.open()
        self._write_raw(text)
        if self.bytes_written >= self._max_bytes:
            self.roll()

    def roll(self) -> None:
        self.close()
        self.index += 1
        self.bytes_written = 0

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle.flush()
        self._handle.close()
        self._handle = None

    def __enter__(self) -> "SqlChunkWriter":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class CorruptArchiveChunkError(OSError):
    pass


_LOCAL_HEADER_SIZE = 30
_CENTRAL_HEADER_SIZE = 46
_END_RECORD_SIZE = 22
# zip64 local and central extra fields plus the zip64 end record and locator.
_ZIP64_ALLOWANCE = 20 + 28 + 56 + 20


def archive_entry_cost(arcname: str, size: int, offset: int = 0) -> int:
    """On-disk bytes a stored member adds to a chunk: payload, local and central headers."""
    name_bytes = len(arcname.encode("utf-8"))
    cost = size + _LOCAL_HEADER_SIZE + _CENTRAL_HEADER_SIZE + 2 * name_bytes
    if size * 1.05 > zipfile.ZIP64_LIMIT or offset + size > zipfile.ZIP64_LIMIT:
        cost += _ZIP64_ALLOWANCE
    return cost


class ArchiveChunkWriter:
    """Adds files to numbered ``files-N.zip`` archives without compression.

    ``bytes_written`` tracks the chunk's size on disk, headers and central
    directory included. A new chunk is started *before* a file that would push
    the current chunk over ``max_bytes`` (an empty chunk always accepts the file).
    """

    def __init__(self, work_dir: Path, max_bytes: int, index: int, current_bytes: int):
        self._work_dir = work_dir
        self._max_bytes = max_bytes
        self.index = index
        self.bytes_written = current_bytes
        self._archive: zipfile.ZipFile | None = None
        self._names: set[str] = set()

    @property
    def path(self) -> Path:
        return self._work_dir / archive_chunk_name(self.index)

    def open(self) -> None:
        if self._archive is not None:
            return
        _remove_chunks_after(self._work_dir, ARCHIVE_CHUNK_PATTERN, self.index)
        path = self.path
        existing_size = path.stat().st_size if path.exists() else 0
        if existing_size > 0 and not zipfile.is_zipfile(path):
            raise CorruptArchiveChunkError(f"Archive chunk is corrupt: {path.name}")
        try:
            archive = zipfile.ZipFile(
                path, mode="a", compression=zipfile.ZIP_STORED, allowZip64=True, strict_timestamps=False
            )
        except zipfile.BadZipFile as exc:
            raise CorruptArchiveChunkError(f"Archive chunk is corrupt: {path.name}") from exc
        self._names = {info.filename for info in archive.infolist()}
        self.bytes_written = existing_size if existing_size > 0 else _END_RECORD_SIZE
        self._archive = archive

    def contains(self, arcname: str) -> bool:
        self.open()
        return arcname in self._names

    def would_overflow(self, arcname: str, size: int) -> bool:
        if not self._names:
            return False
        return self.bytes_written + archive_entry_cost(arcname, size, self.bytes_written) > self._max_bytes

    def add(self, source: Path, arcname: str, size: int) -> None:
        self.open()
        if self.would_overflow(arcname, size):
            self.roll()
            self.open()
        assert self._archive is not None
        self._archive.write(source, arcname)
        self._names.add(arcname)
        self.bytes_written += archive_entry_cost(arcname, size, self.bytes_written)

    def roll(self) -> None:
        self.close()
        self.index += 1
        self.bytes_written = 0
        self._names = set()

    def discard_current(self) -> None:
        self.close()
        self.path.unlink(missing_ok=True)
        self.bytes_written = 0
        self._names = set()

    def close(self) -> None:
        if self._archive is None:
            return
        self._archive.close()
        self._archive = None

    def __enter__(self) -> "ArchiveChunkWriter":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
