from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from safebackup.core.config import Settings
from safebackup.core.path_safety import is_within
from safebackup.db.models import BackupJobType, BackupRecord, BackupStatus, FileChecksum
from safebackup.jobs.types import JobState, StageOutcome

logger = logging.getLogger(__name__)

FILE_LIST_NAME = "file-list.jsonl"
CHECKSUM_SNAPSHOT_NAME = "checksums.jsonl"


@dataclass(frozen=True, slots=True)
class FileEntry:
    path: str
    size_bytes: int
    mtime_ns: int


class FileEnumerator:
    def __init__(self, settings: Settings, extra_exclusions: Iterable[str] = ()):
        self._root = settings.content_root
        self._backup_root = settings.effective_backup_root.resolve(strict=False)
        self._excluded_names = set(settings.exclude_dir_names) | set(settings.sibling_backup_dir_names)
        self._substrings = [item for item in [*settings.extra_exclude_substrings, *extra_exclusions] if item]

    def _matches_substring(self, path: str) -> bool:
        return any(fragment in path for fragment in self._substrings)

    def _is_excluded_dir(self, path: Path) -> bool:
        if path.name in self._excluded_names:
            return True
        if is_within(path, self._backup_root):
            return True
        return self._matches_substring(path.as_posix())

    def walk(self) -> Iterator[FileEntry]:
        if not self._root.is_dir():
            logger.warning("Content root %s does not exist, no files to scan", self._root)
            return

        def _on_error(exc: OSError) -> None:
            logger.warning("Cannot read directory during scan: %s", exc)

        for dirpath, dirnames, filenames in os.walk(self._root, onerror=_on_error):
            current = Path(dirpath)
            dirnames[:] = sorted(name for name in dirnames if not self._is_excluded_dir(current / name))
            for name in sorted(filenames):
                candidate = current / name
                posix = candidate.as_posix()
                if self._matches_substring(posix):
                    continue
                try:
                    info = candidate.stat(follow_symlinks=False)
                except OSError:
                    continue
                if not stat.S_ISREG(info.st_mode):
                    continue
                yield FileEntry(path=posix, size_bytes=info.st_size, mtime_ns=info.st_mtime_ns)


def select_changed(entries: Iterable[FileEntry], baseline: dict[str, tuple[int, int]] | None) -> list[str]:
    """Paths to archive: every entry without a baseline, otherwise only those whose
    size or modification time differ from the recorded snapshot."""
    if baseline is None:
        return [entry.path for entry in entries]
    return [
        entry.path
        for entry in entries
        if baseline.get(entry.path) != (entry.size_bytes, entry.mtime_ns)
    ]


def load_baseline_index(session: Session) -> dict[str, tuple[int, int]] | None:
    latest = session.scalar(
        select(BackupRecord.id)
        .where(
            BackupRecord.status == BackupStatus.COMPLETED,
            BackupRecord.job_type.in_([BackupJobType.FULL, BackupJobType.INCREMENTAL]),
        )
        .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
        .limit(1)
    )
    if latest is None:
        return None
    rows = session.execute(
        select(FileChecksum.file_path, FileChecksum.size_bytes, FileChecksum.mtime_ns).where(
            FileChecksum.backup_id == latest
        )
    ).all()
    return {str(path): (int(size), int(mtime)) for path, size, mtime in rows}


def _write_jsonl_atomic(target: Path, records: Iterable[object]) -> int:
    temp = target.with_name(target.name + ".tmp")
    count = 0
    with open(temp, "w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, ensure_ascii=False))
            handle.write("\n")
            count += 1
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp, target)
    return count


def read_file_list(path: Path, offset: int, limit: int) -> list[str]:
    with open(path, encoding="utf-8") as handle:
        return [json.loads(line) for line in islice(handle, offset, offset + limit)]


def read_checksum_snapshot(path: Path) -> Iterator[FileEntry]:
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            file_path, size_bytes, mtime_ns = json.loads(line)
            yield FileEntry(path=file_path, size_bytes=int(size_bytes), mtime_ns=int(mtime_ns))


class FileScanStage:
    """Walks the content tree in one pass and fixes the archive work list.

    Not resumable mid-walk: enumeration cost is bounded by directory size, and
    the results only become visible once both output files are in place.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def run_unit(self, state: JobState) -> StageOutcome:
        enumerator = FileEnumerator(self._settings, extra_exclusions=state.exclusions)
        entries = list(enumerator.walk())

        baseline: dict[str, tuple[int, int]] | None = None
        if state.job_type == BackupJobType.INCREMENTAL:
            with self._session_factory() as session:
                baseline = load_baseline_index(session)
            if baseline is None:
                logger.info("No completed baseline backup found, incremental run includes every file")

        selected = select_changed(entries, baseline)

        work_dir = Path(state.work_dir)
        checksum_path = work_dir / CHECKSUM_SNAPSHOT_NAME
        list_path = work_dir / FILE_LIST_NAME
        _write_jsonl_atomic(checksum_path, ([entry.path, entry.size_bytes, entry.mtime_ns] for entry in entries))
        total = _write_jsonl_atomic(list_path, selected)

        state.checksum_snapshot_path = checksum_path.as_posix()
        state.file_list_path = list_path.as_posix()
        state.file_total = total
        state.file_offset = 0
        logger.info("File scan selected %s of %s files for %s backup", total, len(entries), state.job_type.value)
        return StageOutcome.DONE
