from __future__ import annotations

import logging
import os
import shutil
import zipfile
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from safebackup.backups.types import (
    BackupContentEntry,
    BackupContents,
    BackupDownload,
    BackupSnapshot,
    BackupStats,
)
from safebackup.core.config import Settings
from safebackup.core.path_safety import is_within, resolve_under_root, validate_archive_member_path
from safebackup.db.models import BackupRecord, BackupStatus, FileChecksum
from safebackup.export.chunks import ARCHIVE_CHUNK_PATTERN, SQL_CHUNK_PATTERN, list_chunks

logger = logging.getLogger(__name__)

DOWNLOAD_DIR_NAME = "downloads"


class BackupNotFoundError(RuntimeError):
    pass


class BackupLockedError(RuntimeError):
    pass


class BackupMemberNotFoundError(RuntimeError):
    pass


@contextmanager
def _atomic_zip(target: Path) -> Iterator[zipfile.ZipFile]:
    target.parent.mkdir(parents=True, exist_ok=True)
    temp = target.with_name(f"{target.name}.{uuid4().hex}.tmp")
    try:
        with zipfile.ZipFile(temp, mode="w", compression=zipfile.ZIP_STORED, allowZip64=True) as archive:
            yield archive
        os.replace(temp, target)
    finally:
        temp.unlink(missing_ok=True)


def remove_output_directory(settings: Settings, output_path: str) -> bool:
    """Delete a backup's output directory if it lives under the backup root."""
    target = Path(output_path)
    if not is_within(target, settings.effective_backup_root) or target.resolve() == settings.effective_backup_root:
        logger.warning("Refusing to remove %s: not inside the backup root", target)
        return False
    if not target.exists():
        return False
    shutil.rmtree(target)
    return True


class BackupCatalogService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def list_backups(self, *, limit: int = 50, status: BackupStatus | None = None) -> list[BackupSnapshot]:
        bounded_limit = max(1, min(limit, 500))
        with self._session_factory() as session:
            stmt = select(BackupRecord).order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
            if status is not None:
                stmt = stmt.where(BackupRecord.status == status)
            rows = session.scalars(stmt.limit(bounded_limit)).all()
            return [self._to_snapshot(row) for row in rows]

    def get_backup(self, backup_id: int) -> BackupSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._require(session, backup_id))

    def delete_backup(self, backup_id: int) -> None:
        with self._session_factory() as session:
            record = self._require(session, backup_id)
            if record.locked:
                raise BackupLockedError(f"Backup {backup_id} is locked as an incremental baseline")
            output_path = record.output_path
            session.execute(delete(FileChecksum).where(FileChecksum.backup_id == backup_id))
            session.delete(record)
            session.commit()

        try:
            remove_output_directory(self._settings, output_path)
        except OSError as exc:
            logger.warning("Backup %s record deleted but its files could not be removed: %s", backup_id, exc)
        logger.info("Deleted backup %s", backup_id)

    def list_contents(self, backup_id: int) -> BackupContents:
        """Database chunks plus a flattened tree of everything in the archive chunks."""
        with self._session_factory() as session:
            record = self._require(session, backup_id)
            output_dir = Path(record.output_path)

        contents = BackupContents(
            backup_id=backup_id,
            database_chunks=[path.name for path in list_chunks(output_dir, SQL_CHUNK_PATTERN)],
        )

        files: dict[str, int] = {}
        folders: set[str] = set()
        for chunk in list_chunks(output_dir, ARCHIVE_CHUNK_PATTERN):
            contents.archive_chunks.append(chunk.name)
            try:
                with zipfile.ZipFile(chunk) as archive:
                    infos = archive.infolist()
            except zipfile.BadZipFile:
                logger.warning("Skipping unreadable archive chunk %s of backup %s", chunk.name, backup_id)
                continue
            for info in infos:
                member = PurePosixPath(info.filename.rstrip("/"))
                for parent in list(member.parents)[:-1]:
                    folders.add(parent.as_posix())
                if info.is_dir():
                    folders.add(member.as_posix())
                else:
                    files[member.as_posix()] = info.file_size

        parents_with_children = {PurePosixPath(path).parent.as_posix() for path in [*folders, *files]}
        for path in sorted(folders):
            member = PurePosixPath(path)
            contents.entries.append(
                BackupContentEntry(
                    name=member.name,
                    path=path,
                    type="folder",
                    size=0,
                    depth=len(member.parts) - 1,
                    has_children=path in parents_with_children,
                )
            )
        for path, size in sorted(files.items()):
            member = PurePosixPath(path)
            contents.entries.append(
                BackupContentEntry(name=member.name, path=path, type="file", size=size, depth=len(member.parts) - 1)
            )
        contents.entries.sort(key=lambda entry: entry.path)
        return contents

    def get_stats(self) -> BackupStats:
        with self._session_factory() as session:
            count, total_size, last_created = session.execute(
                select(
                    func.count(BackupRecord.id),
                    func.coalesce(func.sum(BackupRecord.size_bytes), 0),
                    func.max(BackupRecord.created_at),
                )
            ).one()
        return BackupStats(count=int(count), total_size_bytes=int(total_size), last_backup_at=last_created)

    def prepare_download(self, backup_id: int, member: str | None = None) -> BackupDownload:
        """Locate or build the file served for a backup download.

        Without ``member`` every SQL and archive chunk is bundled into one zip.
        A ``database-N.sql`` name returns that chunk as is. Anything else is looked
        up in the archive chunks: an exact file is extracted, a folder is zipped.
        Built files are kept under the backup's ``downloads`` directory.
        """
        with self._session_factory() as session:
            record = self._require(session, backup_id)
            output_dir = Path(record.output_path)
            created_at = record.created_at
        if not output_dir.is_dir():
            raise BackupMemberNotFoundError(f"Files of backup {backup_id} are missing")

        target = (member or "").replace("\\", "/").strip().strip("/")
        download_dir = output_dir / DOWNLOAD_DIR_NAME
        if not target:
            return self._bundle_backup(output_dir, download_dir, created_at)

        if SQL_CHUNK_PATTERN.match(target):
            sql_path = output_dir / target
            if not sql_path.is_file():
                raise BackupMemberNotFoundError(f"{target} is not part of backup {backup_id}")
            return BackupDownload(path=sql_path, filename=target, media_type="application/sql")

        member_path = validate_archive_member_path(target).as_posix()
        return self._extract_member(backup_id, output_dir, download_dir, member_path)

    def _bundle_backup(self, output_dir: Path, download_dir: Path, created_at: datetime) -> BackupDownload:
        chunks = [*list_chunks(output_dir, SQL_CHUNK_PATTERN), *list_chunks(output_dir, ARCHIVE_CHUNK_PATTERN)]
        target = download_dir / f"{output_dir.name}.zip"
        with _atomic_zip(target) as bundle:
            for chunk in chunks:
                bundle.write(chunk, chunk.name)
        return BackupDownload(
            path=target,
            filename=f"backup-{created_at:%Y-%m-%d}.zip",
            media_type="application/zip",
        )

    def _extract_member(self, backup_id: int, output_dir: Path, download_dir: Path, member: str) -> BackupDownload:
        exact: Path | None = None
        in_folder: dict[str, Path] = {}
        prefix = member + "/"
        for chunk in list_chunks(output_dir, ARCHIVE_CHUNK_PATTERN):
            try:
                with zipfile.ZipFile(chunk) as archive:
                    infos = archive.infolist()
            except zipfile.BadZipFile:
                logger.warning("Skipping unreadable archive chunk %s of backup %s", chunk.name, backup_id)
                continue
            for info in infos:
                if info.is_dir():
                    continue
                if info.filename == member:
                    exact = chunk
                elif info.filename.startswith(prefix):
                    in_folder[info.filename] = chunk

        name = PurePosixPath(member).name
        if exact is not None:
            target = resolve_under_root(download_dir / "files", member)
            target.parent.mkdir(parents=True, exist_ok=True)
            temp = target.with_name(f"{target.name}.{uuid4().hex}.tmp")
            try:
                with zipfile.ZipFile(exact) as archive, archive.open(member) as source, open(temp, "wb") as handle:
                    shutil.copyfileobj(source, handle)
                os.replace(temp, target)
            finally:
                temp.unlink(missing_ok=True)
            return BackupDownload(path=target, filename=name, media_type="application/octet-stream")

        if in_folder:
            by_chunk: dict[Path, list[str]] = {}
            for entry, chunk in sorted(in_folder.items()):
                by_chunk.setdefault(chunk, []).append(entry)
            target = resolve_under_root(download_dir / "folders", member + ".zip")
            with _atomic_zip(target) as bundle:
                for chunk, entries in by_chunk.items():
                    with zipfile.ZipFile(chunk) as archive:
                        for entry in entries:
                            bundle.writestr(entry, archive.read(entry))
            return BackupDownload(path=target, filename=f"{name}.zip", media_type="application/zip")

        raise BackupMemberNotFoundError(f"{member} is not part of backup {backup_id}")

    def _require(self, session: Session, backup_id: int) -> BackupRecord:
        record = session.get(BackupRecord, backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        return record

    def _to_snapshot(self, record: BackupRecord) -> BackupSnapshot:
        return BackupSnapshot(
            id=record.id,
            created_at=record.created_at,
            job_type=record.job_type,
            storage_location=record.storage_location,
            output_path=record.output_path,
            size_bytes=record.size_bytes,
            status=record.status,
            locked=record.locked,
            session_id=record.session_id,
            notes=record.notes,
            stats=dict(record.stats or {}),
        )


def backup_snapshot_to_dict(snapshot: BackupSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "created_at": snapshot.created_at,
        "job_type": snapshot.job_type.value,
        "storage_location": snapshot.storage_location,
        "output_path": snapshot.output_path,
        "size_bytes": snapshot.size_bytes,
        "status": snapshot.status.value,
        "locked": snapshot.locked,
        "session_id": snapshot.session_id,
        "notes": snapshot.notes,
        "stats": snapshot.stats,
    }


def backup_contents_to_dict(contents: BackupContents) -> dict[str, Any]:
    return asdict(contents)


def backup_stats_to_dict(stats: BackupStats) -> dict[str, Any]:
    return {
        "count": stats.count,
        "total_size_bytes": stats.total_size_bytes,
        "last_backup_at": stats.last_backup_at,
    }
