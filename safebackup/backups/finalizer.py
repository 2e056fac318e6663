from __future__ import annotations

import json
import logging
import os
import zipfile
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from sqlalchemy import insert, select
from sqlalchemy.orm import Session, sessionmaker

from safebackup.backups.service import BackupCatalogService, BackupLockedError, BackupNotFoundError
from safebackup.cloud.service import CloudSyncService
from safebackup.core.config import Settings
from safebackup.db.models import BackupJobType, BackupRecord, BackupStatus, FileChecksum
from safebackup.export.chunks import ARCHIVE_CHUNK_PATTERN, SQL_CHUNK_PATTERN, list_chunks
from safebackup.export.files import read_checksum_snapshot
from safebackup.jobs.types import JobState
from safebackup.state.settings_store import RuntimeSettingsService

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


def _count_archive_entries(chunks: list[Path]) -> int:
    total = 0
    for chunk in chunks:
        try:
            with zipfile.ZipFile(chunk) as archive:
                total += sum(1 for info in archive.infolist() if not info.is_dir())
        except zipfile.BadZipFile:
            logger.warning("Archive chunk %s is unreadable and was not counted", chunk.name)
    return total


class BackupFinalizer:
    """Turns a finished job's output directory into a completed BackupRecord.

    The record, its checksum rows and any baseline lock are committed together,
    along with whatever the ``claim`` callback writes in the same session. Cloud
    sync and retention pruning run afterwards and never fail the backup.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        cloud: CloudSyncService | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._cloud = cloud
        self._runtime = RuntimeSettingsService(settings, session_factory)
        self._catalog = BackupCatalogService(settings, session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def finalize(self, state: JobState, claim: Callable[[Session], bool] | None = None) -> int | None:
        """Record the finished job and return the new backup id.

        ``claim`` runs first inside the record transaction. When it returns False
        nothing is written and None is returned.
        """
        work_dir = Path(state.work_dir)
        sql_chunks = list_chunks(work_dir, SQL_CHUNK_PATTERN)
        archive_chunks = list_chunks(work_dir, ARCHIVE_CHUNK_PATTERN) if state.includes_files else []
        size_bytes = sum(path.stat().st_size for path in [*sql_chunks, *archive_chunks])

        stats: dict[str, Any] = asdict(state.stats)
        stats["files_archived"] = _count_archive_entries(archive_chunks)
        stats["files_selected"] = state.file_total
        stats["tables"] = len(state.tables)
        stats["duration_seconds"] = round(max(0.0, self._now().timestamp() - state.started_at), 3)

        created_at = self._now()
        runtime = self._runtime.get()

        with self._session_factory() as session:
            if claim is not None and not claim(session):
                session.rollback()
                logger.info("Backup %s is no longer owned by this batch, not recording it", state.job_id)
                return None

            record = BackupRecord(
                created_at=created_at,
                job_type=state.job_type,
                storage_location="local",
                output_path=work_dir.as_posix(),
                size_bytes=size_bytes,
                status=BackupStatus.COMPLETED,
                locked=False,
                session_id=state.session_id,
                stats=stats,
            )
            session.add(record)
            session.flush()
            backup_id = record.id

            checksum_rows = self._insert_checksums(session, backup_id, state)
            if state.job_type == BackupJobType.INCREMENTAL and runtime.incremental_enabled:
                self._lock_full_baseline(session)
            self._write_manifest(work_dir, state, created_at, sql_chunks, archive_chunks, stats)
            session.commit()

        logger.info(
            "Backup %s completed: %s bytes, %s SQL chunks, %s archive chunks, %s checksum rows",
            backup_id,
            size_bytes,
            len(sql_chunks),
            len(archive_chunks),
            checksum_rows,
        )

        if self._cloud is not None:
            try:
                self._cloud.on_backup_completed(backup_id, work_dir)
            except Exception:
                logger.exception("Could not hand backup %s to cloud sync", backup_id)

        try:
            self.enforce_retention(runtime.retention_limit)
        except Exception:
            logger.exception("Retention pruning after backup %s failed", backup_id)

        return backup_id

    def _write_manifest(
        self,
        work_dir: Path,
        state: JobState,
        created_at: datetime,
        sql_chunks: list[Path],
        archive_chunks: list[Path],
        stats: dict[str, Any],
    ) -> None:
        manifest = {
            "job_id": state.job_id,
            "job_type": state.job_type.value,
            "session_id": state.session_id,
            "created_at": created_at.isoformat(),
            "tables": state.tables,
            "database_chunks": [path.name for path in sql_chunks],
            "archive_chunks": [path.name for path in archive_chunks],
            "content_root": self._settings.content_root.as_posix(),
            "stats": stats,
        }
        target = work_dir / MANIFEST_NAME
        temp = target.with_name(target.name + ".tmp")
        temp.write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(temp, target)

    def _insert_checksums(self, session: Session, backup_id: int, state: JobState) -> int:
        if not state.checksum_snapshot_path:
            return 0
        snapshot_path = Path(state.checksum_snapshot_path)
        if not snapshot_path.exists():
            logger.warning("Checksum snapshot %s is missing, next incremental run will include every file", snapshot_path)
            return 0

        batch_size = self._settings.checksum_write_batch_size
        batch: list[dict[str, Any]] = []
        written = 0
        for entry in read_checksum_snapshot(snapshot_path):
            batch.append(
                {
                    "backup_id": backup_id,
                    "file_path": entry.path,
                    "size_bytes": entry.size_bytes,
                    "mtime_ns": entry.mtime_ns,
                }
            )
            if len(batch) >= batch_size:
                session.execute(insert(FileChecksum), batch)
                written += len(batch)
                batch = []
        if batch:
            session.execute(insert(FileChecksum), batch)
            written += len(batch)
        return written

    def _lock_full_baseline(self, session: Session) -> None:
        baseline = session.scalar(
            select(BackupRecord)
            .where(
                BackupRecord.job_type == BackupJobType.FULL,
                BackupRecord.status == BackupStatus.COMPLETED,
            )
            .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
            .limit(1)
        )
        if baseline is None:
            logger.info("Incremental backup has no full baseline to lock")
            return
        if not baseline.locked:
            baseline.locked = True
            logger.info("Locked full backup %s as incremental baseline", baseline.id)

    def enforce_retention(self, retention_limit: int) -> list[int]:
        """Delete completed, unlocked backups beyond ``retention_limit``, oldest first.

        A limit of 0 keeps everything.
        """
        if retention_limit <= 0:
            return []

        with self._session_factory() as session:
            candidates = list(
                session.scalars(
                    select(BackupRecord.id)
                    .where(
                        BackupRecord.status == BackupStatus.COMPLETED,
                        BackupRecord.locked.is_(False),
                    )
                    .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
                ).all()
            )

        expired = list(reversed(candidates[retention_limit:]))
        pruned: list[int] = []
        for backup_id in expired:
            try:
                self._catalog.delete_backup(backup_id)
            except (BackupLockedError, BackupNotFoundError) as exc:
                logger.info("Retention skipped backup %s: %s", backup_id, exc)
                continue
            pruned.append(backup_id)
        if pruned:
            logger.info("Retention pruned backups %s (limit %s)", pruned, retention_limit)
        return pruned
