from __future__ import annotations

import json
import logging
import shutil
import zipfile
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import chain
from pathlib import Path
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from safebackup.backups.service import BackupNotFoundError
from safebackup.core.config import Settings
from safebackup.core.path_safety import PathSafetyError, resolve_under_root, validate_archive_member_path
from safebackup.db.models import BackupJobType, BackupRecord, BackupStatus
from safebackup.export.chunks import ARCHIVE_CHUNK_PATTERN, SQL_CHUNK_PATTERN, list_chunks
from safebackup.export.database import SourceDatabase, split_sql_statements

logger = logging.getLogger(__name__)

DATABASE_ITEM = "database"


class RestoreError(RuntimeError):
    def __init__(self, failures: list[str]):
        super().__init__("; ".join(failures))
        self.failures = failures


@dataclass(slots=True)
class RestoreReport:
    backup_id: int
    chain: list[int] = field(default_factory=list)
    files_restored: int = 0
    statements_executed: int = 0
    database_restored: bool = False


class RestoreService:
    """Restores files and the relational store from a completed backup.

    ``items`` selects a partial restore: archive paths (an exact file or a folder
    prefix) and/or ``"database"``. Without items everything is restored. Restoring
    an incremental backup first extracts its full baseline and the incrementals
    between them, oldest first, so later versions of a file win.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], source: SourceDatabase):
        self._settings = settings
        self._session_factory = session_factory
        self._source = source

    def restore_backup(self, backup_id: int, items: list[str] | None = None) -> RestoreReport:
        selectors, restore_db, restore_files = self._parse_items(items)

        with self._session_factory() as session:
            record = session.get(BackupRecord, backup_id)
            if record is None:
                raise BackupNotFoundError(f"Backup not found: {backup_id}")
            if record.status != BackupStatus.COMPLETED:
                raise RestoreError([f"Backup {backup_id} is not completed ({record.status.value})"])
            chain_records = self._restore_chain(session, record) if restore_files else [record]
            chain_dirs = [Path(item.output_path) for item in chain_records]
            job_type = record.job_type
            output_dir = Path(record.output_path)

        report = RestoreReport(backup_id=backup_id, chain=[item.id for item in chain_records])
        failures: list[str] = []

        with self._maintenance(backup_id):
            if restore_files and job_type != BackupJobType.DB_ONLY:
                try:
                    report.files_restored = self._extract_files(chain_dirs, selectors)
                except (OSError, zipfile.BadZipFile, PathSafetyError) as exc:
                    logger.error("File restore from backup %s failed: %s", backup_id, exc)
                    failures.append(f"Files: {exc}")

            if restore_db:
                try:
                    report.statements_executed = self._replay_database(output_dir)
                    report.database_restored = True
                except (OSError, SQLAlchemyError) as exc:
                    logger.error("Database restore from backup %s failed: %s", backup_id, exc)
                    failures.append(f"Database: {exc}")

        if failures:
            raise RestoreError(failures)
        logger.info(
            "Restored backup %s: %s files, %s SQL statements",
            backup_id,
            report.files_restored,
            report.statements_executed,
        )
        return report

    def _parse_items(self, items: list[str] | None) -> tuple[list[str] | None, bool, bool]:
        if not items:
            return None, True, True
        restore_db = DATABASE_ITEM in items
        selectors = [
            validate_archive_member_path(item).as_posix() for item in items if item != DATABASE_ITEM
        ]
        return (selectors or None), restore_db, bool(selectors)

    def _restore_chain(self, session: Session, record: BackupRecord) -> list[BackupRecord]:
        if record.job_type != BackupJobType.INCREMENTAL:
            return [record]

        baseline = session.scalar(
            select(BackupRecord)
            .where(
                BackupRecord.job_type == BackupJobType.FULL,
                BackupRecord.status == BackupStatus.COMPLETED,
                BackupRecord.created_at <= record.created_at,
                BackupRecord.id != record.id,
            )
            .order_by(BackupRecord.locked.desc(), BackupRecord.created_at.desc(), BackupRecord.id.desc())
            .limit(1)
        )
        if baseline is None:
            logger.warning("Incremental backup %s has no full baseline, restoring its own files only", record.id)
            return [record]

        intermediates = list(
            session.scalars(
                select(BackupRecord)
                .where(
                    BackupRecord.job_type == BackupJobType.INCREMENTAL,
                    BackupRecord.status == BackupStatus.COMPLETED,
                    BackupRecord.created_at >= baseline.created_at,
                    BackupRecord.created_at <= record.created_at,
                    BackupRecord.id != record.id,
                )
                .order_by(BackupRecord.created_at.asc(), BackupRecord.id.asc())
            ).all()
        )
        return [baseline, *intermediates, record]

    def _selected(self, arcname: str, selectors: list[str] | None) -> bool:
        if selectors is None:
            return True
        return any(arcname == selector or arcname.startswith(selector.rstrip("/") + "/") for selector in selectors)

    def _extract_files(self, output_dirs: list[Path], selectors: list[str] | None) -> int:
        restored = 0
        root = self._settings.content_root
        for output_dir in output_dirs:
            for chunk in list_chunks(output_dir, ARCHIVE_CHUNK_PATTERN):
                with zipfile.ZipFile(chunk) as archive:
                    for info in archive.infolist():
                        if not self._selected(info.filename.rstrip("/"), selectors):
                            continue
                        target = resolve_under_root(root, info.filename)
                        if info.is_dir():
                            target.mkdir(parents=True, exist_ok=True)
                            continue
                        target.parent.mkdir(parents=True, exist_ok=True)
                        with archive.open(info) as src, open(target, "wb") as dst:
                            shutil.copyfileobj(src, dst)
                        restored += 1
        return restored

    def _replay_database(self, output_dir: Path) -> int:
        chunks = list_chunks(output_dir, SQL_CHUNK_PATTERN)
        if not chunks:
            raise FileNotFoundError(f"No database chunks in {output_dir}")
        with ExitStack() as stack:
            handles = [stack.enter_context(open(path, encoding="utf-8")) for path in chunks]
            return self._source.execute_statements(split_sql_statements(chain.from_iterable(handles)))

    @contextmanager
    def _maintenance(self, backup_id: int) -> Iterator[Path]:
        flag = self._settings.effective_maintenance_flag_path
        flag.parent.mkdir(parents=True, exist_ok=True)
        flag.write_text(
            json.dumps({"backup_id": backup_id, "started_at": datetime.now(tz=timezone.utc).isoformat()}),
            encoding="utf-8",
        )
        try:
            yield flag
        finally:
            flag.unlink(missing_ok=True)
