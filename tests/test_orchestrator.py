from __future__ import annotations

import os
import threading
import zipfile
from pathlib import Path

from sqlalchemy import create_engine, text

import safebackup.backups.finalizer as finalizer_module
import safebackup.db.session as db_session_module
from safebackup.backups.service import BackupCatalogService
from safebackup.core.config import get_settings
from safebackup.db.init_db import initialize_database
from safebackup.db.models import BackupJobType, BackupStatus
from safebackup.export.database import SourceDatabase
from safebackup.jobs.lock_service import BACKUP_BATCH_LOCK_KEY, JobLockService
from safebackup.jobs.service import JOB_STATE_KEY, BackupConflictError, BackupOrchestrator
from safebackup.jobs.types import BatchStatus, JobStep
from safebackup.state.kv_store import KeyValueStore
from safebackup.worker.pipeline import build_orchestrator, build_source_database, reset_workers


class StepClock:
    """Advances one second per reading so every batch runs out of budget quickly."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class BlockingSource(SourceDatabase):
    def __init__(self, engine, exclude_tables=None):  # type: ignore[no-untyped-def]
        super().__init__(engine, exclude_tables)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_after(self, table_name, key, cursor, limit):  # type: ignore[no-untyped-def]
        rows = super().fetch_after(table_name, key, cursor, limit)
        if not self.entered.is_set():
            self.entered.set()
            assert self.release.wait(timeout=10)
        return rows


def seed_source(path: Path, users: int = 7) -> None:
    engine = create_engine(f"sqlite:///{path.as_posix()}", future=True)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT)"))
        conn.execute(text("CREATE TABLE audit_log (event TEXT)"))
        for index in range(1, users + 1):
            conn.execute(text("INSERT INTO users(id, name) VALUES (:id, :name)"), {"id": index, "name": f"u{index}"})
        conn.execute(text("INSERT INTO audit_log(event) VALUES ('seeded')"))
    engine.dispose()


def setup_env(tmp_path: Path, **overrides: object) -> BackupOrchestrator:
    state_root = tmp_path / "state"
    content_root = tmp_path / "content"
    (content_root / "sub").mkdir(parents=True, exist_ok=True)
    (content_root / "node_modules").mkdir(exist_ok=True)
    (content_root / "index.html").write_text("<html></html>")
    (content_root / "sub" / "data.txt").write_text("data")
    (content_root / "node_modules" / "lib.js").write_text("ignored")
    source_path = tmp_path / "source.sqlite3"
    seed_source(source_path)

    os.environ["SAFEBACKUP_STATE_ROOT"] = state_root.as_posix()
    os.environ["SAFEBACKUP_CONTENT_ROOT"] = content_root.as_posix()
    os.environ["SAFEBACKUP_SOURCE_DATABASE_URL"] = f"sqlite:///{source_path.as_posix()}"
    os.environ["SAFEBACKUP_CONTINUATION_MODE"] = "none"
    os.environ["SAFEBACKUP_PROGRESS_THROTTLE_SECONDS"] = "0"
    for key, value in overrides.items():
        os.environ[f"SAFEBACKUP_{key.upper()}"] = str(value)

    get_settings.cache_clear()
    reset_workers()
    db_session_module.reset_engines()
    initialize_database()
    return build_orchestrator()


def drive(orchestrator: BackupOrchestrator, limit: int = 200):  # type: ignore[no-untyped-def]
    results = []
    for _ in range(limit):
        result = orchestrator.run_batch(resume=True)
        results.append(result)
        if result.status != BatchStatus.PROCESSING:
            return results
    raise AssertionError("backup did not finish")


def catalog() -> BackupCatalogService:
    return BackupCatalogService(get_settings(), db_session_module.get_session_factory())


def test_full_backup_end_to_end(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    state = orchestrator.start_backup(BackupJobType.FULL, session_id="session-a")
    assert state.tables == ["audit_log", "users"]

    results = drive(orchestrator)
    final = results[-1]

    assert final.status == BatchStatus.COMPLETED
    assert final.percent == 100
    assert final.backup_id is not None
    assert orchestrator.get_state() is None

    record = catalog().get_backup(final.backup_id)
    assert record.status == BackupStatus.COMPLETED
    assert record.job_type == BackupJobType.FULL
    assert record.session_id == "session-a"
    assert record.stats["rows_exported"] == 8
    assert record.stats["files_archived"] == 2
    output = Path(record.output_path)
    assert sorted(path.name for path in output.iterdir() if path.suffix in {".sql", ".zip", ".json"}) == [
        "database-1.sql",
        "files-1.zip",
        "manifest.json",
    ]
    with zipfile.ZipFile(output / "files-1.zip") as archive:
        assert archive.namelist() == ["index.html", "sub/data.txt"]

    progress = orchestrator.get_progress()
    assert progress.percent == 100
    assert progress.active is False
    assert progress.session_id == "session-a"


def test_time_sliced_batches_make_progress_until_complete(tmp_path: Path) -> None:
    setup_env(tmp_path, db_fetch_batch_size=2, archive_files_per_batch=1)
    settings = get_settings()
    orchestrator = BackupOrchestrator(
        settings,
        db_session_module.get_session_factory(),
        build_source_database(settings),
        clock=StepClock(),
    )
    orchestrator.start_backup(BackupJobType.FULL)

    results = drive(orchestrator)

    assert len(results) >= 3
    assert results[-1].status == BatchStatus.COMPLETED
    percents = [result.percent for result in results]
    assert percents == sorted(percents)
    steps = [result.step for result in results[:-1]]
    assert JobStep.DB in steps and JobStep.ARCHIVE in steps

    record = catalog().get_backup(results[-1].backup_id)
    assert record.stats["rows_exported"] == 8


def test_db_only_backup_has_no_archive(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    orchestrator.start_backup(BackupJobType.DB_ONLY)

    final = drive(orchestrator)[-1]

    record = catalog().get_backup(final.backup_id)
    assert record.job_type == BackupJobType.DB_ONLY
    names = {path.name for path in Path(record.output_path).iterdir()}
    assert "database-1.sql" in names
    assert not any(name.startswith("files-") for name in names)
    assert "file-list.jsonl" not in names


def test_second_start_conflicts_and_resume_returns_existing_job(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    first = orchestrator.start_backup(BackupJobType.FULL)

    try:
        orchestrator.start_backup(BackupJobType.FULL)
    except BackupConflictError:
        pass
    else:
        raise AssertionError("expected BackupConflictError")

    resumed = orchestrator.start_backup(BackupJobType.FULL, resume=True)
    assert resumed.job_id == first.job_id


def test_batch_without_job_reports_no_active_job_or_expired_session(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)

    assert orchestrator.run_batch().status == BatchStatus.NO_ACTIVE_JOB
    assert orchestrator.run_batch(resume=True).status == BatchStatus.SESSION_EXPIRED


def test_cancel_removes_state_and_output(tmp_path: Path) -> None:
    setup_env(tmp_path, db_fetch_batch_size=1)
    settings = get_settings()
    orchestrator = BackupOrchestrator(
        settings,
        db_session_module.get_session_factory(),
        build_source_database(settings),
        clock=StepClock(),
    )
    state = orchestrator.start_backup(BackupJobType.FULL)
    assert orchestrator.run_batch().status == BatchStatus.PROCESSING

    assert orchestrator.cancel_backup() is True

    assert orchestrator.get_state() is None
    assert not Path(state.work_dir).exists()
    assert orchestrator.get_progress().active is False
    assert orchestrator.run_batch().status == BatchStatus.NO_ACTIVE_JOB
    assert orchestrator.cancel_backup() is False
    assert catalog().list_backups() == []


def test_batch_running_during_cancel_does_not_restore_state(tmp_path: Path) -> None:
    setup_env(tmp_path)
    settings = get_settings()
    factory = db_session_module.get_session_factory()
    source = BlockingSource(db_session_module.get_source_engine())
    straggler = BackupOrchestrator(settings, factory, source)
    straggler.start_backup(BackupJobType.DB_ONLY)

    results = []
    worker = threading.Thread(target=lambda: results.append(straggler.run_batch()))
    worker.start()
    assert source.entered.wait(timeout=10)

    assert build_orchestrator().cancel_backup() is True
    source.release.set()
    worker.join(timeout=30)

    assert results[0].status == BatchStatus.NO_ACTIVE_JOB
    assert straggler.get_state() is None
    assert catalog().list_backups() == []


def test_unreadable_state_is_discarded(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    KeyValueStore(db_session_module.get_session_factory()).set(JOB_STATE_KEY, {"job_id": "broken"})

    result = orchestrator.run_batch()

    assert result.status == BatchStatus.SESSION_EXPIRED
    assert orchestrator.get_state() is None
    assert orchestrator.run_batch().status == BatchStatus.NO_ACTIVE_JOB


def test_incremental_archives_only_changes_and_locks_baseline(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    content_root = get_settings().content_root

    orchestrator.start_backup(BackupJobType.FULL)
    full_id = drive(orchestrator)[-1].backup_id

    (content_root / "sub" / "data.txt").write_text("data, changed and longer")
    (content_root / "new.txt").write_text("new")

    orchestrator.start_backup(BackupJobType.INCREMENTAL)
    incremental_id = drive(orchestrator)[-1].backup_id

    incremental = catalog().get_backup(incremental_id)
    with zipfile.ZipFile(Path(incremental.output_path) / "files-1.zip") as archive:
        assert archive.namelist() == ["new.txt", "sub/data.txt"]
    assert incremental.job_type == BackupJobType.INCREMENTAL
    assert catalog().get_backup(full_id).locked is True

    orchestrator.start_backup(BackupJobType.INCREMENTAL)
    unchanged = catalog().get_backup(drive(orchestrator)[-1].backup_id)
    assert unchanged.stats["files_selected"] == 0
    assert unchanged.stats["files_archived"] == 0


def test_failed_finish_is_replayed_without_a_second_record(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    orchestrator = setup_env(tmp_path)
    orchestrator.start_backup(BackupJobType.FULL)
    original_remove = KeyValueStore.remove
    failures: list[str] = []

    def remove_failing_once(self, session, key):  # type: ignore[no-untyped-def]
        if key == JOB_STATE_KEY and not failures:
            failures.append(key)
            raise OSError("worker killed while finishing")
        return original_remove(self, session, key)

    monkeypatch.setattr(KeyValueStore, "remove", remove_failing_once)
    try:
        drive(orchestrator)
    except OSError:
        pass
    else:
        raise AssertionError("Expected finishing batch to fail")

    assert catalog().list_backups() == []
    state = orchestrator.get_state()
    assert state is not None and state.step == JobStep.FINISH

    final = drive(orchestrator)[-1]
    assert final.status == BatchStatus.COMPLETED
    assert [record.id for record in catalog().list_backups()] == [final.backup_id]
    assert orchestrator.get_state() is None


def test_finish_that_lost_its_lock_records_nothing(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    orchestrator = setup_env(tmp_path)
    orchestrator.start_backup(BackupJobType.DB_ONLY)
    factory = db_session_module.get_session_factory()
    locks = JobLockService(get_settings())
    original_count = finalizer_module._count_archive_entries

    def count_after_takeover(chunks):  # type: ignore[no-untyped-def]
        with factory() as session:
            locks.force_release(session, BACKUP_BATCH_LOCK_KEY)
            assert locks.acquire(session, BACKUP_BATCH_LOCK_KEY, "next-worker") is True
        return original_count(chunks)

    monkeypatch.setattr(finalizer_module, "_count_archive_entries", count_after_takeover)
    assert orchestrator.run_batch().status == BatchStatus.NO_ACTIVE_JOB
    assert catalog().list_backups() == []
    assert orchestrator.get_state() is not None

    monkeypatch.setattr(finalizer_module, "_count_archive_entries", original_count)
    with factory() as session:
        locks.release(session, BACKUP_BATCH_LOCK_KEY, "next-worker")
    assert orchestrator.run_batch().status == BatchStatus.COMPLETED
    assert len(catalog().list_backups()) == 1


def test_cancel_without_job_keeps_last_progress(tmp_path: Path) -> None:
    orchestrator = setup_env(tmp_path)
    orchestrator.start_backup(BackupJobType.DB_ONLY, session_id="finished")
    assert drive(orchestrator)[-1].status == BatchStatus.COMPLETED

    assert orchestrator.cancel_backup() is False

    progress = orchestrator.get_progress()
    assert progress.percent == 100
    assert progress.session_id == "finished"
