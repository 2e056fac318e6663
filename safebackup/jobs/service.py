from __future__ import annotations

import logging
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from safebackup.backups.finalizer import BackupFinalizer
from safebackup.cloud.service import CloudSyncService
from safebackup.core.config import Settings
from safebackup.core.path_safety import is_within
from safebackup.db.models import BackupJobType
from safebackup.export.archive import ArchiveStage
from safebackup.export.database import DatabaseExportStage, SourceDatabase
from safebackup.export.files import FileScanStage
from safebackup.jobs.continuation import BatchContinuationQueue
from safebackup.jobs.lock_service import BACKUP_BATCH_LOCK_KEY, JobLockService
from safebackup.jobs.progress import FINISH_PERCENT_SPAN, ProgressReporter, stage_message, stage_percent
from safebackup.jobs.types import BatchResult, BatchStatus, JobState, JobStep, ProgressSnapshot, StageOutcome
from safebackup.state.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

JOB_STATE_KEY = "backup_job_state"


class BackupConflictError(RuntimeError):
    pass


class BackupOrchestrator:
    """Runs a backup as a sequence of short, resumable batches.

    Each ``run_batch`` call takes the global execution lock, advances the
    persisted ``JobState`` through DB -> FILE_SCAN -> ARCHIVE -> FINISH until its
    time budget runs out, writes the state back and releases the lock. A write
    is dropped when the stored state belongs to a different job, which makes a
    straggling batch harmless after a cancel or restart.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        source: SourceDatabase,
        *,
        continuation: BatchContinuationQueue | None = None,
        cloud: CloudSyncService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._source = source
        self._continuation = continuation
        self._clock = clock
        self._store = KeyValueStore(session_factory)
        self._locks = JobLockService(settings)
        self._progress = ProgressReporter(settings, session_factory, clock=clock)
        self._db_stage = DatabaseExportStage(settings, source)
        self._scan_stage = FileScanStage(settings, session_factory)
        self._archive_stage = ArchiveStage(settings, clock=clock)
        self._finalizer = BackupFinalizer(settings, session_factory, cloud=cloud)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _work_dir_for(self, job_id: str) -> Path:
        stamp = self._now().strftime("%Y%m%d-%H%M%S")
        return self._settings.effective_backup_root / f"backup-{stamp}-{job_id[:8]}"

    def get_state(self) -> JobState | None:
        payload = self._store.get(JOB_STATE_KEY)
        if payload is None:
            return None
        return JobState.from_payload(payload)

    def start_backup(
        self,
        job_type: BackupJobType,
        session_id: str | None = None,
        *,
        exclusions: Iterable[str] = (),
        resume: bool = False,
    ) -> JobState:
        with self._session_factory() as session:
            existing = self._store.read(session, JOB_STATE_KEY)
        if existing is not None:
            if resume:
                return JobState.from_payload(existing)
            raise BackupConflictError("A backup is already in progress")

        job_id = uuid4().hex
        work_dir = self._work_dir_for(job_id)
        work_dir.mkdir(parents=True, exist_ok=False)
        state = JobState(
            job_id=job_id,
            job_type=job_type,
            session_id=session_id or uuid4().hex,
            work_dir=work_dir.as_posix(),
            started_at=self._now().timestamp(),
            exclusions=[item for item in exclusions if item],
            tables=self._source.list_tables(),
        )

        with self._session_factory() as session:
            try:
                self._store.write(session, JOB_STATE_KEY, state.to_payload())
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                shutil.rmtree(work_dir, ignore_errors=True)
                raise BackupConflictError("A backup is already in progress") from exc

        self._progress.report(0, "Backup started", state.session_id, force=True)
        logger.info(
            "Started %s backup %s (session %s, %s tables) in %s",
            job_type.value,
            job_id,
            state.session_id,
            len(state.tables),
            work_dir,
        )
        return state

    def run_batch(self, *, resume: bool = False) -> BatchResult:
        if self._store.get(JOB_STATE_KEY) is None:
            return self._missing_state(resume)

        owner_token = uuid4().hex
        with self._session_factory() as session:
            acquired = self._locks.acquire(session, BACKUP_BATCH_LOCK_KEY, owner_token)
        if not acquired:
            snapshot = self._progress.read()
            return BatchResult(
                status=BatchStatus.LOCKED,
                percent=snapshot.percent,
                message="Another batch is running",
                session_id=snapshot.session_id,
            )

        try:
            result = self._run_locked(owner_token, resume)
        finally:
            with self._session_factory() as session:
                self._locks.release(session, BACKUP_BATCH_LOCK_KEY, owner_token)

        if result.status == BatchStatus.PROCESSING:
            self._schedule_continuation()
        return result

    def cancel_backup(self) -> bool:
        with self._session_factory() as session:
            payload = self._store.read(session, JOB_STATE_KEY)
            self._store.remove(session, JOB_STATE_KEY)
            session.commit()
            if self._locks.is_held(session, BACKUP_BATCH_LOCK_KEY):
                logger.info("Releasing the execution lock held by a running batch")
            self._locks.force_release(session, BACKUP_BATCH_LOCK_KEY)

        if payload is None:
            return False

        self._progress.clear()

        work_dir = Path(str(payload.get("work_dir", "")))
        if payload.get("work_dir") and is_within(work_dir, self._settings.effective_backup_root):
            shutil.rmtree(work_dir, ignore_errors=True)
        logger.info("Cancelled backup %s", payload.get("job_id"))
        return True

    def get_progress(self) -> ProgressSnapshot:
        return self._progress.read()

    def _missing_state(self, resume: bool) -> BatchResult:
        if resume:
            return BatchResult(
                status=BatchStatus.SESSION_EXPIRED,
                message="Backup session expired, start a new backup",
            )
        return BatchResult(status=BatchStatus.NO_ACTIVE_JOB, message="No active backup job")

    def _run_locked(self, owner_token: str, resume: bool) -> BatchResult:
        payload = self._store.get(JOB_STATE_KEY)
        if payload is None:
            return self._missing_state(resume)
        try:
            state = JobState.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Discarding unreadable backup state: %s", exc)
            self._store.delete(JOB_STATE_KEY)
            return BatchResult(
                status=BatchStatus.SESSION_EXPIRED,
                message="Backup state was unreadable, start a new backup",
            )

        deadline = self._clock() + self._settings.batch_time_budget_seconds
        while True:
            if state.step == JobStep.FINISH:
                return self._finish(state, owner_token)

            outcome = self._run_stage(state, deadline)
            if outcome == StageOutcome.DONE:
                state.step = self._next_step(state)
                logger.info("Backup %s moved to step %s", state.job_id, state.step.value)
            self._progress.report_state(state)

            if self._clock() >= deadline:
                break

        if not self._persist(state, owner_token):
            return self._stale_result(state)
        return BatchResult(
            status=BatchStatus.PROCESSING,
            percent=stage_percent(state),
            message=stage_message(state),
            session_id=state.session_id,
            step=state.step,
        )

    def _run_stage(self, state: JobState, deadline: float) -> StageOutcome:
        if state.step == JobStep.DB:
            return self._db_stage.run_unit(state)
        if state.step == JobStep.FILE_SCAN:
            return self._scan_stage.run_unit(state)
        if state.step == JobStep.ARCHIVE:
            return self._archive_stage.run_unit(state, deadline)
        raise ValueError(f"Unexpected backup step: {state.step.value}")

    def _next_step(self, state: JobState) -> JobStep:
        if state.step == JobStep.DB:
            return JobStep.FILE_SCAN if state.includes_files else JobStep.FINISH
        if state.step == JobStep.FILE_SCAN:
            return JobStep.ARCHIVE
        return JobStep.FINISH

    def _owns_current_job(self, session: Session, state: JobState) -> bool:
        current = self._store.read(session, JOB_STATE_KEY)
        return isinstance(current, dict) and current.get("job_id") == state.job_id

    def _persist(self, state: JobState, owner_token: str) -> bool:
        with self._session_factory() as session:
            if not self._locks.refresh(session, BACKUP_BATCH_LOCK_KEY, owner_token):
                logger.warning("Execution lock lost during batch for backup %s, not saving state", state.job_id)
                return False
            if not self._owns_current_job(session, state):
                logger.info("Backup %s was cancelled or replaced, dropping batch state", state.job_id)
                return False
            self._store.write(session, JOB_STATE_KEY, state.to_payload())
            session.commit()
            return True

    def _stale_result(self, state: JobState) -> BatchResult:
        return BatchResult(
            status=BatchStatus.NO_ACTIVE_JOB,
            message="Backup was cancelled or replaced",
            session_id=state.session_id,
            step=state.step,
        )

    def _finish_claim(self, state: JobState, owner_token: str) -> Callable[[Session], bool]:
        # Removing the job state commits with the BackupRecord, so FINISH is recorded at most once.
        def claim(session: Session) -> bool:
            if not self._locks.refresh(session, BACKUP_BATCH_LOCK_KEY, owner_token, commit=False):
                logger.warning("Execution lock lost while finalizing backup %s", state.job_id)
                return False
            if not self._owns_current_job(session, state):
                logger.info("Backup %s was cancelled or replaced before it was recorded", state.job_id)
                return False
            self._store.remove(session, JOB_STATE_KEY)
            return True

        return claim

    def _finish(self, state: JobState, owner_token: str) -> BatchResult:
        with self._session_factory() as session:
            if not self._locks.refresh(session, BACKUP_BATCH_LOCK_KEY, owner_token) or not self._owns_current_job(
                session, state
            ):
                return self._stale_result(state)
        self._progress.report(FINISH_PERCENT_SPAN[0], "Finalizing backup", state.session_id, force=True)

        backup_id = self._finalizer.finalize(state, claim=self._finish_claim(state, owner_token))
        if backup_id is None:
            return self._stale_result(state)

        message = f"Backup completed ({state.stats.rows_exported} rows exported)"
        self._progress.report(FINISH_PERCENT_SPAN[1], message, state.session_id, force=True, active=False)
        return BatchResult(
            status=BatchStatus.COMPLETED,
            percent=FINISH_PERCENT_SPAN[1],
            message=message,
            session_id=state.session_id,
            step=JobStep.FINISH,
            backup_id=backup_id,
        )

    def _schedule_continuation(self) -> None:
        if self._continuation is None:
            return
        if self._continuation.schedule():
            logger.debug("Scheduled background continuation for the active backup")


def state_summary_to_dict(state: JobState) -> dict[str, Any]:
    return {
        "job_id": state.job_id,
        "job_type": state.job_type.value,
        "session_id": state.session_id,
        "step": state.step.value,
        "work_dir": state.work_dir,
        "tables": len(state.tables),
        "current_table_index": state.current_table_index,
        "file_total": state.file_total,
        "file_offset": state.file_offset,
        "rows_exported": state.rows_exported,
    }
