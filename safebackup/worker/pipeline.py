from __future__ import annotations

import logging
import threading

from safebackup.cloud.providers import DirectoryProvider, ProviderRegistry
from safebackup.cloud.service import CloudSyncService
from safebackup.core.config import Settings, get_settings
from safebackup.db.models import Base, BackupJobType
from safebackup.db.session import get_engine, get_session_factory, get_source_engine
from safebackup.export.database import SourceDatabase
from safebackup.jobs.continuation import BatchContinuationQueue
from safebackup.jobs.service import BackupOrchestrator
from safebackup.jobs.types import BatchResult, JobState
from safebackup.restore.service import RestoreService

logger = logging.getLogger(__name__)

_guard = threading.Lock()
_continuation_queue: BatchContinuationQueue | None = None
_cloud_sync: CloudSyncService | None = None


def build_source_database(settings: Settings | None = None) -> SourceDatabase:
    """The store being backed up; SafeBackup's own tables are never exported."""
    effective = settings or get_settings()
    source_engine = get_source_engine()
    excluded = set(effective.export_exclude_tables)
    if source_engine is get_engine():
        excluded.update(Base.metadata.tables)
    return SourceDatabase(source_engine, exclude_tables=sorted(excluded))


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    if settings.cloud_mirror_root is not None:
        registry.register(DirectoryProvider(settings.cloud_mirror_root))
    return registry


def get_cloud_sync() -> CloudSyncService:
    global _cloud_sync
    with _guard:
        if _cloud_sync is None:
            settings = get_settings()
            _cloud_sync = CloudSyncService(
                settings=settings,
                session_factory=get_session_factory(),
                registry=build_provider_registry(settings),
            )
        return _cloud_sync


def _continue_backup() -> BatchResult:
    return build_orchestrator(with_continuation=False).run_batch(resume=True)


def get_continuation_queue() -> BatchContinuationQueue | None:
    global _continuation_queue
    settings = get_settings()
    if settings.continuation_mode == "none":
        return None
    with _guard:
        if _continuation_queue is None:
            _continuation_queue = BatchContinuationQueue(
                _continue_backup,
                max_wait_seconds=settings.continuation_max_wait_seconds,
            )
        return _continuation_queue


def reset_workers() -> None:
    global _continuation_queue, _cloud_sync
    with _guard:
        queue = _continuation_queue
        _continuation_queue = None
        _cloud_sync = None
    if queue is not None:
        queue.shutdown()


def build_orchestrator(*, with_continuation: bool = True) -> BackupOrchestrator:
    settings = get_settings()
    return BackupOrchestrator(
        settings=settings,
        session_factory=get_session_factory(),
        source=build_source_database(settings),
        continuation=get_continuation_queue() if with_continuation else None,
        cloud=get_cloud_sync(),
    )


def build_restore_service() -> RestoreService:
    settings = get_settings()
    return RestoreService(
        settings=settings,
        session_factory=get_session_factory(),
        source=build_source_database(settings),
    )


def start_backup(job_type: BackupJobType, session_id: str | None = None) -> JobState:
    return build_orchestrator().start_backup(job_type, session_id)


def run_backup_batch(*, resume: bool = False) -> BatchResult:
    return build_orchestrator().run_batch(resume=resume)
