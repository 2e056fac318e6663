from safebackup.worker.pipeline import (
    build_orchestrator,
    build_restore_service,
    build_source_database,
    get_cloud_sync,
    get_continuation_queue,
    reset_workers,
    run_backup_batch,
    start_backup,
)

__all__ = [
    "build_orchestrator",
    "build_restore_service",
    "build_source_database",
    "get_cloud_sync",
    "get_continuation_queue",
    "reset_workers",
    "run_backup_batch",
    "start_backup",
]
