from safebackup.backups.service import (
    BackupCatalogService,
    BackupLockedError,
    BackupMemberNotFoundError,
    BackupNotFoundError,
    backup_contents_to_dict,
    backup_snapshot_to_dict,
    backup_stats_to_dict,
)
from safebackup.backups.types import BackupContentEntry, BackupContents, BackupDownload, BackupSnapshot, BackupStats
from safebackup.backups.finalizer import BackupFinalizer

__all__ = [
    "BackupCatalogService",
    "BackupContentEntry",
    "BackupContents",
    "BackupDownload",
    "BackupFinalizer",
    "BackupLockedError",
    "BackupMemberNotFoundError",
    "BackupNotFoundError",
    "BackupSnapshot",
    "BackupStats",
    "backup_contents_to_dict",
    "backup_snapshot_to_dict",
    "backup_stats_to_dict",
]
