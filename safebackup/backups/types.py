from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from safebackup.db.models import BackupJobType, BackupStatus


@dataclass(slots=True)
class BackupSnapshot:
    id: int
    created_at: datetime
    job_type: BackupJobType
    storage_location: str
    output_path: str
    size_bytes: int
    status: BackupStatus
    locked: bool
    session_id: str | None
    notes: str | None
    stats: dict[str, Any]


@dataclass(slots=True)
class BackupContentEntry:
    name: str
    path: str
    type: str
    size: int
    depth: int
    has_children: bool = False


@dataclass(slots=True)
class BackupContents:
    backup_id: int
    database_chunks: list[str] = field(default_factory=list)
    archive_chunks: list[str] = field(default_factory=list)
    entries: list[BackupContentEntry] = field(default_factory=list)


@dataclass(slots=True)
class BackupDownload:
    path: Path
    filename: str
    media_type: str


@dataclass(slots=True)
class BackupStats:
    count: int
    total_size_bytes: int
    last_backup_at: datetime | None
