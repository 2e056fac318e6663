from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from safebackup.db.models import BackupJobType


class StartBackupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_type: BackupJobType = BackupJobType.FULL
    session_id: str | None = Field(default=None, min_length=1, max_length=128)
    exclusions: list[str] = Field(default_factory=list)
    resume: bool = False


class RunBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resume: bool = True


class RestoreRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[str] | None = None


class BatchResponse(BaseModel):
    status: str
    percent: int
    message: str
    session_id: str | None
    step: str | None
    backup_id: int | None


class StartBackupResponse(BaseModel):
    job_id: str
    job_type: str
    session_id: str
    step: str
    work_dir: str
    tables: int
    current_table_index: int
    file_total: int
    file_offset: int
    rows_exported: int
    batch: BatchResponse


class ProgressResponse(BaseModel):
    percent: int
    message: str
    active: bool
    session_id: str | None
    updated_at: float | None


class CancelResponse(BaseModel):
    status: str


class BackupResponse(BaseModel):
    id: int
    created_at: datetime
    job_type: str
    storage_location: str
    output_path: str
    size_bytes: int
    status: str
    locked: bool
    session_id: str | None
    notes: str | None
    stats: dict[str, Any]


class BackupListResponse(BaseModel):
    items: list[BackupResponse]


class BackupContentEntryResponse(BaseModel):
    name: str
    path: str
    type: str
    size: int
    depth: int
    has_children: bool


class BackupContentsResponse(BaseModel):
    backup_id: int
    database_chunks: list[str]
    archive_chunks: list[str]
    entries: list[BackupContentEntryResponse]


class RestoreResponse(BaseModel):
    backup_id: int
    chain: list[int]
    files_restored: int
    statements_executed: int
    database_restored: bool


class BackupStatsResponse(BaseModel):
    count: int
    total_size_bytes: int
    last_backup_at: datetime | None
