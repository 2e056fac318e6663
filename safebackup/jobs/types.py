from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from safebackup.db.models import BackupJobType


class JobStep(str, Enum):
    DB = "db"
    FILE_SCAN = "file_scan"
    ARCHIVE = "archive"
    FINISH = "finish"


class BatchStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    LOCKED = "locked"
    NO_ACTIVE_JOB = "no_active_job"
    SESSION_EXPIRED = "session_expired"


class StageOutcome(str, Enum):
    CONTINUE = "continue"
    DONE = "done"


@dataclass(slots=True)
class JobStats:
    rows_exported: int = 0
    files_vanished: int = 0
    files_skipped: int = 0
    skipped_tables: list[str] = field(default_factory=list)
    skipped_archive_chunks: list[int] = field(default_factory=list)


@dataclass(slots=True)
class JobState:
    job_id: str
    job_type: BackupJobType
    session_id: str
    work_dir: str
    started_at: float
    step: JobStep = JobStep.DB
    exclusions: list[str] = field(default_factory=list)

    tables: list[str] = field(default_factory=list)
    current_table_index: int = 0
    cursor_value: Any = None
    primary_key_column: str | None = None
    offset_mode: bool = False
    table_started: bool = False

    sql_chunk_index: int = 1
    sql_chunk_bytes: int = 0
    archive_chunk_index: int = 1
    archive_chunk_bytes: int = 0
    archive_chunk_start_offset: int = 0

    file_list_path: str | None = None
    file_total: int = 0
    file_offset: int = 0
    checksum_snapshot_path: str | None = None

    stats: JobStats = field(default_factory=JobStats)

    @property
    def rows_exported(self) -> int:
        return self.stats.rows_exported

    @property
    def includes_files(self) -> bool:
        return self.job_type != BackupJobType.DB_ONLY

    def reset_table_cursor(self) -> None:
        self.cursor_value = None
        self.primary_key_column = None
        self.offset_mode = False
        self.table_started = False

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["job_type"] = self.job_type.value
        payload["step"] = self.step.value
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "JobState":
        data = dict(payload)
        data["job_type"] = BackupJobType(data["job_type"])
        data["step"] = JobStep(data["step"])
        data["stats"] = JobStats(**(data.get("stats") or {}))
        return cls(**data)


@dataclass(slots=True)
class ProgressSnapshot:
    percent: int
    message: str
    active: bool
    session_id: str | None
    updated_at: float | None = None

    @classmethod
    def idle(cls) -> "ProgressSnapshot":
        return cls(percent=0, message="Idle", active=False, session_id=None)


@dataclass(slots=True)
class BatchResult:
    status: BatchStatus
    percent: int = 0
    message: str = ""
    session_id: str | None = None
    step: JobStep | None = None
    backup_id: int | None = None


def batch_result_to_dict(result: BatchResult) -> dict[str, Any]:
    payload = asdict(result)
    payload["status"] = result.status.value
    payload["step"] = result.step.value if result.step is not None else None
    return payload


def progress_to_dict(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return asdict(snapshot)
