from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_CONTINUATION_MODES = {"thread", "none"}

DEFAULT_EXCLUDE_DIR_NAMES = [
    ".git",
    ".svn",
    ".hg",
    "node_modules",
    "__pycache__",
    ".cache",
    "cache",
    ".tox",
    ".venv",
]

DEFAULT_SIBLING_BACKUP_DIR_NAMES = [
    "safebackup",
    "updraft",
    "backup-db",
    "backups-dup-lite",
    "ai1wm-backups",
    "backwpup",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SAFEBACKUP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "SafeBackup"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    content_root: Path = Field(default=Path("/content"))
    backup_root: Path | None = None
    database_url: str | None = None
    source_database_url: str | None = None

    batch_time_budget_seconds: PositiveFloat = 5.0
    lock_ttl_seconds: PositiveInt = 60

    db_fetch_batch_size: PositiveInt = 500
    archive_files_per_batch: PositiveInt = 500
    sql_chunk_max_bytes: PositiveInt = 50 * 1024 * 1024
    archive_chunk_max_bytes: PositiveInt = 50 * 1024 * 1024
    checksum_write_batch_size: PositiveInt = 2000

    progress_throttle_seconds: float = 0.5

    default_retention_limit: int = 5
    default_incremental_enabled: bool = True
    default_cloud_retention_count: int = 5

    exclude_dir_names: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_DIR_NAMES))
    sibling_backup_dir_names: list[str] = Field(default_factory=lambda: list(DEFAULT_SIBLING_BACKUP_DIR_NAMES))
    extra_exclude_substrings: list[str] = Field(default_factory=list)
    export_exclude_tables: list[str] = Field(default_factory=list)

    continuation_mode: str = "thread"
    continuation_max_wait_seconds: PositiveInt = 120

    maintenance_flag_path: Path | None = None
    cloud_mirror_root: Path | None = None

    @field_validator(
        "state_root", "content_root", "backup_root", "maintenance_flag_path", "cloud_mirror_root", mode="before"
    )
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None:
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.content_root = self.content_root.resolve(strict=False)
        if self.backup_root is None:
            self.backup_root = self.state_root / "backups"
        self.backup_root = self.backup_root.resolve(strict=False)

        if self.backup_root == self.content_root:
            raise ValueError("backup_root must not be the content_root itself")
        if self.backup_root in self.content_root.parents:
            raise ValueError("content_root must not live inside backup_root")

        self.state_root.mkdir(parents=True, exist_ok=True)
        self.backup_root.mkdir(parents=True, exist_ok=True)

        if self.default_retention_limit < 0:
            raise ValueError("default_retention_limit must be >= 0")
        if self.default_cloud_retention_count < 0:
            raise ValueError("default_cloud_retention_count must be >= 0")
        if self.progress_throttle_seconds < 0:
            raise ValueError("progress_throttle_seconds must be >= 0")
        if self.lock_ttl_seconds <= self.batch_time_budget_seconds:
            raise ValueError("lock_ttl_seconds must be greater than batch_time_budget_seconds")

        normalized_mode = self.continuation_mode.lower().strip()
        if normalized_mode not in SUPPORTED_CONTINUATION_MODES:
            raise ValueError(f"continuation_mode must be one of {sorted(SUPPORTED_CONTINUATION_MODES)}")
        self.continuation_mode = normalized_mode

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "safebackup.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_source_database_url(self) -> str:
        return self.source_database_url or self.effective_database_url

    @property
    def effective_backup_root(self) -> Path:
        assert self.backup_root is not None
        return self.backup_root

    @property
    def effective_maintenance_flag_path(self) -> Path:
        return self.maintenance_flag_path or self.state_root / "maintenance.flag"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
