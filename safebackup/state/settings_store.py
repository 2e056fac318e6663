from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from safebackup.core.config import Settings
from safebackup.db.models import BackupJobType, BackupRecord, BackupStatus
from safebackup.state.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

RUNTIME_SETTINGS_KEY = "runtime_settings"


class SettingsPolicyError(RuntimeError):
    pass


@dataclass(slots=True)
class RuntimeSettings:
    retention_limit: int
    incremental_enabled: bool
    cloud_retention_count: int


class RuntimeSettingsService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory
        self._store = KeyValueStore(session_factory)

    def _defaults(self) -> RuntimeSettings:
        return RuntimeSettings(
            retention_limit=self._settings.default_retention_limit,
            incremental_enabled=self._settings.default_incremental_enabled,
            cloud_retention_count=self._settings.default_cloud_retention_count,
        )

    def _from_payload(self, payload: dict[str, Any] | None) -> RuntimeSettings:
        current = self._defaults()
        if not payload:
            return current
        return RuntimeSettings(
            retention_limit=int(payload.get("retention_limit", current.retention_limit)),
            incremental_enabled=bool(payload.get("incremental_enabled", current.incremental_enabled)),
            cloud_retention_count=int(payload.get("cloud_retention_count", current.cloud_retention_count)),
        )

    def get(self) -> RuntimeSettings:
        return self._from_payload(self._store.get(RUNTIME_SETTINGS_KEY))

    def update(
        self,
        *,
        retention_limit: int | None = None,
        incremental_enabled: bool | None = None,
        cloud_retention_count: int | None = None,
    ) -> RuntimeSettings:
        if retention_limit is not None and retention_limit < 0:
            raise ValueError("retention_limit must be >= 0")
        if cloud_retention_count is not None and cloud_retention_count < 0:
            raise ValueError("cloud_retention_count must be >= 0")

        with self._session_factory() as session:
            current = self._from_payload(self._store.read(session, RUNTIME_SETTINGS_KEY))

            if retention_limit is not None:
                current.retention_limit = retention_limit
            if cloud_retention_count is not None:
                current.cloud_retention_count = cloud_retention_count
            if incremental_enabled is not None and incremental_enabled != current.incremental_enabled:
                if incremental_enabled:
                    self._lock_latest_full_backup(session)
                else:
                    self._unlock_all_backups(session)
                current.incremental_enabled = incremental_enabled

            self._store.write(session, RUNTIME_SETTINGS_KEY, asdict(current))
            session.commit()
            return current

    def _lock_latest_full_backup(self, session: Session) -> None:
        latest_full = session.scalar(
            select(BackupRecord)
            .where(
                BackupRecord.job_type == BackupJobType.FULL,
                BackupRecord.status == BackupStatus.COMPLETED,
            )
            .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
            .limit(1)
        )
        if latest_full is None:
            raise SettingsPolicyError("A completed full backup is required before enabling incremental backups")
        latest_full.locked = True
        logger.info("Incremental mode enabled, locked full backup %s as baseline", latest_full.id)

    def _unlock_all_backups(self, session: Session) -> None:
        result = session.execute(update(BackupRecord).where(BackupRecord.locked.is_(True)).values(locked=False))
        logger.info("Incremental mode disabled, unlocked %s backups", int(result.rowcount or 0))


def runtime_settings_to_dict(snapshot: RuntimeSettings) -> dict[str, Any]:
    return asdict(snapshot)
