from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from safebackup.cloud.providers import CloudProvider, CloudProviderError, ProviderRegistry
from safebackup.core.config import Settings
from safebackup.db.models import BackupRecord
from safebackup.state.settings_store import RuntimeSettingsService

logger = logging.getLogger(__name__)

REMOTE_NAME_SEPARATOR = "_"
REMOTE_LIST_LIMIT = 10_000


def remote_name(output_dir: Path, file_path: Path) -> str:
    return f"{output_dir.name}{REMOTE_NAME_SEPARATOR}{file_path.name}"


def remote_group(name: str) -> str:
    return name.split(REMOTE_NAME_SEPARATOR, 1)[0]


class CloudSyncService:
    """Pushes completed backups to every connected provider.

    ``on_backup_completed`` returns immediately; uploads and remote retention
    run on the executor and their failures are only logged.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        registry: ProviderRegistry,
        executor: Executor | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="safebackup-cloud")
        self._runtime = RuntimeSettingsService(settings, session_factory)

    def on_backup_completed(self, backup_id: int, output_dir: Path) -> Future[dict[str, list[str]]] | None:
        if not self._registry.connected():
            return None
        future = self._executor.submit(self.sync_backup, backup_id, output_dir)
        future.add_done_callback(self._log_failure)
        return future

    def _log_failure(self, future: Future[dict[str, list[str]]]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Cloud sync failed: %s", exc, exc_info=exc)

    def sync_backup(self, backup_id: int, output_dir: Path) -> dict[str, list[str]]:
        files = sorted(path for path in output_dir.iterdir() if path.is_file())
        uploaded: dict[str, list[str]] = {}
        for provider in self._registry.connected():
            try:
                uploaded[provider.provider_id] = [
                    provider.upload_backup(path, remote_name(output_dir, path)) for path in files
                ]
            except CloudProviderError as exc:
                logger.warning("Upload of backup %s to %s failed: %s", backup_id, provider.name, exc)
                continue
            logger.info("Uploaded backup %s to %s (%s files)", backup_id, provider.name, len(files))
            try:
                self.enforce_remote_retention(provider)
            except CloudProviderError as exc:
                logger.warning("Remote retention on %s failed: %s", provider.name, exc)

        if uploaded:
            self._mark_synced(backup_id)
        return uploaded

    def enforce_remote_retention(self, provider: CloudProvider) -> list[str]:
        keep = self._runtime.get().cloud_retention_count
        if keep <= 0:
            return []

        newest: dict[str, datetime] = {}
        members: dict[str, list[str]] = {}
        for item in provider.list_backups(limit=REMOTE_LIST_LIMIT):
            group = remote_group(item.name)
            members.setdefault(group, []).append(item.id)
            if group not in newest or item.created_at > newest[group]:
                newest[group] = item.created_at

        ordered = sorted(newest, key=lambda group: (newest[group], group), reverse=True)
        deleted: list[str] = []
        for group in ordered[keep:]:
            for remote_id in members[group]:
                provider.delete_backup(remote_id)
                deleted.append(remote_id)
            logger.info("Pruned remote backup %s from %s", group, provider.name)
        return deleted

    def _mark_synced(self, backup_id: int) -> None:
        with self._session_factory() as session:
            record = session.get(BackupRecord, backup_id)
            if record is None:
                return
            record.storage_location = "local+cloud"
            session.commit()
