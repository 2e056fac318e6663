from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from safebackup.core.path_safety import PathSafetyError, resolve_under_root

logger = logging.getLogger(__name__)


class CloudProviderError(RuntimeError):
    pass


@dataclass(slots=True)
class RemoteBackup:
    id: str
    name: str
    size_bytes: int
    created_at: datetime


@runtime_checkable
class CloudProvider(Protocol):
    provider_id: str
    name: str

    def is_connected(self) -> bool: ...

    def upload_backup(self, path: Path, name: str) -> str: ...

    def list_backups(self, limit: int = 100) -> list[RemoteBackup]: ...

    def delete_backup(self, backup_id: str) -> None: ...


class DirectoryProvider:
    """Mirrors backup files into a local or mounted directory."""

    provider_id = "directory"
    name = "Directory mirror"

    def __init__(self, root: Path):
        self._root = root

    def is_connected(self) -> bool:
        return self._root.is_dir()

    def upload_backup(self, path: Path, name: str) -> str:
        try:
            target = resolve_under_root(self._root, name)
        except PathSafetyError as exc:
            raise CloudProviderError(f"Invalid remote name {name!r}: {exc}") from exc
        temp = target.with_name(target.name + ".partial")
        try:
            shutil.copyfile(path, temp)
            temp.replace(target)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise CloudProviderError(f"Upload of {name} failed: {exc}") from exc
        return name

    def list_backups(self, limit: int = 100) -> list[RemoteBackup]:
        if not self.is_connected():
            raise CloudProviderError(f"Mirror directory is not available: {self._root}")
        items: list[RemoteBackup] = []
        for entry in self._root.iterdir():
            if not entry.is_file() or entry.name.endswith(".partial"):
                continue
            info = entry.stat()
            items.append(
                RemoteBackup(
                    id=entry.name,
                    name=entry.name,
                    size_bytes=info.st_size,
                    created_at=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
                )
            )
        items.sort(key=lambda item: (item.created_at, item.name), reverse=True)
        return items[:limit]

    def delete_backup(self, backup_id: str) -> None:
        try:
            target = resolve_under_root(self._root, backup_id)
        except PathSafetyError as exc:
            raise CloudProviderError(f"Invalid remote id {backup_id!r}: {exc}") from exc
        try:
            target.unlink()
        except FileNotFoundError:
            logger.info("Remote backup %s already removed", backup_id)
        except OSError as exc:
            raise CloudProviderError(f"Delete of {backup_id} failed: {exc}") from exc


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, CloudProvider] = {}

    def register(self, provider: CloudProvider) -> None:
        self._providers[provider.provider_id] = provider

    def connected(self) -> list[CloudProvider]:
        return [provider for provider in self._providers.values() if provider.is_connected()]
