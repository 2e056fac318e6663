from __future__ import annotations

from fastapi import APIRouter, Depends

from safebackup.api.schemas.backups import BackupStatsResponse
from safebackup.backups.service import BackupCatalogService, backup_stats_to_dict
from safebackup.core.config import get_settings
from safebackup.db.session import get_session_factory

router = APIRouter(tags=["stats"])


def get_backup_catalog() -> BackupCatalogService:
    return BackupCatalogService(settings=get_settings(), session_factory=get_session_factory())


@router.get("/stats", response_model=BackupStatsResponse)
def get_backup_stats(catalog: BackupCatalogService = Depends(get_backup_catalog)) -> BackupStatsResponse:
    return BackupStatsResponse.model_validate(backup_stats_to_dict(catalog.get_stats()))
