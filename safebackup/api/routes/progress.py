from __future__ import annotations

from fastapi import APIRouter, Depends

from safebackup.api.routes.backups import get_backup_orchestrator
from safebackup.api.schemas.backups import CancelResponse, ProgressResponse
from safebackup.jobs.service import BackupOrchestrator
from safebackup.jobs.types import progress_to_dict

router = APIRouter(prefix="/backup", tags=["progress"])


@router.get("/progress", response_model=ProgressResponse)
def get_progress(orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator)) -> ProgressResponse:
    return ProgressResponse.model_validate(progress_to_dict(orchestrator.get_progress()))


@router.post("/cancel", response_model=CancelResponse)
def cancel_backup(orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator)) -> CancelResponse:
    cancelled = orchestrator.cancel_backup()
    return CancelResponse(status="cancelled" if cancelled else "no_active_job")
