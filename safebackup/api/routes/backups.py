from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from safebackup.api.schemas.backups import (
    BackupContentsResponse,
    BackupListResponse,
    BackupResponse,
    BatchResponse,
    RestoreRequest,
    RestoreResponse,
    RunBatchRequest,
    StartBackupRequest,
    StartBackupResponse,
)
from safebackup.backups.service import (
    BackupCatalogService,
    BackupLockedError,
    BackupMemberNotFoundError,
    BackupNotFoundError,
    backup_contents_to_dict,
    backup_snapshot_to_dict,
)
from safebackup.core.config import get_settings
from safebackup.core.path_safety import PathSafetyError
from safebackup.db.models import BackupStatus
from safebackup.db.session import get_session_factory
from safebackup.jobs.service import BackupConflictError, BackupOrchestrator, state_summary_to_dict
from safebackup.jobs.types import BatchResult, BatchStatus, batch_result_to_dict
from safebackup.restore.service import RestoreError, RestoreService
from safebackup.worker.pipeline import build_orchestrator, build_restore_service

router = APIRouter(prefix="/backups", tags=["backups"])


def get_backup_orchestrator() -> BackupOrchestrator:
    return build_orchestrator()


def get_backup_catalog() -> BackupCatalogService:
    return BackupCatalogService(settings=get_settings(), session_factory=get_session_factory())


def get_restore_service() -> RestoreService:
    return build_restore_service()


def _batch_response(result: BatchResult) -> BatchResponse:
    if result.status == BatchStatus.SESSION_EXPIRED:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=result.message)
    return BatchResponse.model_validate(batch_result_to_dict(result))


@router.post("", response_model=StartBackupResponse, status_code=status.HTTP_202_ACCEPTED)
def start_backup(
    request: StartBackupRequest,
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> StartBackupResponse:
    try:
        state = orchestrator.start_backup(
            request.job_type,
            request.session_id,
            exclusions=request.exclusions,
            resume=request.resume,
        )
    except BackupConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    batch = _batch_response(orchestrator.run_batch(resume=True))
    return StartBackupResponse(**state_summary_to_dict(state), batch=batch)


@router.post("/batch", response_model=BatchResponse)
def run_batch(
    request: RunBatchRequest,
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> BatchResponse:
    return _batch_response(orchestrator.run_batch(resume=request.resume))


@router.get("", response_model=BackupListResponse)
def list_backups(
    limit: int = Query(default=50, ge=1, le=500),
    backup_status: BackupStatus | None = Query(default=None, alias="status"),
    catalog: BackupCatalogService = Depends(get_backup_catalog),
) -> BackupListResponse:
    items = catalog.list_backups(limit=limit, status=backup_status)
    return BackupListResponse(items=[BackupResponse.model_validate(backup_snapshot_to_dict(item)) for item in items])


@router.get("/{backup_id}", response_model=BackupResponse)
def get_backup(backup_id: int, catalog: BackupCatalogService = Depends(get_backup_catalog)) -> BackupResponse:
    try:
        snapshot = catalog.get_backup(backup_id)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BackupResponse.model_validate(backup_snapshot_to_dict(snapshot))


@router.delete("/{backup_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_backup(backup_id: int, catalog: BackupCatalogService = Depends(get_backup_catalog)) -> None:
    try:
        catalog.delete_backup(backup_id)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BackupLockedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.get("/{backup_id}/contents", response_model=BackupContentsResponse)
def get_backup_contents(
    backup_id: int,
    catalog: BackupCatalogService = Depends(get_backup_catalog),
) -> BackupContentsResponse:
    try:
        contents = catalog.list_contents(backup_id)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return BackupContentsResponse.model_validate(backup_contents_to_dict(contents))


@router.post("/{backup_id}/restore", response_model=RestoreResponse)
def restore_backup(
    backup_id: int,
    request: RestoreRequest,
    service: RestoreService = Depends(get_restore_service),
) -> RestoreResponse:
    try:
        report = service.restore_backup(backup_id, items=request.items)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RestoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Restore failed", "failures": exc.failures},
        ) from exc
    return RestoreResponse(
        backup_id=report.backup_id,
        chain=report.chain,
        files_restored=report.files_restored,
        statements_executed=report.statements_executed,
        database_restored=report.database_restored,
    )


@router.get("/{backup_id}/download")
def download_backup(
    backup_id: int,
    path: str | None = Query(default=None, max_length=4096),
    catalog: BackupCatalogService = Depends(get_backup_catalog),
) -> FileResponse:
    try:
        download = catalog.prepare_download(backup_id, path)
    except (BackupNotFoundError, BackupMemberNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return FileResponse(path=download.path, media_type=download.media_type, filename=download.filename)
