from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from safebackup.api.schemas.settings import SettingsResponse, UpdateSettingsRequest
from safebackup.core.config import get_settings
from safebackup.db.session import get_session_factory
from safebackup.state.settings_store import (
    RuntimeSettingsService,
    SettingsPolicyError,
    runtime_settings_to_dict,
)

router = APIRouter(prefix="/settings", tags=["settings"])


def get_runtime_settings_service() -> RuntimeSettingsService:
    return RuntimeSettingsService(settings=get_settings(), session_factory=get_session_factory())


@router.get("", response_model=SettingsResponse)
def get_runtime_settings(service: RuntimeSettingsService = Depends(get_runtime_settings_service)) -> SettingsResponse:
    return SettingsResponse.model_validate(runtime_settings_to_dict(service.get()))


@router.post("", response_model=SettingsResponse)
def update_runtime_settings(
    request: UpdateSettingsRequest,
    service: RuntimeSettingsService = Depends(get_runtime_settings_service),
) -> SettingsResponse:
    try:
        updated = service.update(
            retention_limit=request.retention_limit,
            incremental_enabled=request.incremental_enabled,
            cloud_retention_count=request.cloud_retention_count,
        )
    except SettingsPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return SettingsResponse.model_validate(runtime_settings_to_dict(updated))
