from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UpdateSettingsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retention_limit: int | None = Field(default=None, ge=0)
    incremental_enabled: bool | None = None
    cloud_retention_count: int | None = Field(default=None, ge=0)


class SettingsResponse(BaseModel):
    retention_limit: int
    incremental_enabled: bool
    cloud_retention_count: int
