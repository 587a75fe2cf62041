"""Pydantic request and response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any


class ErrorDetail(BaseModel):
    """One invalid field."""
    field: str
    message: str


class ErrorResponse(BaseModel):
    """Envelope for every failed request."""
    success: bool = False
    message: str
    errors: list[ErrorDetail] = []


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ── Configuration ────────────────────────────────────────────────────────────

class ConfigRequest(BaseModel):
    """Credentials and sync settings for one organization."""
    organization_id: int
    organization_name: str | None = None
    username: str
    password: str
    sync_enabled: bool = False
    auto_sync_frequency: str = "manual"


class ConfigSettingsRequest(BaseModel):
    sync_enabled: bool | None = None
    auto_sync_frequency: str | None = None


class ConnectionTestRequest(BaseModel):
    username: str
    password: str


class ConfigOut(BaseModel):
    """A stored config. The encrypted password is never exposed."""
    id: int
    organization_id: int
    organization_name: str | None
    api_username: str
    sync_enabled: bool
    auto_sync_frequency: str
    sync_in_progress: bool
    last_sync_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class ConfigSavedResponse(BaseModel):
    success: bool = True
    config_id: int


class ConfigResponse(BaseModel):
    success: bool = True
    config: ConfigOut


class ConfigListResponse(BaseModel):
    success: bool = True
    configs: list[ConfigOut]


class ConnectionTestResponse(BaseModel):
    success: bool
    error: str | None = None


# ── Sync runs ────────────────────────────────────────────────────────────────

class SyncRunOut(BaseModel):
    """Terminal (or in-flight) summary of one sync run."""
    id: int
    config_id: int
    organization_id: int
    sync_type: str
    status: str
    records_fetched: int
    records_created: int
    records_updated: int
    records_skipped: int
    records_conflicted: int
    errors: list[dict[str, Any]] | None
    details: dict[str, Any] | None
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None

    class Config:
        from_attributes = True


class SyncRunResponse(BaseModel):
    success: bool = True
    run: SyncRunOut


class SyncLogsResponse(BaseModel):
    success: bool = True
    runs: list[SyncRunOut]
    total: int
    limit: int
    offset: int


class SyncStatusResponse(BaseModel):
    success: bool = True
    config: ConfigOut
    last_run: SyncRunOut | None
    pending_conflicts: int


# ── Conflicts and mappings ───────────────────────────────────────────────────

class ConflictOut(BaseModel):
    id: int
    config_id: int
    organization_id: int
    entity_type: str
    local_id: int
    remote_id: str
    conflict_type: str
    local_data: dict[str, Any] | None
    remote_data: dict[str, Any] | None
    resolution: str
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class ConflictListResponse(BaseModel):
    success: bool = True
    conflicts: list[ConflictOut]


class ResolveConflictRequest(BaseModel):
    resolution: str = Field(..., description="local_wins or remote_wins")
    resolved_by: str | None = None


class ConflictResponse(BaseModel):
    success: bool = True
    conflict: ConflictOut


class MappingOut(BaseModel):
    id: int
    organization_id: int
    entity_type: str
    local_id: int
    remote_id: str
    remote_name: str | None
    created_at: datetime | None
    last_synced_at: datetime | None

    class Config:
        from_attributes = True


class MappingListResponse(BaseModel):
    success: bool = True
    mappings: list[MappingOut]
