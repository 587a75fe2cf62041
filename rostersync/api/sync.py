"""Sync API endpoints: starting runs, history, conflicts and mappings."""

import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.core.database import async_session_maker, get_db
from rostersync.schemas.responses import (
    ConflictListResponse,
    ConflictResponse,
    MappingListResponse,
    ResolveConflictRequest,
    SyncLogsResponse,
    SyncRunResponse,
    SyncStatusResponse,
)
from rostersync.services.history import SyncHistory
from rostersync.services.reconciler import resolve_conflict as resolve_sync_conflict
from rostersync.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/registry", tags=["registry-sync"])


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(async_session_maker)


def get_history(db: AsyncSession = Depends(get_db)) -> SyncHistory:
    return SyncHistory(db)


@router.post("/sync/{sync_type}/{organization_id}", response_model=SyncRunResponse)
async def start_sync(
    sync_type: str,
    organization_id: int,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncRunResponse:
    """
    Run a sync and return its terminal summary.

    Registry failures end in a failed run rather than an HTTP error. A sync
    already running for the organization answers 409.
    """
    run = await orchestrator.start_sync(sync_type, organization_id)
    return SyncRunResponse(run=run)


@router.get("/status/{organization_id}", response_model=SyncStatusResponse)
async def get_status(
    organization_id: int,
    history: SyncHistory = Depends(get_history),
) -> SyncStatusResponse:
    status = await history.get_status(organization_id)
    return SyncStatusResponse(**status)


@router.get("/logs/{organization_id}", response_model=SyncLogsResponse)
async def get_logs(
    organization_id: int,
    limit: int = 20,
    offset: int = 0,
    history: SyncHistory = Depends(get_history),
) -> SyncLogsResponse:
    page = await history.get_logs(organization_id, limit=limit, offset=offset)
    return SyncLogsResponse(**page)


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_log_detail(
    run_id: int,
    history: SyncHistory = Depends(get_history),
) -> SyncRunResponse:
    run = await history.get_log_detail(run_id)
    return SyncRunResponse(run=run)


@router.get("/conflicts/{organization_id}", response_model=ConflictListResponse)
async def list_conflicts(
    organization_id: int,
    resolution: str | None = "pending",
    history: SyncHistory = Depends(get_history),
) -> ConflictListResponse:
    """List conflicts; pending ones unless `resolution` says otherwise ("all" for every conflict)."""
    conflicts = await history.list_conflicts(
        organization_id,
        resolution=None if resolution == "all" else resolution,
    )
    return ConflictListResponse(conflicts=conflicts)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: int,
    request: ResolveConflictRequest,
    db: AsyncSession = Depends(get_db),
) -> ConflictResponse:
    conflict = await resolve_sync_conflict(db, conflict_id, request.resolution, request.resolved_by)
    return ConflictResponse(conflict=conflict)


@router.get("/mappings/{organization_id}", response_model=MappingListResponse)
async def list_mappings(
    organization_id: int,
    entity_type: str | None = None,
    history: SyncHistory = Depends(get_history),
) -> MappingListResponse:
    mappings = await history.list_mappings(organization_id, entity_type=entity_type)
    return MappingListResponse(mappings=mappings)
