"""Health check and organization sync configuration endpoints."""

import logging
from typing import Callable
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.core.database import get_db
from rostersync.core.errors import NotFoundError
from rostersync.schemas.responses import (
    ConfigListResponse,
    ConfigRequest,
    ConfigResponse,
    ConfigSavedResponse,
    ConfigSettingsRequest,
    ConnectionTestRequest,
    ConnectionTestResponse,
    MessageResponse,
)
from rostersync.services.credentials import CredentialStore
from rostersync.services.registry import RegistryAPI, create_registry_client

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

health_router = APIRouter(prefix="/api", tags=["health"])
router = APIRouter(prefix="/api/registry", tags=["registry-config"])


class HealthResponse(BaseModel):
    status: str
    version: str


def get_credential_store(db: AsyncSession = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def get_client_factory() -> Callable[[str, str], RegistryAPI]:
    return create_registry_client


@health_router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=VERSION)


@router.post("/config", response_model=ConfigSavedResponse)
async def configure(
    request: ConfigRequest,
    store: CredentialStore = Depends(get_credential_store),
) -> ConfigSavedResponse:
    """Create or replace an organization's registry credentials and sync settings."""
    config_id = await store.save_config(
        organization_id=request.organization_id,
        organization_name=request.organization_name,
        username=request.username,
        password=request.password,
        sync_enabled=request.sync_enabled,
        auto_sync_frequency=request.auto_sync_frequency,
    )
    return ConfigSavedResponse(config_id=config_id)


@router.get("/config", response_model=ConfigListResponse)
async def list_configs(store: CredentialStore = Depends(get_credential_store)) -> ConfigListResponse:
    configs = await store.get_all_configs()
    return ConfigListResponse(configs=configs)


@router.get("/config/{organization_id}", response_model=ConfigResponse)
async def get_config(
    organization_id: int,
    store: CredentialStore = Depends(get_credential_store),
) -> ConfigResponse:
    config = await store.require_config(organization_id)
    return ConfigResponse(config=config)


@router.patch("/config/{organization_id}", response_model=ConfigResponse)
async def update_config_settings(
    organization_id: int,
    request: ConfigSettingsRequest,
    store: CredentialStore = Depends(get_credential_store),
) -> ConfigResponse:
    """Change sync flags without re-entering credentials."""
    config = await store.update_settings(
        organization_id,
        sync_enabled=request.sync_enabled,
        auto_sync_frequency=request.auto_sync_frequency,
    )
    return ConfigResponse(config=config)


@router.delete("/config/{organization_id}", response_model=MessageResponse)
async def delete_config(
    organization_id: int,
    store: CredentialStore = Depends(get_credential_store),
) -> MessageResponse:
    """Delete a config. Its sync history is kept."""
    config = await store.get_config(organization_id)
    if config is None or not await store.delete_config(config.id):
        raise NotFoundError(organization_id, resource="Sync configuration for organization")
    return MessageResponse(message=f"Sync configuration for organization {organization_id} deleted")


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    request: ConnectionTestRequest,
    client_factory: Callable[[str, str], RegistryAPI] = Depends(get_client_factory),
) -> ConnectionTestResponse:
    """Check credentials against the registry without storing them."""
    result = await CredentialStore.test_connection(request.username, request.password, client_factory)
    return ConnectionTestResponse(**result)
