"""Read-only queries over sync runs, conflicts and mappings."""

from typing import Any, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.core.errors import NotFoundError, ValidationError
from rostersync.models.database import EntityMapping
from rostersync.models.sync_log import SyncConflict, SyncRun
from rostersync.services.credentials import CredentialStore

MAX_LOG_LIMIT = 100
CONFLICT_RESOLUTIONS = ("pending", "local_wins", "remote_wins")


class SyncHistory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_status(self, organization_id: int) -> dict[str, Any]:
        """Config, most recent run and number of pending conflicts for an organization."""
        config = await CredentialStore(self.session).require_config(organization_id)

        result = await self.session.execute(
            select(SyncRun)
            .where(SyncRun.organization_id == organization_id)
            .order_by(desc(SyncRun.started_at), desc(SyncRun.id))
            .limit(1)
        )
        last_run = result.scalar_one_or_none()

        pending = await self.session.scalar(
            select(func.count(SyncConflict.id)).where(
                SyncConflict.organization_id == organization_id,
                SyncConflict.resolution == "pending",
            )
        )

        return {
            "config": config,
            "last_run": last_run,
            "pending_conflicts": pending or 0,
        }

    async def get_logs(self, organization_id: int, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        """
        Page through an organization's sync runs, most recent first.

        Raises:
            ValidationError: limit outside 1..100 or negative offset.
        """
        errors = []
        if limit < 1 or limit > MAX_LOG_LIMIT:
            errors.append({"field": "limit", "message": f"limit must be between 1 and {MAX_LOG_LIMIT}"})
        if offset < 0:
            errors.append({"field": "offset", "message": "offset must not be negative"})
        if errors:
            raise ValidationError("Invalid pagination parameters", errors=errors)

        total = await self.session.scalar(
            select(func.count(SyncRun.id)).where(SyncRun.organization_id == organization_id)
        )
        result = await self.session.execute(
            select(SyncRun)
            .where(SyncRun.organization_id == organization_id)
            .order_by(desc(SyncRun.started_at), desc(SyncRun.id))
            .limit(limit)
            .offset(offset)
        )
        return {
            "runs": list(result.scalars().all()),
            "total": total or 0,
            "limit": limit,
            "offset": offset,
        }

    async def get_log_detail(self, run_id: int) -> SyncRun:
        run = await self.session.get(SyncRun, run_id)
        if run is None:
            raise NotFoundError(run_id, resource="Sync run")
        return run

    async def list_conflicts(self, organization_id: int, resolution: Optional[str] = "pending") -> list[SyncConflict]:
        """Conflicts for an organization, oldest first. `resolution=None` returns all of them."""
        if resolution is not None and resolution not in CONFLICT_RESOLUTIONS:
            raise ValidationError(
                "Invalid resolution filter",
                errors=[{"field": "resolution", "message": f"must be one of: {', '.join(CONFLICT_RESOLUTIONS)}"}],
            )
        query = select(SyncConflict).where(SyncConflict.organization_id == organization_id)
        if resolution is not None:
            query = query.where(SyncConflict.resolution == resolution)
        result = await self.session.execute(query.order_by(SyncConflict.created_at, SyncConflict.id))
        return list(result.scalars().all())

    async def list_mappings(self, organization_id: int, entity_type: Optional[str] = None) -> list[EntityMapping]:
        query = select(EntityMapping).where(EntityMapping.organization_id == organization_id)
        if entity_type is not None:
            query = query.where(EntityMapping.entity_type == entity_type)
        result = await self.session.execute(query.order_by(EntityMapping.entity_type, EntityMapping.id))
        return list(result.scalars().all())
