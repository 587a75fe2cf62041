"""
Entity reconciliation - matches registry records to local records.

For each remote record:
  1. Look up its EntityMapping by (organization, entity type, remote id).
  2. Mapped: diff the parsed remote attributes against the local record and
     update it when they differ (updated) or leave it alone (skipped).
  3. Unmapped: if a pending conflict already exists for the remote id, stop.
     Otherwise look for a local record with the same normalized name. A hit
     is never linked automatically; a SyncConflict is recorded instead.
     No hit creates the local record and its mapping (created).

Each outcome is committed on its own so a failure on one record cannot undo
the work done for the records before it.
"""

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.core.database import utcnow
from rostersync.core.errors import NotFoundError, ValidationError
from rostersync.models.database import EntityMapping, Player, Season, Team
from rostersync.models.sync_log import SyncConflict
from rostersync.services import parsers

logger = logging.getLogger(__name__)

RESOLUTIONS = ("local_wins", "remote_wins")


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class EntityKind:
    """How one entity type is parsed, compared and named."""

    entity_type: str
    model: type
    fields: tuple[str, ...]
    parse: Callable[[dict], dict[str, Any]]
    display_name: Callable[[dict], str]


def _player_name(attrs: dict) -> str:
    return f"{attrs.get('first_name', '')} {attrs.get('last_name', '')}".strip()


ENTITY_KINDS: dict[str, EntityKind] = {
    "team": EntityKind(
        entity_type="team",
        model=Team,
        fields=("name",),
        parse=parsers.parse_group,
        display_name=lambda attrs: attrs.get("name", ""),
    ),
    "player": EntityKind(
        entity_type="player",
        model=Player,
        fields=("first_name", "last_name", "jersey_number", "team_id"),
        parse=parsers.parse_contact,
        display_name=_player_name,
    ),
    "season": EntityKind(
        entity_type="season",
        model=Season,
        fields=("name", "start_date", "end_date", "is_current"),
        parse=parsers.parse_season,
        display_name=lambda attrs: attrs.get("name", ""),
    ),
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    remote_id: str
    local_id: Optional[int] = None
    conflict_id: Optional[int] = None


def snapshot(record: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    """JSON-serializable copy of a local record's synced fields."""
    data: dict[str, Any] = {"id": record.id}
    for name in fields:
        value = getattr(record, name, None)
        data[name] = value.isoformat() if isinstance(value, date) else value
    return data


def _get_kind(entity_type: str) -> EntityKind:
    try:
        return ENTITY_KINDS[entity_type]
    except KeyError:
        raise ValidationError(
            f"Unknown entity type: {entity_type}",
            errors=[{"field": "entity_type", "message": f"must be one of: {', '.join(ENTITY_KINDS)}"}],
        )


async def find_mapping(
    session: AsyncSession,
    organization_id: int,
    entity_type: str,
    remote_id: str,
) -> Optional[EntityMapping]:
    result = await session.execute(
        select(EntityMapping).where(
            EntityMapping.organization_id == organization_id,
            EntityMapping.entity_type == entity_type,
            EntityMapping.remote_id == remote_id,
        )
    )
    return result.scalar_one_or_none()


class EntityReconciler:
    """Reconciles remote records for one organization and config."""

    def __init__(self, session: AsyncSession, organization_id: int, config_id: int):
        self.session = session
        self.organization_id = organization_id
        self.config_id = config_id

    async def reconcile(
        self,
        entity_type: str,
        remote: dict,
        extra: Optional[dict[str, Any]] = None,
    ) -> ReconcileResult:
        """
        Reconcile one remote record.

        Args:
            entity_type: "team", "player" or "season".
            remote: The raw registry record.
            extra: Locally derived attributes to apply alongside the parsed
                ones (e.g. the player's local team_id).
        """
        kind = _get_kind(entity_type)
        rid = parsers.remote_id(remote)
        attrs = kind.parse(remote)
        if extra:
            attrs.update(extra)
        now = utcnow()

        mapping = await find_mapping(self.session, self.organization_id, entity_type, rid)
        if mapping is not None:
            return await self._reconcile_mapped(kind, mapping, attrs, now)

        pending = await self._pending_conflict(entity_type, rid)
        if pending is not None:
            logger.debug(f"{entity_type} {rid} has pending conflict {pending.id}, not linking")
            return ReconcileResult(Outcome.CONFLICT, rid, local_id=pending.local_id, conflict_id=pending.id)

        candidate = await self._find_duplicate(kind, attrs)
        if candidate is not None:
            conflict = SyncConflict(
                config_id=self.config_id,
                organization_id=self.organization_id,
                entity_type=entity_type,
                local_id=candidate.id,
                remote_id=rid,
                conflict_type="duplicate",
                local_data=snapshot(candidate, kind.fields),
                remote_data=remote,
                resolution="pending",
            )
            self.session.add(conflict)
            await self.session.commit()
            logger.info(
                f"Possible duplicate {entity_type} '{kind.display_name(attrs)}': "
                f"remote {rid} vs local {candidate.id} (conflict {conflict.id})"
            )
            return ReconcileResult(Outcome.CONFLICT, rid, local_id=candidate.id, conflict_id=conflict.id)

        local = await self._create_local(kind, attrs, now)
        self.session.add(EntityMapping(
            organization_id=self.organization_id,
            entity_type=entity_type,
            local_id=local.id,
            remote_id=rid,
            remote_name=kind.display_name(attrs),
            last_synced_at=now,
        ))
        await self.session.commit()
        return ReconcileResult(Outcome.CREATED, rid, local_id=local.id)

    async def _reconcile_mapped(
        self,
        kind: EntityKind,
        mapping: EntityMapping,
        attrs: dict[str, Any],
        now,
    ) -> ReconcileResult:
        local = await self.session.get(kind.model, mapping.local_id)
        if local is None:
            # Local record removed outside the sync: recreate it and repoint the mapping
            local = await self._create_local(kind, attrs, now)
            mapping.local_id = local.id
            mapping.remote_name = kind.display_name(attrs)
            mapping.last_synced_at = now
            await self.session.commit()
            logger.info(f"Recreated {kind.entity_type} for remote {mapping.remote_id} (local {local.id})")
            return ReconcileResult(Outcome.CREATED, mapping.remote_id, local_id=local.id)

        changes = {
            name: value
            for name, value in attrs.items()
            if name in kind.fields and getattr(local, name) != value
        }
        if not changes:
            return ReconcileResult(Outcome.SKIPPED, mapping.remote_id, local_id=local.id)

        for name, value in changes.items():
            setattr(local, name, value)
        local.last_synced_at = now
        mapping.remote_name = kind.display_name(attrs)
        mapping.last_synced_at = now
        await self.session.commit()
        logger.debug(f"Updated {kind.entity_type} {local.id}: {sorted(changes)}")
        return ReconcileResult(Outcome.UPDATED, mapping.remote_id, local_id=local.id)

    async def _create_local(self, kind: EntityKind, attrs: dict[str, Any], now):
        values = {name: value for name, value in attrs.items() if name in kind.fields}
        local = kind.model(
            organization_id=self.organization_id,
            sync_source="registry",
            last_synced_at=now,
            **values,
        )
        self.session.add(local)
        await self.session.flush()
        return local

    async def _pending_conflict(self, entity_type: str, remote_id: str) -> Optional[SyncConflict]:
        result = await self.session.execute(
            select(SyncConflict).where(
                SyncConflict.organization_id == self.organization_id,
                SyncConflict.entity_type == entity_type,
                SyncConflict.remote_id == remote_id,
                SyncConflict.resolution == "pending",
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_duplicate(self, kind: EntityKind, attrs: dict[str, Any]):
        """
        Find a local record that plausibly is the same entity.

        Candidates share the normalized display name. Unmapped records are
        preferred over records already linked to another remote id.
        """
        key = parsers.normalize_name(kind.display_name(attrs))
        if not key:
            return None

        result = await self.session.execute(
            select(kind.model).where(kind.model.organization_id == self.organization_id)
        )
        candidates = [
            record for record in result.scalars().all()
            if parsers.normalize_name(kind.display_name(snapshot(record, kind.fields))) == key
        ]
        if not candidates:
            return None

        mapped = await self.session.execute(
            select(EntityMapping.local_id).where(
                EntityMapping.organization_id == self.organization_id,
                EntityMapping.entity_type == kind.entity_type,
                EntityMapping.local_id.in_([c.id for c in candidates]),
            )
        )
        mapped_ids = set(mapped.scalars().all())
        unmapped = [c for c in candidates if c.id not in mapped_ids]
        return (unmapped or candidates)[0]


async def resolve_conflict(
    session: AsyncSession,
    conflict_id: int,
    resolution: str,
    resolved_by: Optional[str] = None,
) -> SyncConflict:
    """
    Resolve a pending conflict and link the remote record.

    `remote_wins` overwrites the local record with the remote snapshot;
    `local_wins` keeps the local values. Both create (or repoint) the
    mapping so later syncs treat the remote record as known.

    Raises:
        NotFoundError: no such conflict.
        ValidationError: unknown resolution, conflict already resolved, or
            `local_wins` requested for a local record that no longer exists.
    """
    if resolution not in RESOLUTIONS:
        raise ValidationError(
            "Invalid resolution",
            errors=[{"field": "resolution", "message": f"must be one of: {', '.join(RESOLUTIONS)}"}],
        )

    conflict = await session.get(SyncConflict, conflict_id)
    if conflict is None:
        raise NotFoundError(conflict_id, resource="Conflict")
    if conflict.resolution != "pending":
        raise ValidationError(
            f"Conflict {conflict_id} is already resolved ({conflict.resolution})",
            errors=[{"field": "resolution", "message": "conflict is not pending"}],
        )

    kind = _get_kind(conflict.entity_type)
    now = utcnow()
    remote_attrs = kind.parse(conflict.remote_data or {})
    local = await session.get(kind.model, conflict.local_id)

    if local is None:
        if resolution == "local_wins":
            raise ValidationError(
                f"Local {conflict.entity_type} {conflict.local_id} no longer exists; only remote_wins can resolve this conflict",
                errors=[{"field": "resolution", "message": "local record missing"}],
            )
        local = kind.model(
            organization_id=conflict.organization_id,
            sync_source="registry",
            last_synced_at=now,
            **{k: v for k, v in remote_attrs.items() if k in kind.fields},
        )
        session.add(local)
        await session.flush()
    elif resolution == "remote_wins":
        for name, value in remote_attrs.items():
            if name in kind.fields:
                setattr(local, name, value)
        local.sync_source = "registry"
        local.last_synced_at = now

    mapping = await find_mapping(session, conflict.organization_id, conflict.entity_type, conflict.remote_id)
    if mapping is None:
        session.add(EntityMapping(
            organization_id=conflict.organization_id,
            entity_type=conflict.entity_type,
            local_id=local.id,
            remote_id=conflict.remote_id,
            remote_name=kind.display_name(remote_attrs),
            last_synced_at=now,
        ))
    else:
        mapping.local_id = local.id
        mapping.last_synced_at = now

    conflict.resolution = resolution
    conflict.resolved_by = resolved_by
    conflict.resolved_at = now
    await session.commit()

    logger.info(f"Conflict {conflict_id} resolved as {resolution}: remote {conflict.remote_id} -> local {local.id}")
    return conflict
