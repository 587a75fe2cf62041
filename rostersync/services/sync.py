"""
Sync orchestration - one run per entity type, or a composed full sync.

Flow for a single run:
  1. Claim the config's sync_in_progress flag with a conditional UPDATE.
     A held flag fails immediately with ConflictError; nothing is written.
  2. Insert a SyncRun (status="running").
  3. Fetch remote records and hand each one to the EntityReconciler.
     Per-record failures are appended to the run's error list; failures to
     fetch the remote list abort the phase.
  4. Finalize the SyncRun exactly once (success / partial / failed).
  5. Release the flag. This happens on every exit path, including
     exceptions and the per-run timeout.

A full sync runs teams -> players -> seasons under a single guard and a
single SyncRun. Players come after teams because players are attached to
the local team their registry group is mapped to.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.config import get_settings
from rostersync.core.crypto import CredentialCipher
from rostersync.core.database import utcnow
from rostersync.core.errors import (
    ErrorKind,
    NetworkError,
    NotFoundError,
    RegistryError,
    RemoteRequestError,
    ValidationError,
)
from rostersync.models.database import EntityMapping, OrganizationSyncConfig, Season
from rostersync.models.sync_log import SyncRun
from rostersync.services.credentials import CredentialStore
from rostersync.services.reconciler import EntityReconciler, Outcome, ReconcileResult
from rostersync.services.registry import RegistryAPI, create_registry_client

logger = logging.getLogger(__name__)

SYNC_TYPES = ("players", "teams", "seasons", "full")
FULL_SYNC_PHASES = ("teams", "players", "seasons")


@dataclass
class PhaseResult:
    """Counts and errors accumulated by one sync phase."""

    sync_type: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: list[dict] = field(default_factory=list)
    aborted: bool = False

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped + self.conflicts

    @property
    def status(self) -> str:
        if self.aborted or self.errors:
            return "partial" if self.succeeded else "failed"
        return "success"

    def record(self, result: ReconcileResult) -> None:
        if result.outcome is Outcome.CREATED:
            self.created += 1
        elif result.outcome is Outcome.UPDATED:
            self.updated += 1
        elif result.outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.conflicts += 1

    def record_error(self, entity: str, remote_id: Any, exc: Exception) -> None:
        self.errors.append({
            "entity": entity,
            "remote_id": None if remote_id is None else str(remote_id),
            "kind": _error_kind(exc).value,
            "error": str(exc) or exc.__class__.__name__,
        })

    def abort(self, exc: Exception) -> None:
        self.aborted = True
        self.record_error(self.sync_type, None, exc)

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_type": self.sync_type,
            "status": self.status,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
        }


def _error_kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, RegistryError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ValueError):
        return ErrorKind.VALIDATION
    return ErrorKind.INTERNAL


def _overall_status(phases: list[PhaseResult]) -> str:
    if not phases:
        return "failed"
    statuses = {phase.status for phase in phases}
    if statuses == {"success"}:
        return "success"
    if statuses == {"failed"}:
        return "failed"
    return "partial"


@dataclass
class _RunContext:
    config_id: int
    organization_id: int
    client: RegistryAPI


class SyncOrchestrator:
    """Runs guarded, logged sync operations for organization configs."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        client_factory: Callable[[str, str], RegistryAPI] = create_registry_client,
        cipher: Optional[CredentialCipher] = None,
        run_timeout: Optional[float] = None,
    ):
        """
        Args:
            session_maker: Factory for AsyncSessions; each stage of a run
                uses its own session so the guard release never depends on
                the state of a failed transaction.
            client_factory: Builds a registry client from (username, password).
                Tests pass a factory returning an in-memory fake.
            cipher: Credential cipher; defaults to the configured key.
            run_timeout: Seconds before a run is abandoned. Defaults to the
                `sync_run_timeout` setting; 0 disables the timeout.
        """
        self.session_maker = session_maker
        self.client_factory = client_factory
        self._cipher = cipher
        self.run_timeout = get_settings().sync_run_timeout if run_timeout is None else run_timeout

    # ── Public operations ────────────────────────────────────────────────────

    async def start_sync(self, sync_type: str, organization_id: int) -> SyncRun:
        """Run a sync of the given type for an organization's config."""
        if sync_type not in SYNC_TYPES:
            raise ValidationError(
                f"Unknown sync type: {sync_type}",
                errors=[{"field": "sync_type", "message": f"must be one of: {', '.join(SYNC_TYPES)}"}],
            )
        async with self.session_maker() as session:
            config = await CredentialStore(session, self._cipher).require_config(organization_id)
            config_id = config.id
        return await self._run(config_id, sync_type)

    async def sync_teams(self, config_id: int) -> SyncRun:
        return await self._run(config_id, "teams")

    async def sync_players(self, config_id: int) -> SyncRun:
        return await self._run(config_id, "players")

    async def sync_seasons(self, config_id: int) -> SyncRun:
        return await self._run(config_id, "seasons")

    async def sync_full(self, config_id: int) -> SyncRun:
        return await self._run(config_id, "full")

    # ── Run lifecycle ────────────────────────────────────────────────────────

    async def _run(self, config_id: int, sync_type: str) -> SyncRun:
        async with self.session_maker() as session:
            await CredentialStore(session, self._cipher).claim_sync(config_id)

        run_id: Optional[int] = None
        phases: list[PhaseResult] = []
        started_at = utcnow()
        last_sync_at = None

        try:
            try:
                async with self.session_maker() as session:
                    config = await session.get(OrganizationSyncConfig, config_id)
                    if config is None:
                        # Deleted after the claim
                        raise NotFoundError(config_id, resource="Sync configuration")
                    run = SyncRun(
                        config_id=config_id,
                        organization_id=config.organization_id,
                        sync_type=sync_type,
                        status="running",
                        started_at=started_at,
                    )
                    session.add(run)
                    await session.commit()
                    run_id = run.id
                    organization_id = config.organization_id

                    logger.info(f"Starting {sync_type} sync for organization {organization_id} (run {run_id})")
                    username, password = CredentialStore(session, self._cipher).decrypt_credentials(config)

                await asyncio.wait_for(
                    self._execute(sync_type, config_id, organization_id, username, password, phases),
                    timeout=self.run_timeout or None,
                )

            except Exception as e:
                if run_id is None:
                    raise
                if isinstance(e, asyncio.TimeoutError):
                    logger.error(f"{sync_type} sync for config {config_id} timed out after {self.run_timeout}s")
                    e = asyncio.TimeoutError(f"Sync run exceeded {self.run_timeout}s")
                else:
                    logger.exception(f"{sync_type} sync for config {config_id} failed: {e}")
                current = phases[-1] if phases else None
                if current is None or current.aborted:
                    current = PhaseResult(sync_type)
                    phases.append(current)
                current.abort(e)

            run = await self._finish_run(run_id, sync_type, phases, started_at)
            if run.status != "failed":
                last_sync_at = run.completed_at
            return run
        finally:
            # Always release, whatever happened above
            await self._release(config_id, last_sync_at)

    async def _release(self, config_id: int, last_sync_at) -> None:
        async with self.session_maker() as session:
            await CredentialStore(session, self._cipher).release_sync(config_id, last_sync_at)

    async def _finish_run(
        self,
        run_id: int,
        sync_type: str,
        phases: list[PhaseResult],
        started_at,
    ) -> SyncRun:
        completed_at = utcnow()
        status = _overall_status(phases)
        errors = [error for phase in phases for error in phase.errors]

        async with self.session_maker() as session:
            run = await session.get(SyncRun, run_id)
            run.status = status
            run.records_fetched = sum(p.fetched for p in phases)
            run.records_created = sum(p.created for p in phases)
            run.records_updated = sum(p.updated for p in phases)
            run.records_skipped = sum(p.skipped for p in phases)
            run.records_conflicted = sum(p.conflicts for p in phases)
            run.errors = errors or None
            run.details = {"phases": [p.as_dict() for p in phases]}
            run.completed_at = completed_at
            run.duration_ms = int((completed_at - started_at).total_seconds() * 1000)
            await session.commit()

        logger.info(
            f"{sync_type} sync run {run_id} finished: {status} "
            f"(created={run.records_created}, updated={run.records_updated}, "
            f"skipped={run.records_skipped}, conflicts={run.records_conflicted}, errors={len(errors)})"
        )
        return run

    async def _execute(
        self,
        sync_type: str,
        config_id: int,
        organization_id: int,
        username: str,
        password: str,
        phases: list[PhaseResult],
    ) -> None:
        client = self.client_factory(username, password)
        ctx = _RunContext(config_id=config_id, organization_id=organization_id, client=client)
        try:
            for phase_type in (FULL_SYNC_PHASES if sync_type == "full" else (sync_type,)):
                result = PhaseResult(phase_type)
                phases.append(result)
                try:
                    await self._run_phase(ctx, result)
                except RegistryError as e:
                    logger.error(f"{phase_type} phase aborted for organization {organization_id}: {e}")
                    result.abort(e)
        finally:
            await client.close()

    async def _run_phase(self, ctx: _RunContext, result: PhaseResult) -> None:
        async with self.session_maker() as session:
            reconciler = EntityReconciler(session, ctx.organization_id, ctx.config_id)
            if result.sync_type == "teams":
                await self._sync_teams(ctx, session, reconciler, result)
            elif result.sync_type == "players":
                await self._sync_players(ctx, session, reconciler, result)
            else:
                await self._sync_seasons(ctx, session, reconciler, result)

    # ── Phases ───────────────────────────────────────────────────────────────

    async def _reconcile_item(
        self,
        session: AsyncSession,
        reconciler: EntityReconciler,
        entity_type: str,
        remote: dict,
        result: PhaseResult,
        extra: Optional[dict] = None,
    ) -> None:
        try:
            result.record(await reconciler.reconcile(entity_type, remote, extra))
        except Exception as e:
            await session.rollback()
            logger.warning(f"Failed to reconcile {entity_type} {remote.get('id')}: {e}")
            result.record_error(entity_type, remote.get("id"), e)

    async def _sync_teams(self, ctx, session, reconciler, result: PhaseResult) -> None:
        payload = await ctx.client.get_groups({"organization-ids[]": [ctx.organization_id]})
        groups = payload["groups"]
        result.fetched = len(groups)
        for group in groups:
            await self._reconcile_item(session, reconciler, "team", group, result)

    async def _sync_seasons(self, ctx, session, reconciler, result: PhaseResult) -> None:
        payload = await ctx.client.get_seasons({"organization-ids[]": [ctx.organization_id]})
        seasons = payload["seasons"]
        result.fetched = len(seasons)
        for season in seasons:
            await self._reconcile_item(session, reconciler, "season", season, result)

    async def _sync_players(self, ctx, session, reconciler, result: PhaseResult) -> None:
        """
        Reconcile contacts as players.

        With team mappings in place, contacts are read group by group and
        attached to the mapped local team; the first group a contact is seen
        in wins. Without any team mapping the organization's contacts are
        read directly and left unattached. A group whose contacts cannot be
        fetched is recorded as an error and skipped.
        """
        team_mappings = (await session.execute(
            select(EntityMapping)
            .where(
                EntityMapping.organization_id == ctx.organization_id,
                EntityMapping.entity_type == "team",
            )
            .order_by(EntityMapping.id)
        )).scalars().all()

        if not team_mappings:
            payload = await ctx.client.get_contacts({"organization-ids[]": [ctx.organization_id]})
            contacts = payload["contacts"]
            result.fetched = len(contacts)
            for contact in contacts:
                await self._reconcile_item(session, reconciler, "player", contact, result)
            return

        # Plain values: a rollback after a failed item expires loaded ORM instances
        groups = [(mapping.remote_id, mapping.local_id) for mapping in team_mappings]
        season_id = await self._current_season_remote_id(session, ctx.organization_id)
        seen: set[str] = set()
        for group_id, team_id in groups:
            try:
                payload = await ctx.client.get_group_contacts(
                    group_id,
                    season_id=season_id,
                    organization_ids=[ctx.organization_id],
                )
            except (NetworkError, NotFoundError, RemoteRequestError) as e:
                logger.warning(f"Skipping group {group_id}: {e}")
                result.record_error("team", group_id, e)
                continue

            for contact in payload["contacts"]:
                contact_id = str(contact.get("id"))
                if contact_id in seen:
                    continue
                seen.add(contact_id)
                result.fetched += 1
                await self._reconcile_item(
                    session, reconciler, "player", contact, result, extra={"team_id": team_id}
                )

    async def _current_season_remote_id(self, session: AsyncSession, organization_id: int) -> Optional[str]:
        """Registry id of the mapped season flagged as current, if any."""
        row = (await session.execute(
            select(EntityMapping.remote_id)
            .join(Season, Season.id == EntityMapping.local_id)
            .where(
                EntityMapping.organization_id == organization_id,
                EntityMapping.entity_type == "season",
                Season.is_current.is_(True),
            )
            .limit(1)
        )).scalar_one_or_none()
        return row


async def recover_interrupted_runs(session_maker: async_sessionmaker) -> int:
    """
    Close out runs left "running" by a process that stopped mid-sync.

    Called once at startup, before the scheduler starts, when no run can be
    in flight. Stale runs are marked failed and every held in-progress flag
    is released.

    Returns:
        Number of runs marked failed.
    """
    now = utcnow()
    async with session_maker() as session:
        result = await session.execute(select(SyncRun).where(SyncRun.status == "running"))
        runs = result.scalars().all()
        for run in runs:
            run.status = "failed"
            run.errors = (run.errors or []) + [{
                "entity": run.sync_type,
                "remote_id": None,
                "kind": ErrorKind.INTERNAL.value,
                "error": "Sync interrupted by shutdown",
            }]
            run.completed_at = now
            run.duration_ms = int((now - run.started_at).total_seconds() * 1000)

        released = await session.execute(
            update(OrganizationSyncConfig)
            .where(OrganizationSyncConfig.sync_in_progress.is_(True))
            .values(sync_in_progress=False)
        )
        await session.commit()

    if runs or released.rowcount:
        logger.warning(f"Recovered {len(runs)} interrupted sync run(s), released {released.rowcount} sync flag(s)")
    return len(runs)
