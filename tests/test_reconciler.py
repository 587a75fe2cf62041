"""Tests for entity reconciliation and conflict resolution."""

from datetime import date

import pytest
from sqlalchemy import select, func

from rostersync.core.errors import NotFoundError, ValidationError
from rostersync.models.database import EntityMapping, Player, Season, Team
from rostersync.models.sync_log import SyncConflict
from rostersync.services.reconciler import EntityReconciler, Outcome, resolve_conflict

ORG = 42


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


class TestReconcileNew:

    @pytest.mark.asyncio
    async def test_creates_record_and_mapping(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        result = await reconciler.reconcile("team", {"id": 10, "name": "U10 Red"})

        assert result.outcome is Outcome.CREATED
        team = await async_session.get(Team, result.local_id)
        assert team.name == "U10 Red"
        assert team.sync_source == "registry"

        mapping = (await async_session.execute(select(EntityMapping))).scalar_one()
        assert (mapping.entity_type, mapping.local_id, mapping.remote_id) == ("team", team.id, "10")

    @pytest.mark.asyncio
    async def test_player_gets_team_from_extra(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        result = await reconciler.reconcile(
            "player",
            {"id": 501, "first-name": "Ana", "last-name": "Silva", "jersey-number": "7"},
            extra={"team_id": 3},
        )
        player = await async_session.get(Player, result.local_id)
        assert (player.first_name, player.last_name, player.jersey_number, player.team_id) == ("Ana", "Silva", 7, 3)

    @pytest.mark.asyncio
    async def test_season_dates_parsed(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        result = await reconciler.reconcile("season", {
            "id": 2024, "name": "2024-2025", "start-date": "2024-08-01", "end-date": "2025-06-30",
            "is-current-season": True,
        })
        season = await async_session.get(Season, result.local_id)
        assert season.start_date == date(2024, 8, 1)
        assert season.end_date == date(2025, 6, 30)
        assert season.is_current is True

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        with pytest.raises(ValidationError):
            await reconciler.reconcile("coach", {"id": 1, "name": "x"})

    @pytest.mark.asyncio
    async def test_record_without_id(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        with pytest.raises(ValueError):
            await reconciler.reconcile("team", {"name": "No id"})


class TestReconcileMapped:

    @pytest.mark.asyncio
    async def test_unchanged_is_skipped(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        result = await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        assert result.outcome is Outcome.SKIPPED
        assert await _count(async_session, Team) == 1

    @pytest.mark.asyncio
    async def test_changed_is_updated(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        created = await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        result = await reconciler.reconcile("team", {"id": 10, "name": "U10 Blue"})

        assert result.outcome is Outcome.UPDATED
        assert result.local_id == created.local_id
        team = await async_session.get(Team, created.local_id)
        assert team.name == "U10 Blue"
        mapping = (await async_session.execute(select(EntityMapping))).scalar_one()
        assert mapping.remote_name == "U10 Blue"

    @pytest.mark.asyncio
    async def test_deleted_local_record_is_recreated(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        created = await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        await async_session.delete(await async_session.get(Team, created.local_id))
        await async_session.commit()

        result = await reconciler.reconcile("team", {"id": 10, "name": "U10"})

        assert result.outcome is Outcome.CREATED
        assert (await async_session.get(Team, result.local_id)).name == "U10"
        mapping = (await async_session.execute(select(EntityMapping))).scalar_one()
        assert mapping.local_id == result.local_id


class TestDuplicateDetection:

    @pytest.mark.asyncio
    async def test_same_name_local_record_raises_conflict(self, async_session):
        async_session.add(Player(organization_id=ORG, first_name="Jose", last_name="Garcia"))
        await async_session.commit()

        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        result = await reconciler.reconcile("player", {"id": 77, "first-name": "José", "last-name": "García"})

        assert result.outcome is Outcome.CONFLICT
        assert await _count(async_session, Player) == 1
        assert await _count(async_session, EntityMapping) == 0

        conflict = await async_session.get(SyncConflict, result.conflict_id)
        assert conflict.resolution == "pending"
        assert conflict.conflict_type == "duplicate"
        assert conflict.remote_id == "77"
        assert conflict.local_data["first_name"] == "Jose"
        assert conflict.remote_data["first-name"] == "José"

    @pytest.mark.asyncio
    async def test_other_organization_is_not_a_duplicate(self, async_session):
        async_session.add(Team(organization_id=99, name="U10"))
        await async_session.commit()

        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        result = await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        assert result.outcome is Outcome.CREATED

    @pytest.mark.asyncio
    async def test_second_remote_with_same_name_conflicts(self, async_session):
        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        first = await reconciler.reconcile("player", {"id": 1, "first-name": "Sam", "last-name": "Lee"})
        second = await reconciler.reconcile("player", {"id": 2, "first-name": "Sam", "last-name": "Lee"})

        assert first.outcome is Outcome.CREATED
        assert second.outcome is Outcome.CONFLICT
        assert second.local_id == first.local_id
        assert await _count(async_session, Player) == 1

    @pytest.mark.asyncio
    async def test_pending_conflict_blocks_creation_without_new_conflict(self, async_session):
        async_session.add(Team(organization_id=ORG, name="U10"))
        await async_session.commit()

        reconciler = EntityReconciler(async_session, ORG, config_id=1)
        first = await reconciler.reconcile("team", {"id": 10, "name": "U10"})
        again = await reconciler.reconcile("team", {"id": 10, "name": "U10"})

        assert again.outcome is Outcome.CONFLICT
        assert again.conflict_id == first.conflict_id
        assert await _count(async_session, SyncConflict) == 1
        assert await _count(async_session, Team) == 1


class TestResolveConflict:

    async def _conflict(self, session) -> tuple[int, int]:
        local = Team(organization_id=ORG, name="U10", sync_source="manual")
        session.add(local)
        await session.commit()
        result = await EntityReconciler(session, ORG, config_id=1).reconcile("team", {"id": 10, "name": "u10 "})
        return result.conflict_id, local.id

    @pytest.mark.asyncio
    async def test_local_wins_links_without_changing_local(self, async_session):
        conflict_id, local_id = await self._conflict(async_session)

        conflict = await resolve_conflict(async_session, conflict_id, "local_wins", resolved_by="coach@club")

        assert conflict.resolution == "local_wins"
        assert conflict.resolved_by == "coach@club"
        assert conflict.resolved_at is not None
        team = await async_session.get(Team, local_id)
        assert team.name == "U10"
        mapping = (await async_session.execute(select(EntityMapping))).scalar_one()
        assert (mapping.local_id, mapping.remote_id) == (local_id, "10")

    @pytest.mark.asyncio
    async def test_remote_wins_applies_remote_values(self, async_session):
        conflict_id, local_id = await self._conflict(async_session)

        await resolve_conflict(async_session, conflict_id, "remote_wins")

        team = await async_session.get(Team, local_id)
        assert team.name == "u10"
        assert team.sync_source == "registry"

    @pytest.mark.asyncio
    async def test_resolved_remote_record_is_matched_on_next_reconcile(self, async_session):
        conflict_id, local_id = await self._conflict(async_session)
        await resolve_conflict(async_session, conflict_id, "local_wins")

        result = await EntityReconciler(async_session, ORG, config_id=1).reconcile("team", {"id": 10, "name": "U10"})
        assert result.outcome is Outcome.SKIPPED
        assert result.local_id == local_id

    @pytest.mark.asyncio
    async def test_cannot_resolve_twice(self, async_session):
        conflict_id, _ = await self._conflict(async_session)
        await resolve_conflict(async_session, conflict_id, "local_wins")
        with pytest.raises(ValidationError):
            await resolve_conflict(async_session, conflict_id, "remote_wins")

    @pytest.mark.asyncio
    async def test_invalid_resolution(self, async_session):
        conflict_id, _ = await self._conflict(async_session)
        with pytest.raises(ValidationError):
            await resolve_conflict(async_session, conflict_id, "merge")

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, async_session):
        with pytest.raises(NotFoundError):
            await resolve_conflict(async_session, 999, "local_wins")
