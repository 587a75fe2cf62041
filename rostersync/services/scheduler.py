"""APScheduler setup for automatic organization syncs."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from rostersync.core.config import get_settings
from rostersync.core.database import async_session_maker
from rostersync.core.errors import ConflictError
from rostersync.models.database import OrganizationSyncConfig
from rostersync.services.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_scheduled_syncs(frequency: str, orchestrator: SyncOrchestrator | None = None) -> dict:
    """
    Run a full sync for every enabled config with the given frequency.

    Configs are processed one after another. A config whose sync is already
    running is skipped; a failing config never stops the others.
    """
    orchestrator = orchestrator or SyncOrchestrator(async_session_maker)
    logger.info(f"Starting scheduled {frequency} syncs")

    async with orchestrator.session_maker() as session:
        result = await session.execute(
            select(OrganizationSyncConfig.id, OrganizationSyncConfig.organization_id).where(
                OrganizationSyncConfig.sync_enabled.is_(True),
                OrganizationSyncConfig.auto_sync_frequency == frequency,
                OrganizationSyncConfig.sync_in_progress.is_(False),
            ).order_by(OrganizationSyncConfig.id)
        )
        configs = result.all()

    summary = {"total": len(configs), "succeeded": 0, "failed": 0, "skipped": 0}
    for config_id, organization_id in configs:
        try:
            run = await orchestrator.sync_full(config_id)
        except ConflictError:
            logger.info(f"Skipping organization {organization_id}: sync already in progress")
            summary["skipped"] += 1
            continue
        except Exception as e:
            logger.error(f"Scheduled sync for organization {organization_id} failed: {e}")
            summary["failed"] += 1
            continue

        if run.status == "failed":
            summary["failed"] += 1
        else:
            summary["succeeded"] += 1

    logger.info(f"Scheduled {frequency} syncs completed: {summary}")
    return summary


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    scheduler.add_job(
        run_scheduled_syncs,
        CronTrigger(minute=0),
        args=["hourly"],
        id="hourly_sync",
        name="Hourly registry sync",
        replace_existing=True,
    )
    scheduler.add_job(
        run_scheduled_syncs,
        CronTrigger(hour=settings.daily_sync_hour, minute=0),
        args=["daily"],
        id="daily_sync",
        name="Daily registry sync",
        replace_existing=True,
    )
    scheduler.add_job(
        run_scheduled_syncs,
        CronTrigger(day_of_week="sun", hour=settings.daily_sync_hour, minute=0),
        args=["weekly"],
        id="weekly_sync",
        name="Weekly registry sync",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - daily and weekly syncs at {settings.daily_sync_hour}:00")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
