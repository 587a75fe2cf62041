# Database models
from rostersync.models.database import (
    OrganizationSyncConfig,
    EntityMapping,
    Team,
    Player,
    Season,
)
from rostersync.models.sync_log import SyncRun, SyncConflict

__all__ = [
    "OrganizationSyncConfig",
    "EntityMapping",
    "Team",
    "Player",
    "Season",
    "SyncRun",
    "SyncConflict",
]
